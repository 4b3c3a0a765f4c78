"""
データモデル - MeetSync

このパッケージには、会議調整のためのコアエンティティモデルが含まれています。
"""

from .errors import (
    CoordinationError, SessionNotFoundError, RoomNotFoundError,
    SessionValidationError, PlanningFailure, BookingConflictError
)
from .time_slot import TimeSlot, BusyInterval, EventPriority
from .user import User, Location
from .room import Room, DEFAULT_ROOMS, rooms_for_capacity
from .booking import Booking
from .session import Session, SessionState, ReadyStatus, Proposal, TERMINAL_STATES

__all__ = [
    # エラー
    "CoordinationError",
    "SessionNotFoundError",
    "RoomNotFoundError",
    "SessionValidationError",
    "PlanningFailure",
    "BookingConflictError",

    # 時間関連
    "TimeSlot",
    "BusyInterval",
    "EventPriority",

    # ユーザー・会議室
    "User",
    "Location",
    "Room",
    "DEFAULT_ROOMS",
    "rooms_for_capacity",

    # 予約・セッション
    "Booking",
    "Session",
    "SessionState",
    "ReadyStatus",
    "Proposal",
    "TERMINAL_STATES",
]
