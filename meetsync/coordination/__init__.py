"""
調整エンジン - 予約ストア、セッション状態機械、セッションレジストリ
"""

from .booking_store import BookingStore
from .state_machine import Effect, SessionStateMachine
from .registry import SessionRegistry

__all__ = [
    "BookingStore",
    "Effect",
    "SessionStateMachine",
    "SessionRegistry",
]
