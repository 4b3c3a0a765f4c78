"""
予約ストア (Booking Store)

会議室の占有状況を管理する唯一の権威ある記録です。
空き確認と予約の追加は単一のロック内で行われ、同じ会議室・重なる時間帯に
2件の予約がコミットされることはありません。
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from ..models import (
    Booking, BookingConflictError, DEFAULT_ROOMS, Room, RoomNotFoundError,
    TimeSlot, User, rooms_for_capacity
)

logger = logging.getLogger(__name__)


class BookingStore:
    """会議室予約ストア"""

    def __init__(self, rooms: Optional[Iterable[Room]] = None, bookings: Optional[Iterable[Booking]] = None):
        """
        予約ストアを初期化

        Args:
            rooms: 会議室カタログ（未指定時はデフォルトカタログ）
            bookings: 既存の予約
        """
        catalog = list(rooms) if rooms is not None else list(DEFAULT_ROOMS)
        self._rooms: Dict[str, Room] = {room.id: room for room in catalog}
        self._bookings: List[Booking] = list(bookings or [])
        self._lock = asyncio.Lock()

    # 会議室カタログ

    @property
    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def find_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def get_room(self, room_id: str) -> Room:
        """会議室を取得（未知のIDは RoomNotFoundError）"""
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        return room

    def rooms_for_capacity(self, required_capacity: int) -> List[Room]:
        return rooms_for_capacity(self._rooms.values(), required_capacity)

    # 空き確認

    def conflicts_for(self, room_id: str, slot: TimeSlot) -> List[Booking]:
        """指定会議室・時間帯と重なる既存予約"""
        return [booking for booking in self._bookings if booking.conflicts_with(room_id, slot)]

    def is_available(self, room_id: str, slot: TimeSlot) -> bool:
        """指定会議室が時間帯に空いているか（状態を変更しない）"""
        self.get_room(room_id)
        return not self.conflicts_for(room_id, slot)

    # 予約

    async def commit(self, room: Room, slot: TimeSlot, participants: Iterable[User]) -> Booking:
        """
        空きを再確認して予約を作成

        確認と追加はロック内で不可分に実行されます。競合時は何も変更せず
        BookingConflictError を送出します。
        """
        self.get_room(room.id)
        async with self._lock:
            conflicts = self.conflicts_for(room.id, slot)
            if conflicts:
                logger.warning(f"予約競合: {room.id} {slot} (既存: {conflicts[0].booking_id})")
                raise BookingConflictError(room.id, conflicts[0])

            booking = Booking(room_id=room.id, slot=slot, participants=list(participants))
            self._bookings.append(booking)

        logger.info(f"予約コミット: {booking.booking_id} {room.id} {slot}")
        return booking

    def list_bookings(self, room_id: Optional[str] = None) -> List[Booking]:
        if room_id is None:
            return list(self._bookings)
        return [booking for booking in self._bookings if booking.room_id == room_id]

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        for booking in self._bookings:
            if booking.booking_id == booking_id:
                return booking
        return None

    # スナップショット

    def snapshot(self) -> List[Dict[str, Any]]:
        return [booking.to_dict() for booking in self._bookings]

    def restore(self, data: Iterable[Dict[str, Any]]) -> None:
        """
        スナップショットから予約一覧を置き換え

        同じ会議室で時間帯が重なる予約を含むスナップショットは
        BookingConflictError で拒否し、現在の予約一覧は変更しません。
        """
        bookings: List[Booking] = []
        for item in data:
            booking = Booking.from_dict(item)
            for existing in bookings:
                if existing.conflicts_with(booking.room_id, booking.slot):
                    logger.error(f"復元データの予約が重複しています: {booking.booking_id} / {existing.booking_id}")
                    raise BookingConflictError(booking.room_id, existing)
            bookings.append(booking)

        self._bookings = bookings
        logger.info(f"予約を復元: {len(self._bookings)}件")
