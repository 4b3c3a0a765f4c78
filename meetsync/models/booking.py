"""
Booking エンティティモデル

コミット済みの会議室予約。作成後は変更も削除もされません。
"""

from datetime import datetime
from typing import Any, Dict, List
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .time_slot import TimeSlot, utcnow
from .user import User


class Booking(BaseModel):
    """確定済みの会議室予約"""
    model_config = ConfigDict(frozen=True)

    booking_id: str = Field(default_factory=lambda: f"booking-{uuid4().hex}")
    room_id: str = Field(..., description="会議室ID")
    slot: TimeSlot = Field(..., description="予約時間帯")
    participants: List[User] = Field(default_factory=list, description="参加者")
    created_at: datetime = Field(default_factory=utcnow)

    def conflicts_with(self, room_id: str, slot: TimeSlot) -> bool:
        """同じ会議室で時間帯が重なるか"""
        return self.room_id == room_id and self.slot.overlaps(slot)

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（スナップショット保存用）"""
        return {
            "booking_id": self.booking_id,
            "room_id": self.room_id,
            "slot": self.slot.to_dict(),
            "participants": [user.model_dump() for user in self.participants],
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Booking":
        """辞書から Booking インスタンスを作成"""
        return cls(
            booking_id=data["booking_id"],
            room_id=data["room_id"],
            slot=TimeSlot.from_dict(data["slot"]),
            participants=[User(**user) for user in data.get("participants", [])],
            created_at=datetime.fromisoformat(data["created_at"])
        )
