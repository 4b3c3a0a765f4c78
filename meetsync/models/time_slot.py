"""
TimeSlot / BusyInterval モデル

時刻は不透明な瞬間として扱います。タイムゾーンなしの datetime は UTC とみなし、
保存される値はすべてタイムゾーン付きになります。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def ensure_aware(value: datetime) -> datetime:
    """タイムゾーンなしの datetime を UTC として扱う"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    """現在時刻（UTC, タイムゾーン付き）"""
    return datetime.now(timezone.utc)


class TimeSlot(BaseModel):
    """時間スロット（start_time < end_time）"""
    model_config = ConfigDict(frozen=True)

    start_time: datetime = Field(..., description="開始時刻")
    end_time: datetime = Field(..., description="終了時刻")

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_timezone(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @model_validator(mode='after')
    def validate_order(self) -> "TimeSlot":
        """終了時刻の検証"""
        if self.end_time <= self.start_time:
            raise ValueError('終了時刻は開始時刻より後である必要があります')
        return self

    def overlaps(self, other: "TimeSlot") -> bool:
        """半開区間での重複判定"""
        return self.start_time < other.end_time and self.end_time > other.start_time

    def duration_minutes(self) -> int:
        """時間スロットの長さ（分）"""
        return int((self.end_time - self.start_time).total_seconds() / 60)

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeSlot":
        """辞書から TimeSlot インスタンスを作成"""
        return cls(
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(data["end_time"])
        )

    def __str__(self) -> str:
        return f"{self.start_time.isoformat()} - {self.end_time.isoformat()}"


class EventPriority(str, Enum):
    """予定の優先度"""
    HIGH = "HIGH"        # 動かせない予定
    MEDIUM = "MEDIUM"    # できれば避けたい
    LOW = "LOW"          # 調整可能


class BusyInterval(BaseModel):
    """参加者のカレンダー上の予定（忙しい時間帯）"""
    model_config = ConfigDict(frozen=True)

    title: str = Field(default="", description="予定タイトル")
    slot: TimeSlot = Field(..., description="時間帯")
    # 優先度不明の予定は動かせないものとして扱う
    priority: EventPriority = Field(default=EventPriority.HIGH, description="優先度")
    is_tentative: bool = Field(default=False, description="仮予定か")

    def is_hard(self) -> bool:
        """提案と重ねてはならない予定か"""
        return self.priority == EventPriority.HIGH
