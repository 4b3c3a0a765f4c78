"""
プランナーゲートウェイ契約

セッションの文脈から会議室・時間帯の候補を1件返す外部呼び出し境界です。
ゲートウェイ内部の推論は不透明で、コアは以下の契約のみに依存します:
- 候補は参加者の HIGH 優先度の予定と重ならない
- 候補は除外スロットに含まれない
- 会議室は参加人数以上の収容人数を持つ
会議室の実際の空きはコミット時に予約ストアで再検証されます。
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..models import Booking, BusyInterval, Location, Room, TimeSlot, User
from ..models.time_slot import ensure_aware, utcnow


class PlanningRequest(BaseModel):
    """プランナーへのリクエスト"""
    participants: List[User] = Field(..., description="参加者")
    busy_intervals: Dict[str, List[BusyInterval]] = Field(
        default_factory=dict,
        description="参加者ID -> 予定一覧"
    )
    candidate_rooms: List[Room] = Field(..., description="収容人数で絞り込んだ会議室")
    existing_bookings: List[Booking] = Field(default_factory=list, description="既存予約")
    excluded_slots: List[TimeSlot] = Field(default_factory=list, description="除外スロット")
    requester_location: Optional[Location] = Field(None, description="依頼者の位置（同点時のヒント）")
    duration_minutes: int = Field(default=60, ge=5, description="会議時間（分）")
    not_before: datetime = Field(default_factory=utcnow, description="これ以降の時間帯を提案する")

    @field_validator('not_before')
    @classmethod
    def validate_not_before(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    def is_excluded(self, slot: TimeSlot) -> bool:
        return slot in self.excluded_slots


class PlanningCandidate(BaseModel):
    """プランナーからの候補"""
    room_id: str = Field(..., min_length=1, description="会議室ID")
    start_time: datetime = Field(..., description="開始時刻")
    end_time: datetime = Field(..., description="終了時刻")
    reasoning: str = Field(default="", description="選択理由")

    @property
    def slot(self) -> TimeSlot:
        """時間帯（start_time >= end_time の場合は pydantic.ValidationError）"""
        return TimeSlot(start_time=self.start_time, end_time=self.end_time)


class PlannerGateway(ABC):
    """プランナーゲートウェイ基底クラス"""

    name: str = "planner"

    @abstractmethod
    async def propose(self, request: PlanningRequest) -> Optional[PlanningCandidate]:
        """
        候補を1件返す

        候補がない場合は None を返すか PlanningFailure を送出します。
        """
        pass
