"""
ローカルスロットプランナー

外部サービスを使わずに決定的に候補を選ぶプランナーゲートウェイ実装です。
探索範囲内の候補スロットを早い順に評価し、HIGH 優先度の予定と重なる
スロットと除外スロットを捨て、空いている会議室を1つ選びます。
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..config import CoordinatorSettings
from ..models import BusyInterval, Room, TimeSlot
from .planner_gateway import PlannerGateway, PlanningCandidate, PlanningRequest

logger = logging.getLogger(__name__)


class SlotOption(BaseModel):
    """評価済みの候補"""
    slot: TimeSlot = Field(..., description="時間帯")
    room: Room = Field(..., description="空いている会議室")
    soft_conflicts: List[str] = Field(default_factory=list, description="重なる調整可能な予定")


class LocalSlotPlanner(PlannerGateway):
    """決定的なローカルプランナー"""

    name = "local"

    def __init__(self, settings: Optional[CoordinatorSettings] = None):
        self.settings = settings or CoordinatorSettings()

    async def propose(self, request: PlanningRequest) -> Optional[PlanningCandidate]:
        return self.find_candidate(request)

    def find_candidate(self, request: PlanningRequest) -> Optional[PlanningCandidate]:
        """最も早く、調整可能な予定との重なりが少ない候補を選ぶ"""
        options: List[SlotOption] = []

        for slot in self._generate_potential_time_slots(request):
            if request.is_excluded(slot):
                continue

            hard, soft = self._analyze_slot(slot, request.busy_intervals)
            if hard:
                continue

            room = self._select_room(slot, request)
            if room is None:
                continue

            options.append(SlotOption(slot=slot, room=room, soft_conflicts=soft))
            if not soft:
                # 重なりのない最も早いスロットが見つかれば探索終了
                break

        if not options:
            logger.warning(f"候補スロットが見つかりません (除外: {len(request.excluded_slots)}件)")
            return None

        best = min(options, key=lambda o: (len(o.soft_conflicts), o.slot.start_time))
        logger.info(f"候補選択: {best.room.id} {best.slot}")
        return PlanningCandidate(
            room_id=best.room.id,
            start_time=best.slot.start_time,
            end_time=best.slot.end_time,
            reasoning=self._generate_reasoning(best, request)
        )

    def _generate_potential_time_slots(self, request: PlanningRequest) -> Iterator[TimeSlot]:
        """探索範囲内の候補スロットを早い順に生成"""
        step = timedelta(minutes=self.settings.slot_step_minutes)
        duration = timedelta(minutes=request.duration_minutes)
        first_start = self._round_up(request.not_before, self.settings.slot_step_minutes)
        midnight = request.not_before.replace(hour=0, minute=0, second=0, microsecond=0)

        for day in range(self.settings.search_days):
            day_base = midnight + timedelta(days=day)
            window_start = day_base + timedelta(hours=self.settings.day_start_hour)
            window_end = day_base + timedelta(hours=self.settings.day_end_hour)

            current = max(window_start, first_start)
            # 刻みに揃える
            offset = (current - window_start) % step
            if offset:
                current += step - offset

            while current + duration <= window_end:
                yield TimeSlot(start_time=current, end_time=current + duration)
                current += step

    @staticmethod
    def _round_up(value: datetime, step_minutes: int) -> datetime:
        base = value.replace(second=0, microsecond=0)
        if base < value:
            base += timedelta(minutes=1)
        remainder = base.minute % step_minutes
        if remainder:
            base += timedelta(minutes=step_minutes - remainder)
        return base

    def _analyze_slot(
        self,
        slot: TimeSlot,
        busy_intervals: Dict[str, List[BusyInterval]]
    ) -> Tuple[List[str], List[str]]:
        """重なる予定を動かせないものと調整可能なものに分ける"""
        hard: List[str] = []
        soft: List[str] = []
        for user_id, intervals in busy_intervals.items():
            for interval in intervals:
                if not interval.slot.overlaps(slot):
                    continue
                label = f"{user_id}: {interval.title or '予定'}"
                if interval.is_hard():
                    hard.append(label)
                else:
                    soft.append(label)
        return hard, soft

    def _select_room(self, slot: TimeSlot, request: PlanningRequest) -> Optional[Room]:
        """空いている会議室を、近さ・収容人数の小ささ順に選ぶ"""
        required = len(request.participants)
        free_rooms = [
            room for room in request.candidate_rooms
            if room.capacity >= required and not any(
                booking.conflicts_with(room.id, slot) for booking in request.existing_bookings
            )
        ]
        if not free_rooms:
            return None

        def sort_key(room: Room):
            distance = (
                room.location.distance_km(request.requester_location)
                if request.requester_location else 0.0
            )
            return (round(distance, 3), room.capacity, room.id)

        return min(free_rooms, key=sort_key)

    def _generate_reasoning(self, option: SlotOption, request: PlanningRequest) -> str:
        """選択理由を生成"""
        reasons = [f"{len(request.participants)}人全員の動かせない予定と重ならない最も早い時間帯"]
        if option.soft_conflicts:
            reasons.append(f"調整可能な予定と{len(option.soft_conflicts)}件重なる")
        reasons.append(f"{option.room.display_name}（定員{option.room.capacity}人）が空いている")
        if request.requester_location:
            distance = option.room.location.distance_km(request.requester_location)
            reasons.append(f"依頼者から約{distance:.1f}km")
        return "、".join(reasons)
