"""
カレンダー取得コラボレーター

参加者の予定（忙しい時間帯）を供給します。コアは予定をプランナーへの
入力としてのみ使用します。
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from ..models import BusyInterval, User

logger = logging.getLogger(__name__)


class CalendarSource(ABC):
    """カレンダー取得の基底クラス"""

    @abstractmethod
    async def get_busy_intervals(self, user: User) -> List[BusyInterval]:
        """ユーザーの予定一覧を取得"""
        pass

    async def collect(self, users: Iterable[User]) -> Dict[str, List[BusyInterval]]:
        """複数ユーザーの予定を参加者ID別にまとめる"""
        result: Dict[str, List[BusyInterval]] = {}
        for user in users:
            result[user.id] = await self.get_busy_intervals(user)
        return result


class StaticCalendarSource(CalendarSource):
    """メモリ上の固定カレンダー（ユーザーID -> 予定一覧）"""

    def __init__(self, calendars: Optional[Dict[str, List[BusyInterval]]] = None):
        self.calendars: Dict[str, List[BusyInterval]] = dict(calendars or {})

    def set_intervals(self, user_id: str, intervals: List[BusyInterval]) -> None:
        self.calendars[user_id] = list(intervals)

    async def get_busy_intervals(self, user: User) -> List[BusyInterval]:
        intervals = self.calendars.get(user.id, [])
        logger.debug(f"予定取得: {user.id} ({len(intervals)}件)")
        return list(intervals)
