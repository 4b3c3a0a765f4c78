"""
外部連携 - プランナーゲートウェイとカレンダー取得
"""

from .planner_gateway import PlannerGateway, PlanningRequest, PlanningCandidate
from .local_planner import LocalSlotPlanner
from .gemini_planner import GeminiPlannerGateway
from .calendar_source import CalendarSource, StaticCalendarSource

__all__ = [
    "PlannerGateway",
    "PlanningRequest",
    "PlanningCandidate",
    "LocalSlotPlanner",
    "GeminiPlannerGateway",
    "CalendarSource",
    "StaticCalendarSource",
]
