"""
Shared fixtures and planner doubles for coordination tests
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

import pytest

from meetsync.config import CoordinatorSettings
from meetsync.integrations.planner_gateway import PlannerGateway, PlanningCandidate, PlanningRequest
from meetsync.models import DEFAULT_ROOMS, Location, TimeSlot, User

BASE_DAY = datetime(2030, 1, 15, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: int = 0) -> datetime:
    """Fixed test instant on the base day (UTC)"""
    return BASE_DAY + timedelta(days=day, hours=hour, minutes=minute)


def slot(start_hour: int, end_hour: int, start_minute: int = 0, end_minute: int = 0) -> TimeSlot:
    return TimeSlot(start_time=at(start_hour, start_minute), end_time=at(end_hour, end_minute))


def candidate(room_id: str, start_hour: int, end_hour: int, reasoning: str = "test") -> PlanningCandidate:
    return PlanningCandidate(
        room_id=room_id,
        start_time=at(start_hour),
        end_time=at(end_hour),
        reasoning=reasoning
    )


class ScriptedPlanner(PlannerGateway):
    """Returns queued results in order; exceptions in the queue are raised"""

    name = "scripted"

    def __init__(self, results: Optional[List[Union[PlanningCandidate, BaseException, None]]] = None):
        self.results = list(results or [])
        self.requests: List[PlanningRequest] = []

    async def propose(self, request: PlanningRequest) -> Optional[PlanningCandidate]:
        self.requests.append(request)
        if not self.results:
            return None
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class GatedPlanner(PlannerGateway):
    """Blocks every call until the gate is opened"""

    name = "gated"

    def __init__(self, result: Optional[PlanningCandidate]):
        self.result = result
        self.gate = asyncio.Event()
        self.calls = 0

    async def propose(self, request: PlanningRequest) -> Optional[PlanningCandidate]:
        self.calls += 1
        await self.gate.wait()
        return self.result


class SlowPlanner(PlannerGateway):
    """Sleeps longer than any test timeout"""

    name = "slow"

    def __init__(self, delay: float = 5.0):
        self.delay = delay

    async def propose(self, request: PlanningRequest) -> Optional[PlanningCandidate]:
        await asyncio.sleep(self.delay)
        return None


@pytest.fixture
def alice():
    return User(id="user-alice", name="Alice", email="alice@example.com")


@pytest.fixture
def bob():
    return User(id="user-bob", name="Bob", email="bob@example.com")


@pytest.fixture
def carol():
    return User(id="user-carol", name="Carol", email="carol@example.com")


@pytest.fixture
def room_a():
    return DEFAULT_ROOMS[0]


@pytest.fixture
def library_location():
    return Location(lat=33.7745, lng=-84.3963)


@pytest.fixture
def settings():
    return CoordinatorSettings()
