"""
Unit tests for the session registry
Tests end-to-end coordination scenarios, serialization of per-session updates,
planner failure handling and snapshot restore
"""

import asyncio
import logging

import pytest

from meetsync.config import CoordinatorSettings, DeclinePolicy
from meetsync.coordination import BookingStore, SessionRegistry
from meetsync.integrations import CalendarSource, StaticCalendarSource
from meetsync.models import (
    Booking, BookingConflictError, BusyInterval, EventPriority, PlanningFailure, ReadyStatus,
    SessionNotFoundError, SessionState, SessionValidationError
)

from conftest import GatedPlanner, ScriptedPlanner, SlowPlanner, candidate, slot


class HangingCalendarSource(CalendarSource):
    """Never returns busy intervals"""

    async def get_busy_intervals(self, user):
        await asyncio.sleep(3600)
        return []


def make_registry(planner, store=None, **overrides):
    return SessionRegistry(
        booking_store=store or BookingStore(),
        planner=planner,
        settings=CoordinatorSettings(**overrides)
    )


async def ready_pair(registry, alice, bob):
    session_id = await registry.create("Study group", alice)
    await registry.join(session_id, bob)
    await registry.set_ready(session_id, alice.id)
    await registry.set_ready(session_id, bob.id)
    return session_id


def assert_invariants(registry):
    for session in registry.list_sessions():
        assert session.check_invariants() == []
        assert set(session.ready_status) == set(session.participant_ids())


class TestScenarios:
    """Test the canonical coordination scenarios"""

    @pytest.mark.asyncio
    async def test_unanimous_accept_confirms(self, alice, bob):
        """Scenario A: both accept and the room is booked"""
        registry = make_registry(ScriptedPlanner([candidate("room-lib-1", 10, 11)]))
        session_id = await ready_pair(registry, alice, bob)
        assert registry.get(session_id).state == SessionState.PLANNING

        await registry.drain()
        session = registry.get(session_id)
        assert session.state == SessionState.PROPOSED
        assert session.proposal.responses == {}

        await registry.respond(session_id, alice.id, True)
        assert registry.get(session_id).state == SessionState.PROPOSED
        await registry.respond(session_id, bob.id, True)

        session = registry.get(session_id)
        bookings = registry.booking_store.list_bookings()
        assert session.state == SessionState.CONFIRMED
        assert len(bookings) == 1
        assert bookings[0].room_id == "room-lib-1"
        assert bookings[0].slot == slot(10, 11)
        assert session.booking_id == bookings[0].booking_id
        assert_invariants(registry)

    @pytest.mark.asyncio
    async def test_decline_rearms_with_exclusion(self, alice, bob):
        """Scenario B: a decline returns to PLANNING with the slot excluded"""
        planner = ScriptedPlanner([candidate("room-lib-1", 10, 11), candidate("room-lib-1", 12, 13)])
        registry = make_registry(planner)
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        await registry.respond(session_id, bob.id, False)

        session = registry.get(session_id)
        assert session.state == SessionState.PLANNING
        assert session.excluded_slots == [slot(10, 11)]
        assert session.proposal is None

        await registry.drain()
        assert planner.requests[1].excluded_slots == [slot(10, 11)]
        assert registry.get(session_id).proposal.slot == slot(12, 13)
        assert_invariants(registry)

    @pytest.mark.asyncio
    async def test_booking_conflict_rearms(self, alice, bob, carol):
        """Scenario C: another group already holds an overlapping booking"""
        store = BookingStore(bookings=[
            Booking(room_id="room-lib-1", slot=slot(10, 11, 30, 30), participants=[carol])
        ])
        planner = ScriptedPlanner([candidate("room-lib-1", 10, 11), candidate("room-lib-2", 10, 11)])
        registry = make_registry(planner, store)
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        await registry.respond(session_id, alice.id, True)
        await registry.respond(session_id, bob.id, True)

        session = registry.get(session_id)
        assert session.state == SessionState.PLANNING
        assert session.excluded_slots == [slot(10, 11)]
        assert len(store.list_bookings()) == 1

        await registry.drain()
        session = registry.get(session_id)
        assert session.state == SessionState.PROPOSED
        assert session.proposal.room.id == "room-lib-2"
        assert session.planning_round == 2

    @pytest.mark.asyncio
    async def test_unknown_room_cancels(self, alice, bob):
        """Scenario D: the planner proposes a room outside the catalog"""
        registry = make_registry(ScriptedPlanner([candidate("room-nowhere", 10, 11)]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        session = registry.get(session_id)
        assert session.state == SessionState.CANCELED
        assert "room-nowhere" in session.cancel_reason
        assert registry.booking_store.list_bookings() == []

    @pytest.mark.asyncio
    async def test_late_joiner_blocks_planning(self, alice, bob, carol):
        """Scenario E: a new participant must also become ready"""
        planner = ScriptedPlanner([candidate("room-lib-1", 10, 11)])
        registry = make_registry(planner)
        session_id = await registry.create("Study group", alice)
        await registry.join(session_id, bob)
        await registry.set_ready(session_id, alice.id)

        await registry.join(session_id, carol)
        await registry.set_ready(session_id, bob.id)

        assert registry.get(session_id).state == SessionState.PENDING
        assert planner.requests == []

        await registry.set_ready(session_id, carol.id)
        assert registry.get(session_id).state == SessionState.PLANNING
        await registry.drain()
        assert len(planner.requests) == 1
        assert len(planner.requests[0].participants) == 3


class TestRegistryOperations:
    """Test registry lookups and validation"""

    @pytest.mark.asyncio
    async def test_create_allocates_unique_ids(self, alice):
        registry = make_registry(ScriptedPlanner())
        ids = {await registry.create(f"s{i}", alice) for i in range(20)}
        assert len(ids) == 20
        assert len(registry.list_sessions(SessionState.PENDING)) == 20

    @pytest.mark.asyncio
    async def test_unknown_session(self, alice):
        registry = make_registry(ScriptedPlanner())
        with pytest.raises(SessionNotFoundError):
            await registry.join("session-missing", alice)
        with pytest.raises(SessionNotFoundError):
            await registry.set_ready("session-missing", alice.id)
        with pytest.raises(SessionNotFoundError):
            await registry.respond("session-missing", alice.id, True)
        with pytest.raises(LookupError):
            registry.get("session-missing")

    @pytest.mark.asyncio
    async def test_unknown_session_allocates_no_lock(self, alice):
        registry = make_registry(ScriptedPlanner())
        session_id = await registry.create("Study group", alice)

        for i in range(100):
            with pytest.raises(SessionNotFoundError):
                await registry.join(f"session-missing-{i}", alice)
            with pytest.raises(SessionNotFoundError):
                await registry.evaluate(f"session-missing-{i}")

        assert set(registry._locks) == {session_id}

    @pytest.mark.asyncio
    async def test_join_twice_is_noop(self, alice, bob):
        registry = make_registry(ScriptedPlanner())
        session_id = await registry.create("Study group", alice)
        assert await registry.join(session_id, bob) is True
        assert await registry.join(session_id, bob) is False
        assert len(registry.get(session_id).participants) == 2

    @pytest.mark.asyncio
    async def test_non_member_vote_rejected(self, alice, bob, carol):
        registry = make_registry(ScriptedPlanner([candidate("room-lib-1", 10, 11)]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        with pytest.raises(SessionValidationError):
            await registry.respond(session_id, carol.id, False)

        session = registry.get(session_id)
        assert session.state == SessionState.PROPOSED
        assert session.proposal.responses == {}

    @pytest.mark.asyncio
    async def test_join_terminal_session_rejected(self, alice, bob, carol):
        registry = make_registry(ScriptedPlanner([candidate("room-nowhere", 10, 11)]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        with pytest.raises(SessionValidationError):
            await registry.join(session_id, carol)

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, alice, bob):
        registry = make_registry(ScriptedPlanner())
        session_id = await registry.create("Study group", alice)

        copy = registry.get(session_id)
        copy.ready_status[alice.id] = ReadyStatus.READY

        assert registry.get(session_id).ready_status[alice.id] == ReadyStatus.PENDING

    @pytest.mark.asyncio
    async def test_joining_proposed_session_adds_voter(self, alice, bob, carol):
        registry = make_registry(ScriptedPlanner([candidate("room-lib-1", 10, 11)]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        await registry.respond(session_id, alice.id, True)
        await registry.join(session_id, carol)
        await registry.respond(session_id, bob.id, True)
        assert registry.get(session_id).state == SessionState.PROPOSED

        await registry.respond(session_id, carol.id, True)
        assert registry.get(session_id).state == SessionState.CONFIRMED


class TestIdempotency:
    """Test that repeated evaluation commits at most one booking"""

    @pytest.mark.asyncio
    async def test_concurrent_final_votes_and_evaluations(self, alice, bob):
        registry = make_registry(ScriptedPlanner([candidate("room-lib-1", 10, 11)]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        results = await asyncio.gather(
            registry.respond(session_id, alice.id, True),
            registry.respond(session_id, bob.id, True),
            registry.evaluate(session_id),
            registry.evaluate(session_id),
            return_exceptions=True
        )

        assert not any(isinstance(r, Exception) for r in results)
        assert registry.get(session_id).state == SessionState.CONFIRMED
        assert len(registry.booking_store.list_bookings()) == 1

    @pytest.mark.asyncio
    async def test_repeated_evaluate_after_confirmation(self, alice, bob):
        registry = make_registry(ScriptedPlanner([candidate("room-lib-1", 10, 11)]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()
        await registry.respond(session_id, alice.id, True)
        await registry.respond(session_id, bob.id, True)

        for _ in range(3):
            assert await registry.evaluate(session_id) == SessionState.CONFIRMED
        assert await registry.scan_and_advance() == 0
        assert len(registry.booking_store.list_bookings()) == 1

    @pytest.mark.asyncio
    async def test_vote_after_confirmation_rejected(self, alice, bob):
        registry = make_registry(ScriptedPlanner([candidate("room-lib-1", 10, 11)]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()
        await registry.respond(session_id, alice.id, True)
        await registry.respond(session_id, bob.id, True)

        with pytest.raises(SessionValidationError):
            await registry.respond(session_id, bob.id, True)
        assert len(registry.booking_store.list_bookings()) == 1

    @pytest.mark.asyncio
    async def test_two_sessions_race_for_same_room(self, alice, bob, carol):
        store = BookingStore()
        planner = ScriptedPlanner([
            candidate("room-lib-1", 10, 11),
            candidate("room-lib-1", 10, 11),
            candidate("room-lib-2", 10, 11),
        ])
        registry = make_registry(planner, store)
        first = await registry.create("First", alice)
        second = await registry.create("Second", carol)
        await registry.set_ready(first, alice.id)
        await registry.set_ready(second, carol.id)
        await registry.drain()

        await asyncio.gather(
            registry.respond(first, alice.id, True),
            registry.respond(second, carol.id, True)
        )

        states = {registry.get(first).state, registry.get(second).state}
        assert states == {SessionState.CONFIRMED, SessionState.PLANNING}
        assert len(store.list_bookings("room-lib-1")) == 1

        await registry.drain()
        loser = registry.get(second)
        assert loser.state == SessionState.PROPOSED
        assert loser.proposal.room.id == "room-lib-2"
        assert loser.excluded_slots == [slot(10, 11)]


class TestPlannerFailures:
    """Test planner failure handling"""

    @pytest.mark.asyncio
    async def test_timeout_cancels(self, alice, bob):
        registry = make_registry(SlowPlanner(delay=5.0), planner_timeout_seconds=0.05)
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        session = registry.get(session_id)
        assert session.state == SessionState.CANCELED
        assert session.cancel_reason.startswith("計画失敗")

    @pytest.mark.asyncio
    async def test_hanging_calendar_times_out(self, alice, bob):
        registry = SessionRegistry(
            planner=ScriptedPlanner([candidate("room-lib-1", 10, 11)]),
            calendar_source=HangingCalendarSource(),
            settings=CoordinatorSettings(planner_timeout_seconds=0.05)
        )
        session_id = await ready_pair(registry, alice, bob)
        await asyncio.wait_for(registry.drain(), timeout=5)

        session = registry.get(session_id)
        assert session.state == SessionState.CANCELED
        assert "0.05" in session.cancel_reason
        assert registry.planner.requests == []

    @pytest.mark.asyncio
    async def test_planning_failure_cancels(self, alice, bob):
        registry = make_registry(ScriptedPlanner([PlanningFailure("no slot today")]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        session = registry.get(session_id)
        assert session.state == SessionState.CANCELED
        assert "no slot today" in session.cancel_reason

    @pytest.mark.asyncio
    async def test_unexpected_exception_cancels(self, alice, bob, caplog):
        registry = make_registry(ScriptedPlanner([RuntimeError("boom")]))
        session_id = await ready_pair(registry, alice, bob)

        with caplog.at_level(logging.ERROR, logger="meetsync.coordination.registry"):
            await registry.drain()

        assert registry.get(session_id).state == SessionState.CANCELED
        assert any(record.exc_info for record in caplog.records)

    @pytest.mark.asyncio
    async def test_empty_result_cancels(self, alice, bob):
        registry = make_registry(ScriptedPlanner([None]))
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()
        assert registry.get(session_id).state == SessionState.CANCELED

    @pytest.mark.asyncio
    async def test_stale_inflight_call_cancelled(self, alice, bob):
        planner = GatedPlanner(candidate("room-lib-1", 10, 11))
        registry = make_registry(planner, planning_stale_after_seconds=0.01)
        session_id = await ready_pair(registry, alice, bob)
        while planner.calls == 0:
            await asyncio.sleep(0)

        await asyncio.sleep(0.05)
        assert await registry.scan_and_advance() == 1

        session = registry.get(session_id)
        assert session.state == SessionState.CANCELED
        await registry.drain()
        assert not registry.has_inflight_planning(session_id)

    @pytest.mark.asyncio
    async def test_stale_result_discarded(self, alice, bob, caplog):
        planner = GatedPlanner(candidate("room-lib-1", 10, 11))
        registry = make_registry(planner)
        session_id = await ready_pair(registry, alice, bob)
        while planner.calls == 0:
            await asyncio.sleep(0)

        # A newer round starts while the first call is still in flight
        registry._sessions[session_id].restart_planning()
        planner.gate.set()
        with caplog.at_level(logging.WARNING, logger="meetsync.coordination.registry"):
            await registry.drain()

        session = registry.get(session_id)
        assert session.state == SessionState.PLANNING
        assert session.proposal is None
        assert any("古い計画結果を破棄" in record.getMessage() for record in caplog.records)

        assert await registry.scan_and_advance() == 1
        await registry.drain()
        session = registry.get(session_id)
        assert session.state == SessionState.PROPOSED
        assert session.planning_round == 3
        assert planner.calls == 2


class TestDeclinePolicies:
    """Test decline policy and round limit at registry level"""

    @pytest.mark.asyncio
    async def test_reset_readiness_requires_new_handshake(self, alice, bob):
        planner = ScriptedPlanner([candidate("room-lib-1", 10, 11), candidate("room-lib-1", 12, 13)])
        registry = make_registry(planner, decline_policy=DeclinePolicy.RESET_READINESS)
        session_id = await ready_pair(registry, alice, bob)
        await registry.drain()

        await registry.respond(session_id, alice.id, False)
        session = registry.get(session_id)
        assert session.state == SessionState.PENDING
        assert session.excluded_slots == [slot(10, 11)]
        assert not session.all_ready()

        await registry.set_ready(session_id, alice.id)
        await registry.set_ready(session_id, bob.id)
        await registry.drain()
        session = registry.get(session_id)
        assert session.state == SessionState.PROPOSED
        assert session.proposal.slot == slot(12, 13)

    @pytest.mark.asyncio
    async def test_round_limit_cancels(self, alice, bob):
        planner = ScriptedPlanner([candidate("room-lib-1", hour, hour + 1) for hour in range(9, 15)])
        registry = make_registry(planner, max_planning_rounds=3)
        session_id = await ready_pair(registry, alice, bob)

        for _ in range(3):
            await registry.drain()
            await registry.respond(session_id, bob.id, False)

        session = registry.get(session_id)
        assert session.state == SessionState.CANCELED
        assert len(session.excluded_slots) == 3
        assert len(planner.requests) == 3


class TestPlanningRequest:
    """Test the request handed to the planner"""

    @pytest.mark.asyncio
    async def test_request_contents(self, alice, bob, library_location):
        busy = BusyInterval(title="Lab", slot=slot(13, 15), priority=EventPriority.HIGH)
        store = BookingStore(bookings=[Booking(room_id="room-ic-2", slot=slot(9, 10))])
        planner = ScriptedPlanner([candidate("room-lib-1", 10, 11)])
        registry = SessionRegistry(
            booking_store=store,
            planner=planner,
            calendar_source=StaticCalendarSource({bob.id: [busy]}),
            settings=CoordinatorSettings(meeting_duration_minutes=45)
        )
        session_id = await registry.create("Study group", alice, library_location)
        await registry.join(session_id, bob)
        await registry.set_ready(session_id, alice.id)
        await registry.set_ready(session_id, bob.id)
        await registry.drain()

        request = planner.requests[0]
        assert [user.id for user in request.participants] == [alice.id, bob.id]
        assert request.busy_intervals == {alice.id: [], bob.id: [busy]}
        assert all(room.capacity >= 2 for room in request.candidate_rooms)
        assert request.existing_bookings == store.list_bookings()
        assert request.excluded_slots == []
        assert request.requester_location == library_location
        assert request.duration_minutes == 45

    @pytest.mark.asyncio
    async def test_capacity_filter(self, alice):
        planner = ScriptedPlanner([candidate("room-coda-1", 10, 11)])
        registry = make_registry(planner)
        session_id = await registry.create("Big group", alice)
        for i in range(10):
            await registry.join(session_id, alice.model_copy(update={"id": f"user-{i}"}))
        for user_id in registry.get(session_id).participant_ids():
            await registry.set_ready(session_id, user_id)
        await registry.drain()

        rooms = {room.id for room in planner.requests[0].candidate_rooms}
        assert rooms == {"room-ic-2"}


class TestSnapshotRestore:
    """Test registry snapshot and restore"""

    @pytest.mark.asyncio
    async def test_round_trip_mixed_states(self, alice, bob, carol):
        planner = ScriptedPlanner([
            candidate("room-lib-1", 10, 11),
            candidate("room-lib-2", 12, 13),
            candidate("room-lib-2", 14, 15),
            candidate("room-nowhere", 9, 10),
        ])
        registry = make_registry(planner)

        confirmed = await registry.create("Confirmed", alice)
        await registry.set_ready(confirmed, alice.id)
        await registry.drain()
        await registry.respond(confirmed, alice.id, True)

        proposed = await ready_pair(registry, alice, bob)
        await registry.drain()
        await registry.respond(proposed, bob.id, False)
        await registry.drain()
        await registry.respond(proposed, alice.id, True)

        canceled = await registry.create("Canceled", carol)
        await registry.set_ready(canceled, carol.id)
        await registry.drain()

        pending = await registry.create("Pending", bob)
        await registry.join(pending, carol)
        await registry.set_ready(pending, carol.id)

        snapshot = registry.snapshot()
        restored = make_registry(ScriptedPlanner())
        restored.restore(snapshot)

        for session_id in (confirmed, proposed, canceled, pending):
            original = registry.get(session_id)
            copy = restored.get(session_id)
            assert copy.state == original.state
            assert copy.participants == original.participants
            assert copy.ready_status == original.ready_status
            assert copy.excluded_slots == original.excluded_slots
            assert copy.proposal == original.proposal
        assert restored.get(proposed).proposal.responses == {alice.id: True}
        assert restored.booking_store.list_bookings() == registry.booking_store.list_bookings()
        assert_invariants(restored)

    @pytest.mark.asyncio
    async def test_restored_planning_session_resumes(self, alice, bob):
        gated = GatedPlanner(candidate("room-lib-1", 10, 11))
        registry = make_registry(gated)
        session_id = await ready_pair(registry, alice, bob)
        snapshot = registry.snapshot()
        await registry.close()

        planner = ScriptedPlanner([candidate("room-lib-2", 10, 11)])
        restored = make_registry(planner)
        restored.restore(snapshot)
        assert restored.get(session_id).state == SessionState.PLANNING
        assert not restored.has_inflight_planning(session_id)

        assert await restored.scan_and_advance() == 1
        await restored.drain()

        session = restored.get(session_id)
        assert session.state == SessionState.PROPOSED
        assert session.planning_round == 2
        assert len(planner.requests) == 1

    def test_restore_rejects_bad_version(self):
        registry = make_registry(ScriptedPlanner())
        with pytest.raises(SessionValidationError):
            registry.restore({"version": 99, "sessions": [], "bookings": []})

    @pytest.mark.asyncio
    async def test_restore_rejects_broken_invariants(self, alice, bob):
        registry = make_registry(ScriptedPlanner())
        await registry.create("Study group", alice)
        snapshot = registry.snapshot()
        snapshot["sessions"][0]["ready_status"][bob.id] = "READY"

        with pytest.raises(SessionValidationError):
            make_registry(ScriptedPlanner()).restore(snapshot)

    @pytest.mark.asyncio
    async def test_restore_rejects_overlapping_bookings(self, alice, bob, room_a):
        registry = make_registry(ScriptedPlanner())
        await registry.create("Study group", alice)
        snapshot = registry.snapshot()
        snapshot["bookings"] = [
            Booking(room_id=room_a.id, slot=slot(10, 11), participants=[alice]).to_dict(),
            Booking(room_id=room_a.id, slot=slot(10, 11), participants=[bob]).to_dict(),
        ]

        target = make_registry(ScriptedPlanner())
        existing_id = await target.create("Reading group", bob)

        with pytest.raises(BookingConflictError):
            target.restore(snapshot)

        assert [session.session_id for session in target.list_sessions()] == [existing_id]
        assert target.booking_store.list_bookings() == []

    @pytest.mark.asyncio
    async def test_restore_allocates_locks_for_restored_sessions(self, alice, bob):
        registry = make_registry(ScriptedPlanner())
        first = await registry.create("Study group", alice)
        second = await registry.create("Reading group", bob)

        restored = make_registry(ScriptedPlanner())
        restored.restore(registry.snapshot())

        assert set(restored._locks) == {first, second}
        assert await restored.evaluate(first) == SessionState.PENDING
