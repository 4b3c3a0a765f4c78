"""
セッションレジストリ (Session Registry)

全セッションを所有し、作成・参加・準備状態・投票の各操作をセッション単位の
ロックで直列化します。プランナー呼び出しはロックの外でバックグラウンド
タスクとして実行し、結果は計画ラウンドが変わっていない場合のみ適用します。
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..config import CoordinatorSettings
from ..models import (
    BookingConflictError, Location, ReadyStatus, RoomNotFoundError, Session,
    SessionNotFoundError, SessionState, SessionValidationError, PlanningFailure, TimeSlot, User
)
from ..models.repository import SnapshotRepository
from ..models.time_slot import utcnow
from ..integrations.calendar_source import CalendarSource, StaticCalendarSource
from ..integrations.local_planner import LocalSlotPlanner
from ..integrations.planner_gateway import PlannerGateway, PlanningCandidate, PlanningRequest
from .booking_store import BookingStore
from .state_machine import Effect, SessionStateMachine

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SessionRegistry:
    """セッションレジストリ"""

    def __init__(
        self,
        booking_store: Optional[BookingStore] = None,
        planner: Optional[PlannerGateway] = None,
        calendar_source: Optional[CalendarSource] = None,
        settings: Optional[CoordinatorSettings] = None
    ):
        """
        セッションレジストリを初期化

        Args:
            booking_store: 予約ストア（未指定時はデフォルトカタログの空ストア）
            planner: プランナーゲートウェイ（未指定時は LocalSlotPlanner）
            calendar_source: 参加者の予定の取得元
            settings: 調整エンジン設定
        """
        self.settings = settings or CoordinatorSettings()
        self.booking_store = booking_store or BookingStore()
        self.planner = planner or LocalSlotPlanner(self.settings)
        self.calendar_source = calendar_source or StaticCalendarSource()
        self.state_machine = SessionStateMachine(self.settings)

        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._planning_tasks: Dict[str, asyncio.Task] = {}

    # 参照系

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        """セッションのロックを取得（未知のIDは SessionNotFoundError）"""
        lock = self._locks.get(session_id)
        if lock is None:
            self._require(session_id)
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get(self, session_id: str) -> Session:
        """セッションのコピーを取得（未知のIDは SessionNotFoundError）"""
        return self._require(session_id).model_copy(deep=True)

    def list_sessions(self, state: Optional[SessionState] = None) -> List[Session]:
        return [
            session.model_copy(deep=True)
            for session in self._sessions.values()
            if state is None or session.state == state
        ]

    def has_inflight_planning(self, session_id: str) -> bool:
        task = self._planning_tasks.get(session_id)
        return task is not None and not task.done()

    # 変更系

    async def create(self, name: str, creator: User, location: Optional[Location] = None) -> str:
        """新規セッションを作成してIDを返す"""
        session = Session.start(name, creator, location)
        while session.session_id in self._sessions:
            session.session_id = f"session-{uuid4().hex}"

        self._sessions[session.session_id] = session
        self._locks[session.session_id] = asyncio.Lock()
        logger.info(f"セッション作成: {session.session_id} ({name}, 作成者: {creator.id})")
        return session.session_id

    async def join(self, session_id: str, user: User) -> bool:
        """セッションに参加（既存メンバーなら何もせず False）"""
        async with self._lock_for(session_id):
            session = self._require(session_id)
            added = session.add_participant(user)
            if added:
                logger.info(f"参加: {session_id} <- {user.id}")
                await self._advance(session)
            return added

    async def set_ready(
        self,
        session_id: str,
        user_id: str,
        status: ReadyStatus = ReadyStatus.READY
    ) -> bool:
        """参加者の準備状態を設定し、遷移を評価"""
        async with self._lock_for(session_id):
            session = self._require(session_id)
            changed = session.set_ready(user_id, status)
            await self._advance(session)
            return changed

    async def respond(self, session_id: str, user_id: str, accepted: bool) -> bool:
        """提案への投票を記録し、遷移を評価"""
        async with self._lock_for(session_id):
            session = self._require(session_id)
            changed = session.record_vote(user_id, accepted)
            await self._advance(session)
            return changed

    async def evaluate(self, session_id: str) -> SessionState:
        """セッションの遷移を評価（冪等）"""
        async with self._lock_for(session_id):
            session = self._require(session_id)
            await self._advance(session)
            return session.state

    async def scan_and_advance(self) -> int:
        """
        全セッションを走査して停滞を解消し、遷移を評価

        - PLANNING で実行中の呼び出しがないセッションは計画をやり直す
        - 実行中の呼び出しが停滞閾値を超えたセッションは中止する

        Returns:
            状態または計画ラウンドが変化したセッション数
        """
        advanced = 0
        for session_id in list(self._sessions.keys()):
            async with self._lock_for(session_id):
                session = self._sessions[session_id]
                before = (session.state, session.planning_round)

                if session.state == SessionState.PLANNING:
                    self._recover_planning(session)
                else:
                    await self._advance(session)

                if (session.state, session.planning_round) != before:
                    advanced += 1

        if advanced:
            logger.info(f"走査完了: {advanced}件のセッションが進行")
        return advanced

    def _recover_planning(self, session: Session) -> None:
        session_id = session.session_id
        if not self.has_inflight_planning(session_id):
            planning_round = session.restart_planning()
            logger.warning(f"実行中の計画がないため再開: {session_id} (ラウンド{planning_round})")
            self._schedule_planning(session)
            return

        if session.is_planning_stale(self.settings.planning_stale_after_seconds):
            self._planning_tasks[session_id].cancel()
            self.state_machine.apply_plan_failure(
                session,
                f"プランナー呼び出しが{self.settings.planning_stale_after_seconds}秒以上停滞しました"
            )

    # 遷移の実行

    async def _advance(self, session: Session) -> None:
        """状態機械を評価し、返された副作用を実行（ロック保持中に呼ぶ）"""
        effect = self.state_machine.evaluate(session)
        while effect != Effect.NONE:
            if effect == Effect.REQUEST_PLAN:
                self._schedule_planning(session)
                break
            effect = await self._attempt_booking(session)

    async def _attempt_booking(self, session: Session) -> Effect:
        proposal = session.proposal
        try:
            booking = await self.booking_store.commit(proposal.room, proposal.slot, session.participants)
        except BookingConflictError as e:
            return self.state_machine.apply_booking_conflict(session, e)
        except RoomNotFoundError as e:
            self.state_machine.apply_plan_failure(session, str(e))
            return Effect.NONE

        self.state_machine.apply_booking_success(session, booking)
        return Effect.NONE

    # プランナー呼び出し

    def _schedule_planning(self, session: Session) -> None:
        session_id = session.session_id
        planning_round = session.planning_round
        task = asyncio.create_task(
            self._run_planning(session_id, planning_round),
            name=f"planning-{session_id}-{planning_round}"
        )
        self._planning_tasks[session_id] = task
        task.add_done_callback(lambda t: self._forget_task(session_id, t))

    def _forget_task(self, session_id: str, task: asyncio.Task) -> None:
        if self._planning_tasks.get(session_id) is task:
            del self._planning_tasks[session_id]

    @staticmethod
    def _is_current(session: Optional[Session], planning_round: int) -> bool:
        return (
            session is not None
            and session.state == SessionState.PLANNING
            and session.planning_round == planning_round
        )

    async def _gather_and_propose(
        self,
        session_id: str,
        planning_round: int,
        participants: List[User],
        excluded_slots: List[TimeSlot],
        requester_location: Optional[Location]
    ) -> Optional[PlanningCandidate]:
        """参加者の予定を集めてプランナーに候補を問い合わせる"""
        busy_intervals = await self.calendar_source.collect(participants)
        request = PlanningRequest(
            participants=participants,
            busy_intervals=busy_intervals,
            candidate_rooms=self.booking_store.rooms_for_capacity(len(participants)),
            existing_bookings=self.booking_store.list_bookings(),
            excluded_slots=excluded_slots,
            requester_location=requester_location,
            duration_minutes=self.settings.meeting_duration_minutes,
            not_before=utcnow()
        )
        logger.info(f"プランナー呼び出し: {session_id} (ラウンド{planning_round}, {self.planner.name})")
        return await self.planner.propose(request)

    async def _run_planning(self, session_id: str, planning_round: int) -> None:
        if session_id not in self._sessions:
            return
        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if not self._is_current(session, planning_round):
                return
            participants = list(session.participants)
            excluded_slots = list(session.excluded_slots)
            requester_location = session.requester_location

        candidate: Optional[PlanningCandidate] = None
        failure: Optional[str] = None
        timeout = self.settings.planner_timeout_seconds
        try:
            # 予定の取得も含めてタイムアウトの対象にする
            candidate = await asyncio.wait_for(
                self._gather_and_propose(
                    session_id, planning_round, participants, excluded_slots, requester_location
                ),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            failure = f"プランナーが{timeout}秒以内に応答しませんでした"
        except PlanningFailure as e:
            failure = str(e)
        except Exception as e:
            logger.exception(f"プランナー呼び出しで予期しないエラー: {session_id}")
            failure = f"プランナー呼び出しエラー: {e}"

        if session_id not in self._sessions:
            logger.warning(f"古い計画結果を破棄: {session_id} (ラウンド{planning_round})")
            return
        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if not self._is_current(session, planning_round):
                logger.warning(f"古い計画結果を破棄: {session_id} (ラウンド{planning_round})")
                return

            if failure is not None:
                self.state_machine.apply_plan_failure(session, failure)
                return

            if self.state_machine.apply_plan_result(session, candidate, self.booking_store.find_room):
                await self._advance(session)

    async def drain(self) -> None:
        """実行中の計画タスクがすべて完了するまで待機"""
        while True:
            pending = [task for task in self._planning_tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """実行中の計画タスクをキャンセル"""
        tasks = list(self._planning_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._planning_tasks.clear()

    # スナップショット

    def snapshot(self) -> Dict[str, Any]:
        """全セッションと予約をスナップショットとして出力"""
        return {
            "version": SNAPSHOT_VERSION,
            "saved_at": utcnow().isoformat(),
            "sessions": [session.to_dict() for session in self._sessions.values()],
            "bookings": self.booking_store.snapshot()
        }

    def restore(self, data: Dict[str, Any]) -> None:
        """
        スナップショットから復元

        実行中の計画タスクはキャンセルされます。復元した PLANNING セッションには
        実行中の呼び出しがないため、scan_and_advance() で計画が再開されます。
        不正なセッションは SessionValidationError、重複する予約は
        BookingConflictError で拒否され、その場合レジストリは変更されません。
        """
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise SessionValidationError(f"未対応のスナップショットバージョンです: {version}")

        sessions: Dict[str, Session] = {}
        for item in data.get("sessions", []):
            session = Session.from_dict(item)
            violations = session.check_invariants()
            if violations:
                raise SessionValidationError(
                    f"スナップショットのセッションが不正です: {session.session_id} ({'; '.join(violations)})"
                )
            sessions[session.session_id] = session

        # 重複予約があればここで拒否され、セッションは変更されない
        self.booking_store.restore(data.get("bookings", []))

        for task in self._planning_tasks.values():
            task.cancel()

        self._sessions = sessions
        self._locks = {session_id: asyncio.Lock() for session_id in sessions}
        self._planning_tasks = {}
        logger.info(f"スナップショット復元: セッション{len(sessions)}件")

    async def save(self, repository: SnapshotRepository) -> None:
        await repository.save(self.snapshot())

    async def load(self, repository: SnapshotRepository) -> bool:
        """リポジトリから復元（スナップショットがなければ False）"""
        data = await repository.load()
        if data is None:
            return False
        self.restore(data)
        return True
