"""
セッション状態機械 (Session State Machine)

1セッションのライフサイクルを管理します。
PENDING → PLANNING → PROPOSED → CONFIRMED / CANCELED と、辞退・予約競合時の
PROPOSED → PLANNING 再計画ループを状態ごとのハンドラーに集約しています。

状態機械自体は I/O を行いません。プランナー呼び出しや予約コミットが必要な
場合は Effect を返し、実行はセッションレジストリが担当します。
"""

import logging
from enum import Enum
from typing import Callable, Dict, Optional

from ..config import CoordinatorSettings, DeclinePolicy
from ..models import (
    Booking, BookingConflictError, Room, Session, SessionState
)
from ..integrations.planner_gateway import PlanningCandidate

logger = logging.getLogger(__name__)


class Effect(str, Enum):
    """状態遷移に伴って呼び出し元が実行すべき副作用"""
    NONE = "none"
    REQUEST_PLAN = "request_plan"          # プランナーを非同期に呼び出す
    ATTEMPT_BOOKING = "attempt_booking"    # 予約ストアへコミットする


class SessionStateMachine:
    """セッション状態機械"""

    def __init__(self, settings: Optional[CoordinatorSettings] = None):
        self.settings = settings or CoordinatorSettings()
        self._handlers: Dict[SessionState, Callable[[Session], Effect]] = {
            SessionState.PENDING: self._evaluate_pending,
            SessionState.PLANNING: self._evaluate_idle,
            SessionState.PROPOSED: self._evaluate_proposed,
            SessionState.CONFIRMED: self._evaluate_idle,
            SessionState.CANCELED: self._evaluate_idle,
        }

    def evaluate(self, session: Session) -> Effect:
        """
        現在の状態でガード条件を評価し、必要な遷移を適用

        何度呼び出しても同じ結果に収束します。PROPOSED で全員承諾済みの場合は
        ATTEMPT_BOOKING を返しますが、状態は予約結果が適用されるまで変わりません。
        """
        return self._handlers[session.state](session)

    # 状態別ハンドラー

    def _evaluate_pending(self, session: Session) -> Effect:
        if not session.all_ready():
            return Effect.NONE

        planning_round = session.begin_planning()
        logger.info(f"全員準備完了 - 計画開始: {session.session_id} (ラウンド{planning_round})")
        return Effect.REQUEST_PLAN

    def _evaluate_proposed(self, session: Session) -> Effect:
        proposal = session.proposal
        participant_ids = session.participant_ids()

        declined = proposal.declined_by()
        if declined:
            return self.rearm(
                session,
                f"提案が辞退されました ({', '.join(declined)})",
                self.settings.decline_policy
            )

        if proposal.all_accepted(participant_ids):
            logger.info(f"全員承諾 - 予約を試行: {session.session_id} {proposal.room.id} {proposal.slot}")
            return Effect.ATTEMPT_BOOKING

        return Effect.NONE

    def _evaluate_idle(self, session: Session) -> Effect:
        return Effect.NONE

    # プランナー結果

    def apply_plan_result(
        self,
        session: Session,
        candidate: Optional[PlanningCandidate],
        find_room: Callable[[str], Optional[Room]]
    ) -> bool:
        """
        プランナーの候補を適用

        Returns:
            PROPOSED に遷移した場合 True、計画失敗で CANCELED になった場合 False
        """
        if candidate is None:
            self.apply_plan_failure(session, "プランナーが候補を返しませんでした")
            return False

        room = find_room(candidate.room_id)
        if room is None:
            self.apply_plan_failure(session, f"未知の会議室が提案されました: {candidate.room_id}")
            return False

        try:
            slot = candidate.slot
        except ValueError as e:
            self.apply_plan_failure(session, f"不正な時間帯が提案されました: {e}")
            return False

        session.apply_proposal(room, slot, candidate.reasoning)
        logger.info(f"提案適用: {session.session_id} {room.id} {slot}")
        return True

    def apply_plan_failure(self, session: Session, reason: str) -> None:
        """計画失敗 - セッションを中止"""
        logger.error(f"計画失敗: {session.session_id} - {reason}")
        session.cancel(f"計画失敗: {reason}")

    # 予約結果

    def apply_booking_success(self, session: Session, booking: Booking) -> None:
        session.confirm(booking.booking_id)
        logger.info(f"セッション確定: {session.session_id} (予約: {booking.booking_id})")

    def apply_booking_conflict(self, session: Session, error: BookingConflictError) -> Effect:
        """予約競合 - 辞退方式に関係なく即座に再計画"""
        logger.warning(f"予約競合による再計画: {session.session_id} ({error})")
        return self.rearm(session, f"予約競合: {error.room_id}", DeclinePolicy.REPLAN)

    # 再計画

    def rearm(self, session: Session, reason: str, policy: DeclinePolicy) -> Effect:
        """
        提案スロットを除外して次の計画ラウンドに備える

        計画ラウンドが上限に達している場合はセッションを中止します。
        """
        session.exclude_proposed_slot()

        if session.planning_round >= self.settings.max_planning_rounds:
            session.cancel(
                f"計画失敗: 再計画の上限 ({self.settings.max_planning_rounds}回) に達しました - {reason}"
            )
            logger.error(f"再計画上限超過: {session.session_id}")
            return Effect.NONE

        if policy == DeclinePolicy.RESET_READINESS:
            session.transition_to(SessionState.PENDING)
            session.reset_readiness()
            session.log_activity(f"再計画待ち（全員の準備状態をリセット）: {reason}")
            logger.info(f"準備状態リセット: {session.session_id} - {reason}")
            return Effect.NONE

        planning_round = session.begin_planning()
        session.log_activity(f"再計画: {reason}")
        logger.info(f"再計画: {session.session_id} (ラウンド{planning_round}) - {reason}")
        return Effect.REQUEST_PLAN
