"""
Session エンティティモデル

会議調整セッションの集約ルート。参加者、準備状態、提案、除外スロットを保持し、
状態遷移は VALID_TRANSITIONS に定義されたものだけを許可します。
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .errors import SessionValidationError
from .room import Room
from .time_slot import TimeSlot, utcnow
from .user import Location, User


class SessionState(str, Enum):
    """セッション状態列挙"""
    PENDING = "PENDING"        # 準備完了待ち
    PLANNING = "PLANNING"      # プランナー呼び出し中
    PROPOSED = "PROPOSED"      # 提案への投票待ち
    CONFIRMED = "CONFIRMED"    # 予約確定
    CANCELED = "CANCELED"      # 中止


class ReadyStatus(str, Enum):
    """参加者の準備状態"""
    READY = "READY"
    PENDING = "PENDING"


TERMINAL_STATES = frozenset({SessionState.CONFIRMED, SessionState.CANCELED})

VALID_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.PENDING: frozenset({SessionState.PLANNING}),
    SessionState.PLANNING: frozenset({SessionState.PROPOSED, SessionState.CANCELED}),
    SessionState.PROPOSED: frozenset({
        SessionState.PLANNING,     # 辞退・予約競合による再計画
        SessionState.PENDING,      # 準備状態リセット方式の再計画
        SessionState.CONFIRMED,
        SessionState.CANCELED      # 再計画回数の上限超過
    }),
    SessionState.CONFIRMED: frozenset(),
    SessionState.CANCELED: frozenset(),
}

ACTIVITY_LOG_LIMIT = 200


class Proposal(BaseModel):
    """プランナーが作成した会議提案"""

    proposal_id: str = Field(default_factory=lambda: f"proposal-{uuid4().hex}")
    room: Room = Field(..., description="提案された会議室")
    slot: TimeSlot = Field(..., description="提案された時間帯")
    reasoning: str = Field(default="", description="提案理由")
    responses: Dict[str, bool] = Field(default_factory=dict, description="参加者ID -> 承諾/辞退")
    proposed_at: datetime = Field(default_factory=utcnow)

    def has_responded(self, user_id: str) -> bool:
        return user_id in self.responses

    def all_responded(self, participant_ids: List[str]) -> bool:
        """全参加者が回答済みか"""
        return all(pid in self.responses for pid in participant_ids)

    def all_accepted(self, participant_ids: List[str]) -> bool:
        """全参加者が承諾済みか（参加者0人は不成立）"""
        return bool(participant_ids) and all(
            self.responses.get(pid) is True for pid in participant_ids
        )

    def declined_by(self) -> List[str]:
        return [pid for pid, accepted in self.responses.items() if accepted is False]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "room": self.room.model_dump(),
            "slot": self.slot.to_dict(),
            "reasoning": self.reasoning,
            "responses": dict(self.responses),
            "proposed_at": self.proposed_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proposal":
        return cls(
            proposal_id=data["proposal_id"],
            room=Room(**data["room"]),
            slot=TimeSlot.from_dict(data["slot"]),
            reasoning=data.get("reasoning", ""),
            responses=dict(data.get("responses", {})),
            proposed_at=datetime.fromisoformat(data["proposed_at"])
        )


class Session(BaseModel):
    """会議調整セッションエンティティ"""
    model_config = ConfigDict(validate_assignment=True)

    # 基本識別情報
    session_id: str = Field(default_factory=lambda: f"session-{uuid4().hex}")
    name: str = Field(..., description="セッション名")

    # 参加者・準備状態
    participants: List[User] = Field(default_factory=list, description="参加者（追加のみ）")
    ready_status: Dict[str, ReadyStatus] = Field(default_factory=dict, description="参加者ID -> 準備状態")

    # ワークフロー状態
    state: SessionState = Field(default=SessionState.PENDING, description="現在の状態")
    proposal: Optional[Proposal] = Field(None, description="投票中の提案（PROPOSED時のみ）")
    excluded_slots: List[TimeSlot] = Field(default_factory=list, description="辞退・競合した時間帯")
    requester_location: Optional[Location] = Field(None, description="会議室選択のヒント")

    # 計画ラウンド管理
    planning_round: int = Field(default=0, ge=0, description="PLANNINGに入った回数")
    planning_started_at: Optional[datetime] = Field(None, description="現在の計画開始時刻")

    # 結果
    booking_id: Optional[str] = Field(None, description="確定した予約ID")
    cancel_reason: Optional[str] = Field(None, description="中止理由")

    # ログ・メタデータ
    activity_log: List[str] = Field(default_factory=list, description="活動ログ")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def start(cls, name: str, creator: User, location: Optional[Location] = None) -> "Session":
        """作成者のみを参加者とする新規セッションを作成"""
        session = cls(
            name=name,
            participants=[creator],
            ready_status={creator.id: ReadyStatus.PENDING},
            requester_location=location
        )
        session.log_activity(f"セッション作成: {name} (作成者: {creator.name})")
        return session

    # 参照系

    def participant_ids(self) -> List[str]:
        return [user.id for user in self.participants]

    def is_member(self, user_id: str) -> bool:
        return any(user.id == user_id for user in self.participants)

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def all_ready(self) -> bool:
        """現在の参加者全員が準備完了か（参加者0人は不成立）"""
        return bool(self.participants) and all(
            self.ready_status.get(user.id) == ReadyStatus.READY for user in self.participants
        )

    def _require_active(self, action: str) -> None:
        if self.is_terminal():
            raise SessionValidationError(
                f"終了済みセッションには{action}できません: {self.session_id} ({self.state.value})"
            )

    def _require_member(self, user_id: str) -> None:
        if not self.is_member(user_id):
            raise SessionValidationError(
                f"ユーザー {user_id} はセッション {self.session_id} の参加者ではありません"
            )

    # 参加者・準備状態

    def add_participant(self, user: User) -> bool:
        """参加者を追加（既存メンバーなら何もしない）"""
        self._require_active("参加")
        if self.is_member(user.id):
            return False

        self.participants.append(user)
        self.ready_status[user.id] = ReadyStatus.PENDING
        self.log_activity(f"参加者追加: {user.name}")
        self.update_timestamp()
        return True

    def set_ready(self, user_id: str, status: ReadyStatus = ReadyStatus.READY) -> bool:
        """準備状態を設定し、変化があったかを返す"""
        self._require_active("準備状態を設定")
        self._require_member(user_id)
        if self.ready_status.get(user_id) == status:
            return False

        self.ready_status[user_id] = status
        self.log_activity(f"準備状態更新: {user_id} -> {status.value}")
        self.update_timestamp()
        return True

    def reset_readiness(self) -> None:
        """全参加者の準備状態を PENDING に戻す"""
        for user_id in self.participant_ids():
            self.ready_status[user_id] = ReadyStatus.PENDING

    # 状態遷移

    def transition_to(self, new_state: SessionState) -> None:
        """状態遷移を実行"""
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise SessionValidationError(
                f"不正な状態遷移です: {self.state.value} → {new_state.value} ({self.session_id})"
            )
        previous = self.state
        self.state = new_state
        if new_state != SessionState.PROPOSED:
            self.proposal = None
        if new_state != SessionState.PLANNING:
            self.planning_started_at = None
        self.log_activity(f"状態遷移: {previous.value} → {new_state.value}")
        self.update_timestamp()

    def begin_planning(self, now: Optional[datetime] = None) -> int:
        """PLANNING に入り、新しい計画ラウンド番号を返す"""
        self.transition_to(SessionState.PLANNING)
        return self._next_round(now)

    def restart_planning(self, now: Optional[datetime] = None) -> int:
        """PLANNING のまま計画ラウンドをやり直す（古い結果は無効になる）"""
        if self.state != SessionState.PLANNING:
            raise SessionValidationError(f"PLANNING 以外では再計画できません: {self.state.value}")
        self.log_activity("計画ラウンドを再開")
        return self._next_round(now)

    def _next_round(self, now: Optional[datetime]) -> int:
        self.planning_round += 1
        self.planning_started_at = now or utcnow()
        return self.planning_round

    def apply_proposal(self, room: Room, slot: TimeSlot, reasoning: str = "") -> Proposal:
        """提案を設定して PROPOSED に遷移（回答は常に空から始まる）"""
        proposal = Proposal(room=room, slot=slot, reasoning=reasoning, responses={})
        self.transition_to(SessionState.PROPOSED)
        self.proposal = proposal
        self.log_activity(f"提案受信: {room.display_name} {slot}")
        return proposal

    def record_vote(self, user_id: str, accepted: bool) -> bool:
        """投票を記録し、変化があったかを返す"""
        self._require_active("投票")
        self._require_member(user_id)
        if self.state != SessionState.PROPOSED or self.proposal is None:
            raise SessionValidationError(
                f"投票を受け付けていません: {self.session_id} ({self.state.value})"
            )
        if self.proposal.responses.get(user_id) == accepted:
            return False

        self.proposal.responses[user_id] = accepted
        self.log_activity(f"投票: {user_id} -> {'承諾' if accepted else '辞退'}")
        self.update_timestamp()
        return True

    def exclude_proposed_slot(self) -> Optional[TimeSlot]:
        """現在の提案スロットを除外リストに追加"""
        if self.proposal is None:
            return None
        slot = self.proposal.slot
        self.excluded_slots.append(slot)
        self.log_activity(f"スロット除外: {slot}")
        return slot

    def confirm(self, booking_id: str) -> None:
        """予約確定"""
        self.transition_to(SessionState.CONFIRMED)
        self.booking_id = booking_id
        self.log_activity(f"予約確定: {booking_id}")

    def cancel(self, reason: str) -> None:
        """セッション中止"""
        self.transition_to(SessionState.CANCELED)
        self.cancel_reason = reason
        self.log_activity(f"セッション中止: {reason}")

    def is_planning_stale(self, threshold_seconds: float, now: Optional[datetime] = None) -> bool:
        """計画が閾値を超えて続いているか"""
        if self.state != SessionState.PLANNING or self.planning_started_at is None:
            return False
        elapsed = ((now or utcnow()) - self.planning_started_at).total_seconds()
        return elapsed > threshold_seconds

    # ログ・メタデータ

    def update_timestamp(self) -> None:
        """更新タイムスタンプを現在時刻に設定"""
        self.updated_at = utcnow()

    def log_activity(self, message: str) -> None:
        """活動をログに記録"""
        timestamp = utcnow().strftime("%H:%M:%S")
        self.activity_log.append(f"[{timestamp}] {message}")
        if len(self.activity_log) > ACTIVITY_LOG_LIMIT:
            self.activity_log = self.activity_log[-ACTIVITY_LOG_LIMIT:]

    def check_invariants(self) -> List[str]:
        """不変条件違反の一覧を返す（空なら正常）"""
        violations = []
        ids = self.participant_ids()
        if len(ids) != len(set(ids)):
            violations.append("参加者IDが重複しています")
        if set(self.ready_status.keys()) != set(ids):
            violations.append("ready_status のキーが参加者と一致しません")
        if (self.proposal is not None) != (self.state == SessionState.PROPOSED):
            violations.append("proposal は PROPOSED 状態でのみ存在する必要があります")
        if self.state == SessionState.CONFIRMED and not self.booking_id:
            violations.append("CONFIRMED セッションに予約IDがありません")
        return violations

    def get_status_summary(self) -> Dict[str, Any]:
        """ステータス概要を取得"""
        return {
            "session_id": self.session_id,
            "name": self.name,
            "state": self.state.value,
            "participants": len(self.participants),
            "ready": sum(1 for s in self.ready_status.values() if s == ReadyStatus.READY),
            "planning_round": self.planning_round,
            "excluded_slots": len(self.excluded_slots),
            "booking_id": self.booking_id,
            "cancel_reason": self.cancel_reason
        }

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（スナップショット保存用）"""
        return {
            "session_id": self.session_id,
            "name": self.name,
            "participants": [user.model_dump() for user in self.participants],
            "ready_status": {uid: status.value for uid, status in self.ready_status.items()},
            "state": self.state.value,
            "proposal": self.proposal.to_dict() if self.proposal else None,
            "excluded_slots": [slot.to_dict() for slot in self.excluded_slots],
            "requester_location": self.requester_location.model_dump() if self.requester_location else None,
            "planning_round": self.planning_round,
            "planning_started_at": self.planning_started_at.isoformat() if self.planning_started_at else None,
            "booking_id": self.booking_id,
            "cancel_reason": self.cancel_reason,
            "activity_log": list(self.activity_log),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        """辞書から Session インスタンスを作成"""
        data = dict(data)

        # datetimeフィールドの変換
        for field in ["planning_started_at", "created_at", "updated_at"]:
            if data.get(field):
                data[field] = datetime.fromisoformat(data[field])

        data["participants"] = [User(**user) for user in data.get("participants", [])]
        data["ready_status"] = {
            uid: ReadyStatus(status) for uid, status in data.get("ready_status", {}).items()
        }
        data["state"] = SessionState(data["state"])
        if data.get("proposal"):
            data["proposal"] = Proposal.from_dict(data["proposal"])
        data["excluded_slots"] = [TimeSlot.from_dict(slot) for slot in data.get("excluded_slots", [])]
        if data.get("requester_location"):
            data["requester_location"] = Location(**data["requester_location"])

        return cls(**data)
