"""
調整エンジンのエラー分類

どのエラーもプロセスを停止させません。セッション単位の状態遷移か、
呼び出し元への操作拒否に縮退します。
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .booking import Booking


class CoordinationError(Exception):
    """調整エラー基底クラス"""
    pass


class SessionNotFoundError(CoordinationError, LookupError):
    """未知のセッションIDが参照された"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"セッションが見つかりません: {session_id}")


class RoomNotFoundError(CoordinationError, LookupError):
    """未知の会議室IDが参照された"""

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"会議室が見つかりません: {room_id}")


class SessionValidationError(CoordinationError, ValueError):
    """不正なセッション操作（非参加者の投票、終了済みセッションへの参加など）"""
    pass


class PlanningFailure(CoordinationError):
    """プランナーから利用可能な候補が得られなかった"""
    pass


class BookingConflictError(CoordinationError):
    """予約コミットが競合に負けた"""

    def __init__(self, room_id: str, conflicting: Optional["Booking"] = None):
        self.room_id = room_id
        self.conflicting = conflicting
        detail = f" (既存予約: {conflicting.booking_id})" if conflicting else ""
        super().__init__(f"会議室 {room_id} は指定時間帯に予約済みです{detail}")
