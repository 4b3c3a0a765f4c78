"""
MeetSync CLI - 会議室カタログ表示・調整セッションのデモ実行・スナップショット表示
"""

import asyncio
import logging
import random
from datetime import datetime, time, timezone
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ..config import CoordinatorSettings, DeclinePolicy
from ..coordination import BookingStore, SessionRegistry
from ..integrations import LocalSlotPlanner, StaticCalendarSource
from ..models import (
    BookingConflictError, BusyInterval, CoordinationError, DEFAULT_ROOMS, EventPriority, Location,
    Session, SessionState, TimeSlot, User, rooms_for_capacity
)
from ..models.repository import EncryptionManager, FileSnapshotRepository, RepositoryError

console = Console()
app = typer.Typer(help="MeetSync CLI - 会議調整セッション管理ツール")

logger = logging.getLogger(__name__)

DEMO_USERS = [
    User(id="user-1", name="Jeevan", email="jeevan@gmail.com"),
    User(id="user-2", name="Sarah", email="sarah@gmail.com"),
    User(id="user-3", name="Bob", email="bob@gmail.com"),
]

# 依頼者の位置（GT Library 付近）
DEMO_LOCATION = Location(lat=33.7750, lng=-84.3960)

STATE_STYLES = {
    SessionState.PENDING: "yellow",
    SessionState.PLANNING: "cyan",
    SessionState.PROPOSED: "magenta",
    SessionState.CONFIRMED: "green",
    SessionState.CANCELED: "red",
}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="詳細ログを表示")):
    """ログ設定"""
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)


def _today_at(hour: int, minute: int = 0) -> datetime:
    return datetime.combine(datetime.now(timezone.utc).date(), time(hour, minute), tzinfo=timezone.utc)


def _interval(title: str, start: datetime, end: datetime, priority: EventPriority) -> BusyInterval:
    return BusyInterval(title=title, slot=TimeSlot(start_time=start, end_time=end), priority=priority)


def build_demo_users(count: int) -> List[User]:
    """デモ参加者を作成（3人を超える分は自動生成）"""
    users = list(DEMO_USERS[:count])
    for i in range(len(users) + 1, count + 1):
        users.append(User(id=f"user-{i}", name=f"参加者{i}", email=f"user{i}@example.com"))
    return users


def build_demo_calendars() -> Dict[str, List[BusyInterval]]:
    """デモ用の予定（当日 UTC）"""
    return {
        "user-2": [
            _interval("Physics Lab", _today_at(13), _today_at(15), EventPriority.HIGH),
            _interval("TA Office Hours", _today_at(16), _today_at(17), EventPriority.MEDIUM),
        ],
        "user-3": [
            _interval("Part-time Job", _today_at(9), _today_at(12), EventPriority.HIGH),
            _interval("Gym", _today_at(17), _today_at(18, 30), EventPriority.LOW),
        ],
    }


def _load_settings(config_file: Optional[str]) -> CoordinatorSettings:
    if config_file:
        return CoordinatorSettings.from_yaml(config_file)
    return CoordinatorSettings.from_env()


async def run_demo_session(
    registry: SessionRegistry,
    users: List[User],
    decline_rate: float = 0.0,
    rng: Optional[random.Random] = None,
    competing_booking: bool = False
) -> Session:
    """
    デモセッションを最後まで進める

    全員が準備完了を設定し、提案ごとに各参加者が decline_rate の確率で辞退します。
    competing_booking が有効な場合、最初の提案と同じ会議室・時間帯を別グループが
    先に予約し、予約競合による再計画を発生させます。
    """
    rng = rng or random.Random()
    creator, *others = users
    session_id = await registry.create("デモ勉強会", creator, DEMO_LOCATION)
    for user in others:
        await registry.join(session_id, user)

    competing_done = False
    max_steps = registry.settings.max_planning_rounds * 2 + len(users) + 5
    for _ in range(max_steps):
        session = registry.get(session_id)

        if session.is_terminal():
            return session

        if session.state == SessionState.PENDING:
            for user in users:
                await registry.set_ready(session_id, user.id)

        elif session.state == SessionState.PLANNING:
            await registry.drain()
            if registry.get(session_id).state == SessionState.PLANNING:
                await registry.scan_and_advance()

        elif session.state == SessionState.PROPOSED:
            proposal = session.proposal
            console.print(
                f"💡 提案: {proposal.room.display_name} {proposal.slot}\n   {proposal.reasoning}",
                style="magenta"
            )

            if competing_booking and not competing_done:
                competing_done = True
                try:
                    await registry.booking_store.commit(proposal.room, proposal.slot, [])
                    console.print("⚠️  別グループが同じ会議室・時間帯を先に予約しました", style="yellow")
                except BookingConflictError:
                    pass

            for user in users:
                accepted = rng.random() >= decline_rate
                console.print(f"   {user.name}: {'承諾' if accepted else '辞退'}")
                await registry.respond(session_id, user.id, accepted)
                if registry.get(session_id).state != SessionState.PROPOSED:
                    break

    return registry.get(session_id)


@app.command()
def rooms(capacity: Optional[int] = typer.Option(None, help="必要な収容人数")):
    """会議室カタログを表示"""
    catalog = rooms_for_capacity(DEFAULT_ROOMS, capacity) if capacity else list(DEFAULT_ROOMS)

    table = Table(title="Study Rooms")
    table.add_column("ID", style="cyan")
    table.add_column("Building")
    table.add_column("Name")
    table.add_column("Capacity", justify="right", style="green")
    table.add_column("Location")

    for room in catalog:
        table.add_row(
            room.id, room.building, room.name, str(room.capacity),
            f"{room.location.lat:.4f}, {room.location.lng:.4f}"
        )

    console.print(table)
    if not catalog:
        console.print(f"❌ {capacity}人以上を収容できる会議室はありません", style="red")


@app.command()
def demo(
    participants: int = typer.Option(3, min=1, help="参加者数"),
    decline_rate: float = typer.Option(0.0, min=0.0, max=1.0, help="各参加者が提案を辞退する確率"),
    seed: Optional[int] = typer.Option(None, help="乱数シード"),
    competing_booking: bool = typer.Option(False, help="別グループによる予約競合を発生させる"),
    reset_readiness: bool = typer.Option(False, help="辞退時に全員の準備状態をリセットする"),
    snapshot: Optional[str] = typer.Option(None, help="終了後のスナップショット出力ファイル"),
    encrypt: bool = typer.Option(False, help="スナップショットを暗号化する (ENCRYPTION_KEY)"),
    config_file: Optional[str] = typer.Option(None, "--config", help="設定ファイル (YAML)")
):
    """調整セッションをシミュレーション実行"""

    async def _demo():
        settings = _load_settings(config_file)
        if reset_readiness:
            settings = settings.model_copy(update={"decline_policy": DeclinePolicy.RESET_READINESS})

        registry = SessionRegistry(
            booking_store=BookingStore(),
            planner=LocalSlotPlanner(settings),
            calendar_source=StaticCalendarSource(build_demo_calendars()),
            settings=settings
        )
        users = build_demo_users(participants)

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task("調整セッション実行中...", total=None)
                session = await run_demo_session(
                    registry, users, decline_rate, random.Random(seed), competing_booking
                )

            _display_session(session)

            if snapshot:
                encryption_manager = EncryptionManager() if encrypt else None
                await registry.save(FileSnapshotRepository(snapshot, encryption_manager))
                console.print(f"📁 スナップショットを保存しました: {snapshot}", style="green")
        finally:
            await registry.close()

    asyncio.run(_demo())


@app.command()
def show(
    snapshot_file: str = typer.Argument(..., help="スナップショットファイル"),
    decrypt: bool = typer.Option(False, help="暗号化されたスナップショットを復号する (ENCRYPTION_KEY)")
):
    """スナップショットのセッションと予約を表示"""

    async def _show():
        encryption_manager = EncryptionManager() if decrypt else None
        registry = SessionRegistry()
        try:
            loaded = await registry.load(FileSnapshotRepository(snapshot_file, encryption_manager))
        except (RepositoryError, CoordinationError) as e:
            console.print(f"❌ 読み込みエラー: {e}", style="red")
            raise typer.Exit(code=1)

        if not loaded:
            console.print(f"❌ スナップショットが見つかりません: {snapshot_file}", style="red")
            raise typer.Exit(code=1)

        table = Table(title="Sessions")
        table.add_column("Session", style="cyan")
        table.add_column("Name")
        table.add_column("State")
        table.add_column("Participants", justify="right")
        table.add_column("Round", justify="right")
        table.add_column("Excluded", justify="right")
        table.add_column("Result")

        for session in registry.list_sessions():
            style = STATE_STYLES[session.state]
            result = session.booking_id or session.cancel_reason or ""
            table.add_row(
                session.session_id, session.name, f"[{style}]{session.state.value}[/{style}]",
                str(len(session.participants)), str(session.planning_round),
                str(len(session.excluded_slots)), result
            )
        console.print(table)

        bookings = Table(title="Bookings")
        bookings.add_column("Booking", style="cyan")
        bookings.add_column("Room")
        bookings.add_column("Slot")
        bookings.add_column("Participants")
        for booking in registry.booking_store.list_bookings():
            bookings.add_row(
                booking.booking_id, booking.room_id, str(booking.slot),
                ", ".join(user.name for user in booking.participants)
            )
        console.print(bookings)

    asyncio.run(_show())


def _display_session(session: Session):
    """セッション結果表示"""
    style = STATE_STYLES[session.state]
    lines = [
        f"セッション: {session.session_id}",
        f"状態: {session.state.value}",
        f"参加者: {', '.join(user.name for user in session.participants)}",
        f"計画ラウンド: {session.planning_round}",
        f"除外スロット: {len(session.excluded_slots)}件",
    ]
    if session.booking_id:
        lines.append(f"予約ID: {session.booking_id}")
    if session.cancel_reason:
        lines.append(f"中止理由: {session.cancel_reason}")

    console.print(Panel("\n".join(lines), title=session.name, border_style=style))

    console.print("\n📝 活動ログ:")
    for entry in session.activity_log:
        console.print(f"  {entry}")


if __name__ == "__main__":
    app()
