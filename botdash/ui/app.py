"""Positions dashboard TUI."""

from __future__ import annotations

import asyncio

from rich.text import Text
from textual.app import App, ComposeResult
from textual.widgets import DataTable, Footer, Header, Static

from ..client import CryptoFeedClient
from ..config import BotdashConfig, load_config
from ..feed import FeedMultiplexer
from ..journal import EngineJournal
from ..persistence import JsonPersistence
from ..runtime import EngineRuntime
from .common import FILTERS, _position_row, _position_sort_key, filter_positions

_COLUMNS = (
    "Bot",
    "Kind",
    "Symbol",
    "Status",
    "Side",
    "Entry",
    "Price",
    "Lev",
    "Unreal",
    "Unreal %",
    "Progress",
)
_LOG_LINES = 6


class DashboardApp(App):
    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("j", "cursor_down", "Down"),
        ("k", "cursor_up", "Up"),
        ("f", "cycle_filter", "Filter"),
        ("a", "force_activate", "Activate"),
        ("c", "close_position", "Close"),
        ("d", "delete_position", "Delete"),
    ]

    CSS = """
    Screen {
        layout: vertical;
    }

    #positions {
        height: 1fr;
    }

    #positions:focus {
        border: solid #26567a;
    }

    #positions > .datatable--cursor {
        background: #181b20;
    }

    #log {
        height: 8;
        padding: 0 1;
        border: solid #003054;
    }

    #status {
        height: 1;
        padding: 0 1;
    }
    """

    def __init__(
        self,
        config: BotdashConfig | None = None,
        *,
        runtime: EngineRuntime | None = None,
        client: CryptoFeedClient | None = None,
    ) -> None:
        super().__init__()
        self._config = config or load_config()
        if runtime is None:
            feed = FeedMultiplexer()
            client = client or CryptoFeedClient(self._config, feed)
            runtime = EngineRuntime(
                self._config,
                feed=feed,
                persistence=JsonPersistence(self._config.data_dir),
                journal=EngineJournal(self._config.journal_dir),
                seed_fetcher=client.fetch_klines,
            )
        self._client = client
        self._runtime = runtime
        self._filter = "all"
        self._row_keys: list[str] = []
        self._dirty = False
        self._dirty_task: asyncio.Task | None = None
        self._load_error: str | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield DataTable(id="positions", zebra_stripes=True)
        yield Static("", id="log")
        yield Static("Starting...", id="status")
        yield Footer()

    async def on_mount(self) -> None:
        self._table = self.query_one("#positions", DataTable)
        self._log = self.query_one("#log", Static)
        self._status = self.query_one("#status", Static)
        self._table.add_columns(*_COLUMNS)
        self._table.cursor_type = "row"
        self._table.focus()
        try:
            self._runtime.load()
        except Exception as exc:  # pragma: no cover - UI surface
            self._load_error = str(exc)
        self._runtime.add_listener(self._mark_dirty)
        self._runtime.add_display_listener(self._mark_dirty)
        self._render_table()
        await self._runtime.start()
        self._render_table()

    async def on_unmount(self) -> None:
        self._runtime.stop()
        if self._client is not None:
            await self._client.disconnect()

    # region Actions
    def action_refresh(self) -> None:
        self._runtime.sync_subscriptions()
        self._render_table()

    def action_cursor_down(self) -> None:
        self._table.action_cursor_down()

    def action_cursor_up(self) -> None:
        self._table.action_cursor_up()

    def action_cycle_filter(self) -> None:
        idx = FILTERS.index(self._filter)
        self._filter = FILTERS[(idx + 1) % len(FILTERS)]
        self._render_table()

    def action_force_activate(self) -> None:
        position_id = self._selected_id()
        if position_id and not self._runtime.force_activate(position_id):
            self.notify("Position cannot be force-activated", severity="warning")

    def action_close_position(self) -> None:
        position_id = self._selected_id()
        if position_id and not self._runtime.close_position(position_id):
            self.notify("Position is already closed", severity="warning")

    def action_delete_position(self) -> None:
        position_id = self._selected_id()
        if position_id:
            self._runtime.delete_position(position_id)
    # endregion

    def _selected_id(self) -> str | None:
        row = self._table.cursor_coordinate.row
        if 0 <= row < len(self._row_keys):
            return self._row_keys[row]
        return None

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._dirty_task and not self._dirty_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._dirty_task = loop.create_task(self._flush_dirty())

    async def _flush_dirty(self) -> None:
        while True:
            await asyncio.sleep(self._config.refresh_sec)
            if not self._dirty:
                break
            self._dirty = False
            self._render_table()

    def _render_table(self) -> None:
        prev_coord = self._table.cursor_coordinate
        prev_key = self._selected_id()
        self._table.clear()
        self._row_keys = []
        positions = sorted(
            filter_positions(self._runtime.store.positions, self._filter),
            key=_position_sort_key,
        )
        for position in positions:
            self._table.add_row(
                *_position_row(position, price=self._runtime.display_price(position)),
                key=position.position_id,
            )
            self._row_keys.append(position.position_id)
        if prev_key in self._row_keys:
            self._table.move_cursor(row=self._row_keys.index(prev_key), column=prev_coord.column)
        elif self._row_keys:
            self._table.move_cursor(row=min(prev_coord.row, len(self._row_keys) - 1))
        self._render_log()
        self._status.update(self._status_text())

    def _render_log(self) -> None:
        lines = Text("")
        for entry in self._runtime.journal.tail(_LOG_LINES):
            ts = str(entry.get("ts_utc") or "")[11:19]
            repeat = int(entry.get("repeat") or 1)
            suffix = f" x{repeat}" if repeat > 1 else ""
            subject = entry.get("symbol") or entry.get("position_id") or ""
            lines.append(f"{ts} ", style="dim")
            lines.append(f"{entry.get('event')}", style="bold")
            lines.append(f" {subject} {entry.get('reason') or ''}{suffix}\n")
        for note in self._runtime.notifications(2):
            lines.append(f"{note.title}: {note.message}\n", style="#73d89e")
        self._log.update(lines)

    def _status_text(self) -> str:
        conn = "connected" if self._client is not None and self._client.is_connected else "offline"
        updated = self._runtime.store.updated_at
        ts = updated.astimezone().strftime("%Y-%m-%d %H:%M:%S") if updated else "n/a"
        subs = len(self._runtime.subscribed_keys())
        base = f"IBKR {conn} | last update: {ts} | rows: {len(self._row_keys)} | filter: {self._filter} | streams: {subs}"
        error = self._load_error or self._runtime.error
        if error is None and self._client is not None:
            error = self._client.error
        if error:
            return f"{base} | error: {error}"
        return base
