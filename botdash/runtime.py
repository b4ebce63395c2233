"""Engine host: owns subscriptions, the position store and persistence.

The runtime is the only stateful piece around the pure `evaluate_tick`.
Tick callbacks run synchronously on the event loop: each one reads the
store's current list, evaluates, and applies its updates before returning,
so two ticks never act on an unreconciled list.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Sequence

from . import lifecycle
from .builder import initial_positions
from .config import BotdashConfig
from .engine import (
    EngineEvent,
    EngineState,
    EventKind,
    evaluate_tick,
    movement_timeframes_for,
    rsi_periods_for,
    seed_snapshot,
)
from .feed import KLINE, TICKER, FeedMultiplexer, StreamKey, SubscriptionHandle
from .journal import EngineJournal
from .models import (
    BotConfig,
    KlineTick,
    MovementParams,
    Position,
    SafetySettings,
    StrategyKind,
    Tick,
)
from .persistence import JsonPersistence
from .store import PositionStore, position_diff
from .time_utils import now_utc
from .triggers import trigger_symbol

SeedFetcher = Callable[[str, str, int], Awaitable[Sequence[KlineTick]]]

_KIND_TITLES = {
    StrategyKind.STREAK: "Candle Strike",
    StrategyKind.RSI: "RSI",
    StrategyKind.MOVEMENT: "Price Movement",
    StrategyKind.GRID: "Grid",
    StrategyKind.DCA: "DCA",
}


@dataclass(frozen=True)
class Notification:
    ts: datetime
    title: str
    message: str
    position_id: str | None = None
    bot_id: str | None = None
    symbol: str | None = None


class EngineRuntime:
    def __init__(
        self,
        config: BotdashConfig,
        *,
        feed: FeedMultiplexer,
        store: PositionStore | None = None,
        persistence: JsonPersistence | None = None,
        journal: EngineJournal | None = None,
        seed_fetcher: SeedFetcher | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._config = config
        self._feed = feed
        self._store = store or PositionStore()
        self._persistence = persistence
        self._journal = journal or EngineJournal(None)
        self._seed_fetcher = seed_fetcher
        self._clock = clock
        self._bots: dict[str, BotConfig] = {}
        self._state = EngineState(
            candle_window=config.candle_window,
            kline_timeframe=config.kline_timeframe,
            publish_price_only=config.publish_price_only,
        )
        self._handles: dict[StreamKey, SubscriptionHandle] = {}
        # (symbol, timeframe) kline streams whose history was requested.
        self._seeded: set[tuple[str, str]] = set()
        self._seed_tasks: set[asyncio.Task] = set()
        self._notifications: list[Notification] = []
        self._listeners: list[Callable[[], None]] = []
        self._display_listeners: list[Callable[[], None]] = []
        self._dirty = False
        self._dirty_task: asyncio.Task | None = None
        self._running = False
        self.error: str | None = None
        self._feed.set_handlers(on_drop=self._on_feed_drop, on_error=self._on_callback_error)
        self._store.add_listener(self._on_store_change)

    # region Accessors
    @property
    def store(self) -> PositionStore:
        return self._store

    @property
    def journal(self) -> EngineJournal:
        return self._journal

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def bots(self) -> dict[str, BotConfig]:
        return dict(self._bots)

    @property
    def running(self) -> bool:
        return self._running

    def notifications(self, limit: int | None = None) -> list[Notification]:
        items = list(self._notifications)
        return items[-int(limit):] if limit is not None else items

    def subscribed_keys(self) -> set[StreamKey]:
        return set(self._handles)

    def display_price(self, position: Position) -> float:
        """Freshest known price, including refreshes kept out of the store."""
        price = self._state.price(position.symbol)
        if price is None or not position.is_active:
            return position.current_price
        return price

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Called after the position list changed."""
        self._listeners.append(listener)

    def add_display_listener(self, listener: Callable[[], None]) -> None:
        """Called when a tick moved only what `display_price` shows."""
        self._display_listeners.append(listener)
    # endregion

    # region Lifecycle
    def load(self) -> None:
        """Read bots and positions from persistence into the store."""
        if self._persistence is None:
            return
        bots = self._persistence.read_bots()
        positions = self._persistence.read_positions()
        self._bots = {bot.bot_id: bot for bot in bots}
        self._store.load(positions)

    async def start(self) -> None:
        self._running = True
        await self.seed()
        self.sync_subscriptions()

    def stop(self) -> None:
        self._running = False
        for task in list(self._seed_tasks):
            task.cancel()
        self._seed_tasks = set()
        for handle in self._handles.values():
            handle.unsubscribe()
        self._handles = {}
        self._seeded = set()
        self._flush_now()
        self._journal.close()

    async def seed(self, keys: Iterable[tuple[str, str]] | None = None) -> None:
        """Prime candle frames from history; failures leave the live path intact."""
        limit = int(self._config.history_limit)
        if self._seed_fetcher is None or limit <= 0:
            return
        if keys is None:
            keys = self._kline_keys(self._store.positions)
        ordered = sorted(keys)
        self._seeded.update(ordered)
        for symbol, timeframe in ordered:
            try:
                klines = await self._seed_fetcher(symbol, timeframe, limit)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._journal.write(
                    event="SEED_FAILED",
                    symbol=symbol,
                    reason=str(exc) or type(exc).__name__,
                    data={"timeframe": timeframe, "limit": limit},
                )
                continue
            positions = self._store.positions
            snapshots = dict(self._state.snapshots)
            snapshots[symbol] = seed_snapshot(
                symbol,
                klines,
                timeframe=timeframe,
                rsi_periods=rsi_periods_for(positions, symbol, timeframe),
                movement_timeframes=movement_timeframes_for(positions, symbol),
                window=self._config.candle_window,
                snapshot=snapshots.get(symbol),
            )
            self._state = replace(self._state, snapshots=snapshots)

    def _schedule_seed(self, keys: set[tuple[str, str]]) -> None:
        if self._seed_fetcher is None or int(self._config.history_limit) <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._seeded |= keys
        task = loop.create_task(self.seed(keys))
        self._seed_tasks.add(task)
        task.add_done_callback(self._seed_tasks.discard)
    # endregion

    # region Subscriptions
    @staticmethod
    def _watched(positions: Iterable[Position]) -> list[Position]:
        return [p for p in positions if not p.is_closed]

    def _ticker_symbols(self, positions: Iterable[Position]) -> set[str]:
        return {p.symbol for p in self._watched(positions)}

    def _kline_keys(self, positions: Iterable[Position]) -> set[tuple[str, str]]:
        """(symbol, timeframe) candle streams the open positions read."""
        out: set[tuple[str, str]] = set()
        for position in self._watched(positions):
            if position.kind in (StrategyKind.STREAK, StrategyKind.RSI):
                out.add((position.symbol, position.timeframe))
            elif isinstance(position.params, MovementParams):
                out.add((trigger_symbol(position), position.params.movement_timeframe))
        return out

    def desired_keys(self) -> set[StreamKey]:
        positions = self._store.positions
        kline_keys = self._kline_keys(positions)
        keys: set[StreamKey] = {(TICKER, symbol, None) for symbol in self._ticker_symbols(positions)}
        # Movement coins also need a trade price for their own progress display.
        keys |= {(TICKER, symbol, None) for symbol, _ in kline_keys}
        keys |= {(KLINE, symbol, timeframe) for symbol, timeframe in kline_keys}
        return keys

    def sync_subscriptions(self) -> None:
        """Subscribe to what open positions need and release the rest.

        Kline streams that appear after `start` get their history fetched in
        the background.
        """
        if not self._running:
            return
        desired = self.desired_keys()
        for key in sorted(set(self._handles) - desired):
            self._handles.pop(key).unsubscribe()
            channel, symbol, timeframe = key
            if channel == KLINE and timeframe is not None:
                self._seeded.discard((symbol, timeframe))
        for key in sorted(desired - set(self._handles)):
            channel, symbol, timeframe = key
            self._handles[key] = self._feed.subscribe([symbol], channel, timeframe, self.on_tick)
        unseeded = {
            (symbol, timeframe)
            for channel, symbol, timeframe in desired
            if channel == KLINE and timeframe is not None
        } - self._seeded
        if unseeded:
            self._schedule_seed(unseeded)
    # endregion

    # region Tick path
    def on_tick(self, tick: Tick) -> None:
        symbol = getattr(tick, "symbol", None)
        shown = self._state.price(symbol) if symbol else None
        state = replace(
            self._state,
            positions=self._store.positions,
            safety=self._safety_by_bot(),
        )
        result = evaluate_tick(state, tick, now=self._clock())
        self._state = result.state
        self._handle_events(result.events)
        if result.updates:
            self._store.apply(result.updates)
        elif symbol and self._state.price(symbol) != shown:
            self._refresh_display()

    def _safety_by_bot(self) -> dict[str, SafetySettings]:
        return {bot_id: bot.safety for bot_id, bot in self._bots.items()}

    def _handle_events(self, events: Sequence[EngineEvent]) -> None:
        for event in events:
            kind = event.kind
            if kind == EventKind.PRICE_MISSING:
                self._journal.write_once(
                    (kind.value, str(event.position_id)),
                    event=kind.value,
                    position_id=event.position_id,
                    bot_id=event.bot_id,
                    symbol=event.symbol,
                    reason="trigger met without a price; activation deferred",
                )
            elif kind == EventKind.ENTRY_BLOCKED:
                self._journal.write_once(
                    (kind.value, str(event.position_id)),
                    event=kind.value,
                    position_id=event.position_id,
                    bot_id=event.bot_id,
                    symbol=event.symbol,
                    reason=event.reason,
                )
            elif kind == EventKind.TICK_DROPPED:
                self._journal.write(event=kind.value, symbol=event.symbol, reason=event.reason)
            else:
                self._journal.write(
                    event=kind.value,
                    position_id=event.position_id,
                    bot_id=event.bot_id,
                    symbol=event.symbol,
                    reason=event.reason,
                    data=event.data,
                )
                if event.position_id:
                    self._journal.forget((EventKind.PRICE_MISSING.value, event.position_id))
                    self._journal.forget((EventKind.ENTRY_BLOCKED.value, event.position_id))
                if kind == EventKind.ACTIVATED:
                    self._push_notification(event)

    def _push_notification(self, event: EngineEvent) -> None:
        position = self._store.get(event.position_id or "")
        kind = position.kind if position is not None else None
        title = f"{_KIND_TITLES.get(kind, 'Bot')} Position Activated"
        name = position.bot_name if position is not None and position.bot_name else event.bot_id
        entry = (event.data or {}).get("entry_price")
        message = f"{name} {event.symbol}: {event.reason}"
        if entry is not None:
            message = f"{message} @ {float(entry):,.2f}"
        self._notifications.append(
            Notification(
                ts=self._clock(),
                title=title,
                message=message,
                position_id=event.position_id,
                bot_id=event.bot_id,
                symbol=event.symbol,
            )
        )

    def _on_feed_drop(self, channel: str, payload: object) -> None:
        try:
            preview = json.dumps(payload, default=str)[:200]
        except (TypeError, ValueError):
            preview = repr(payload)[:200]
        self._journal.write(
            event=EventKind.TICK_DROPPED.value,
            reason=f"malformed {channel} payload",
            data={"payload": preview},
        )

    def _on_callback_error(self, handle: SubscriptionHandle, exc: Exception) -> None:
        self._journal.write(
            event="CALLBACK_FAILED",
            symbol=",".join(sorted(handle.symbols)),
            reason=f"{type(exc).__name__}: {exc}",
            data={"channel": handle.channel},
        )
    # endregion

    # region Store + persistence
    def _on_store_change(self, positions: tuple[Position, ...]) -> None:
        self._mark_dirty()
        self.sync_subscriptions()
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _refresh_display(self) -> None:
        for listener in list(self._display_listeners):
            listener()

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._dirty_task and not self._dirty_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush_now()
            return
        self._dirty_task = loop.create_task(self._flush_dirty())

    async def _flush_dirty(self) -> None:
        while True:
            await asyncio.sleep(self._config.refresh_sec)
            if not self._dirty:
                break
            self._flush_now()

    def _flush_now(self) -> None:
        if not self._dirty:
            return
        self._dirty = False
        self.persist()

    def persist(self) -> bool:
        if self._persistence is None:
            return True
        try:
            self._persistence.write_positions(self._store.positions)
        except (OSError, TypeError, ValueError) as exc:
            self.error = f"persist failed: {exc}"
            self._store.error = self.error
            self._journal.write(event="PERSIST_FAILED", reason=str(exc))
            self._notify()
            return False
        if self.error and self.error.startswith("persist failed"):
            self.error = None
            self._store.error = None
        return True
    # endregion

    # region User actions
    def add_bot(self, bot: BotConfig) -> list[Position]:
        positions = initial_positions(bot, now=self._clock())
        self._bots[bot.bot_id] = bot
        if self._persistence is not None:
            try:
                self._persistence.upsert_bot(bot)
            except (OSError, TypeError, ValueError) as exc:
                self.error = f"persist failed: {exc}"
                self._journal.write(event="PERSIST_FAILED", bot_id=bot.bot_id, reason=str(exc))
        self._store.add(positions)
        self._journal.write(
            event="BOT_CREATED",
            bot_id=bot.bot_id,
            reason=bot.name,
            data={"kind": bot.kind.value, "symbols": list(bot.symbols)},
        )
        return positions

    def force_activate(self, position_id: str) -> bool:
        position = self._store.get(position_id)
        if position is None:
            return False
        updated = lifecycle.force_activate(position, now=self._clock())
        if updated is position:
            return False
        self._store.apply([(position_id, position_diff(position, updated))])
        self._journal.write(event="FORCE_ACTIVATED", position=updated, reason="manual")
        return True

    def close_position(self, position_id: str) -> bool:
        position = self._store.get(position_id)
        if position is None:
            return False
        updated = lifecycle.close(position, now=self._clock())
        if updated is position:
            return False
        self._store.apply([(position_id, position_diff(position, updated))])
        self._journal.write(
            event="CLOSED",
            position=updated,
            data={"unrealized_pnl": updated.unrealized_pnl, "pnl_percentage": updated.pnl_percentage},
        )
        return True

    def delete_position(self, position_id: str) -> bool:
        position = self._store.get(position_id)
        if position is None:
            return False
        self._store.remove([position_id])
        self._journal.forget_prefix((EventKind.PRICE_MISSING.value, position_id))
        self._journal.forget_prefix((EventKind.ENTRY_BLOCKED.value, position_id))
        self._journal.write(event="DELETED", position=position)
        return True
    # endregion
