"""Pure tick evaluation.

`evaluate_tick(state, tick)` folds one market tick into the per-symbol
snapshot, runs the trigger predicates for pending positions, locks entry
prices, recomputes P&L and returns the partial position updates. It never
mutates its inputs and never raises on bad market data; problems come back
as events for the host to journal.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Mapping, Sequence

from . import lifecycle
from .indicators import (
    DEFAULT_RSI_PERIOD,
    candle_from_kline,
    merge_candle,
    rsi_by_period,
    streak_counts,
    update_movement_opens,
)
from .models import (
    Candle,
    CandleFrame,
    KlineTick,
    MarketSnapshot,
    MovementParams,
    Position,
    RsiParams,
    SafetySettings,
    StrategyKind,
    StreakParams,
    Tick,
    TickerTick,
)
from .pnl import mark_updates
from .safety import check_entry
from .store import PositionUpdate, merge_updates, position_diff
from .time_utils import now_utc
from .triggers import (
    evaluate_trigger,
    movement_predicate,
    trigger_audit,
    trigger_direction,
    trigger_reason,
    trigger_symbol,
)


class EventKind(str, Enum):
    ACTIVATED = "ACTIVATED"
    LOCKED = "LOCKED"
    PRICE_MISSING = "PRICE_MISSING"
    ENTRY_BLOCKED = "ENTRY_BLOCKED"
    TICK_DROPPED = "TICK_DROPPED"


@dataclass(frozen=True)
class EngineEvent:
    kind: EventKind
    position_id: str | None = None
    bot_id: str | None = None
    symbol: str | None = None
    reason: str | None = None
    data: Mapping[str, object] | None = None


@dataclass(frozen=True)
class EngineState:
    positions: tuple[Position, ...] = ()
    snapshots: Mapping[str, MarketSnapshot] = field(default_factory=dict)
    # Movement bots whose condition fired and has not pulled back yet.
    movement_latches: frozenset[str] = frozenset()
    # Movement bots that fired but could not activate yet (no price, safety gate).
    movement_deferred: frozenset[str] = frozenset()
    safety: Mapping[str, SafetySettings] = field(default_factory=dict)
    candle_window: int = 150
    # Frame for klines that carry no interval label.
    kline_timeframe: str = "1m"
    publish_price_only: bool = False

    def snapshot(self, symbol: str) -> MarketSnapshot | None:
        return self.snapshots.get(symbol)

    def price(self, symbol: str) -> float | None:
        snap = self.snapshots.get(symbol)
        return snap.price if snap is not None else None


@dataclass(frozen=True)
class TickResult:
    state: EngineState
    updates: tuple[PositionUpdate, ...] = ()
    events: tuple[EngineEvent, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.updates)


def _finite(value: object) -> bool:
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return False
    return not math.isnan(parsed) and math.isfinite(parsed) and parsed > 0


def _tick_problem(tick: object) -> str | None:
    if isinstance(tick, TickerTick):
        if not tick.symbol:
            return "missing symbol"
        if not _finite(tick.price):
            return f"bad price {tick.price!r}"
        return None
    if isinstance(tick, KlineTick):
        if not tick.symbol:
            return "missing symbol"
        if not isinstance(tick.open_time, datetime):
            return "missing open time"
        if not _finite(tick.open) or not _finite(tick.close):
            return f"bad kline prices open={tick.open!r} close={tick.close!r}"
        return None
    return f"unknown tick type {type(tick).__name__}"


# region Snapshot folding
def rsi_periods_for(positions: Iterable[Position], symbol: str, timeframe: str) -> set[int]:
    periods = {DEFAULT_RSI_PERIOD}
    for position in positions:
        if position.symbol != symbol or position.timeframe != timeframe:
            continue
        if isinstance(position.params, RsiParams):
            periods.add(int(position.params.period))
    return periods


def movement_timeframes_for(positions: Iterable[Position], symbol: str) -> set[str]:
    out: set[str] = set()
    for position in positions:
        params = position.params
        if isinstance(params, MovementParams) and trigger_symbol(position) == symbol:
            out.add(params.movement_timeframe)
    return out


def fold_frame(
    frame: CandleFrame,
    candle: Candle,
    *,
    rsi_periods: Iterable[int],
    window: int,
) -> CandleFrame:
    periods = set(rsi_periods)
    candles = merge_candle(frame.candles, candle, limit=window)
    if candles is frame.candles and periods <= set(frame.rsi_by_period):
        return frame
    green, red = streak_counts(candles)
    return CandleFrame(
        candles=candles,
        green_streak=green,
        red_streak=red,
        rsi_by_period=rsi_by_period(candles, periods),
    )


def fold_tick(
    snapshot: MarketSnapshot,
    tick: Tick,
    *,
    timeframe: str,
    rsi_periods: Iterable[int],
    movement_timeframes: Iterable[str],
    window: int,
) -> MarketSnapshot:
    """Fold one tick; klines land in the `timeframe` frame."""
    if isinstance(tick, TickerTick):
        if snapshot.price == tick.price and snapshot.price_ts == tick.ts:
            return snapshot
        return replace(snapshot, price=float(tick.price), price_ts=tick.ts)

    current = snapshot.frame(timeframe)
    frame = fold_frame(current, candle_from_kline(tick), rsi_periods=rsi_periods, window=window)
    frames = snapshot.frames
    if frame is not current:
        frames = dict(snapshot.frames)
        frames[timeframe] = frame
    newest = frame.candles[-1]
    # Klines never move the trade price; only ticker ticks do.
    return replace(
        snapshot,
        candle_open_time=newest.open_time,
        candle_open=newest.open,
        candle_close=newest.close,
        frames=frames,
        movement_opens=update_movement_opens(snapshot.movement_opens, tick, movement_timeframes),
    )


def seed_snapshot(
    symbol: str,
    klines: Sequence[KlineTick],
    *,
    rsi_periods: Iterable[int],
    timeframe: str = "1m",
    movement_timeframes: Iterable[str] = (),
    window: int = 150,
    snapshot: MarketSnapshot | None = None,
) -> MarketSnapshot:
    """Fold historical klines (oldest first) into the `timeframe` frame.

    Candles that reached the frame live before the history did are folded
    back on top, so a late seed never hides newer candles.
    """
    snap = snapshot or MarketSnapshot(symbol=symbol)
    periods = tuple(rsi_periods)
    timeframes = tuple(movement_timeframes)
    frame = CandleFrame()
    opens = snap.movement_opens
    for kline in sorted(klines, key=lambda k: k.open_time):
        if _tick_problem(kline) is not None:
            continue
        frame = fold_frame(frame, candle_from_kline(kline), rsi_periods=periods, window=window)
        opens = update_movement_opens(opens, kline, timeframes)
    for candle in snap.frame(timeframe).candles:
        frame = fold_frame(frame, candle, rsi_periods=periods, window=window)
    if not frame.candles:
        return snap
    frames = dict(snap.frames)
    frames[timeframe] = frame
    newest = frame.candles[-1]
    if snap.candle_open_time is not None and snap.candle_open_time > newest.open_time:
        return replace(snap, frames=frames, movement_opens=opens)
    return replace(
        snap,
        candle_open_time=newest.open_time,
        candle_open=newest.open,
        candle_close=newest.close,
        frames=frames,
        movement_opens=opens,
    )
# endregion


def _progress_updates(position: Position, state: EngineState, symbol: str) -> dict[str, object]:
    if position.is_closed:
        return {}
    params = position.params
    out: dict[str, object] = {}
    if isinstance(params, StreakParams) and position.symbol == symbol:
        snap = state.snapshot(symbol)
        if snap is not None:
            frame = snap.frame(position.timeframe)
            if frame.green_streak != position.current_green_streak:
                out["current_green_streak"] = frame.green_streak
            if frame.red_streak != position.current_red_streak:
                out["current_red_streak"] = frame.red_streak
    elif isinstance(params, RsiParams) and position.symbol == symbol:
        snap = state.snapshot(symbol)
        value = snap.frame(position.timeframe).rsi(params.period) if snap is not None else None
        if value is not None:
            rounded = round(value, 2)
            if rounded != position.live_rsi:
                out["live_rsi"] = rounded
    elif isinstance(params, MovementParams) and trigger_symbol(position) == symbol:
        snap = state.snapshot(symbol)
        change = snap.movement(params.movement_timeframe) if snap is not None else None
        if change is not None:
            rounded = round(change, 2)
            if rounded != position.movement:
                out["movement"] = rounded
    return out


# region Movement latch
def _movement_fires(
    positions: Sequence[Position],
    state: EngineState,
    symbol: str,
) -> tuple[set[str], frozenset[str], frozenset[str]]:
    """Bots whose movement condition newly fires on this tick.

    Also returns the latch and deferred sets with every bot whose move
    faded on this tick dropped from both.
    """
    latches = set(state.movement_latches)
    deferred = set(state.movement_deferred)
    fired: set[str] = set()
    snap = state.snapshot(symbol)
    seen: set[str] = set()
    for position in positions:
        if position.is_closed or position.bot_id in seen:
            continue
        if not isinstance(position.params, MovementParams) or trigger_symbol(position) != symbol:
            continue
        seen.add(position.bot_id)
        holds = snap is not None and movement_predicate(position, snap)
        if not holds:
            latches.discard(position.bot_id)
            deferred.discard(position.bot_id)
        elif position.bot_id not in latches:
            fired.add(position.bot_id)
    return fired, frozenset(latches), frozenset(deferred)


def _movement_retries(
    positions: Sequence[Position],
    state: EngineState,
    symbol: str,
    deferred: frozenset[str],
) -> set[str]:
    """Deferred bots with a pending position on `symbol` whose move still holds."""
    out: set[str] = set()
    for position in positions:
        if position.bot_id not in deferred or position.symbol != symbol:
            continue
        if not position.is_pending or not isinstance(position.params, MovementParams):
            continue
        snap = state.snapshot(trigger_symbol(position))
        if snap is not None and movement_predicate(position, snap):
            out.add(position.bot_id)
    return out


def _is_candidate(
    position: Position,
    folded: MarketSnapshot,
    symbol: str,
    fired: set[str],
    retries: set[str],
) -> bool:
    if not position.is_pending or position.is_entry_price_locked:
        return False
    if position.kind == StrategyKind.MOVEMENT:
        if position.bot_id in fired:
            return True
        return position.bot_id in retries and position.symbol == symbol
    return trigger_symbol(position) == symbol and evaluate_trigger(position, folded)
# endregion


def evaluate_tick(
    state: EngineState,
    tick: Tick,
    *,
    now: datetime | None = None,
) -> TickResult:
    problem = _tick_problem(tick)
    if problem is not None:
        return TickResult(
            state=state,
            events=(
                EngineEvent(
                    kind=EventKind.TICK_DROPPED,
                    symbol=getattr(tick, "symbol", None),
                    reason=problem,
                ),
            ),
        )
    now = now or now_utc()
    symbol = tick.symbol
    positions = state.positions

    current = state.snapshot(symbol) or MarketSnapshot(symbol=symbol)
    frame_label = state.kline_timeframe
    if isinstance(tick, KlineTick) and tick.timeframe:
        frame_label = tick.timeframe
    folded = fold_tick(
        current,
        tick,
        timeframe=frame_label,
        rsi_periods=rsi_periods_for(positions, symbol, frame_label),
        movement_timeframes=movement_timeframes_for(positions, symbol),
        window=max(2, int(state.candle_window)),
    )
    snapshots = dict(state.snapshots)
    snapshots[symbol] = folded
    state = replace(state, snapshots=snapshots)

    events: list[EngineEvent] = []
    changes: dict[str, dict[str, object]] = {}
    working: dict[str, Position] = {p.position_id: p for p in positions}

    def _record(old: Position, new: Position) -> None:
        delta = position_diff(old, new)
        if delta:
            changes.setdefault(old.position_id, {}).update(delta)
            working[old.position_id] = new

    # region Triggers
    fired_bots, latches, deferred = _movement_fires(positions, state, symbol)
    retry_bots = _movement_retries(positions, state, symbol, deferred)
    candidates: dict[str, list[Position]] = {}
    for position in positions:
        if _is_candidate(position, folded, symbol, fired_bots, retry_bots):
            candidates.setdefault(position.bot_id, []).append(position)

    deferred_bots: set[str] = set()
    for bot_id, pending in candidates.items():
        gate = check_entry(state.safety.get(bot_id), positions, bot_id, now=now)
        budget = gate.budget
        for position in pending:
            reason = trigger_reason(position)
            if not gate.allowed or (budget is not None and budget <= 0):
                deferred_bots.add(bot_id)
                events.append(
                    EngineEvent(
                        kind=EventKind.ENTRY_BLOCKED,
                        position_id=position.position_id,
                        bot_id=bot_id,
                        symbol=position.symbol,
                        reason=gate.reason or "trade budget exhausted",
                    )
                )
                continue
            price = state.price(position.symbol)
            if price is None:
                deferred_bots.add(bot_id)
                events.append(
                    EngineEvent(
                        kind=EventKind.PRICE_MISSING,
                        position_id=position.position_id,
                        bot_id=bot_id,
                        symbol=position.symbol,
                        reason=reason,
                    )
                )
                continue
            view = state.snapshot(trigger_symbol(position)) or folded
            audit = trigger_audit(position, view)
            audit["reason"] = reason
            activated = lifecycle.activate(
                position,
                price,
                now=now,
                direction=trigger_direction(position, view),
                audit=audit,
            )
            if activated is position:
                continue
            _record(position, activated)
            if budget is not None:
                budget -= 1
            events.append(
                EngineEvent(
                    kind=EventKind.ACTIVATED,
                    position_id=position.position_id,
                    bot_id=bot_id,
                    symbol=position.symbol,
                    reason=reason,
                    data={"from_status": position.status.value, "entry_price": price, **audit},
                )
            )
    attempted = fired_bots | retry_bots
    latches = latches | {bot for bot in attempted if bot not in deferred_bots}
    deferred = (deferred - attempted) | (attempted & deferred_bots)
    # endregion

    price = folded.price
    for position_id, position in list(working.items()):
        if position.symbol != symbol:
            continue
        if lifecycle.needs_entry_lock(position) and price is not None:
            locked = lifecycle.activate(position, price, now=now)
            if locked is not position:
                _record(position, locked)
                position = locked
                events.append(
                    EngineEvent(
                        kind=EventKind.LOCKED,
                        position_id=position_id,
                        bot_id=position.bot_id,
                        symbol=symbol,
                        reason=trigger_reason(position),
                        data={"entry_price": price},
                    )
                )
        marks = mark_updates(position, price, publish_price_only=state.publish_price_only)
        if marks:
            _record(position, replace(position, **marks))

    for position_id, position in list(working.items()):
        progress = _progress_updates(position, state, symbol)
        if progress:
            _record(position, replace(position, **progress))

    updates = tuple((position_id, delta) for position_id, delta in changes.items())
    merged, _ = merge_updates(positions, updates)
    waiting = {p.bot_id for p in merged if p.is_pending and p.kind == StrategyKind.MOVEMENT}
    new_state = replace(
        state,
        positions=tuple(merged),
        movement_latches=latches,
        movement_deferred=deferred & waiting,
    )
    return TickResult(state=new_state, updates=updates, events=tuple(events))
