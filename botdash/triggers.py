"""Trigger predicate set.

One pure predicate per strategy kind, `(position, snapshot) -> bool`,
selected through `PREDICATES`. The snapshot passed in is the one for
`trigger_symbol(position)`: the traded symbol, except for price-movement
bots which watch their movement coin.
"""
from __future__ import annotations

from typing import Callable

from .models import (
    STREAK_GREEN_LABELS,
    STREAK_RED_LABELS,
    Direction,
    MarketSnapshot,
    MovementParams,
    Position,
    RsiParams,
    StrategyKind,
    StreakParams,
)

Predicate = Callable[[Position, MarketSnapshot], bool]


def normalize_streak_direction(label: str | None) -> str:
    cleaned = str(label or "").strip()
    if cleaned in STREAK_GREEN_LABELS:
        return "green"
    if cleaned in STREAK_RED_LABELS:
        return "red"
    return "auto"


def tracked_streak(direction: str | None, green: int, red: int) -> tuple[int, str]:
    """Return (count, colour) of the streak a direction label follows.

    Auto follows the longer streak; a tie goes to green.
    """
    mode = normalize_streak_direction(direction)
    green = int(green or 0)
    red = int(red or 0)
    if mode == "green":
        return green, "green"
    if mode == "red":
        return red, "red"
    if red > green:
        return red, "red"
    return green, "green"


def normalize_movement_direction(mode: str | None) -> Direction:
    cleaned = str(mode or "Long").strip().upper()
    if cleaned.startswith("SHORT") or cleaned in ("DOWN", "SELL"):
        return Direction.SHORT
    return Direction.LONG


def streak_predicate(position: Position, snapshot: MarketSnapshot) -> bool:
    params = position.params
    if not isinstance(params, StreakParams):
        return False
    target = max(1, int(params.consecutive_candles or 0))
    frame = snapshot.frame(position.timeframe)
    count, _ = tracked_streak(params.direction, frame.green_streak, frame.red_streak)
    return count >= target


def rsi_predicate(position: Position, snapshot: MarketSnapshot) -> bool:
    params = position.params
    if not isinstance(params, RsiParams):
        return False
    value = snapshot.frame(position.timeframe).rsi(params.period)
    if value is None:
        return False
    return value <= float(params.threshold)


def movement_predicate(position: Position, snapshot: MarketSnapshot) -> bool:
    params = position.params
    if not isinstance(params, MovementParams):
        return False
    change = snapshot.movement(params.movement_timeframe)
    if change is None:
        return False
    threshold = abs(float(params.dollar_movement))
    if normalize_movement_direction(params.direction_mode) == Direction.SHORT:
        return change <= -threshold
    return change >= threshold


def _never(_position: Position, _snapshot: MarketSnapshot) -> bool:
    # Grid and DCA positions are created active; they have no entry event.
    return False


PREDICATES: dict[StrategyKind, Predicate] = {
    StrategyKind.STREAK: streak_predicate,
    StrategyKind.RSI: rsi_predicate,
    StrategyKind.MOVEMENT: movement_predicate,
    StrategyKind.GRID: _never,
    StrategyKind.DCA: _never,
}


def trigger_symbol(position: Position) -> str:
    params = position.params
    if isinstance(params, MovementParams) and params.movement_coin:
        return params.movement_coin
    return position.symbol


def evaluate_trigger(position: Position, snapshot: MarketSnapshot | None) -> bool:
    if snapshot is None or position.is_entry_price_locked or not position.is_pending:
        return False
    return PREDICATES[position.kind](position, snapshot)


def trigger_direction(position: Position, snapshot: MarketSnapshot) -> Direction:
    """Side the position takes when it fires."""
    params = position.params
    if isinstance(params, StreakParams):
        frame = snapshot.frame(position.timeframe)
        _, colour = tracked_streak(params.direction, frame.green_streak, frame.red_streak)
        return Direction.LONG if colour == "green" else Direction.SHORT
    if isinstance(params, MovementParams):
        return normalize_movement_direction(params.direction_mode)
    return position.direction


def trigger_audit(position: Position, snapshot: MarketSnapshot) -> dict[str, object]:
    """Strategy values captured at the moment of trigger."""
    params = position.params
    frame = snapshot.frame(position.timeframe)
    if isinstance(params, StreakParams):
        count, colour = tracked_streak(params.direction, frame.green_streak, frame.red_streak)
        return {
            "candle_count": count,
            "candle_colour": colour,
            "target": int(params.consecutive_candles),
            "green_streak": int(frame.green_streak),
            "red_streak": int(frame.red_streak),
            "timeframe": position.timeframe,
        }
    if isinstance(params, RsiParams):
        return {
            "rsi": frame.rsi(params.period),
            "timeframe": position.timeframe,
            "threshold": float(params.threshold),
            "period": int(params.period),
        }
    if isinstance(params, MovementParams):
        return {
            "movement_coin": params.movement_coin,
            "movement": snapshot.movement(params.movement_timeframe),
            "threshold": float(params.dollar_movement),
            "timeframe": params.movement_timeframe,
        }
    return {}


def trigger_reason(position: Position) -> str:
    params = position.params
    if isinstance(params, StreakParams):
        return f"{int(params.consecutive_candles)} candle streak matched"
    if isinstance(params, RsiParams):
        return f"RSI target {float(params.threshold):g} hit"
    if isinstance(params, MovementParams):
        return "Movement target reached"
    if position.kind == StrategyKind.GRID:
        return "Price entered grid range"
    if position.kind == StrategyKind.DCA:
        return "DCA interval executed"
    return "Conditions met"
