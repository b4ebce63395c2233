"""Unrealized P&L for active positions.

Full recompute from (current, entry, direction, leverage, margin) on every
tick; nothing is accumulated, so duplicate ticks are harmless.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

from .models import Direction, MovementParams, Position

_PNL_DECIMALS = 2


@dataclass(frozen=True)
class PnlValues:
    pnl: float
    pnl_percentage: float


def _safe_float(value: object, *, abs_cap: float = 1e307) -> float | None:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(parsed) or not math.isfinite(parsed):
        return None
    if abs(parsed) >= float(abs_cap):
        return None
    return float(parsed)


def side_multiplier(direction: Direction | str | None) -> int:
    raw = direction.value if isinstance(direction, Direction) else str(direction or "LONG")
    return -1 if raw.strip().upper() == Direction.SHORT.value else 1


def compute_pnl(
    *,
    entry_price: float,
    current_price: float,
    direction: Direction | str | None,
    leverage: float,
    margin: float,
) -> PnlValues | None:
    """Leverage-aware P&L; None when there is no usable entry/current price."""
    entry = _safe_float(entry_price)
    current = _safe_float(current_price)
    if entry is None or entry <= 0 or current is None or current <= 0:
        return None
    lev = _safe_float(leverage) or 1.0
    if lev <= 0:
        lev = 1.0
    margin_f = _safe_float(margin) or 0.0
    price_change_pct = (current - entry) / entry
    pnl_pct = price_change_pct * side_multiplier(direction) * lev * 100.0
    pnl = (pnl_pct / 100.0) * margin_f
    return PnlValues(
        pnl=round(pnl, _PNL_DECIMALS),
        pnl_percentage=round(pnl_pct, _PNL_DECIMALS),
    )


def position_pnl(position: Position, price: float | None) -> PnlValues | None:
    """P&L for an ACTIVE position with a locked entry; None otherwise."""
    if not position.is_active or not position.is_entry_price_locked:
        return None
    if price is None:
        return None
    return compute_pnl(
        entry_price=position.entry_price,
        current_price=price,
        direction=position.direction,
        leverage=position.leverage,
        margin=position.margin,
    )


def movement_progress(position: Position, pnl: float) -> float | None:
    params = position.params
    if not isinstance(params, MovementParams):
        return None
    target = _safe_float(params.dollar_target)
    if not target or target <= 0:
        return None
    return round(max(0.0, pnl / target * 100.0), _PNL_DECIMALS)


def mark_updates(
    position: Position,
    price: float | None,
    *,
    publish_price_only: bool = False,
) -> dict[str, object]:
    """Field updates produced by marking `position` at `price`.

    P&L-affecting changes always carry the new current price. A bare
    current-price refresh is only returned when `publish_price_only` is set;
    otherwise it stays local to the display layer. Without a locked entry
    the stored P&L is left as-is.
    """
    if not position.is_active:
        return {}
    current = _safe_float(price)
    if current is None or current <= 0:
        return {}
    updates: dict[str, object] = {}
    values = position_pnl(position, current)
    if values is not None:
        if values.pnl != position.unrealized_pnl:
            updates["unrealized_pnl"] = values.pnl
        if values.pnl_percentage != position.pnl_percentage:
            updates["pnl_percentage"] = values.pnl_percentage
        progress = movement_progress(position, values.pnl)
        if progress is not None and progress != position.progress:
            updates["progress"] = progress
    if updates or publish_price_only:
        if current != position.current_price:
            updates["current_price"] = current
    return updates
