"""Bot config -> initial positions, plus the grid and DCA ladders."""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime

from .models import (
    BotConfig,
    DcaParams,
    Direction,
    GridParams,
    MovementParams,
    Position,
    PositionStatus,
    StrategyKind,
    StreakParams,
)
from .time_utils import now_utc
from .triggers import normalize_movement_direction, normalize_streak_direction

_INITIAL_STATUS = {
    StrategyKind.STREAK: PositionStatus.WAITING,
    StrategyKind.RSI: PositionStatus.WAITING,
    StrategyKind.MOVEMENT: PositionStatus.PENDING,
    StrategyKind.GRID: PositionStatus.ACTIVE,
    StrategyKind.DCA: PositionStatus.ACTIVE,
}


@dataclass(frozen=True)
class GridLine:
    price: float
    label: str
    side: str  # "buy" below the range midpoint, "sell" at or above it


def grid_lines(params: GridParams) -> list[GridLine]:
    """Price ladder for a grid bot; empty when the range is unusable."""
    lower = float(params.lower_price)
    upper = float(params.upper_price)
    grids = int(params.num_grids)
    if grids < 2 or lower <= 0 or lower >= upper:
        return []
    midpoint = (lower + upper) / 2.0
    spacing = str(params.spacing_type or "Fixed").strip().lower()

    def _line(i: int, price: float, *, last_is_upper: bool = True) -> GridLine:
        if i == 0:
            label = "LOWER"
        elif i == grids and last_is_upper:
            label = "UPPER"
        else:
            label = f"GRID {i}"
        return GridLine(price=price, label=label, side="buy" if price < midpoint else "sell")

    if spacing == "percentage":
        pct = params.spacing_value
        if pct is not None and math.isfinite(float(pct)) and float(pct) > 0:
            # A fixed percentage step may run past the upper bound.
            factor = 1.0 + float(pct) / 100.0
            return [_line(i, lower * factor**i, last_is_upper=False) for i in range(grids + 1)]
        ratio = (upper / lower) ** (1.0 / grids)
        return [_line(i, lower * ratio**i) for i in range(grids + 1)]

    step = (upper - lower) / grids
    return [_line(i, lower + i * step) for i in range(grids + 1)]


@dataclass(frozen=True)
class DcaOrder:
    price: float
    label: str
    qty_percent: float  # of the position margin


def dca_orders(params: DcaParams, base_price: float) -> list[DcaOrder]:
    """Base order plus the safety-order ladder below `base_price`.

    Safety order i sits `step_scale * i` percent under the base and is
    `volume_scale` times the size of the order before it.
    """
    base = float(base_price)
    step = float(params.step_scale)
    qty = float(params.initial_qty_percent)
    scale = float(params.volume_scale)
    if not math.isfinite(base) or base <= 0 or step <= 0 or qty <= 0 or scale <= 0:
        return []
    out = [DcaOrder(price=base, label="BASE", qty_percent=qty)]
    for i in range(1, int(params.max_orders) + 1):
        price = base * (1.0 - step * i / 100.0)
        if price <= 0:
            break
        qty *= scale
        out.append(DcaOrder(price=price, label=f"SO {i}", qty_percent=qty))
    return out


def grid_reference_price(params: GridParams) -> float:
    return (float(params.lower_price) + float(params.upper_price)) / 2.0


def _initial_direction(bot: BotConfig) -> Direction:
    params = bot.params
    if isinstance(params, StreakParams):
        return Direction.SHORT if normalize_streak_direction(params.direction) == "red" else Direction.LONG
    if isinstance(params, MovementParams):
        return normalize_movement_direction(params.direction_mode)
    return bot.direction


def initial_positions(bot: BotConfig, *, now: datetime | None = None) -> list[Position]:
    """One position per symbol, in the status the bot's strategy starts in."""
    now = now or now_utc()
    status = _INITIAL_STATUS[bot.kind]
    direction = _initial_direction(bot)
    reference: float | None = None
    if isinstance(bot.params, GridParams):
        reference = grid_reference_price(bot.params)
    elif isinstance(bot.params, DcaParams) and bot.params.reference_price:
        reference = float(bot.params.reference_price)

    out: list[Position] = []
    for index, symbol in enumerate(bot.symbols):
        position = Position(
            position_id=f"{bot.bot_id}_{index}",
            bot_id=bot.bot_id,
            symbol=symbol,
            params=bot.params,
            status=status,
            direction=direction,
            margin=float(bot.margin),
            leverage=float(bot.leverage),
            timeframe=bot.timeframe,
            created_at=now,
            bot_name=bot.name,
        )
        if reference is not None and reference > 0:
            position = replace(
                position,
                entry_price=reference,
                current_price=reference,
                is_entry_price_locked=True,
                entry_price_locked_at=now,
                triggered_at=now,
            )
        out.append(position)
    return out
