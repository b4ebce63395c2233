"""Shared bot / position data models.

Positions are frozen records: every change produces a new object via
`dataclasses.replace`, so the store can detect touched rows by identity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar, Mapping, Union


class StrategyKind(str, Enum):
    STREAK = "streak"
    RSI = "rsi"
    MOVEMENT = "movement"
    GRID = "grid"
    DCA = "dca"


class PositionStatus(str, Enum):
    PENDING = "PENDING"
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


STATUS_RANK: dict[PositionStatus, int] = {
    PositionStatus.PENDING: 0,
    PositionStatus.WAITING: 0,
    PositionStatus.ACTIVE: 1,
    PositionStatus.CLOSED: 2,
}

STREAK_GREEN_LABELS = ("Green Candles", "Long Only")
STREAK_RED_LABELS = ("Red Candles", "Short Only")
STREAK_AUTO_LABELS = ("Auto", "Auto (Follow Color)")


# region Strategy parameters
@dataclass(frozen=True)
class StreakParams:
    kind: ClassVar[StrategyKind] = StrategyKind.STREAK
    consecutive_candles: int = 3
    direction: str = "Auto"


@dataclass(frozen=True)
class RsiParams:
    kind: ClassVar[StrategyKind] = StrategyKind.RSI
    threshold: float = 30.0
    period: int = 14


@dataclass(frozen=True)
class MovementParams:
    kind: ClassVar[StrategyKind] = StrategyKind.MOVEMENT
    movement_coin: str = "BTCUSDT"
    dollar_movement: float = 50.0
    movement_timeframe: str = "1m"
    direction_mode: str = "Long"
    dollar_target: float = 50.0


@dataclass(frozen=True)
class GridParams:
    kind: ClassVar[StrategyKind] = StrategyKind.GRID
    lower_price: float = 0.0
    upper_price: float = 0.0
    num_grids: int = 10
    spacing_type: str = "Fixed"
    spacing_value: float | None = None


@dataclass(frozen=True)
class DcaParams:
    kind: ClassVar[StrategyKind] = StrategyKind.DCA
    max_orders: int = 5
    # Base order size, % of margin.
    initial_qty_percent: float = 1.0
    # % drop per safety order.
    step_scale: float = 1.0
    volume_scale: float = 1.5
    reference_price: float | None = None


StrategyParams = Union[StreakParams, RsiParams, MovementParams, GridParams, DcaParams]

PARAMS_BY_KIND: dict[StrategyKind, type] = {
    StrategyKind.STREAK: StreakParams,
    StrategyKind.RSI: RsiParams,
    StrategyKind.MOVEMENT: MovementParams,
    StrategyKind.GRID: GridParams,
    StrategyKind.DCA: DcaParams,
}
# endregion


@dataclass(frozen=True)
class SafetySettings:
    cooldown_sec: float = 0.0
    one_trade_at_a_time: bool = False
    max_trades_per_day: int | None = None


@dataclass(frozen=True)
class BotConfig:
    bot_id: str
    name: str
    params: StrategyParams
    symbols: tuple[str, ...]
    safety: SafetySettings = SafetySettings()
    margin: float = 100.0
    leverage: float = 1.0
    timeframe: str = "1m"
    direction: Direction = Direction.LONG
    created_at: datetime | None = None

    @property
    def kind(self) -> StrategyKind:
        return self.params.kind


@dataclass(frozen=True)
class Position:
    position_id: str
    bot_id: str
    symbol: str
    params: StrategyParams
    status: PositionStatus = PositionStatus.WAITING
    direction: Direction = Direction.LONG
    margin: float = 0.0
    leverage: float = 1.0
    # Candle timeframe the streak / RSI trigger reads.
    timeframe: str = "1m"
    entry_price: float = 0.0
    is_entry_price_locked: bool = False
    entry_price_locked_at: datetime | None = None
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    pnl_percentage: float = 0.0
    current_green_streak: int = 0
    current_red_streak: int = 0
    live_rsi: float | None = None
    movement: float | None = None
    progress: float = 0.0
    triggered_at: datetime | None = None
    trigger_snapshot: Mapping[str, object] | None = None
    created_at: datetime | None = None
    closed_at: datetime | None = None
    bot_name: str = ""

    @property
    def kind(self) -> StrategyKind:
        return self.params.kind

    @property
    def is_pending(self) -> bool:
        return self.status in (PositionStatus.PENDING, PositionStatus.WAITING)

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED


@dataclass(frozen=True)
class TickerTick:
    symbol: str
    price: float
    ts: datetime | None = None


@dataclass(frozen=True)
class KlineTick:
    symbol: str
    open_time: datetime
    open: float
    close: float
    is_closed: bool
    timeframe: str | None = None


Tick = Union[TickerTick, KlineTick]


@dataclass(frozen=True)
class Candle:
    open_time: datetime
    open: float
    close: float
    is_closed: bool = True

    @property
    def is_green(self) -> bool:
        return self.close >= self.open


@dataclass(frozen=True)
class CandleFrame:
    """Candle window of one timeframe plus what is derived from it."""

    candles: tuple[Candle, ...] = ()
    green_streak: int = 0
    red_streak: int = 0
    rsi_by_period: Mapping[int, float] = field(default_factory=dict)

    def rsi(self, period: int) -> float | None:
        return self.rsi_by_period.get(int(period))


_EMPTY_FRAME = CandleFrame()


@dataclass(frozen=True)
class MarketSnapshot:
    """Latest per-symbol market view. Rebuilt from the feed every session."""

    symbol: str
    price: float | None = None
    price_ts: datetime | None = None
    # Newest kline of any timeframe.
    candle_open_time: datetime | None = None
    candle_open: float | None = None
    candle_close: float | None = None
    frames: Mapping[str, CandleFrame] = field(default_factory=dict)
    # timeframe label -> (bucket start, bucket opening price)
    movement_opens: Mapping[str, tuple[datetime, float]] = field(default_factory=dict)

    def frame(self, timeframe: str) -> CandleFrame:
        return self.frames.get(timeframe, _EMPTY_FRAME)

    def movement(self, timeframe: str) -> float | None:
        latest = self.price if self.price is not None else self.candle_close
        if latest is None:
            return None
        anchor = self.movement_opens.get(timeframe)
        if anchor is None:
            return None
        return float(latest) - float(anchor[1])
