"""JSON file persistence for bots and positions.

Records are stored as plain JSON lists (`bots.json`, `positions.json`) in
the data directory. Reading also accepts the camelCase records written by
the older browser dashboard (`entryPrice`, `isEntryPriceLocked`,
`unrealizedPnl`, ...), so existing exports load unchanged.
"""
from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Iterable, Mapping

from .models import (
    PARAMS_BY_KIND,
    STREAK_RED_LABELS,
    BotConfig,
    DcaParams,
    Direction,
    GridParams,
    MovementParams,
    Position,
    PositionStatus,
    RsiParams,
    SafetySettings,
    StrategyKind,
    StrategyParams,
    StreakParams,
)
from .time_utils import cooldown_seconds, parse_iso, to_iso

BOTS_FILE = "bots.json"
POSITIONS_FILE = "positions.json"

_LEGACY_KINDS = {
    "STRIKE": StrategyKind.STREAK,
    "CANDLE_STRIKE": StrategyKind.STREAK,
    "CANDLE": StrategyKind.STREAK,
    "STREAK": StrategyKind.STREAK,
    "RSI": StrategyKind.RSI,
    "PRICE_MOVEMENT": StrategyKind.MOVEMENT,
    "MOVEMENT": StrategyKind.MOVEMENT,
    "GRID": StrategyKind.GRID,
    "DCA": StrategyKind.DCA,
}

# Which legacy key betrays which strategy when no explicit kind is stored.
_KIND_HINTS = (
    ("consecutiveCandles", StrategyKind.STREAK),
    ("rsiThreshold", StrategyKind.RSI),
    ("rsiValue", StrategyKind.RSI),
    ("movementCoin", StrategyKind.MOVEMENT),
    ("dollarMovement", StrategyKind.MOVEMENT),
    ("lowerPrice", StrategyKind.GRID),
    ("maxOrders", StrategyKind.DCA),
)

_PARAM_ALIASES: dict[str, tuple[str, ...]] = {
    "consecutive_candles": ("consecutiveCandles",),
    "direction": ("strategyDirection",),
    "threshold": ("rsiThreshold", "rsiValue"),
    "period": ("rsiPeriod", "rsiLength"),
    "movement_coin": ("movementCoin",),
    "dollar_movement": ("dollarMovement", "movementThreshold"),
    "movement_timeframe": ("movementTimeframe",),
    "direction_mode": ("directionMode",),
    "dollar_target": ("dollarTarget",),
    "lower_price": ("lowerPrice",),
    "upper_price": ("upperPrice",),
    "num_grids": ("numGrids", "gridCount", "gridLevels"),
    "spacing_type": ("spacingType", "gridType"),
    "spacing_value": ("spacingValue",),
    "max_orders": ("maxOrders",),
    "initial_qty_percent": ("initialQtyPercent",),
    "step_scale": ("stepScale",),
    "volume_scale": ("volumeScale",),
    "reference_price": ("referencePrice", "avgPrice"),
}

_POSITION_ALIASES: dict[str, tuple[str, ...]] = {
    "position_id": ("id",),
    "bot_id": ("botId", "configId"),
    "entry_price": ("entryPrice",),
    "is_entry_price_locked": ("isEntryPriceLocked",),
    "entry_price_locked_at": ("entryPriceLockedAt",),
    "current_price": ("currentPrice",),
    "unrealized_pnl": ("unrealizedPnl", "pnl"),
    "pnl_percentage": ("pnlPercentage", "pnlPercent"),
    "current_green_streak": ("currentGreenStreak",),
    "current_red_streak": ("currentRedStreak",),
    "live_rsi": ("liveRsi", "currentRsi"),
    "triggered_at": ("triggeredAt",),
    "trigger_snapshot": ("triggerSnapshot",),
    "created_at": ("createdAt",),
    "closed_at": ("closedAt",),
    "bot_name": ("botName", "name"),
    "margin": ("investment",),
}

_DATETIME_FIELDS = frozenset(
    ("entry_price_locked_at", "triggered_at", "created_at", "closed_at")
)
_FLOAT_FIELDS = frozenset(
    ("margin", "leverage", "entry_price", "current_price", "unrealized_pnl", "pnl_percentage", "progress")
)
_INT_FIELDS = frozenset(("current_green_streak", "current_red_streak"))
_OPTIONAL_FLOAT_FIELDS = frozenset(("live_rsi", "movement"))


def _pick(record: Mapping[str, object], name: str, aliases: Mapping[str, tuple[str, ...]]) -> object:
    if name in record:
        return record[name]
    for alias in aliases.get(name, ()):
        if alias in record:
            return record[alias]
    return None


def _as_float(value: object, *, field_name: str) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name}: expected a number, got {value!r}") from exc


def _is_side(value: object) -> bool:
    return str(value or "").strip().upper() in (Direction.LONG.value, Direction.SHORT.value)


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# region Strategy parameters
def infer_kind(record: Mapping[str, object]) -> StrategyKind:
    raw = record.get("kind") or record.get("strategy") or record.get("botType")
    if raw:
        text = str(raw).strip()
        try:
            return StrategyKind(text.lower())
        except ValueError:
            kind = _LEGACY_KINDS.get(text.upper().replace(" ", "_"))
            if kind is not None:
                return kind
    params = record.get("params")
    if isinstance(params, Mapping) and params.get("kind"):
        return StrategyKind(str(params["kind"]).lower())
    for key, kind in _KIND_HINTS:
        if key in record:
            return kind
    raise ValueError(f"Cannot tell strategy kind of record {record.get('id')!r}")


def params_to_record(params: StrategyParams) -> dict[str, object]:
    return {"kind": params.kind.value, **asdict(params)}


def params_from_record(kind: StrategyKind, record: Mapping[str, object]) -> StrategyParams:
    cls = PARAMS_BY_KIND[kind]
    nested = record.get("params")
    source: Mapping[str, object] = nested if isinstance(nested, Mapping) else record
    values: dict[str, object] = {}
    for fld in fields(cls):
        raw = _pick(source, fld.name, _PARAM_ALIASES)
        if fld.name == "direction" and _is_side(raw):
            # Position side, not a candle-colour label.
            raw = next((source[a] for a in _PARAM_ALIASES["direction"] if a in source), None)
        if raw is None or raw == "" or (fld.name == "direction" and _is_side(raw)):
            continue
        if fld.name in ("consecutive_candles", "period", "num_grids", "max_orders"):
            values[fld.name] = int(_as_float(raw, field_name=fld.name))
        elif fld.name in ("direction", "movement_coin", "movement_timeframe", "direction_mode", "spacing_type"):
            values[fld.name] = str(raw)
        else:
            values[fld.name] = _as_float(raw, field_name=fld.name)
    if kind == StrategyKind.DCA and values.get("reference_price") == 0.0:
        values["reference_price"] = None
    params = cls(**values)
    _validate_params(params)
    return params


def _validate_params(params: StrategyParams) -> None:
    if isinstance(params, StreakParams) and params.consecutive_candles < 1:
        raise ValueError("consecutive_candles must be >= 1")
    if isinstance(params, RsiParams) and params.period < 1:
        raise ValueError("RSI period must be >= 1")
    if isinstance(params, MovementParams) and not params.movement_coin:
        raise ValueError("movement_coin is required")
    if isinstance(params, GridParams):
        if params.upper_price <= params.lower_price:
            raise ValueError("grid upper_price must be above lower_price")
        if params.num_grids < 1:
            raise ValueError("num_grids must be >= 1")
    if isinstance(params, DcaParams) and params.max_orders < 1:
        raise ValueError("max_orders must be >= 1")
# endregion


def _direction(value: object, *, default: Direction = Direction.LONG) -> Direction:
    text = str(value or "").strip()
    if not text:
        return default
    if text.upper() in (Direction.LONG.value, Direction.SHORT.value):
        return Direction(text.upper())
    if text in STREAK_RED_LABELS or text.upper().startswith("SHORT"):
        return Direction.SHORT
    return default


# region Bots
def bot_to_record(bot: BotConfig) -> dict[str, object]:
    return {
        "bot_id": bot.bot_id,
        "name": bot.name,
        "params": params_to_record(bot.params),
        "symbols": list(bot.symbols),
        "safety": asdict(bot.safety),
        "margin": bot.margin,
        "leverage": bot.leverage,
        "timeframe": bot.timeframe,
        "direction": bot.direction.value,
        "created_at": to_iso(bot.created_at),
    }


def _safety_from_record(record: Mapping[str, object]) -> SafetySettings:
    nested = record.get("safety")
    source: Mapping[str, object] = nested if isinstance(nested, Mapping) else record
    if "cooldown_sec" in source:
        cooldown = float(source.get("cooldown_sec") or 0.0)
    else:
        cooldown = cooldown_seconds(source.get("cooldown"), str(source.get("cooldownUnit") or "Sec"))
    one_at_a_time = source.get("one_trade_at_a_time", source.get("oneTradeAtATime", False))
    max_raw = source.get("max_trades_per_day", source.get("maxTradesPerDay"))
    if source.get("maxTradesEnabled") is False:
        max_raw = None
    max_per_day = int(_as_float(max_raw, field_name="max_trades_per_day")) if max_raw not in (None, "") else None
    return SafetySettings(
        cooldown_sec=max(0.0, cooldown),
        one_trade_at_a_time=_as_bool(one_at_a_time),
        max_trades_per_day=max_per_day,
    )


def bot_from_record(record: Mapping[str, object]) -> BotConfig:
    if not isinstance(record, Mapping):
        raise ValueError(f"Bot record must be an object, got {type(record).__name__}")
    bot_id = record.get("bot_id") or record.get("id")
    if not bot_id:
        raise ValueError("Bot record has no id")
    kind = infer_kind(record)
    raw_symbols = record.get("symbols") or ([record["symbol"]] if record.get("symbol") else [])
    if isinstance(raw_symbols, str):
        raw_symbols = [raw_symbols]
    symbols = tuple(str(s).strip().upper() for s in raw_symbols if str(s).strip())
    if not symbols:
        raise ValueError(f"Bot {bot_id!r} has no symbols")
    return BotConfig(
        bot_id=str(bot_id),
        name=str(record.get("name") or record.get("botName") or record.get("templateName") or bot_id),
        params=params_from_record(kind, record),
        symbols=symbols,
        safety=_safety_from_record(record),
        margin=_as_float(record.get("margin", record.get("investment", 100.0)) or 100.0, field_name="margin"),
        leverage=_as_float(record.get("leverage", 1.0) or 1.0, field_name="leverage"),
        timeframe=str(record.get("timeframe") or "1m"),
        direction=_direction(record.get("direction")),
        created_at=parse_iso(record.get("created_at", record.get("createdAt"))),
    )
# endregion


# region Positions
def position_to_record(position: Position) -> dict[str, object]:
    out: dict[str, object] = {}
    for fld in fields(Position):
        value = getattr(position, fld.name)
        if fld.name == "params":
            out["params"] = params_to_record(value)
        elif isinstance(value, datetime):
            out[fld.name] = to_iso(value)
        elif isinstance(value, (PositionStatus, Direction)):
            out[fld.name] = value.value
        elif fld.name == "trigger_snapshot":
            out[fld.name] = dict(value) if value is not None else None
        else:
            out[fld.name] = value
    out["kind"] = position.kind.value
    return out


def position_from_record(record: Mapping[str, object]) -> Position:
    if not isinstance(record, Mapping):
        raise ValueError(f"Position record must be an object, got {type(record).__name__}")
    position_id = _pick(record, "position_id", _POSITION_ALIASES)
    if not position_id:
        raise ValueError("Position record has no id")
    symbol = str(record.get("symbol") or "").strip().upper()
    if not symbol:
        raise ValueError(f"Position {position_id!r} has no symbol")
    kind = infer_kind(record)
    params = params_from_record(kind, record)
    values: dict[str, object] = {
        "position_id": str(position_id),
        "bot_id": str(_pick(record, "bot_id", _POSITION_ALIASES) or position_id),
        "symbol": symbol,
        "params": params,
    }
    raw_status = str(record.get("status") or PositionStatus.WAITING.value).strip().upper()
    try:
        values["status"] = PositionStatus(raw_status)
    except ValueError as exc:
        raise ValueError(f"Position {position_id!r}: unknown status {raw_status!r}") from exc
    values["direction"] = _direction(record.get("direction"))
    for name in _FLOAT_FIELDS | _INT_FIELDS | _OPTIONAL_FLOAT_FIELDS | _DATETIME_FIELDS:
        raw = _pick(record, name, _POSITION_ALIASES)
        if raw is None or raw == "":
            continue
        if name in _DATETIME_FIELDS:
            values[name] = parse_iso(raw)
        elif name in _INT_FIELDS:
            values[name] = int(_as_float(raw, field_name=name))
        else:
            values[name] = _as_float(raw, field_name=name)
    values["is_entry_price_locked"] = _as_bool(_pick(record, "is_entry_price_locked", _POSITION_ALIASES))
    snapshot = _pick(record, "trigger_snapshot", _POSITION_ALIASES)
    if isinstance(snapshot, Mapping):
        values["trigger_snapshot"] = dict(snapshot)
    bot_name = _pick(record, "bot_name", _POSITION_ALIASES)
    if bot_name:
        values["bot_name"] = str(bot_name)
    timeframe = record.get("timeframe") or record.get("interval")
    if timeframe:
        values["timeframe"] = str(timeframe)
    # DCA records of the old dashboard keep their entry in avgPrice.
    if kind == StrategyKind.DCA and not values.get("entry_price") and isinstance(params, DcaParams):
        if params.reference_price:
            values["entry_price"] = float(params.reference_price)
            values["is_entry_price_locked"] = True
    if values["is_entry_price_locked"] and float(values.get("entry_price") or 0.0) <= 0:
        values["is_entry_price_locked"] = False
    return Position(**values)
# endregion


class JsonPersistence:
    def __init__(self, data_dir: Path) -> None:
        self._dir = Path(data_dir)

    @property
    def bots_path(self) -> Path:
        return self._dir / BOTS_FILE

    @property
    def positions_path(self) -> Path:
        return self._dir / POSITIONS_FILE

    def _read_list(self, path: Path) -> list[object]:
        if not path.exists():
            return []
        raw = json.loads(path.read_text())
        if not isinstance(raw, list):
            raise ValueError(f"{path.name}: expected a JSON list")
        return raw

    def _write_list(self, path: Path, rows: Iterable[Mapping[str, object]]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(list(rows), indent=2, sort_keys=True, default=str))
        os.replace(tmp_path, path)

    def read_bots(self) -> list[BotConfig]:
        return [bot_from_record(rec) for rec in self._read_list(self.bots_path)]

    def read_positions(self) -> list[Position]:
        return [position_from_record(rec) for rec in self._read_list(self.positions_path)]

    def write_bots(self, bots: Iterable[BotConfig]) -> None:
        self._write_list(self.bots_path, (bot_to_record(b) for b in bots))

    def write_positions(self, positions: Iterable[Position]) -> None:
        self._write_list(self.positions_path, (position_to_record(p) for p in positions))

    def upsert_bot(self, bot: BotConfig) -> None:
        bots = [b for b in self.read_bots() if b.bot_id != bot.bot_id]
        bots.append(bot)
        self.write_bots(bots)

    def upsert_position(self, position: Position) -> None:
        positions = self.read_positions()
        for idx, existing in enumerate(positions):
            if existing.position_id == position.position_id:
                positions[idx] = position
                break
        else:
            positions.append(position)
        self.write_positions(positions)
