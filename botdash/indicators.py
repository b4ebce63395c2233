"""Indicator derivation fed by the live candle window.

Keep this small and dependency-free so live evaluation and the seed path
compute identical values.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from .models import Candle, KlineTick
from .time_utils import parse_timeframe, timeframe_open

DEFAULT_RSI_PERIOD = 14


def rsi_series(closes: Sequence[float], period: int = DEFAULT_RSI_PERIOD) -> list[float | None]:
    """Wilder RSI; the first `period` entries are None (warm-up)."""
    period = int(period)
    if period <= 0:
        raise ValueError(f"RSI period must be positive, got {period}")
    values = [float(c) for c in closes]
    if len(values) < period + 1:
        return [None] * len(values)

    gain_sum = 0.0
    loss_sum = 0.0
    for i in range(1, period + 1):
        change = values[i] - values[i - 1]
        if change > 0:
            gain_sum += change
        else:
            loss_sum += -change
    avg_gain = gain_sum / period
    avg_loss = loss_sum / period

    out: list[float | None] = [None] * period
    out.append(_rsi_from_avgs(avg_gain, avg_loss))
    for i in range(period + 1, len(values)):
        change = values[i] - values[i - 1]
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out.append(_rsi_from_avgs(avg_gain, avg_loss))
    return out


def _rsi_from_avgs(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def latest_rsi(closes: Sequence[float], period: int = DEFAULT_RSI_PERIOD) -> float | None:
    series = rsi_series(closes, period)
    if not series:
        return None
    value = series[-1]
    if value is None or math.isnan(value):
        return None
    return value


def rsi_by_period(candles: Sequence[Candle], periods: Iterable[int]) -> dict[int, float]:
    closes = [c.close for c in candles]
    out: dict[int, float] = {}
    for period in sorted(set(int(p) for p in periods if int(p) > 0)):
        value = latest_rsi(closes, period)
        if value is not None:
            out[period] = value
    return out


def streak_counts(candles: Sequence[Candle]) -> tuple[int, int]:
    """Count consecutive same-colour closed candles, newest first.

    Returns (green, red); at most one of them is non-zero. A candle is green
    when close >= open. The still-forming candle is ignored.
    """
    green = 0
    red = 0
    for candle in reversed(candles):
        if not candle.is_closed:
            continue
        if candle.is_green:
            if red:
                break
            green += 1
        else:
            if green:
                break
            red += 1
    return green, red


def merge_candle(
    candles: tuple[Candle, ...],
    candle: Candle,
    *,
    limit: int,
) -> tuple[Candle, ...]:
    """Fold one kline into the rolling window.

    Same open time as the newest candle replaces it (a closed candle is never
    reopened by a late, not-closed duplicate); newer candles are appended;
    anything older than the newest candle is ignored. Returns the input tuple
    unchanged when nothing moved.
    """
    if not candles:
        return (candle,)
    last = candles[-1]
    if candle.open_time < last.open_time:
        return candles
    if candle.open_time == last.open_time:
        if last.is_closed and not candle.is_closed:
            return candles
        if last == candle:
            return candles
        return candles[:-1] + (candle,)
    merged = candles + (candle,)
    if len(merged) > limit:
        merged = merged[-limit:]
    return merged


def candle_from_kline(tick: KlineTick) -> Candle:
    return Candle(
        open_time=tick.open_time,
        open=float(tick.open),
        close=float(tick.close),
        is_closed=bool(tick.is_closed),
    )


def update_movement_opens(
    opens: Mapping[str, tuple[datetime, float]],
    tick: KlineTick,
    timeframes: Iterable[str],
) -> Mapping[str, tuple[datetime, float]]:
    """Track the opening price of the current bucket for each timeframe.

    The opening price of a bucket is the open of the first kline seen inside
    it. Returns the input mapping when no anchor changed.
    """
    updated: dict[str, tuple[datetime, float]] | None = None
    for label in timeframes:
        tf = parse_timeframe(label)
        if tf is None:
            continue
        bucket = timeframe_open(tick.open_time, tf)
        current = opens.get(label)
        if current is not None and current[0] >= bucket:
            continue
        if updated is None:
            updated = dict(opens)
        updated[label] = (bucket, float(tick.open))
    return opens if updated is None else updated
