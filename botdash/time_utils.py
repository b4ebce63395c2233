from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

UTC = timezone.utc

_TIMEFRAME_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$", re.IGNORECASE)
_TIMEFRAME_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}
_COOLDOWN_UNITS = {
    "sec": 1.0,
    "s": 1.0,
    "min": 60.0,
    "m": 60.0,
    "hour": 3600.0,
    "h": 3600.0,
}


@dataclass(frozen=True)
class Timeframe:
    label: str
    duration: timedelta


def parse_timeframe(value: str | None) -> Timeframe | None:
    """Parse an exchange interval like '1m', '15m', '4h' or '1d'."""
    if not isinstance(value, str):
        return None
    match = _TIMEFRAME_RE.match(value)
    if not match:
        return None
    count = int(match.group(1))
    if count <= 0:
        return None
    unit = match.group(2).lower()
    return Timeframe(label=f"{count}{unit}", duration=_TIMEFRAME_UNITS[unit] * count)


def timeframe_open(ts: datetime, timeframe: Timeframe) -> datetime:
    """Start of the timeframe bucket containing `ts` (epoch-aligned, UTC)."""
    ts_utc = to_utc(ts)
    step = int(timeframe.duration.total_seconds())
    epoch = int(ts_utc.timestamp())
    return datetime.fromtimestamp(epoch - (epoch % step), tz=UTC)


def cooldown_seconds(value: object, unit: str | None = "Sec") -> float:
    try:
        amount = float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0
    if amount <= 0:
        return 0.0
    factor = _COOLDOWN_UNITS.get(str(unit or "sec").strip().lower(), 1.0)
    return amount * factor


def now_utc() -> datetime:
    return datetime.now(tz=UTC)


def to_utc(ts: datetime) -> datetime:
    if getattr(ts, "tzinfo", None) is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def from_epoch_ms(value: object) -> datetime | None:
    try:
        ms = int(float(value))
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=UTC)


def to_iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return to_utc(ts).isoformat()


def parse_iso(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        return from_epoch_ms(value)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


def utc_day(ts: datetime) -> date:
    return to_utc(ts).date()
