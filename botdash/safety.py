"""Per-bot entry gates: cooldown, one trade at a time, max trades per day.

Gates are computed from the position list itself (activation timestamps of
the bot's positions), so they survive restarts without extra state.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from .models import Position, SafetySettings
from .time_utils import to_utc, utc_day


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    # Max activations still allowed this cycle; None means unlimited.
    budget: int | None = None
    reason: str | None = None


ALLOW = GateDecision(allowed=True)


def _activation_time(position: Position) -> datetime | None:
    if position.is_pending:
        return None
    ts = position.triggered_at or position.entry_price_locked_at
    return to_utc(ts) if ts is not None else None


def activation_times(positions: Iterable[Position], bot_id: str) -> list[datetime]:
    out = []
    for position in positions:
        if position.bot_id != bot_id:
            continue
        ts = _activation_time(position)
        if ts is not None:
            out.append(ts)
    return sorted(out)


def check_entry(
    safety: SafetySettings | None,
    positions: Sequence[Position],
    bot_id: str,
    *,
    now: datetime,
) -> GateDecision:
    """Decide whether `bot_id` may activate positions right now."""
    if safety is None:
        return ALLOW
    now = to_utc(now)
    times = activation_times(positions, bot_id)
    budget: int | None = None

    cooldown = float(safety.cooldown_sec or 0.0)
    if cooldown > 0 and times:
        elapsed = (now - times[-1]).total_seconds()
        if elapsed < cooldown:
            return GateDecision(
                allowed=False,
                reason=f"cooldown {cooldown - elapsed:.0f}s remaining",
            )

    if safety.one_trade_at_a_time:
        if any(p.bot_id == bot_id and p.is_active for p in positions):
            return GateDecision(allowed=False, reason="one trade at a time")
        budget = 1

    max_per_day = safety.max_trades_per_day
    if max_per_day is not None:
        today = utc_day(now)
        used = sum(1 for ts in times if utc_day(ts) == today)
        remaining = int(max_per_day) - used
        if remaining <= 0:
            return GateDecision(
                allowed=False,
                reason=f"max trades per day reached ({int(max_per_day)})",
            )
        budget = remaining if budget is None else min(budget, remaining)

    return GateDecision(allowed=True, budget=budget)
