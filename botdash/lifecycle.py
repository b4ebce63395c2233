"""Position lifecycle transition table.

Every state change of a position goes through one of the transitions below.
Preconditions live in `_TRANSITIONS`, keyed by (status, entry locked); a
transition missing from a row is unreachable and the call returns the input
record unchanged. Locking the entry price therefore happens at most once:
no row with `locked=True` offers ACTIVATE or LOCK.
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Mapping

from .models import Direction, Position, PositionStatus


class Transition(str, Enum):
    ACTIVATE = "activate"
    LOCK = "lock"
    FORCE_ACTIVATE = "force_activate"
    CLOSE = "close"


_PENDING_UNLOCKED = frozenset(
    {Transition.ACTIVATE, Transition.FORCE_ACTIVATE, Transition.CLOSE}
)

_TRANSITIONS: dict[tuple[PositionStatus, bool], frozenset[Transition]] = {
    (PositionStatus.PENDING, False): _PENDING_UNLOCKED,
    (PositionStatus.WAITING, False): _PENDING_UNLOCKED,
    # A pending record that already carries a lock is malformed; it may only close.
    (PositionStatus.PENDING, True): frozenset({Transition.CLOSE}),
    (PositionStatus.WAITING, True): frozenset({Transition.CLOSE}),
    (PositionStatus.ACTIVE, False): frozenset({Transition.LOCK, Transition.CLOSE}),
    (PositionStatus.ACTIVE, True): frozenset({Transition.CLOSE}),
    (PositionStatus.CLOSED, False): frozenset(),
    (PositionStatus.CLOSED, True): frozenset(),
}


def allowed_transitions(position: Position) -> frozenset[Transition]:
    return _TRANSITIONS.get((position.status, bool(position.is_entry_price_locked)), frozenset())


def can(position: Position, transition: Transition) -> bool:
    return transition in allowed_transitions(position)


def needs_entry_lock(position: Position) -> bool:
    """True for positions that lock on the next priced tick without a trigger."""
    return can(position, Transition.LOCK)


def _valid_price(price: float | None) -> float | None:
    if price is None:
        return None
    try:
        value = float(price)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or not math.isfinite(value) or value <= 0:
        return None
    return value


def activate(
    position: Position,
    price: float | None,
    *,
    now: datetime,
    direction: Direction | None = None,
    audit: Mapping[str, object] | None = None,
) -> Position:
    """Lock the entry price at `price` and mark the position ACTIVE.

    Covers both the triggered pending position (ACTIVATE) and the
    active-but-unlocked reconciliation case (LOCK). Without a usable price
    the input is returned unchanged, so activation is deferred to a later
    tick rather than dropped.
    """
    entry = _valid_price(price)
    if entry is None:
        return position
    if can(position, Transition.ACTIVATE):
        return replace(
            position,
            status=PositionStatus.ACTIVE,
            direction=direction or position.direction,
            entry_price=entry,
            current_price=entry,
            is_entry_price_locked=True,
            entry_price_locked_at=now,
            unrealized_pnl=0.0,
            pnl_percentage=0.0,
            progress=0.0,
            triggered_at=position.triggered_at or now,
            trigger_snapshot=dict(audit) if audit else position.trigger_snapshot,
        )
    if can(position, Transition.LOCK):
        snapshot = dict(position.trigger_snapshot or {})
        if audit:
            snapshot.update(audit)
        return replace(
            position,
            direction=direction or position.direction,
            entry_price=entry,
            current_price=entry,
            is_entry_price_locked=True,
            entry_price_locked_at=now,
            unrealized_pnl=0.0,
            pnl_percentage=0.0,
            progress=0.0,
            triggered_at=position.triggered_at or now,
            trigger_snapshot=snapshot or None,
        )
    return position


def force_activate(
    position: Position,
    *,
    now: datetime,
    direction: Direction | None = None,
) -> Position:
    """Manual activation: skips the predicate, leaves the entry unlocked.

    The entry price is locked by the engine on the next priced tick.
    """
    if not can(position, Transition.FORCE_ACTIVATE):
        return position
    return replace(
        position,
        status=PositionStatus.ACTIVE,
        direction=direction or position.direction,
        triggered_at=position.triggered_at or now,
        trigger_snapshot={"manual": True},
    )


def close(position: Position, *, now: datetime) -> Position:
    """Close a position; P&L stays at its last computed value."""
    if not can(position, Transition.CLOSE):
        return position
    return replace(position, status=PositionStatus.CLOSED, closed_at=now)
