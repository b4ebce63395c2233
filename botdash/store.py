"""Authoritative position collection and the reconciliation merge.

Every producer (tick engine, user actions, external sync) hands the store a
list of `(position_id, partial_update)` pairs; the store replaces only the
touched records and notifies listeners only when something changed.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Sequence

from .models import STATUS_RANK, Position, PositionStatus

PositionUpdate = tuple[str, Mapping[str, object]]
Listener = Callable[[tuple[Position, ...]], None]

_POSITION_FIELDS = frozenset(f.name for f in fields(Position))
_LOCK_FIELDS = ("entry_price", "is_entry_price_locked", "entry_price_locked_at")
_MARK_FIELDS = ("current_price", "unrealized_pnl", "pnl_percentage", "progress")


def position_diff(old: Position, new: Position) -> dict[str, object]:
    """Fields of `new` that differ from `old`, as a partial update."""
    if old is new:
        return {}
    return {
        name: getattr(new, name)
        for name in _POSITION_FIELDS
        if getattr(old, name) != getattr(new, name)
    }


def _guard_update(position: Position, update: Mapping[str, object]) -> dict[str, object]:
    """Drop fields that would break the record's invariants."""
    unknown = set(update) - _POSITION_FIELDS
    if unknown:
        raise ValueError(f"Unknown position fields: {sorted(unknown)}")
    cleaned = {k: v for k, v in update.items() if k != "position_id"}
    status = cleaned.get("status")
    if status is not None:
        new_status = PositionStatus(status)
        if STATUS_RANK[new_status] < STATUS_RANK[position.status]:
            cleaned.pop("status")
        else:
            cleaned["status"] = new_status
    if position.is_entry_price_locked:
        for name in _LOCK_FIELDS:
            cleaned.pop(name, None)
    if position.is_closed:
        for name in _MARK_FIELDS:
            cleaned.pop(name, None)
    return {k: v for k, v in cleaned.items() if getattr(position, k) != v}


def merge_updates(
    base: Sequence[Position],
    updates: Iterable[PositionUpdate],
) -> tuple[list[Position], bool]:
    """Fold partial updates into `base`.

    Untouched positions keep their identity; ids absent from `base` are
    dropped; updates equal to the stored values are no-ops. Returns the
    merged list and whether anything changed.
    """
    pending: dict[str, dict[str, object]] = {}
    for position_id, update in updates:
        if not update:
            continue
        pending.setdefault(str(position_id), {}).update(update)
    if not pending:
        return list(base), False

    merged: list[Position] = []
    changed = False
    for position in base:
        update = pending.get(position.position_id)
        if update is None:
            merged.append(position)
            continue
        cleaned = _guard_update(position, update)
        if not cleaned:
            merged.append(position)
            continue
        merged.append(replace(position, **cleaned))
        changed = True
    return merged, changed


@dataclass
class PositionStore:
    _positions: tuple[Position, ...] = ()
    _listeners: list[Listener] = field(default_factory=list)
    updated_at: datetime | None = None
    error: str | None = None

    @property
    def positions(self) -> tuple[Position, ...]:
        return self._positions

    def get(self, position_id: str) -> Position | None:
        return next((p for p in self._positions if p.position_id == position_id), None)

    def symbols(self, *, include_closed: bool = False) -> set[str]:
        return {
            p.symbol
            for p in self._positions
            if include_closed or not p.is_closed
        }

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def apply(self, updates: Iterable[PositionUpdate]) -> bool:
        merged, changed = merge_updates(self._positions, updates)
        if changed:
            self._set(tuple(merged))
        return changed

    def add(self, positions: Iterable[Position]) -> bool:
        existing = {p.position_id for p in self._positions}
        new = tuple(p for p in positions if p.position_id not in existing)
        if not new:
            return False
        self._set(new + self._positions)
        return True

    def remove(self, position_ids: Iterable[str]) -> bool:
        doomed = set(position_ids)
        kept = tuple(p for p in self._positions if p.position_id not in doomed)
        if len(kept) == len(self._positions):
            return False
        self._set(kept)
        return True

    def load(self, positions: Iterable[Position]) -> None:
        """Seed the store without notifying listeners (startup read)."""
        self._positions = tuple(positions)
        self.updated_at = datetime.now(timezone.utc)

    def _set(self, positions: tuple[Position, ...]) -> None:
        self._positions = positions
        self.updated_at = datetime.now(timezone.utc)
        for listener in list(self._listeners):
            listener(positions)
