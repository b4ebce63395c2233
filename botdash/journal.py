"""Engine journal writer + in-app log tail."""

from __future__ import annotations

import atexit
import csv
import json
import threading
from collections import deque
from pathlib import Path
from typing import Mapping

from .models import Position
from .time_utils import now_utc

JOURNAL_FIELDS = (
    "ts_utc",
    "event",
    "position_id",
    "bot_id",
    "symbol",
    "status",
    "reason",
    "data_json",
)

_REPEAT_COUNT_KEY = "log_repeat_count"
_REPEAT_FROM_UTC_KEY = "log_repeat_from_ts_utc"
_TAIL_SIZE = 200


class EngineJournal:
    def __init__(self, out_dir: Path | None, *, tail_size: int = _TAIL_SIZE) -> None:
        self._lock = threading.Lock()
        self._pending_row: dict[str, object] | None = None
        self._pending_identity: tuple[str, ...] | None = None
        self._pending_repeat_count: int = 0
        self._pending_repeat_from_utc: str = ""
        self._once_keys: set[tuple[str, ...]] = set()
        self._tail: deque[dict[str, object]] = deque(maxlen=max(1, int(tail_size)))
        self._path: Path | None = None
        if out_dir is None:
            return
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            return
        started_at = now_utc()
        self._path = out_dir / f"engine_journal_{started_at:%Y%m%d_%H%M%S}_UTC.csv"
        atexit.register(self.close)

    @property
    def path(self) -> Path | None:
        return self._path

    def tail(self, limit: int | None = None) -> list[dict[str, object]]:
        with self._lock:
            entries = list(self._tail)
        if limit is not None:
            entries = entries[-int(limit):]
        return entries

    def close(self) -> None:
        with self._lock:
            self._flush_pending_locked()

    @staticmethod
    def _row_identity(row: Mapping[str, object]) -> tuple[str, ...]:
        return tuple(str(row.get(name) or "") for name in JOURNAL_FIELDS if name != "ts_utc")

    def write(
        self,
        *,
        event: str,
        position: Position | None = None,
        position_id: str | None = None,
        bot_id: str | None = None,
        symbol: str | None = None,
        reason: str | None = None,
        data: Mapping[str, object] | None = None,
    ) -> dict[str, object]:
        row: dict[str, object] = {name: "" for name in JOURNAL_FIELDS}
        row["ts_utc"] = now_utc().isoformat()
        row["event"] = str(event or "")
        row["reason"] = str(reason) if reason else ""
        if position is not None:
            row["position_id"] = position.position_id
            row["bot_id"] = position.bot_id
            row["symbol"] = position.symbol
            row["status"] = position.status.value
        if position_id:
            row["position_id"] = str(position_id)
        if bot_id:
            row["bot_id"] = str(bot_id)
        if symbol:
            row["symbol"] = str(symbol)
        if data:
            row["data_json"] = json.dumps(dict(data), sort_keys=True, default=str)

        identity = self._row_identity(row)
        with self._lock:
            self._queue_row_locked(row=row, identity=identity)
            entry = dict(row)
            last = self._tail[-1] if self._tail else None
            if last is not None and last.get("_identity") == identity:
                last["ts_utc"] = row["ts_utc"]
                last["repeat"] = int(last.get("repeat") or 1) + 1
                entry = last
            else:
                entry["_identity"] = identity
                entry["repeat"] = 1
                self._tail.append(entry)
        return entry

    def write_once(self, key: tuple[str, ...], **kwargs) -> dict[str, object] | None:
        """Like `write`, but only the first call for `key` produces a row."""
        with self._lock:
            if key in self._once_keys:
                return None
            self._once_keys.add(key)
        return self.write(**kwargs)

    def forget(self, key: tuple[str, ...]) -> None:
        with self._lock:
            self._once_keys.discard(key)

    def forget_prefix(self, prefix: tuple[str, ...]) -> None:
        size = len(prefix)
        with self._lock:
            self._once_keys = {k for k in self._once_keys if k[:size] != prefix}

    def _queue_row_locked(self, *, row: dict[str, object], identity: tuple[str, ...]) -> None:
        if self._path is None:
            return
        if self._pending_row is not None and self._pending_identity == identity:
            self._pending_repeat_count += 1
            self._pending_row["ts_utc"] = row.get("ts_utc")
            return
        self._flush_pending_locked()
        self._pending_row = dict(row)
        self._pending_identity = identity
        self._pending_repeat_count = 1
        self._pending_repeat_from_utc = str(row.get("ts_utc") or "")

    def _flush_pending_locked(self) -> None:
        row = dict(self._pending_row) if self._pending_row is not None else None
        repeat_count = int(self._pending_repeat_count or 0)
        repeat_from_utc = self._pending_repeat_from_utc
        self._pending_row = None
        self._pending_identity = None
        self._pending_repeat_count = 0
        self._pending_repeat_from_utc = ""
        if row is None:
            return
        if repeat_count > 1:
            payload: dict[str, object] = {}
            data_json = str(row.get("data_json") or "")
            if data_json:
                try:
                    parsed = json.loads(data_json)
                except json.JSONDecodeError:
                    parsed = None
                if isinstance(parsed, dict):
                    payload = parsed
            payload[_REPEAT_COUNT_KEY] = repeat_count
            payload[_REPEAT_FROM_UTC_KEY] = repeat_from_utc
            row["data_json"] = json.dumps(payload, sort_keys=True, default=str)
        self._append_row_locked(row)

    def _append_row_locked(self, row: dict[str, object]) -> None:
        path = self._path
        if path is None:
            return
        try:
            is_new = (not path.exists()) or path.stat().st_size == 0
            with path.open("a", newline="") as handle:
                writer = csv.DictWriter(handle, fieldnames=JOURNAL_FIELDS)
                if is_new:
                    writer.writeheader()
                writer.writerow(row)
        except OSError:
            return
