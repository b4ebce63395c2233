"""Market feed multiplexer.

Producers (the exchange adapter, tests, replay tools) push raw payloads in;
consumers subscribe per (symbols, channel, timeframe) and get typed ticks
back. Upstream demand is ref-counted per stream key so the adapter only
keeps one live stream per symbol no matter how many subscribers share it.
"""
from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

from .models import KlineTick, Tick, TickerTick
from .time_utils import from_epoch_ms, now_utc, parse_iso

TICKER = "ticker"
KLINE = "kline"
CHANNELS = (TICKER, KLINE)

TickCallback = Callable[[Tick], None]
StreamKey = tuple[str, str, str | None]
DemandListener = Callable[[StreamKey, bool], None]


# region Payload parsing
def _num(raw: object) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or not math.isfinite(value):
        return None
    return value


def _symbol(raw: object) -> str | None:
    if not isinstance(raw, str):
        return None
    cleaned = raw.strip().upper()
    return cleaned or None


def parse_ticker(payload: object) -> TickerTick | None:
    """`{symbol, closePrice}` or the Binance shape `{s, c}`; None if malformed."""
    if not isinstance(payload, Mapping):
        return None
    symbol = _symbol(payload.get("symbol", payload.get("s")))
    price = _num(payload.get("closePrice", payload.get("c")))
    if symbol is None or price is None or price <= 0:
        return None
    ts = payload.get("eventTime", payload.get("E"))
    return TickerTick(symbol=symbol, price=price, ts=parse_iso(ts) if ts is not None else now_utc())


def parse_kline(payload: object) -> KlineTick | None:
    """`{symbol, openTime, open, close, isClosed}` or Binance `{s, k: {t, o, c, x}}`."""
    if not isinstance(payload, Mapping):
        return None
    body = payload.get("k")
    if isinstance(body, Mapping):
        symbol = _symbol(payload.get("s", body.get("s")))
        open_raw, open_px, close_px = body.get("t"), body.get("o"), body.get("c")
        closed_raw, interval = body.get("x"), body.get("i")
    else:
        symbol = _symbol(payload.get("symbol"))
        open_raw, open_px, close_px = payload.get("openTime"), payload.get("open"), payload.get("close")
        closed_raw, interval = payload.get("isClosed"), payload.get("interval")
    if symbol is None:
        return None
    open_time = from_epoch_ms(open_raw) if isinstance(open_raw, (int, float)) else parse_iso(open_raw)
    open_f = _num(open_px)
    close_f = _num(close_px)
    if open_time is None or open_f is None or close_f is None or open_f <= 0 or close_f <= 0:
        return None
    return KlineTick(
        symbol=symbol,
        open_time=open_time,
        open=open_f,
        close=close_f,
        is_closed=bool(closed_raw),
        timeframe=str(interval) if interval else None,
    )


_PARSERS: dict[str, Callable[[object], Tick | None]] = {
    TICKER: parse_ticker,
    KLINE: parse_kline,
}
# endregion


@dataclass(eq=False)
class SubscriptionHandle:
    """Single-use token returned by `subscribe`; releasing twice is a no-op."""

    handle_id: int
    symbols: frozenset[str]
    channel: str
    timeframe: str | None
    callback: TickCallback
    _release: Callable[["SubscriptionHandle"], None] | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._release is not None

    def unsubscribe(self) -> bool:
        release = self._release
        if release is None:
            return False
        self._release = None
        release(self)
        return True

    def accepts(self, tick: Tick) -> bool:
        if tick.symbol not in self.symbols:
            return False
        if isinstance(tick, KlineTick):
            if self.channel != KLINE:
                return False
            return self.timeframe is None or tick.timeframe is None or tick.timeframe == self.timeframe
        return self.channel == TICKER


class FeedMultiplexer:
    def __init__(
        self,
        *,
        on_drop: Callable[[str, object], None] | None = None,
        on_error: Callable[[SubscriptionHandle, Exception], None] | None = None,
    ) -> None:
        self._ids = itertools.count(1)
        self._handles: dict[int, SubscriptionHandle] = {}
        self._demand: dict[StreamKey, int] = {}
        self._demand_listeners: list[DemandListener] = []
        self._on_drop = on_drop
        self._on_error = on_error
        self.subscribe_count = 0
        self.unsubscribe_count = 0

    def set_handlers(
        self,
        *,
        on_drop: Callable[[str, object], None] | None = None,
        on_error: Callable[[SubscriptionHandle, Exception], None] | None = None,
    ) -> None:
        self._on_drop = on_drop
        self._on_error = on_error

    @property
    def handles(self) -> tuple[SubscriptionHandle, ...]:
        return tuple(self._handles.values())

    def demand(self) -> set[StreamKey]:
        return set(self._demand)

    def add_demand_listener(self, listener: DemandListener) -> None:
        self._demand_listeners.append(listener)
        for key in list(self._demand):
            listener(key, True)

    def subscribe(
        self,
        symbols: Iterable[str],
        channel: str,
        timeframe: str | None,
        on_tick: TickCallback,
    ) -> SubscriptionHandle:
        if channel not in CHANNELS:
            raise ValueError(f"Unknown feed channel: {channel!r}")
        wanted = frozenset(s for s in (_symbol(raw) for raw in symbols) if s)
        if not wanted:
            raise ValueError("subscribe() needs at least one symbol")
        tf = timeframe if channel == KLINE else None
        handle = SubscriptionHandle(
            handle_id=next(self._ids),
            symbols=wanted,
            channel=channel,
            timeframe=tf,
            callback=on_tick,
            _release=self._release,
        )
        self._handles[handle.handle_id] = handle
        self.subscribe_count += 1
        for symbol in sorted(wanted):
            self._bump((channel, symbol, tf), +1)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        return handle.unsubscribe()

    def _release(self, handle: SubscriptionHandle) -> None:
        if self._handles.pop(handle.handle_id, None) is None:
            return
        self.unsubscribe_count += 1
        for symbol in sorted(handle.symbols):
            self._bump((handle.channel, symbol, handle.timeframe), -1)

    def _bump(self, key: StreamKey, delta: int) -> None:
        before = self._demand.get(key, 0)
        after = max(0, before + delta)
        if after:
            self._demand[key] = after
        else:
            self._demand.pop(key, None)
        if before == 0 and after > 0:
            self._notify_demand(key, True)
        elif before > 0 and after == 0:
            self._notify_demand(key, False)

    def _notify_demand(self, key: StreamKey, active: bool) -> None:
        for listener in list(self._demand_listeners):
            listener(key, active)

    def publish(self, channel: str, payload: object) -> int:
        """Parse a raw payload and fan it out; returns the delivery count."""
        parser = _PARSERS.get(channel)
        tick = parser(payload) if parser is not None else None
        if tick is None:
            if self._on_drop is not None:
                self._on_drop(channel, payload)
            return 0
        return self.publish_tick(tick)

    def publish_tick(self, tick: Tick) -> int:
        delivered = 0
        for handle in list(self._handles.values()):
            if not handle.active or not handle.accepts(tick):
                continue
            try:
                handle.callback(tick)
            except Exception as exc:
                if self._on_error is None:
                    raise
                self._on_error(handle, exc)
                continue
            delivered += 1
        return delivered
