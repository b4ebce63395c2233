"""Thin async wrapper over ib_insync feeding crypto quotes into the multiplexer."""
from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone
from typing import Iterable

from ib_insync import IB, BarDataList, Crypto, Ticker

from .config import BotdashConfig
from .feed import KLINE, TICKER, FeedMultiplexer, StreamKey, parse_kline
from .models import KlineTick
from .time_utils import parse_timeframe

_QUOTE_SUFFIXES = ("USDT", "USDC", "BUSD", "USD")
_BAR_SIZES = {
    "1m": "1 min",
    "2m": "2 mins",
    "3m": "3 mins",
    "5m": "5 mins",
    "10m": "10 mins",
    "15m": "15 mins",
    "20m": "20 mins",
    "30m": "30 mins",
    "1h": "1 hour",
    "2h": "2 hours",
    "3h": "3 hours",
    "4h": "4 hours",
    "8h": "8 hours",
    "1d": "1 day",
    "1w": "1 week",
}


def base_asset(symbol: str) -> str:
    cleaned = str(symbol or "").strip().upper()
    for suffix in _QUOTE_SUFFIXES:
        if cleaned.endswith(suffix) and len(cleaned) > len(suffix):
            return cleaned[: -len(suffix)]
    return cleaned


def bar_size(timeframe: str | None) -> str:
    tf = parse_timeframe(timeframe or "1m")
    label = tf.label if tf is not None else "1m"
    size = _BAR_SIZES.get(label)
    if size is None:
        raise ValueError(f"Unsupported bar timeframe: {timeframe!r}")
    return size


def history_duration(timeframe: str | None, limit: int) -> str:
    """IB duration string that covers `limit` bars of `timeframe`."""
    tf = parse_timeframe(timeframe or "1m")
    seconds = int(tf.duration.total_seconds()) if tf is not None else 60
    total = max(60, seconds * max(1, int(limit)))
    if total <= 86400:
        return f"{total} S"
    return f"{math.ceil(total / 86400)} D"


def _price(ticker: Ticker) -> float | None:
    for raw in (getattr(ticker, "last", None), ticker.marketPrice()):
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if math.isnan(value) or not math.isfinite(value) or value <= 0:
            continue
        return value
    return None


def _bar_payload(symbol: str, bar, *, closed: bool) -> dict[str, object]:
    opened = bar.date
    if isinstance(opened, datetime) and opened.tzinfo is None:
        opened = opened.replace(tzinfo=timezone.utc)
    return {
        "symbol": symbol,
        "openTime": opened,
        "open": bar.open,
        "close": bar.close,
        "isClosed": closed,
    }


class CryptoFeedClient:
    def __init__(self, config: BotdashConfig, feed: FeedMultiplexer, *, ib: IB | None = None) -> None:
        self._config = config
        self._feed = feed
        self._ib = ib or IB()
        self._lock = asyncio.Lock()
        self._tickers: dict[str, Ticker] = {}
        self._ticker_symbols: dict[int, str] = {}
        self._bar_streams: dict[tuple[str, str], BarDataList] = {}
        self._tasks: set[asyncio.Task] = set()
        self._error: str | None = None
        self._ib.pendingTickersEvent += self._on_pending_tickers
        self._ib.errorEvent += self._on_error
        feed.add_demand_listener(self._on_demand)

    @property
    def is_connected(self) -> bool:
        return self._ib.isConnected()

    @property
    def error(self) -> str | None:
        return self._error

    def contract(self, symbol: str) -> Crypto:
        return Crypto(
            base_asset(symbol),
            self._config.crypto_exchange,
            self._config.quote_currency,
        )

    async def connect(self) -> None:
        if self._ib.isConnected():
            return
        await self._ib.connectAsync(
            self._config.ib_host,
            self._config.ib_port,
            clientId=self._config.ib_client_id,
            timeout=5,
        )

    async def disconnect(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks = set()
        if self._ib.isConnected():
            for ticker in self._tickers.values():
                self._ib.cancelMktData(ticker.contract)
            for bars in self._bar_streams.values():
                self._ib.cancelHistoricalData(bars)
            try:
                self._ib.disconnect()
            except OSError:
                pass
        self._tickers = {}
        self._ticker_symbols = {}
        self._bar_streams = {}

    async def fetch_klines(self, symbol: str, timeframe: str, limit: int) -> list[KlineTick]:
        """Closed historical bars, oldest first."""
        await self.connect()
        bars = await self._ib.reqHistoricalDataAsync(
            self.contract(symbol),
            endDateTime="",
            durationStr=history_duration(timeframe, limit),
            barSizeSetting=bar_size(timeframe),
            whatToShow="AGGTRADES",
            useRTH=False,
            formatDate=2,
        )
        out: list[KlineTick] = []
        for bar in list(bars or [])[-int(limit):]:
            tick = parse_kline(_bar_payload(symbol, bar, closed=True))
            if tick is not None:
                out.append(tick)
        return out

    # region Stream demand
    def _on_demand(self, key: StreamKey, active: bool) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._apply_demand(key, active))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _apply_demand(self, key: StreamKey, active: bool) -> None:
        channel, symbol, timeframe = key
        async with self._lock:
            try:
                if channel == TICKER:
                    if active:
                        await self._start_ticker(symbol)
                    else:
                        self._stop_ticker(symbol)
                elif channel == KLINE:
                    if active:
                        await self._start_bars(symbol, timeframe or self._config.kline_timeframe)
                    else:
                        self._stop_bars(symbol, timeframe or self._config.kline_timeframe)
            except (ConnectionError, OSError, asyncio.TimeoutError, ValueError) as exc:
                self._error = f"{symbol} {channel}: {exc}"

    async def _start_ticker(self, symbol: str) -> None:
        if symbol in self._tickers:
            return
        await self.connect()
        ticker = self._ib.reqMktData(self.contract(symbol))
        self._tickers[symbol] = ticker
        self._ticker_symbols[id(ticker)] = symbol

    def _stop_ticker(self, symbol: str) -> None:
        ticker = self._tickers.pop(symbol, None)
        if ticker is None:
            return
        self._ticker_symbols.pop(id(ticker), None)
        if self._ib.isConnected():
            self._ib.cancelMktData(ticker.contract)

    async def _start_bars(self, symbol: str, timeframe: str) -> None:
        key = (symbol, timeframe)
        if key in self._bar_streams:
            return
        await self.connect()
        bars = await self._ib.reqHistoricalDataAsync(
            self.contract(symbol),
            endDateTime="",
            durationStr=history_duration(timeframe, 2),
            barSizeSetting=bar_size(timeframe),
            whatToShow="AGGTRADES",
            useRTH=False,
            formatDate=2,
            keepUpToDate=True,
        )

        def _on_update(bar_list: BarDataList, has_new_bar: bool) -> None:
            self._on_bar_update(symbol, timeframe, bar_list, has_new_bar)

        bars.updateEvent += _on_update
        self._bar_streams[key] = bars

    def _stop_bars(self, symbol: str, timeframe: str) -> None:
        bars = self._bar_streams.pop((symbol, timeframe), None)
        if bars is None:
            return
        if self._ib.isConnected():
            self._ib.cancelHistoricalData(bars)
    # endregion

    def _on_pending_tickers(self, tickers: Iterable[Ticker]) -> None:
        for ticker in tickers:
            symbol = self._ticker_symbols.get(id(ticker))
            if symbol is None:
                continue
            price = _price(ticker)
            if price is None:
                continue
            self._feed.publish(TICKER, {"symbol": symbol, "closePrice": price})

    def _on_bar_update(self, symbol: str, timeframe: str, bars: BarDataList, has_new_bar: bool) -> None:
        if not bars:
            return
        if has_new_bar and len(bars) >= 2:
            closed = dict(_bar_payload(symbol, bars[-2], closed=True), interval=timeframe)
            self._feed.publish(KLINE, closed)
        live = dict(_bar_payload(symbol, bars[-1], closed=False), interval=timeframe)
        self._feed.publish(KLINE, live)

    def _on_error(self, reqId, errorCode, errorString, contract) -> None:
        # 2104/2106/2158 are farm-status notices, not failures.
        if errorCode in (2104, 2106, 2158):
            return
        self._error = f"IBKR {errorCode}: {errorString}"
