from __future__ import annotations

from datetime import datetime, timezone

import pytest

from botdash.feed import KLINE, TICKER, FeedMultiplexer, parse_kline, parse_ticker
from botdash.models import KlineTick, TickerTick


def test_parse_ticker_accepts_both_shapes() -> None:
    plain = parse_ticker({"symbol": "btcusdt", "closePrice": "65000.5"})
    binance = parse_ticker({"s": "BTCUSDT", "c": "65000.5", "E": 1772452800000})

    assert plain is not None and binance is not None
    assert plain.symbol == binance.symbol == "BTCUSDT"
    assert plain.price == binance.price == 65000.5
    assert binance.ts == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def test_parse_kline_accepts_both_shapes() -> None:
    plain = parse_kline(
        {"symbol": "BTCUSDT", "openTime": "2026-03-02T12:00:00Z", "open": 100, "close": 101, "isClosed": True}
    )
    binance = parse_kline({"s": "BTCUSDT", "k": {"t": 1772452800000, "o": "100", "c": "101", "x": True, "i": "1m"}})

    assert plain is not None and binance is not None
    assert plain.open_time == binance.open_time
    assert binance.is_closed is True
    assert binance.timeframe == "1m"
    assert plain.timeframe is None


def test_malformed_payloads_parse_to_none() -> None:
    assert parse_ticker({"symbol": "BTCUSDT"}) is None
    assert parse_ticker({"symbol": "BTCUSDT", "closePrice": "abc"}) is None
    assert parse_ticker({"symbol": "", "closePrice": 1}) is None
    assert parse_ticker(["BTCUSDT", 1]) is None
    assert parse_kline({"s": "BTCUSDT", "k": {"t": 1, "o": "nan", "c": "1"}}) is None
    assert parse_kline({"symbol": "BTCUSDT", "open": 1, "close": 1}) is None


def test_publish_routes_by_channel_and_drops_garbage() -> None:
    dropped: list[tuple[str, object]] = []
    feed = FeedMultiplexer(on_drop=lambda channel, payload: dropped.append((channel, payload)))
    ticks: list[object] = []
    feed.subscribe(["BTCUSDT"], TICKER, None, ticks.append)
    feed.subscribe(["BTCUSDT"], KLINE, "1m", ticks.append)

    assert feed.publish(TICKER, {"s": "BTCUSDT", "c": "1.5"}) == 1
    assert feed.publish(TICKER, {"s": "ETHUSDT", "c": "1.5"}) == 0
    assert feed.publish(KLINE, {"s": "BTCUSDT", "k": {"t": 0, "o": 1, "c": 2, "x": False, "i": "5m"}}) == 0
    assert feed.publish(KLINE, {"s": "BTCUSDT", "k": {"t": 0, "o": 1, "c": 2, "x": False, "i": "1m"}}) == 1
    assert feed.publish(TICKER, {"s": "BTCUSDT"}) == 0

    assert isinstance(ticks[0], TickerTick)
    assert isinstance(ticks[1], KlineTick)
    assert dropped == [(TICKER, {"s": "BTCUSDT"})]


def test_unsubscribe_is_idempotent_and_counted() -> None:
    feed = FeedMultiplexer()
    handle = feed.subscribe(["BTCUSDT"], TICKER, None, lambda tick: None)

    assert handle.unsubscribe() is True
    assert feed.unsubscribe(handle) is False
    assert feed.subscribe_count == feed.unsubscribe_count == 1
    assert feed.handles == ()
    assert feed.publish(TICKER, {"s": "BTCUSDT", "c": "1"}) == 0


def test_demand_is_ref_counted_per_stream() -> None:
    feed = FeedMultiplexer()
    changes: list[tuple[tuple, bool]] = []
    feed.add_demand_listener(lambda key, active: changes.append((key, active)))

    first = feed.subscribe(["BTCUSDT"], TICKER, None, lambda tick: None)
    second = feed.subscribe(["BTCUSDT", "ETHUSDT"], TICKER, None, lambda tick: None)
    assert changes == [((TICKER, "BTCUSDT", None), True), ((TICKER, "ETHUSDT", None), True)]

    first.unsubscribe()
    assert len(changes) == 2
    second.unsubscribe()
    assert ((TICKER, "BTCUSDT", None), False) in changes
    assert feed.demand() == set()


def test_late_demand_listener_sees_current_streams() -> None:
    feed = FeedMultiplexer()
    feed.subscribe(["BTCUSDT"], KLINE, "1m", lambda tick: None)
    seen: list[tuple[tuple, bool]] = []
    feed.add_demand_listener(lambda key, active: seen.append((key, active)))
    assert seen == [((KLINE, "BTCUSDT", "1m"), True)]


def test_failing_callback_does_not_starve_others() -> None:
    errors: list[str] = []
    feed = FeedMultiplexer(on_error=lambda handle, exc: errors.append(str(exc)))
    got: list[object] = []

    def _boom(tick) -> None:
        raise RuntimeError("boom")

    feed.subscribe(["BTCUSDT"], TICKER, None, _boom)
    feed.subscribe(["BTCUSDT"], TICKER, None, got.append)

    assert feed.publish(TICKER, {"s": "BTCUSDT", "c": "2"}) == 1
    assert errors == ["boom"]
    assert len(got) == 1


def test_subscribe_validates_arguments() -> None:
    feed = FeedMultiplexer()
    with pytest.raises(ValueError):
        feed.subscribe(["BTCUSDT"], "depth", None, lambda tick: None)
    with pytest.raises(ValueError):
        feed.subscribe([" "], TICKER, None, lambda tick: None)
