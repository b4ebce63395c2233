from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from botdash.config import BotdashConfig
from botdash.feed import KLINE, TICKER, FeedMultiplexer
from botdash.journal import EngineJournal
from botdash.models import BotConfig, GridParams, KlineTick, Position, PositionStatus, StreakParams
from botdash.persistence import JsonPersistence
from botdash.runtime import EngineRuntime

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
T0_MS = 1772452800000
NOW = T0 + timedelta(minutes=10)


def _run(coro) -> None:
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    loop.run_until_complete(coro)


def _config(tmp_path) -> BotdashConfig:
    return BotdashConfig(
        data_dir=tmp_path,
        journal_dir=tmp_path / "journal",
        refresh_sec=0.0,
        kline_timeframe="1m",
        history_limit=100,
        candle_window=150,
        publish_price_only=False,
        ib_host="127.0.0.1",
        ib_port=4001,
        ib_client_id=0,
        crypto_exchange="PAXOS",
        quote_currency="USD",
    )


def _streak_position() -> Position:
    return Position(
        position_id="b1_0",
        bot_id="b1",
        symbol="BTCUSDT",
        params=StreakParams(consecutive_candles=3, direction="Green Candles"),
        status=PositionStatus.WAITING,
        margin=50.0,
        leverage=10.0,
        bot_name="Green run",
    )


def _green_klines(count: int = 3) -> list[KlineTick]:
    return [
        KlineTick(
            symbol="BTCUSDT",
            open_time=T0 + timedelta(minutes=i),
            open=100.0 + i,
            close=101.0 + i,
            is_closed=True,
            timeframe="1m",
        )
        for i in range(count)
    ]


class _BrokenPersistence:
    def __init__(self, positions: list[Position]) -> None:
        self._positions = positions

    def read_bots(self) -> list[BotConfig]:
        return []

    def read_positions(self) -> list[Position]:
        return list(self._positions)

    def write_positions(self, positions) -> None:
        raise OSError("disk full")


def _started(tmp_path, positions, *, persistence=None, seed_fetcher=None) -> tuple[EngineRuntime, FeedMultiplexer]:
    if persistence is None:
        persistence = JsonPersistence(tmp_path)
        persistence.write_positions(positions)
    feed = FeedMultiplexer()
    runtime = EngineRuntime(
        _config(tmp_path),
        feed=feed,
        persistence=persistence,
        journal=EngineJournal(None),
        seed_fetcher=seed_fetcher,
        clock=lambda: NOW,
    )
    runtime.load()
    _run(runtime.start())
    return runtime, feed


def _events(runtime: EngineRuntime) -> list[str]:
    return [str(entry["event"]) for entry in runtime.journal.tail()]


def test_streak_bot_activates_through_the_feed(tmp_path) -> None:
    runtime, feed = _started(tmp_path, [_streak_position()])
    assert runtime.subscribed_keys() == {(TICKER, "BTCUSDT", None), (KLINE, "BTCUSDT", "1m")}

    for minute in range(4):
        feed.publish(
            KLINE,
            {
                "s": "BTCUSDT",
                "k": {"t": T0_MS + minute * 60_000, "o": 100 + minute, "c": 101 + minute, "x": True, "i": "1m"},
            },
        )
    assert runtime.store.get("b1_0").status == PositionStatus.WAITING
    assert _events(runtime).count("PRICE_MISSING") == 1

    feed.publish(TICKER, {"s": "BTCUSDT", "c": "65000"})

    position = runtime.store.get("b1_0")
    assert position.status == PositionStatus.ACTIVE
    assert position.entry_price == 65000.0
    assert position.is_entry_price_locked is True
    assert position.unrealized_pnl == 0.0
    assert "ACTIVATED" in _events(runtime)
    assert runtime.notifications()[-1].title == "Candle Strike Position Activated"

    saved = JsonPersistence(tmp_path).read_positions()
    assert saved[0].status == PositionStatus.ACTIVE
    assert saved[0].entry_price == 65000.0


def test_seeded_history_primes_the_streak(tmp_path) -> None:
    calls: list[tuple[str, str, int]] = []

    async def _fetch(symbol: str, timeframe: str, limit: int) -> list[KlineTick]:
        calls.append((symbol, timeframe, limit))
        return _green_klines(3)

    runtime, feed = _started(tmp_path, [_streak_position()], seed_fetcher=_fetch)
    assert calls == [("BTCUSDT", "1m", 100)]
    assert runtime.state.snapshot("BTCUSDT").frame("1m").green_streak == 3

    feed.publish(TICKER, {"s": "BTCUSDT", "c": "65000"})
    assert runtime.store.get("b1_0").entry_price == 65000.0


def test_seed_failure_is_journaled_and_live_path_continues(tmp_path) -> None:
    async def _fetch(symbol: str, timeframe: str, limit: int) -> list[KlineTick]:
        raise ConnectionError("gateway down")

    runtime, _ = _started(tmp_path, [_streak_position()], seed_fetcher=_fetch)

    failed = [entry for entry in runtime.journal.tail() if entry["event"] == "SEED_FAILED"]
    assert failed and failed[0]["reason"] == "gateway down"
    assert (KLINE, "BTCUSDT", "1m") in runtime.subscribed_keys()


def test_persist_failure_surfaces_error_but_keeps_state(tmp_path) -> None:
    runtime, feed = _started(tmp_path, [_streak_position()], persistence=_BrokenPersistence([_streak_position()]))

    assert runtime.force_activate("b1_0") is True
    assert runtime.error == "persist failed: disk full"
    assert "PERSIST_FAILED" in _events(runtime)

    forced = runtime.store.get("b1_0")
    assert forced.status == PositionStatus.ACTIVE
    assert forced.is_entry_price_locked is False

    feed.publish(TICKER, {"s": "BTCUSDT", "c": "70000"})
    locked = runtime.store.get("b1_0")
    assert locked.entry_price == 70000.0
    assert "LOCKED" in _events(runtime)


def test_closing_and_deleting_release_streams(tmp_path) -> None:
    grid = Position(
        position_id="g1_0",
        bot_id="g1",
        symbol="ETHUSDT",
        params=GridParams(lower_price=2000.0, upper_price=3000.0, num_grids=4),
        status=PositionStatus.ACTIVE,
        entry_price=2500.0,
        is_entry_price_locked=True,
    )
    runtime, feed = _started(tmp_path, [_streak_position(), grid])
    assert runtime.subscribed_keys() == {
        (TICKER, "BTCUSDT", None),
        (KLINE, "BTCUSDT", "1m"),
        (TICKER, "ETHUSDT", None),
    }

    assert runtime.close_position("g1_0") is True
    assert runtime.close_position("g1_0") is False
    assert (TICKER, "ETHUSDT", None) not in runtime.subscribed_keys()
    assert runtime.store.get("g1_0").status == PositionStatus.CLOSED

    assert runtime.delete_position("b1_0") is True
    assert runtime.delete_position("b1_0") is False
    assert runtime.subscribed_keys() == set()
    assert feed.demand() == set()

    runtime.stop()
    assert feed.subscribe_count == feed.unsubscribe_count
    assert [p.position_id for p in JsonPersistence(tmp_path).read_positions()] == ["g1_0"]


def test_new_bot_positions_are_watched(tmp_path) -> None:
    runtime, feed = _started(tmp_path, [])
    bot = BotConfig(
        bot_id="g2",
        name="ETH grid",
        params=GridParams(lower_price=2000.0, upper_price=3000.0, num_grids=4),
        symbols=("ETHUSDT",),
    )

    positions = runtime.add_bot(bot)
    assert [p.entry_price for p in positions] == [2500.0]
    assert runtime.subscribed_keys() == {(TICKER, "ETHUSDT", None)}
    assert [b.bot_id for b in JsonPersistence(tmp_path).read_bots()] == ["g2"]

    feed.publish(TICKER, {"s": "ETHUSDT", "c": "2750"})
    position = runtime.store.get("g2_0")
    assert position.unrealized_pnl == 10.0
    runtime.stop()


def test_malformed_payload_is_journaled(tmp_path) -> None:
    runtime, feed = _started(tmp_path, [_streak_position()])
    assert feed.publish(TICKER, {"s": "BTCUSDT", "c": "not-a-price"}) == 0

    dropped = [entry for entry in runtime.journal.tail() if entry["event"] == "TICK_DROPPED"]
    assert dropped and dropped[0]["reason"] == "malformed ticker payload"
    assert runtime.store.get("b1_0").status == PositionStatus.WAITING


def _five_minute_bot() -> BotConfig:
    return BotConfig(
        bot_id="s5",
        name="Slow green run",
        params=StreakParams(consecutive_candles=3, direction="Green Candles"),
        symbols=("BTCUSDT",),
        timeframe="5m",
    )


def _kline_payload(minute: int, interval: str) -> dict:
    return {
        "s": "BTCUSDT",
        "k": {"t": T0_MS + minute * 60_000, "o": 100 + minute, "c": 101 + minute, "x": True, "i": interval},
    }


def test_five_minute_bot_ignores_one_minute_candles(tmp_path) -> None:
    runtime, feed = _started(tmp_path, [])
    runtime.add_bot(_five_minute_bot())
    assert runtime.subscribed_keys() == {(TICKER, "BTCUSDT", None), (KLINE, "BTCUSDT", "5m")}
    assert runtime.store.get("s5_0").timeframe == "5m"

    for minute in range(3):
        feed.publish(KLINE, _kline_payload(minute, "1m"))
    feed.publish(TICKER, {"s": "BTCUSDT", "c": "65000"})
    assert runtime.store.get("s5_0").status == PositionStatus.WAITING

    for minute in (0, 5, 10):
        feed.publish(KLINE, _kline_payload(minute, "5m"))
    position = runtime.store.get("s5_0")
    assert position.status == PositionStatus.ACTIVE
    assert position.entry_price == 65000.0
    runtime.stop()


def test_bot_added_after_start_is_seeded(tmp_path) -> None:
    calls: list[tuple[str, str, int]] = []

    async def _fetch(symbol: str, timeframe: str, limit: int) -> list[KlineTick]:
        calls.append((symbol, timeframe, limit))
        return [
            KlineTick(
                symbol=symbol,
                open_time=T0 + timedelta(minutes=5 * i),
                open=100.0 + i,
                close=101.0 + i,
                is_closed=True,
            )
            for i in range(3)
        ]

    feed = FeedMultiplexer()
    runtime = EngineRuntime(
        _config(tmp_path),
        feed=feed,
        journal=EngineJournal(None),
        seed_fetcher=_fetch,
        clock=lambda: NOW,
    )

    async def _scenario() -> None:
        await runtime.start()
        assert calls == []
        runtime.add_bot(_five_minute_bot())
        runtime.sync_subscriptions()
        pending = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
        await asyncio.gather(*pending)

    _run(_scenario())

    assert calls == [("BTCUSDT", "5m", 100)]
    assert runtime.state.snapshot("BTCUSDT").frame("5m").green_streak == 3

    feed.publish(TICKER, {"s": "BTCUSDT", "c": "65000"})
    assert runtime.store.get("s5_0").entry_price == 65000.0
    runtime.stop()


def test_ticks_without_position_changes_only_refresh_the_display(tmp_path) -> None:
    runtime, feed = _started(tmp_path, [_streak_position()])
    changed: list[int] = []
    shown: list[int] = []
    runtime.add_listener(lambda: changed.append(1))
    runtime.add_display_listener(lambda: shown.append(1))

    feed.publish(TICKER, {"s": "BTCUSDT", "c": "65000"})
    feed.publish(TICKER, {"s": "BTCUSDT", "c": "65000"})

    assert changed == []
    assert shown == [1]
    runtime.stop()
