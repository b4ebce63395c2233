from __future__ import annotations

from datetime import datetime, timedelta, timezone

from botdash.engine import EngineState, EventKind, evaluate_tick, seed_snapshot
from botdash.models import (
    DcaParams,
    Direction,
    KlineTick,
    MovementParams,
    Position,
    PositionStatus,
    SafetySettings,
    StreakParams,
    TickerTick,
)

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
NOW = T0 + timedelta(minutes=10)


def _kline(minute: int, open_: float, close: float, *, symbol: str = "BTCUSDT", closed: bool = True) -> KlineTick:
    return KlineTick(
        symbol=symbol,
        open_time=T0 + timedelta(minutes=minute),
        open=open_,
        close=close,
        is_closed=closed,
        timeframe="1m",
    )


def _streak_position(**kwargs) -> Position:
    base = dict(
        position_id="b1_0",
        bot_id="b1",
        symbol="BTCUSDT",
        params=StreakParams(consecutive_candles=3, direction="Green Candles"),
        status=PositionStatus.WAITING,
        margin=50.0,
        leverage=10.0,
    )
    base.update(kwargs)
    return Position(**base)


def _feed(state: EngineState, ticks) -> tuple[EngineState, list]:
    results = []
    for tick in ticks:
        result = evaluate_tick(state, tick, now=NOW)
        state = result.state
        results.append(result)
    return state, results


def test_green_streak_activates_at_ticker_price() -> None:
    state = EngineState(positions=(_streak_position(),))
    state, results = _feed(state, [_kline(0, 100, 101), _kline(1, 101, 102), _kline(2, 102, 103)])

    pending = state.positions[0]
    assert pending.status == PositionStatus.WAITING
    assert pending.current_green_streak == 3
    assert [e.kind for e in results[-1].events] == [EventKind.PRICE_MISSING]

    result = evaluate_tick(state, TickerTick(symbol="BTCUSDT", price=65000.0), now=NOW)
    position = result.state.positions[0]
    assert position.status == PositionStatus.ACTIVE
    assert position.entry_price == 65000.0
    assert position.is_entry_price_locked is True
    assert position.direction == Direction.LONG
    assert position.unrealized_pnl == 0.0
    assert position.trigger_snapshot["candle_count"] == 3
    assert [e.kind for e in result.events] == [EventKind.ACTIVATED]
    assert dict(result.updates)["b1_0"]["status"] == PositionStatus.ACTIVE


def test_later_ticks_mark_without_relocking() -> None:
    state = EngineState(positions=(_streak_position(),))
    state, _ = _feed(
        state,
        [
            _kline(0, 100, 101),
            _kline(1, 101, 102),
            _kline(2, 102, 103),
            TickerTick(symbol="BTCUSDT", price=65000.0),
        ],
    )

    repeat = evaluate_tick(state, TickerTick(symbol="BTCUSDT", price=65000.0), now=NOW)
    assert repeat.updates == ()
    assert repeat.events == ()

    up = evaluate_tick(state, TickerTick(symbol="BTCUSDT", price=66300.0), now=NOW)
    position = up.state.positions[0]
    assert position.entry_price == 65000.0
    assert position.pnl_percentage == 20.0
    assert position.unrealized_pnl == 10.0
    assert position.current_price == 66300.0


def test_malformed_tick_is_dropped_without_state_change() -> None:
    state = EngineState(positions=(_streak_position(),))
    result = evaluate_tick(state, TickerTick(symbol="BTCUSDT", price=float("nan")), now=NOW)

    assert result.state is state
    assert result.updates == ()
    assert [e.kind for e in result.events] == [EventKind.TICK_DROPPED]


def test_active_unlocked_position_locks_on_first_price() -> None:
    dca = Position(
        position_id="d1_0",
        bot_id="d1",
        symbol="ETHUSDT",
        params=DcaParams(),
        status=PositionStatus.ACTIVE,
    )
    result = evaluate_tick(EngineState(positions=(dca,)), TickerTick(symbol="ETHUSDT", price=2500.0), now=NOW)

    position = result.state.positions[0]
    assert position.is_entry_price_locked is True
    assert position.entry_price == 2500.0
    assert [e.kind for e in result.events] == [EventKind.LOCKED]


def test_movement_fires_once_per_crossing() -> None:
    params = MovementParams(movement_coin="BTCUSDT", dollar_movement=50.0, movement_timeframe="1m", direction_mode="Long")
    eth = Position(position_id="m1_0", bot_id="m1", symbol="ETHUSDT", params=params, status=PositionStatus.PENDING)
    sol = Position(position_id="m1_1", bot_id="m1", symbol="SOLUSDT", params=params, status=PositionStatus.PENDING)
    state = EngineState(positions=(eth, sol))

    state, _ = _feed(
        state,
        [
            TickerTick(symbol="ETHUSDT", price=2000.0),
            TickerTick(symbol="SOLUSDT", price=100.0),
            _kline(0, 100.0, 100.0, closed=False),
        ],
    )
    fired = evaluate_tick(state, TickerTick(symbol="BTCUSDT", price=160.0), now=NOW)

    by_id = {p.position_id: p for p in fired.state.positions}
    assert by_id["m1_0"].entry_price == 2000.0
    assert by_id["m1_1"].entry_price == 100.0
    assert "m1" in fired.state.movement_latches
    assert sum(1 for e in fired.events if e.kind == EventKind.ACTIVATED) == 2

    pulled_back = evaluate_tick(fired.state, TickerTick(symbol="BTCUSDT", price=120.0), now=NOW)
    assert "m1" not in pulled_back.state.movement_latches


def test_one_trade_at_a_time_blocks_second_entry() -> None:
    busy = _streak_position(
        position_id="b1_1",
        symbol="ETHUSDT",
        status=PositionStatus.ACTIVE,
        entry_price=10.0,
        is_entry_price_locked=True,
        triggered_at=NOW - timedelta(hours=1),
    )
    state = EngineState(
        positions=(_streak_position(), busy),
        safety={"b1": SafetySettings(one_trade_at_a_time=True)},
    )
    state, _ = _feed(state, [TickerTick(symbol="BTCUSDT", price=65000.0), _kline(0, 100, 101), _kline(1, 101, 102)])
    result = evaluate_tick(state, _kline(2, 102, 103), now=NOW)

    assert result.state.positions[0].status == PositionStatus.WAITING
    blocked = [e for e in result.events if e.kind == EventKind.ENTRY_BLOCKED]
    assert blocked and blocked[0].reason == "one trade at a time"


def test_seeded_snapshot_matches_live_folding() -> None:
    klines = [_kline(0, 100, 99), _kline(1, 99, 100), _kline(2, 100, 101)]
    seeded = seed_snapshot("BTCUSDT", klines, rsi_periods=[14])
    live, _ = _feed(EngineState(positions=(_streak_position(),)), klines)

    snap = live.snapshot("BTCUSDT")
    assert seeded.frame("1m").green_streak == snap.frame("1m").green_streak == 2
    assert seeded.frame("1m").candles == snap.frame("1m").candles
    assert seeded.price is None


def test_closed_positions_are_left_alone() -> None:
    closed = _streak_position(
        status=PositionStatus.CLOSED,
        entry_price=100.0,
        is_entry_price_locked=True,
        unrealized_pnl=3.0,
    )
    state = EngineState(positions=(closed,))
    result = evaluate_tick(state, TickerTick(symbol="BTCUSDT", price=500.0), now=NOW)

    assert result.updates == ()
    assert result.state.positions[0] is closed
    assert result.state.price("BTCUSDT") == 500.0


def test_late_seed_keeps_live_candles_on_top() -> None:
    live, _ = _feed(EngineState(positions=(_streak_position(),)), [_kline(3, 103, 104)])
    history = [_kline(0, 100, 101), _kline(1, 101, 102), _kline(2, 102, 103)]

    seeded = seed_snapshot("BTCUSDT", history, rsi_periods=[14], snapshot=live.snapshot("BTCUSDT"))

    frame = seeded.frame("1m")
    assert [c.open_time for c in frame.candles] == [T0 + timedelta(minutes=m) for m in range(4)]
    assert frame.green_streak == 4
    assert seeded.candle_close == 104.0


def test_five_minute_streak_ignores_one_minute_candles() -> None:
    state = EngineState(positions=(_streak_position(timeframe="5m"),))
    state, _ = _feed(
        state,
        [
            _kline(0, 100, 101),
            _kline(1, 101, 102),
            _kline(2, 102, 103),
            TickerTick(symbol="BTCUSDT", price=65000.0),
        ],
    )
    assert state.positions[0].status == PositionStatus.WAITING
    assert state.positions[0].current_green_streak == 0
    assert state.snapshot("BTCUSDT").frame("1m").green_streak == 3

    five_minute = [
        KlineTick(
            symbol="BTCUSDT",
            open_time=T0 + timedelta(minutes=5 * i),
            open=100.0 + i,
            close=101.0 + i,
            is_closed=True,
            timeframe="5m",
        )
        for i in range(3)
    ]
    state, results = _feed(state, five_minute)

    position = state.positions[0]
    assert position.status == PositionStatus.ACTIVE
    assert position.entry_price == 65000.0
    assert position.trigger_snapshot["timeframe"] == "5m"
    assert [e.kind for e in results[-1].events] == [EventKind.ACTIVATED]


def _eth_on_btc_move() -> EngineState:
    params = MovementParams(movement_coin="BTCUSDT", dollar_movement=50.0, movement_timeframe="1m", direction_mode="Long")
    eth = Position(position_id="m2_0", bot_id="m2", symbol="ETHUSDT", params=params, status=PositionStatus.PENDING)
    state, _ = _feed(EngineState(positions=(eth,)), [_kline(0, 60000.0, 60000.0, closed=False)])
    return state


def test_deferred_movement_activates_on_traded_symbol_price() -> None:
    fired = evaluate_tick(_eth_on_btc_move(), TickerTick(symbol="BTCUSDT", price=60100.0), now=NOW)
    assert [e.kind for e in fired.events] == [EventKind.PRICE_MISSING]
    assert fired.state.movement_deferred == frozenset({"m2"})
    assert "m2" not in fired.state.movement_latches

    retried = evaluate_tick(fired.state, TickerTick(symbol="ETHUSDT", price=3000.0), now=NOW)

    position = retried.state.positions[0]
    assert position.status == PositionStatus.ACTIVE
    assert position.entry_price == 3000.0
    assert position.trigger_snapshot["movement"] == 100.0
    assert [e.kind for e in retried.events] == [EventKind.ACTIVATED]
    assert "m2" in retried.state.movement_latches
    assert retried.state.movement_deferred == frozenset()


def test_faded_movement_is_not_retried() -> None:
    fired = evaluate_tick(_eth_on_btc_move(), TickerTick(symbol="BTCUSDT", price=60100.0), now=NOW)
    faded = evaluate_tick(fired.state, TickerTick(symbol="BTCUSDT", price=60010.0), now=NOW)
    assert faded.state.movement_deferred == frozenset()

    later = evaluate_tick(faded.state, TickerTick(symbol="ETHUSDT", price=3000.0), now=NOW)
    assert later.state.positions[0].status == PositionStatus.PENDING
    assert later.events == ()
