from __future__ import annotations

import pytest

from botdash.models import DcaParams, Direction, GridParams, Position, PositionStatus, RsiParams, StreakParams
from botdash.ui.common import _position_row, _position_sort_key, filter_positions


def _position(position_id: str, *, status=PositionStatus.ACTIVE, pnl: float = 0.0, **kwargs) -> Position:
    return Position(
        position_id=position_id,
        bot_id="b1",
        symbol="BTCUSDT",
        params=kwargs.pop("params", StreakParams(consecutive_candles=3, direction="Auto")),
        status=status,
        unrealized_pnl=pnl,
        **kwargs,
    )


def test_filters_split_by_status_and_sign() -> None:
    rows = [
        _position("win", pnl=5.0, entry_price=1.0, is_entry_price_locked=True),
        _position("lose", pnl=-2.0, entry_price=1.0, is_entry_price_locked=True),
        _position("wait", status=PositionStatus.WAITING),
        _position("done", status=PositionStatus.CLOSED, pnl=1.0),
    ]

    assert [p.position_id for p in filter_positions(rows, "waiting")] == ["wait"]
    assert [p.position_id for p in filter_positions(rows, "active")] == ["win", "lose"]
    assert [p.position_id for p in filter_positions(rows, "profit")] == ["win", "done"]
    assert [p.position_id for p in filter_positions(rows, "Loss")] == ["lose"]
    assert len(filter_positions(rows, "all")) == 4
    with pytest.raises(ValueError):
        filter_positions(rows, "open")


def test_sort_puts_active_first_by_pnl_size() -> None:
    rows = [
        _position("wait", status=PositionStatus.WAITING),
        _position("small", pnl=1.0),
        _position("big", pnl=-9.0),
    ]
    assert [p.position_id for p in sorted(rows, key=_position_sort_key)] == ["big", "small", "wait"]


def test_unlocked_row_hides_entry_and_pnl() -> None:
    row = _position_row(_position("forced"))

    assert str(row[3]) == "ACTIVE*"
    assert str(row[5]) == "-"
    assert str(row[8]) == "-"
    assert str(row[10]) == "0/3 green"


def test_locked_row_colours_pnl() -> None:
    row = _position_row(
        _position(
            "short",
            pnl=-12.5,
            direction=Direction.SHORT,
            entry_price=65000.0,
            is_entry_price_locked=True,
            pnl_percentage=-2.5,
        ),
        price=66000.0,
    )

    assert str(row[5]) == "65,000.00"
    assert str(row[6]) == "66,000.00"
    assert str(row[8]) == "-12.50"
    assert row[8].style == "red"
    assert str(row[9]) == "-2.50%"


def test_rsi_progress_shows_live_value() -> None:
    row = _position_row(_position("rsi", status=PositionStatus.WAITING, params=RsiParams(threshold=30.0), live_rsi=41.237))
    assert str(row[10]) == "rsi 41.24/30"


def test_grid_progress_names_the_ladder_level() -> None:
    params = GridParams(lower_price=100.0, upper_price=200.0, num_grids=4)

    inside = _position_row(_position("grid", params=params, current_price=160.0))
    outside = _position_row(_position("grid", params=params, current_price=250.0))

    assert str(inside[10]) == "100.00-200.00 GRID 2"
    assert str(outside[10]) == "100.00-200.00 out of range"


def test_dca_progress_counts_reached_safety_orders() -> None:
    params = DcaParams(max_orders=3, initial_qty_percent=1.0, step_scale=2.0, volume_scale=2.0)
    dipped = _position("dca", params=params, entry_price=100.0, is_entry_price_locked=True, current_price=95.5)
    unlocked = _position("dca", params=params)

    assert str(_position_row(dipped)[10]) == "2/3 SO 7.00%"
    assert str(_position_row(unlocked)[10]) == "3 orders"
