"""Formatting + filtering helpers shared by the dashboard screens."""
from __future__ import annotations

from typing import Iterable

from rich.text import Text

from ..builder import dca_orders, grid_lines
from ..models import DcaParams, GridParams, Position, PositionStatus, StrategyKind
from ..pnl import _safe_float
from ..triggers import tracked_streak

FILTERS = ("all", "waiting", "active", "closed", "profit", "loss")

_STATUS_STYLES = {
    PositionStatus.PENDING: "bold #e5c07b",
    PositionStatus.WAITING: "bold #e5c07b",
    PositionStatus.ACTIVE: "bold #73d89e",
    PositionStatus.CLOSED: "dim #9aa0a6",
}

_KIND_LABELS = {
    StrategyKind.STREAK: "STRIKE",
    StrategyKind.RSI: "RSI",
    StrategyKind.MOVEMENT: "MOVE",
    StrategyKind.GRID: "GRID",
    StrategyKind.DCA: "DCA",
}


# region Formatting
def _fmt_money(value: float) -> str:
    return f"{value:,.2f}"


def _fmt_price(value: float | None) -> str:
    parsed = _safe_float(value)
    if parsed is None or parsed <= 0:
        return "-"
    if parsed >= 1:
        return f"{parsed:,.2f}"
    return f"{parsed:.6f}"
# endregion


def _pnl_text(value: float | None, *, prefix: str = "") -> Text:
    if value is None:
        return Text("")
    text = f"{prefix}{_fmt_money(value)}"
    if value > 0:
        return Text(text, style="green")
    if value < 0:
        return Text(text, style="red")
    return Text(text)


def _pnl_pct_value(pct: float | None) -> Text:
    if pct is None:
        return Text("")
    text = f"{pct:.2f}%"
    if pct > 0:
        return Text(text, style="green")
    if pct < 0:
        return Text(text, style="red")
    return Text(text)


def _status_text(position: Position) -> Text:
    label = position.status.value
    if position.is_active and not position.is_entry_price_locked:
        label = f"{label}*"
    return Text(label, style=_STATUS_STYLES.get(position.status, ""))


def _grid_level(params: GridParams, price: float | None) -> str | None:
    """Label of the grid line at or below `price`."""
    lines = grid_lines(params)
    current = _safe_float(price)
    if not lines or current is None or current <= 0:
        return None
    if current < lines[0].price or current > lines[-1].price:
        return "out of range"
    below = [line for line in lines if line.price <= current]
    return below[-1].label


def _dca_fill(params: DcaParams, position: Position) -> str | None:
    """Safety orders the price has reached and the margin share they commit."""
    if not position.is_entry_price_locked:
        return None
    orders = dca_orders(params, position.entry_price)
    current = _safe_float(position.current_price)
    if not orders or current is None or current <= 0:
        return None
    filled = [order for order in orders[1:] if current <= order.price]
    committed = orders[0].qty_percent + sum(order.qty_percent for order in filled)
    return f"{len(filled)}/{len(orders) - 1} SO {committed:.2f}%"


def _progress_text(position: Position) -> Text:
    """Strategy progress column: streak count, live RSI or movement."""
    params = position.params
    kind = position.kind
    if kind == StrategyKind.STREAK:
        count, colour = tracked_streak(
            getattr(params, "direction", "Auto"),
            position.current_green_streak,
            position.current_red_streak,
        )
        target = int(getattr(params, "consecutive_candles", 0) or 0)
        style = "#73d89e" if colour == "green" else "#ff5f87"
        return Text(f"{count}/{target} {colour}", style=style)
    if kind == StrategyKind.RSI:
        threshold = float(getattr(params, "threshold", 0.0) or 0.0)
        if position.live_rsi is None:
            return Text(f"rsi -/{threshold:g}", style="dim")
        return Text(f"rsi {position.live_rsi:.2f}/{threshold:g}")
    if kind == StrategyKind.MOVEMENT:
        coin = getattr(params, "movement_coin", "")
        if position.is_active:
            return Text(f"{position.progress:.0f}% of target")
        if position.movement is None:
            return Text(f"{coin} -", style="dim")
        return _pnl_text(position.movement, prefix=f"{coin} ")
    if isinstance(params, GridParams):
        span = f"{_fmt_price(params.lower_price)}-{_fmt_price(params.upper_price)}"
        level = _grid_level(params, position.current_price)
        if level is None:
            return Text(span)
        return Text(f"{span} {level}", style="dim" if level == "out of range" else "")
    if isinstance(params, DcaParams):
        fill = _dca_fill(params, position)
        if fill is not None:
            return Text(fill)
    return Text(f"{int(getattr(params, 'max_orders', 0) or 0)} orders")


def filter_positions(positions: Iterable[Position], name: str) -> list[Position]:
    key = str(name or "all").strip().lower()
    if key not in FILTERS:
        raise ValueError(f"Unknown position filter: {name!r}")
    out: list[Position] = []
    for position in positions:
        if key == "waiting" and not position.is_pending:
            continue
        if key == "active" and not position.is_active:
            continue
        if key == "closed" and not position.is_closed:
            continue
        if key == "profit" and not position.unrealized_pnl > 0:
            continue
        if key == "loss" and not position.unrealized_pnl < 0:
            continue
        out.append(position)
    return out


def _position_sort_key(position: Position) -> tuple[int, float]:
    rank = {PositionStatus.ACTIVE: 0, PositionStatus.PENDING: 1, PositionStatus.WAITING: 1}
    return rank.get(position.status, 2), -abs(position.unrealized_pnl)


def _position_row(position: Position, *, price: float | None = None) -> list[Text]:
    entry = position.entry_price if position.is_entry_price_locked else None
    # Unlocked rows keep showing P&L stored by an earlier session, if any.
    show_pnl = position.is_entry_price_locked or position.unrealized_pnl != 0
    return [
        Text(position.bot_name or position.bot_id),
        Text(_KIND_LABELS.get(position.kind, position.kind.value)),
        Text(position.symbol),
        _status_text(position),
        Text(position.direction.value, style="green" if position.direction.value == "LONG" else "red"),
        Text(_fmt_price(entry)),
        Text(_fmt_price(price if price is not None else position.current_price)),
        Text(f"{position.leverage:g}x"),
        _pnl_text(position.unrealized_pnl) if show_pnl else Text("-", style="dim"),
        _pnl_pct_value(position.pnl_percentage) if show_pnl else Text("-", style="dim"),
        _progress_text(position),
    ]
