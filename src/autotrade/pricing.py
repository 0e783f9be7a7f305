"""Price and P&L arithmetic — pure functions, no I/O."""

from __future__ import annotations


def calculate_pnl(
    side: str,
    entry_price: float,
    exit_price: float,
    quantity: float,
) -> float:
    """Gross P&L of closing *quantity* units opened at *entry_price*. Fees are the caller's."""
    move = exit_price - entry_price
    return move * quantity if side == "LONG" else -move * quantity


def calculate_stop_price(side: str, entry_price: float, stop_loss_pct: float) -> float:
    """Default stop level *stop_loss_pct* against the position (below a long, above a short)."""
    direction = -1 if side == "LONG" else 1
    return entry_price * (1 + direction * stop_loss_pct)


def calculate_take_profit_price(side: str, entry_price: float, take_profit_pct: float) -> float:
    """Default target level *take_profit_pct* in the position's favour."""
    direction = 1 if side == "LONG" else -1
    return entry_price * (1 + direction * take_profit_pct)


def slippage_band(price: float, slippage_pct: float) -> tuple[float, float]:
    """Return (low, high) = price ∓ price * slippage_pct."""
    delta = price * slippage_pct
    return price - delta, price + delta


def protected_limit_price(side: str, price: float, slippage_pct: float) -> float:
    """Worst acceptable fill price for a slippage-protected order.

    LONG:  pay at most price * (1 + pct)
    SHORT: receive at least price * (1 - pct)
    """
    low, high = slippage_band(price, slippage_pct)
    return high if side == "LONG" else low


def exit_triggered(
    side: str,
    price: float,
    stop_loss: float | None,
    take_profit: float | None,
) -> str | None:
    """Return "stop_loss", "take_profit" or None. Stop-loss wins when both cross."""
    if stop_loss is not None:
        if side == "LONG" and price <= stop_loss:
            return "stop_loss"
        if side == "SHORT" and price >= stop_loss:
            return "stop_loss"
    if take_profit is not None:
        if side == "LONG" and price >= take_profit:
            return "take_profit"
        if side == "SHORT" and price <= take_profit:
            return "take_profit"
    return None
