"""Risk gate — read-only policy evaluation."""

from autotrade.risk.gate import (
    RiskState,
    RiskVerdict,
    TradeCandidate,
    check_allowed_instrument,
    check_daily_loss,
    check_drawdown,
    check_duplicate,
    check_hedging,
    check_max_positions,
    check_order_size,
    check_profit_target,
    evaluate,
)

__all__ = [
    "RiskState",
    "RiskVerdict",
    "TradeCandidate",
    "check_allowed_instrument",
    "check_daily_loss",
    "check_drawdown",
    "check_duplicate",
    "check_hedging",
    "check_max_positions",
    "check_order_size",
    "check_profit_target",
    "evaluate",
]
