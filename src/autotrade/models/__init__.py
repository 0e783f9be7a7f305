"""Pydantic domain models."""

from autotrade.models.position import Balance, EngineStatus, Position, TrackerStatus
from autotrade.models.signal import AggregatedSignal, Direction, RawSignal, SignalSource
from autotrade.models.trade import (
    ExecutionResult,
    GatewayResult,
    OrderRequest,
    QueuedTrade,
    TradeNotification,
    new_idempotency_key,
)

__all__ = [
    "AggregatedSignal",
    "Balance",
    "Direction",
    "EngineStatus",
    "ExecutionResult",
    "GatewayResult",
    "OrderRequest",
    "Position",
    "QueuedTrade",
    "RawSignal",
    "SignalSource",
    "TrackerStatus",
    "TradeNotification",
    "new_idempotency_key",
]
