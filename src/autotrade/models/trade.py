"""Order, queue, and execution result models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from autotrade.models.signal import AggregatedSignal, Direction

TradeStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
TradeAction = Literal["open", "close"]
ResultKind = Literal["executed", "policy", "transient", "critical", "halted", "disabled"]


def new_idempotency_key() -> str:
    return uuid.uuid4().hex


class OrderRequest(BaseModel):
    """A submission to the execution gateway."""

    instrument: str
    side: Direction
    amount_usd: float = Field(gt=0.0)
    leverage: float = 1.0
    order_type: Literal["MARKET", "LIMIT"] = "MARKET"
    time_in_force: Literal["GTC", "IOC"] = "GTC"
    price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    idempotency_key: str = Field(default_factory=new_idempotency_key)
    reduce_only: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class GatewayResult(BaseModel):
    """What the gateway reports back for an execute or close call."""

    ok: bool
    order_id: str | None = None
    executed_price: float | None = None
    quantity: float | None = None
    fees: float | None = None
    error: str | None = None


class QueuedTrade(BaseModel):
    """A unit of work in the execution queue."""

    id: str = Field(default_factory=lambda: f"trade_{uuid.uuid4().hex[:12]}")
    instrument: str
    side: Direction
    amount_usd: float
    leverage: float = 1.0
    action: TradeAction = "open"
    priority: int = 0
    retries: int = 0
    max_retries: int = 3
    status: TradeStatus = "pending"
    idempotency_key: str
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None


class ExecutionResult(BaseModel):
    """Typed outcome of an execution or close request."""

    ok: bool
    instrument: str
    kind: ResultKind
    reason: str | None = None
    order_id: str | None = None
    executed_price: float | None = None
    quantity: float | None = None
    realized_pnl: float | None = None
    trade_id: str | None = None


class TradeNotification(BaseModel):
    """Payload pushed to notification sinks."""

    event: Literal["executed", "failed", "rejected", "closed", "emergency_stop"]
    instrument: str | None = None
    signal: AggregatedSignal | None = None
    result: ExecutionResult | None = None
    message: str = ""
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
