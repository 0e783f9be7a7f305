"""Position and account models."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from autotrade.models.signal import Direction


class Position(BaseModel):
    """An open position on one instrument. At most one per instrument."""

    instrument: str
    side: Direction
    size: float
    entry_price: float
    current_price: float
    unrealized_pnl: float = 0.0
    leverage: float = 1.0
    stop_loss: float | None = None
    take_profit: float | None = None
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_ids: list[str] = Field(default_factory=list)

    @property
    def notional(self) -> float:
        return self.size * self.current_price


class Balance(BaseModel):
    """Account balance as reported by the gateway."""

    total: float
    available: float
    currency: str = "USD"


class EngineStatus(BaseModel):
    """Snapshot of engine state. Recomputed on demand, never the source of truth."""

    is_running: bool
    active_positions: int
    daily_pnl: float
    total_trades: int
    emergency_stop: bool
    successful_trades: int = 0
    failed_trades: int = 0
    success_rate: float = 0.0
    total_drawdown: float = 0.0
    emergency_reason: str | None = None
    last_signal_at: datetime | None = None


class TrackerStatus(BaseModel):
    """Snapshot of the position tracker."""

    enabled: bool
    emergency_stop: bool
    emergency_reason: str | None = None
    active_positions: int
    in_flight: list[str] = Field(default_factory=list)
    daily_pnl: float
    realized_pnl: float
    total_drawdown: float
    equity: float | None = None
    last_refresh: datetime | None = None
    positions: list[Position] = Field(default_factory=list)
