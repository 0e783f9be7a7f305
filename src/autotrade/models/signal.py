"""Signal models — raw per-source signals, sources, and consensus signals."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Direction = Literal["LONG", "SHORT"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RawSignal(BaseModel):
    """A directional recommendation for one instrument from one source."""

    model_config = ConfigDict(frozen=True)

    id: str
    instrument: str = Field(min_length=1)
    direction: Direction
    confidence: float = Field(ge=0.0, le=100.0)
    entry_price: float = Field(gt=0.0)
    stop_loss: float | None = Field(default=None, gt=0.0)
    take_profit: float | None = Field(default=None, gt=0.0)
    timeframe: str = "1h"
    source_id: str = Field(min_length=1)
    observed_at: datetime = Field(default_factory=_utcnow)
    leverage: float | None = Field(default=None, gt=0.0)

    @field_validator("direction", mode="before")
    @classmethod
    def _normalise_direction(cls, value):
        if isinstance(value, str):
            value = value.upper()
            if value == "BUY":
                return "LONG"
            if value == "SELL":
                return "SHORT"
        return value

    @field_validator("observed_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class SignalSource(BaseModel):
    """A signal producer whose reliability is tracked across aggregation runs."""

    id: str
    name: str = ""
    weight: float = Field(default=1.0, ge=0.0, le=1.0)
    reliability_score: float = Field(default=0.8, ge=0.0, le=1.0)
    last_update: datetime = Field(default_factory=_utcnow)


class AggregatedSignal(BaseModel):
    """Consensus of several raw signals for one instrument."""

    instrument: str
    direction: Direction
    weighted_entry: float
    weighted_stop_loss: float | None = None
    weighted_take_profit: float | None = None
    consensus_score: float
    reliability: float
    conflict_level: float
    aggregated_confidence: int
    agreement_count: int
    total_sources: int
    contributing_sources: list[SignalSource] = Field(default_factory=list)
    timeframes: list[str] = Field(default_factory=list)
    signal_ids: list[str] = Field(default_factory=list)
    leverage: float | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def source_ids(self) -> list[str]:
        return [s.id for s in self.contributing_sources]
