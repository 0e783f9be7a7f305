"""Configuration schema — Pydantic models for config.yaml."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class SourceConfig(BaseModel):
    id: str
    name: str = ""
    weight: float = Field(default=1.0, ge=0.0, le=1.0)
    reliability_score: float = Field(default=0.8, ge=0.0, le=1.0)


def _default_sources() -> list[SourceConfig]:
    return [
        SourceConfig(id="enhanced-scanner", name="Enhanced Scanner", weight=0.4, reliability_score=0.85),
        SourceConfig(id="live-scanner", name="Live Scanner", weight=0.3, reliability_score=0.78),
        SourceConfig(id="quantum-analysis", name="Quantum Analysis", weight=0.3, reliability_score=0.82),
    ]


class AggregationConfig(BaseModel):
    window_s: float = 300.0
    consensus_threshold: float = 0.6
    min_sources: int = 2
    # Quality gate
    min_reliability: float = 0.7
    max_conflict: float = 0.4
    min_aggregated_confidence: float = 75.0
    quality_pass_ratio: float = 0.8
    # Source reliability feedback: new = old * smoothing + performance * (1 - smoothing)
    reliability_smoothing: float = 0.8
    default_source_weight: float = 1.0
    default_source_reliability: float = 0.8
    # Raw signal filters
    min_confidence: float = 0.0
    allowed_timeframes: list[str] = Field(default_factory=list)
    sources: list[SourceConfig] = Field(default_factory=_default_sources)


class RiskLimits(BaseModel):
    max_positions: int = 3
    max_order_size_usd: float = 500.0
    max_daily_loss: float = 200.0
    max_drawdown: float = 500.0
    max_leverage: float = 10.0
    allowed_instruments: list[str] = Field(default_factory=list)
    daily_profit_target: float | None = None


class ExecutionConfig(BaseModel):
    max_concurrent: int = Field(default=1, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_s: float = 2.0
    history_size: int = 500


class TradingConfig(BaseModel):
    enabled: bool = True
    slippage_pct: float = 0.005
    default_leverage: float = 1.0
    default_stop_loss_pct: float = 0.03
    default_take_profit_pct: float = 0.06
    refresh_interval_s: float = 30.0
    refresh_before_submit: bool = True
    close_on_stop_or_target: bool = True
    critical_error_patterns: list[str] = Field(default_factory=lambda: [
        "insufficient balance",
        "invalid api credentials",
        "invalid credentials",
        "account suspended",
        "rate limit lockout",
        "risk limit exceeded",
    ])


class EngineConfig(BaseModel):
    position_size_usd: float = 100.0
    aggregate_on_arrival: bool = True
    aggregation_interval_s: float = 0.0
    notify_rejections: bool = True
    buffer_limit: int = 5000


class GatewayConfig(BaseModel):
    kind: Literal["paper", "http"] = "paper"
    base_url: str = "http://localhost:8100"
    api_key: str | None = None
    timeout_s: float = 15.0
    paper_initial_balance: float = 10000.0


class NotificationConfig(BaseModel):
    log: bool = True
    webhook_url: str | None = None
    journal_url: str | None = None


class FeedConfig(BaseModel):
    ws_url: str | None = None
    reconnect_delay_s: float = 5.0


class ApiConfig(BaseModel):
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "json"
    service: str = "autotrade"


class AppConfig(BaseModel):
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    risk: RiskLimits = Field(default_factory=RiskLimits)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
