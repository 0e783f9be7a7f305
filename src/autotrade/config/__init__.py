"""Configuration system."""

from autotrade.config.loader import load_config
from autotrade.config.schema import (
    AggregationConfig,
    AppConfig,
    EngineConfig,
    ExecutionConfig,
    RiskLimits,
    TradingConfig,
)

__all__ = [
    "AggregationConfig",
    "AppConfig",
    "EngineConfig",
    "ExecutionConfig",
    "RiskLimits",
    "TradingConfig",
    "load_config",
]
