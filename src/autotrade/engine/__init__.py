"""Trading engine — orchestrates aggregation, risk, and execution."""

from autotrade.engine.orchestrator import AutomatedTradingEngine

__all__ = ["AutomatedTradingEngine"]
