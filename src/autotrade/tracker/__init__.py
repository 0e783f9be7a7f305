"""Position tracking and live execution."""

from autotrade.tracker.manager import ClosedPosition, LiveTradingManager

__all__ = ["ClosedPosition", "LiveTradingManager"]
