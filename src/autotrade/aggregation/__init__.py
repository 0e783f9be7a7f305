"""Signal aggregation — consensus scoring across sources."""

from autotrade.aggregation.aggregator import SignalAggregator, weighted_average

__all__ = ["SignalAggregator", "weighted_average"]
