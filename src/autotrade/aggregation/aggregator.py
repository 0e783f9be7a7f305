"""SignalAggregator — consensus across disagreeing signal sources."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from autotrade.config.schema import AggregationConfig
from autotrade.models import AggregatedSignal, RawSignal, SignalSource

log = structlog.get_logger("signal_aggregator")


def weighted_average(pairs: Iterable[tuple[float, float]]) -> float | None:
    """Σ value·weight / Σ weight, or None when there is nothing to weigh."""
    total_weight = 0.0
    weighted_sum = 0.0
    for value, weight in pairs:
        total_weight += weight
        weighted_sum += value * weight
    if total_weight <= 0:
        return None
    return weighted_sum / total_weight


class SignalAggregator:
    """Groups raw signals by instrument and emits consensus signals.

    Source reliability is process-wide state owned by the instance: it
    survives across aggregation passes and is only changed through
    :meth:`update_source_reliability`.
    """

    def __init__(self, config: AggregationConfig | None = None) -> None:
        self.config = config or AggregationConfig()
        self._sources: dict[str, SignalSource] = {}
        for src in self.config.sources:
            self._sources[src.id] = SignalSource(
                id=src.id,
                name=src.name or src.id,
                weight=src.weight,
                reliability_score=src.reliability_score,
            )

    # ── Sources ───────────────────────────────────────────────

    @property
    def sources(self) -> dict[str, SignalSource]:
        return dict(self._sources)

    def get_source(self, source_id: str) -> SignalSource:
        """Return the source, registering it with defaults on first sight."""
        source = self._sources.get(source_id)
        if source is None:
            source = SignalSource(
                id=source_id,
                name=source_id,
                weight=self.config.default_source_weight,
                reliability_score=self.config.default_source_reliability,
            )
            self._sources[source_id] = source
            log.info("source_registered", source_id=source_id)
        return source

    def update_source_reliability(self, source_id: str, performance: float) -> SignalSource:
        """Exponentially smooth a source's reliability toward *performance* (0–1)."""
        source = self.get_source(source_id)
        performance = min(max(performance, 0.0), 1.0)
        alpha = self.config.reliability_smoothing
        source.reliability_score = source.reliability_score * alpha + performance * (1 - alpha)
        source.last_update = datetime.now(timezone.utc)
        log.info(
            "source_reliability_updated",
            source_id=source_id,
            performance=performance,
            reliability=round(source.reliability_score, 4),
        )
        return source

    def update_config(self, config: AggregationConfig) -> None:
        """Swap thresholds at runtime. Known sources keep their reliability."""
        self.config = config
        for src in config.sources:
            if src.id not in self._sources:
                self._sources[src.id] = SignalSource(
                    id=src.id,
                    name=src.name or src.id,
                    weight=src.weight,
                    reliability_score=src.reliability_score,
                )
        log.info("aggregation_config_updated", **config.model_dump(exclude={"sources"}))

    # ── Aggregation ───────────────────────────────────────────

    def _coerce(self, item: RawSignal | Mapping[str, Any]) -> RawSignal | None:
        if isinstance(item, RawSignal):
            return item
        try:
            return RawSignal.model_validate(item)
        except ValidationError as exc:
            log.debug("malformed_signal_dropped", errors=exc.error_count())
            return None

    def _accepts(self, signal: RawSignal, cutoff: datetime, now: datetime) -> bool:
        if signal.observed_at < cutoff or signal.observed_at > now:
            return False
        if signal.confidence < self.config.min_confidence:
            return False
        allowed = self.config.allowed_timeframes
        if allowed and signal.timeframe not in allowed:
            return False
        return True

    def group_by_instrument(
        self,
        signals: Iterable[RawSignal | Mapping[str, Any]],
        now: datetime | None = None,
        window: timedelta | None = None,
    ) -> dict[str, list[RawSignal]]:
        """Window-filter signals and group them, keeping the latest per source."""
        now = now or datetime.now(timezone.utc)
        window = window if window is not None else timedelta(seconds=self.config.window_s)
        cutoff = now - window

        latest: dict[str, dict[str, RawSignal]] = defaultdict(dict)
        for item in signals:
            signal = self._coerce(item)
            if signal is None or not self._accepts(signal, cutoff, now):
                continue
            per_source = latest[signal.instrument]
            previous = per_source.get(signal.source_id)
            if previous is None or signal.observed_at >= previous.observed_at:
                per_source[signal.source_id] = signal

        return {
            instrument: sorted(per_source.values(), key=lambda s: s.observed_at)
            for instrument, per_source in latest.items()
        }

    def build_consensus(self, instrument: str, group: list[RawSignal]) -> AggregatedSignal | None:
        """Compute the consensus signal for one instrument, or None below threshold."""
        total = len(group)
        if total == 0:
            return None
        long_count = sum(1 for s in group if s.direction == "LONG")
        short_count = total - long_count
        if long_count == short_count:
            return None

        direction = "LONG" if long_count > short_count else "SHORT"
        agreement = max(long_count, short_count)
        consensus = agreement / total
        if consensus < self.config.consensus_threshold or total < self.config.min_sources:
            return None

        majority = [s for s in group if s.direction == direction]
        weighted_entry = weighted_average((s.entry_price, s.confidence) for s in majority)
        if weighted_entry is None:
            # Every majority signal had zero confidence.
            return None
        weighted_stop = weighted_average(
            (s.stop_loss, s.confidence) for s in majority if s.stop_loss is not None
        )
        weighted_target = weighted_average(
            (s.take_profit, s.confidence) for s in majority if s.take_profit is not None
        )
        leverages = [s.leverage for s in majority if s.leverage is not None]

        avg_confidence = sum(s.confidence for s in group) / total
        reliability = avg_confidence / 100
        return AggregatedSignal(
            instrument=instrument,
            direction=direction,
            weighted_entry=weighted_entry,
            weighted_stop_loss=weighted_stop,
            weighted_take_profit=weighted_target,
            consensus_score=consensus,
            reliability=reliability,
            conflict_level=1 - consensus,
            aggregated_confidence=round(reliability * consensus * 100),
            agreement_count=agreement,
            total_sources=total,
            contributing_sources=[self.get_source(s.source_id).model_copy() for s in group],
            timeframes=sorted({s.timeframe for s in group}),
            signal_ids=[s.id for s in group],
            leverage=min(leverages) if leverages else None,
        )

    def _rank(self, signal: AggregatedSignal) -> float:
        sources = signal.contributing_sources
        source_reliability = (
            sum(s.reliability_score for s in sources) / len(sources) if sources else 1.0
        )
        return signal.consensus_score * signal.reliability * source_reliability

    def aggregate(
        self,
        signals: Iterable[RawSignal | Mapping[str, Any]],
        now: datetime | None = None,
        window: timedelta | None = None,
    ) -> list[AggregatedSignal]:
        """Return consensus signals for every instrument that reaches the threshold.

        Malformed or out-of-window signals are dropped from their group; an
        empty result simply means no consensus this cycle.
        """
        grouped = self.group_by_instrument(signals, now=now, window=window)
        aggregated: list[AggregatedSignal] = []
        for instrument, group in grouped.items():
            consensus = self.build_consensus(instrument, group)
            if consensus is None:
                log.debug("no_consensus", instrument=instrument, signals=len(group))
                continue
            aggregated.append(consensus)

        aggregated.sort(key=self._rank, reverse=True)
        if aggregated:
            log.info(
                "signals_aggregated",
                instruments=[a.instrument for a in aggregated],
                groups=len(grouped),
            )
        return aggregated

    # ── Quality gate ──────────────────────────────────────────

    def quality_checks(self, signal: AggregatedSignal) -> dict[str, bool]:
        cfg = self.config
        return {
            "reliability": signal.reliability >= cfg.min_reliability,
            "conflict": signal.conflict_level <= cfg.max_conflict,
            "sources": len(signal.contributing_sources) >= cfg.min_sources,
            "confidence": signal.aggregated_confidence >= cfg.min_aggregated_confidence,
        }

    def validate_quality(self, signal: AggregatedSignal) -> bool:
        """Second, stricter gate: at least quality_pass_ratio of the checks must hold."""
        checks = self.quality_checks(signal)
        passed = sum(checks.values())
        score = passed / len(checks)
        ok = score >= self.config.quality_pass_ratio
        log.info(
            "signal_quality_checked",
            instrument=signal.instrument,
            consensus_score=round(signal.consensus_score, 4),
            reliability=round(signal.reliability, 4),
            conflict_level=round(signal.conflict_level, 4),
            sources=len(signal.contributing_sources),
            confidence=signal.aggregated_confidence,
            failed=[name for name, held in checks.items() if not held],
            passed=f"{passed}/{len(checks)}",
            ok=ok,
        )
        return ok
