"""Shared test fixtures and fakes."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from autotrade.db.engine import create_tables, init_engine, session_factory
from autotrade.models import AggregatedSignal, Balance, GatewayResult, OrderRequest, RawSignal, SignalSource

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def journal_sessions():
    """Session factory bound to a fresh in-memory SQLite journal."""
    engine = init_engine("sqlite://")
    create_tables(engine)
    return session_factory()


# ── Builders ──────────────────────────────────────────────────


def make_signal(
    source_id: str,
    direction: str = "LONG",
    confidence: float = 80.0,
    entry_price: float = 100.0,
    instrument: str = "BTC",
    observed_at: datetime = NOW,
    **kwargs,
) -> RawSignal:
    return RawSignal(
        id=kwargs.pop("id", f"{source_id}-{instrument}-{direction}-{entry_price}"),
        instrument=instrument,
        direction=direction,
        confidence=confidence,
        entry_price=entry_price,
        source_id=source_id,
        observed_at=observed_at,
        **kwargs,
    )


def make_consensus(
    instrument: str = "BTC",
    direction: str = "LONG",
    entry: float = 100.0,
    sources: tuple[str, ...] = ("a", "b"),
    **kwargs,
) -> AggregatedSignal:
    return AggregatedSignal(
        instrument=instrument,
        direction=direction,
        weighted_entry=entry,
        consensus_score=1.0,
        reliability=0.8,
        conflict_level=0.0,
        aggregated_confidence=80,
        agreement_count=len(sources),
        total_sources=len(sources),
        contributing_sources=[SignalSource(id=s, name=s) for s in sources],
        **kwargs,
    )


class BlockingGateway:
    """Gateway whose calls wait on ``release`` and are recorded in order."""

    def __init__(self, results: list[GatewayResult] | None = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.release = asyncio.Event()
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}
        self.max_total_active = 0
        self._results = list(results or [])

    def _enter(self, instrument: str) -> None:
        self.active[instrument] = self.active.get(instrument, 0) + 1
        self.max_active[instrument] = max(self.max_active.get(instrument, 0), self.active[instrument])
        self.max_total_active = max(self.max_total_active, sum(self.active.values()))

    def _exit(self, instrument: str) -> None:
        self.active[instrument] -= 1

    def _next_result(self) -> GatewayResult:
        if self._results:
            return self._results.pop(0)
        return GatewayResult(ok=True, order_id=f"order-{len(self.calls)}", executed_price=100.0, quantity=1.0)

    async def execute(self, order: OrderRequest) -> GatewayResult:
        self.calls.append(("execute", order.instrument))
        self._enter(order.instrument)
        try:
            await self.release.wait()
            return self._next_result()
        finally:
            self._exit(order.instrument)

    async def close(self, instrument: str, idempotency_key: str | None = None) -> GatewayResult:
        self.calls.append(("close", instrument))
        self._enter(instrument)
        try:
            await self.release.wait()
            return self._next_result()
        finally:
            self._exit(instrument)

    async def get_positions(self):
        return []

    async def get_balance(self) -> Balance:
        return Balance(total=0.0, available=0.0)
