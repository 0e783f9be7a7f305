"""PaperGateway — in-memory exchange account for dry runs and tests."""

from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from autotrade.models import Balance, GatewayResult, OrderRequest, Position
from autotrade.pricing import calculate_pnl

log = structlog.get_logger("paper_gateway")


@dataclass
class _Holding:
    side: str
    quantity: float
    entry_price: float
    margin: float
    leverage: float
    opened_at: datetime


class PaperGateway:
    """Simulated single-account gateway.

    Fills at the last price set with :meth:`set_price` (or the order's own
    price when none is known). Limit-IOC orders fill only when the market is
    inside the limit. Successful results are cached per idempotency key, so a
    replayed submission has exactly one effect.
    """

    def __init__(
        self,
        initial_balance: float = 10000.0,
        prices: dict[str, float] | None = None,
        fee_pct: float = 0.0,
    ) -> None:
        self.cash = initial_balance
        self.fee_pct = fee_pct
        self._prices: dict[str, float] = dict(prices or {})
        self._holdings: dict[str, _Holding] = {}
        self._results: dict[str, GatewayResult] = {}
        self._failures: deque[str | Exception] = deque()
        self._order_ids = itertools.count(1)
        # Every call, replays included, for inspection.
        self.orders: list[OrderRequest] = []
        self.close_calls: list[str] = []

    # ── Test hooks ────────────────────────────────────────────

    def set_price(self, instrument: str, price: float) -> None:
        self._prices[instrument] = price

    def fail_next(self, error: str | Exception, times: int = 1) -> None:
        """Make the next *times* execute/close calls fail with *error*."""
        for _ in range(times):
            self._failures.append(error)

    @property
    def executed_count(self) -> int:
        """Number of distinct orders that changed account state."""
        return len(self._results)

    def _take_failure(self) -> GatewayResult | None:
        if not self._failures:
            return None
        failure = self._failures.popleft()
        if isinstance(failure, Exception):
            raise failure
        return GatewayResult(ok=False, error=failure)

    def _next_order_id(self) -> str:
        return f"paper-{next(self._order_ids)}"

    # ── Contract ──────────────────────────────────────────────

    async def execute(self, order: OrderRequest) -> GatewayResult:
        self.orders.append(order)
        cached = self._results.get(order.idempotency_key)
        if cached is not None:
            log.info("paper_order_replayed", instrument=order.instrument, key=order.idempotency_key)
            return cached

        failure = self._take_failure()
        if failure is not None:
            return failure

        market = self._prices.get(order.instrument, order.price)
        if market is None or market <= 0:
            return GatewayResult(ok=False, error=f"no price for {order.instrument}")

        if order.order_type == "LIMIT" and order.price is not None:
            crossed = market <= order.price if order.side == "LONG" else market >= order.price
            if not crossed:
                if order.time_in_force == "IOC":
                    return GatewayResult(
                        ok=False,
                        error=f"IOC order not filled: market {market} outside limit {order.price}",
                    )
                return GatewayResult(ok=False, error="resting limit orders not supported")

        margin = order.amount_usd / max(order.leverage, 1e-9)
        fees = order.amount_usd * self.fee_pct
        if margin + fees > self.available:
            return GatewayResult(ok=False, error="Insufficient balance")

        quantity = order.amount_usd / market
        holding = self._holdings.get(order.instrument)
        if holding is not None and holding.side == order.side:
            total_qty = holding.quantity + quantity
            holding.entry_price = (
                holding.entry_price * holding.quantity + market * quantity
            ) / total_qty
            holding.quantity = total_qty
            holding.margin += margin
        else:
            self._holdings[order.instrument] = _Holding(
                side=order.side,
                quantity=quantity,
                entry_price=market,
                margin=margin,
                leverage=order.leverage,
                opened_at=datetime.now(timezone.utc),
            )
        self.cash -= fees

        result = GatewayResult(
            ok=True,
            order_id=self._next_order_id(),
            executed_price=market,
            quantity=quantity,
            fees=fees,
        )
        self._results[order.idempotency_key] = result
        log.info(
            "paper_order_filled",
            instrument=order.instrument,
            side=order.side,
            price=market,
            quantity=quantity,
        )
        return result

    async def close(self, instrument: str, idempotency_key: str | None = None) -> GatewayResult:
        self.close_calls.append(instrument)
        if idempotency_key is not None and idempotency_key in self._results:
            return self._results[idempotency_key]

        failure = self._take_failure()
        if failure is not None:
            return failure

        holding = self._holdings.get(instrument)
        if holding is None:
            return GatewayResult(ok=False, error=f"no open position for {instrument}")

        price = self._prices.get(instrument, holding.entry_price)
        pnl = calculate_pnl(holding.side, holding.entry_price, price, holding.quantity)
        fees = price * holding.quantity * self.fee_pct
        self.cash += pnl - fees
        del self._holdings[instrument]

        result = GatewayResult(
            ok=True,
            order_id=self._next_order_id(),
            executed_price=price,
            quantity=holding.quantity,
            fees=fees,
        )
        if idempotency_key is not None:
            self._results[idempotency_key] = result
        log.info("paper_position_closed", instrument=instrument, price=price, pnl=pnl)
        return result

    @property
    def available(self) -> float:
        return self.cash - sum(h.margin for h in self._holdings.values())

    def _unrealized(self, instrument: str, holding: _Holding) -> float:
        price = self._prices.get(instrument, holding.entry_price)
        return calculate_pnl(holding.side, holding.entry_price, price, holding.quantity)

    async def get_positions(self) -> list[Position]:
        return [
            Position(
                instrument=instrument,
                side=h.side,
                size=h.quantity,
                entry_price=h.entry_price,
                current_price=self._prices.get(instrument, h.entry_price),
                unrealized_pnl=self._unrealized(instrument, h),
                leverage=h.leverage,
                opened_at=h.opened_at,
            )
            for instrument, h in self._holdings.items()
        ]

    async def get_balance(self) -> Balance:
        unrealized = sum(self._unrealized(i, h) for i, h in self._holdings.items())
        return Balance(total=self.cash + unrealized, available=self.available)
