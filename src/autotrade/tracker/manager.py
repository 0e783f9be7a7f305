"""LiveTradingManager — positions, pre-trade safety checks, emergency stop."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from autotrade.config.schema import RiskLimits, TradingConfig
from autotrade.execution.errors import ErrorKind, QueueHaltedError
from autotrade.execution.gateway import ExecutionGateway
from autotrade.execution.queue import ExecutionOutcome, ExecutionQueue
from autotrade.models import (
    AggregatedSignal,
    Balance,
    Direction,
    ExecutionResult,
    GatewayResult,
    OrderRequest,
    Position,
    TrackerStatus,
    new_idempotency_key,
)
from autotrade.pricing import (
    calculate_pnl,
    calculate_stop_price,
    calculate_take_profit_price,
    exit_triggered,
    protected_limit_price,
)
from autotrade.risk import RiskState, RiskVerdict, TradeCandidate, evaluate

log = structlog.get_logger("live_trading")


@dataclass
class ClosedPosition:
    """Emitted to close listeners after a position leaves the book."""

    position: Position
    exit_price: float
    realized_pnl: float
    reason: str


StatusListener = Callable[[TrackerStatus], None]
CloseListener = Callable[[ClosedPosition], None]


class LiveTradingManager:
    """Single writer for the position map and the emergency-stop flag.

    Emergency stop is a latch: ``Normal -> Tripped`` on a critical gateway
    error or manual activation, ``Tripped -> Normal`` only through
    :meth:`reset_emergency_stop`.
    """

    def __init__(
        self,
        gateway: ExecutionGateway,
        queue: ExecutionQueue,
        config: TradingConfig | None = None,
        limits: RiskLimits | None = None,
    ) -> None:
        self.gateway = gateway
        self.queue = queue
        self.config = config or TradingConfig()
        self.limits = limits or RiskLimits()

        self._positions: dict[str, Position] = {}
        self._in_flight: dict[str, Direction] = {}
        # Instruments with a close awaiting the queue or gateway, with a count.
        self._closing: dict[str, int] = {}
        self._marks: dict[str, float] = {}
        self._emergency_reason: str | None = None

        self._day_key = ""
        self._realized_today = 0.0
        self._realized_total = 0.0
        self._equity: float | None = None
        self._peak_equity: float | None = None
        self._last_refresh: datetime | None = None

        self.total_trades = 0
        self.failed_trades = 0
        # (instrument, reason) for every close attempt, successful or not.
        self.close_attempts: list[tuple[str, str]] = []

        self._status_listeners: list[StatusListener] = []
        self._close_listeners: list[CloseListener] = []
        self._refresh_task: asyncio.Task | None = None

    # ── State ─────────────────────────────────────────────────

    @property
    def emergency_stop(self) -> bool:
        return self._emergency_reason is not None

    @property
    def emergency_reason(self) -> str | None:
        return self._emergency_reason

    @property
    def positions(self) -> dict[str, Position]:
        return dict(self._positions)

    def _roll_day(self, now: datetime | None = None) -> None:
        """Reset daily accumulators on a new UTC day."""
        today = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
        if self._day_key != today:
            self._realized_today = 0.0
            self._day_key = today

    @property
    def daily_pnl(self) -> float:
        self._roll_day()
        unrealized = sum(p.unrealized_pnl for p in self._positions.values())
        return self._realized_today + unrealized

    @property
    def total_drawdown(self) -> float:
        """Equity minus peak equity (<= 0). Zero until a balance has been seen."""
        if self._equity is None or self._peak_equity is None:
            return 0.0
        return min(0.0, self._equity - self._peak_equity)

    def risk_state(self, extra_in_flight: dict[str, Direction] | None = None) -> RiskState:
        in_flight = dict(self._in_flight)
        if extra_in_flight:
            in_flight.update(extra_in_flight)
        return RiskState(
            open_positions=dict(self._positions),
            in_flight=in_flight,
            daily_pnl=self.daily_pnl,
            total_drawdown=self.total_drawdown,
        )

    def get_status(self) -> TrackerStatus:
        return TrackerStatus(
            enabled=self.config.enabled,
            emergency_stop=self.emergency_stop,
            emergency_reason=self._emergency_reason,
            active_positions=len(self._positions),
            in_flight=sorted(self._in_flight),
            daily_pnl=self.daily_pnl,
            realized_pnl=self._realized_total,
            total_drawdown=self.total_drawdown,
            equity=self._equity,
            last_refresh=self._last_refresh,
            positions=[p.model_copy() for p in self._positions.values()],
        )

    # ── Listeners ─────────────────────────────────────────────

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register for status snapshots pushed on state transitions."""
        self._status_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return unsubscribe

    def on_position_closed(self, listener: CloseListener) -> None:
        self._close_listeners.append(listener)

    def _emit_status(self) -> None:
        if not self._status_listeners:
            return
        status = self.get_status()
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                log.exception("status_listener_error")

    def _emit_closed(self, closed: ClosedPosition) -> None:
        for listener in list(self._close_listeners):
            try:
                listener(closed)
            except Exception:
                log.exception("close_listener_error", instrument=closed.position.instrument)

    # ── Configuration ─────────────────────────────────────────

    def update_limits(self, limits: RiskLimits) -> None:
        self.limits = limits
        log.info("risk_limits_updated", **limits.model_dump())

    def update_config(self, config: TradingConfig) -> None:
        self.config = config
        self.queue.critical_patterns = tuple(config.critical_error_patterns)
        log.info("trading_config_updated", **config.model_dump(exclude={"critical_error_patterns"}))

    # ── Safety checks ─────────────────────────────────────────

    def perform_safety_checks(
        self,
        instrument: str,
        side: Direction,
        amount_usd: float,
    ) -> RiskVerdict:
        """Re-run the risk gate against the locally cached account state.

        The caller's own in-flight reservation for *instrument* is excluded.
        """
        state = self.risk_state()
        in_flight = dict(state.in_flight)
        in_flight.pop(instrument, None)
        state.in_flight = in_flight
        return evaluate(TradeCandidate(instrument, side, amount_usd), self.limits, state)

    # ── Order construction ────────────────────────────────────

    def build_order(self, signal: AggregatedSignal, amount_usd: float) -> OrderRequest:
        side = signal.direction
        price = signal.weighted_entry
        leverage = min(signal.leverage or self.config.default_leverage, self.limits.max_leverage)

        stop_loss = signal.weighted_stop_loss
        if stop_loss is None and self.config.default_stop_loss_pct > 0:
            stop_loss = calculate_stop_price(side, price, self.config.default_stop_loss_pct)
        take_profit = signal.weighted_take_profit
        if take_profit is None and self.config.default_take_profit_pct > 0:
            take_profit = calculate_take_profit_price(side, price, self.config.default_take_profit_pct)

        order = OrderRequest(
            instrument=signal.instrument,
            side=side,
            amount_usd=amount_usd,
            leverage=leverage,
            order_type="MARKET",
            stop_loss=stop_loss,
            take_profit=take_profit,
            metadata={
                "signal_ids": signal.signal_ids,
                "consensus_score": signal.consensus_score,
                "automated": True,
            },
        )
        return self.apply_slippage_protection(order, self._marks.get(signal.instrument, price))

    def apply_slippage_protection(self, order: OrderRequest, current_price: float | None) -> OrderRequest:
        """Turn a market order into a limit-IOC order bounded by the slippage band."""
        pct = self.config.slippage_pct
        if pct <= 0 or order.order_type != "MARKET" or not current_price:
            return order
        limit = protected_limit_price(order.side, current_price, pct)
        return order.model_copy(update={
            "order_type": "LIMIT",
            "time_in_force": "IOC",
            "price": limit,
            "metadata": {
                **order.metadata,
                "slippage_pct": pct,
                "reference_price": current_price,
                "protected_price": limit,
            },
        })

    # ── Execution ─────────────────────────────────────────────

    async def execute_approved_signal(self, signal: AggregatedSignal, amount_usd: float) -> ExecutionResult:
        """Submit an approved consensus signal and track the resulting position."""
        instrument = signal.instrument
        if not self.config.enabled:
            return ExecutionResult(ok=False, instrument=instrument, kind="disabled",
                                   reason="live trading is disabled")
        if self.emergency_stop:
            return ExecutionResult(ok=False, instrument=instrument, kind="halted",
                                   reason=f"emergency stop is active: {self._emergency_reason}")
        if instrument in self._in_flight:
            return ExecutionResult(ok=False, instrument=instrument, kind="policy",
                                   reason=f"duplicate: execution already in flight for {instrument}")

        self._in_flight[instrument] = signal.direction
        try:
            if self.config.refresh_before_submit:
                await self.refresh()
            if self.emergency_stop:
                return ExecutionResult(ok=False, instrument=instrument, kind="halted",
                                       reason=f"emergency stop is active: {self._emergency_reason}")

            verdict = self.perform_safety_checks(instrument, signal.direction, amount_usd)
            if not verdict.allowed:
                log.info("safety_check_rejected", instrument=instrument, check=verdict.check,
                         reason=verdict.reason)
                return ExecutionResult(ok=False, instrument=instrument, kind="policy",
                                       reason=verdict.reason)

            order = self.build_order(signal, amount_usd)
            try:
                task_id = self.queue.submit(order)
            except QueueHaltedError as exc:
                return ExecutionResult(ok=False, instrument=instrument, kind="halted", reason=str(exc))

            log.info(
                "live_trade_submitted",
                task_id=task_id,
                instrument=instrument,
                side=order.side,
                amount_usd=amount_usd,
                order_type=order.order_type,
                limit_price=order.price,
            )
            outcome = await self.queue.wait(task_id)
            return await self._handle_open_outcome(signal, order, outcome)
        finally:
            self._in_flight.pop(instrument, None)
            self._emit_status()

    async def _handle_open_outcome(
        self,
        signal: AggregatedSignal,
        order: OrderRequest,
        outcome: ExecutionOutcome,
    ) -> ExecutionResult:
        instrument = signal.instrument
        if outcome.ok and outcome.result is not None:
            position = self._track_new_position(order, outcome.result, signal)
            self.total_trades += 1
            reason = None
            if self.emergency_stop:
                # Filled after the stop tripped: flatten it right away.
                log.warning("fill_after_emergency_stop", instrument=instrument,
                            order_id=outcome.result.order_id)
                unwind = await self.close_position(instrument, "emergency_stop")
                reason = "unwound after emergency stop" if unwind.ok else (
                    f"unwind after emergency stop failed: {unwind.reason}"
                )
            return ExecutionResult(
                ok=True,
                instrument=instrument,
                kind="executed",
                reason=reason,
                order_id=outcome.result.order_id,
                executed_price=position.entry_price,
                quantity=position.size,
                trade_id=outcome.trade.id,
            )

        self.failed_trades += 1
        reason = outcome.error or "trade execution failed"
        if outcome.trade.status == "cancelled":
            return ExecutionResult(ok=False, instrument=instrument, kind="halted",
                                   reason=reason, trade_id=outcome.trade.id)
        if outcome.error_kind is ErrorKind.CRITICAL:
            log.error("critical_execution_error", instrument=instrument, error=reason)
            await self.activate_emergency_stop(f"critical error on {instrument}: {reason}")
            return ExecutionResult(ok=False, instrument=instrument, kind="critical",
                                   reason=reason, trade_id=outcome.trade.id)
        return ExecutionResult(ok=False, instrument=instrument, kind="transient",
                               reason=reason, trade_id=outcome.trade.id)

    def _track_new_position(
        self,
        order: OrderRequest,
        result: GatewayResult,
        signal: AggregatedSignal,
    ) -> Position:
        entry = result.executed_price or order.price or signal.weighted_entry
        size = result.quantity if result.quantity is not None else order.amount_usd / entry
        position = Position(
            instrument=order.instrument,
            side=order.side,
            size=size,
            entry_price=entry,
            current_price=entry,
            unrealized_pnl=0.0,
            leverage=order.leverage,
            stop_loss=order.stop_loss,
            take_profit=order.take_profit,
            source_ids=signal.source_ids,
        )
        self._positions[order.instrument] = position
        self._marks[order.instrument] = entry
        if result.fees:
            self._record_realized(-result.fees)
        log.info(
            "position_opened",
            instrument=position.instrument,
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
            leverage=position.leverage,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
        )
        return position

    def _record_realized(self, pnl: float) -> None:
        self._roll_day()
        self._realized_today += pnl
        self._realized_total += pnl

    # ── Closing ───────────────────────────────────────────────

    async def _direct_close(self, instrument: str, idempotency_key: str) -> GatewayResult:
        try:
            return await self.gateway.close(instrument, idempotency_key)
        except Exception as exc:
            log.warning("direct_close_raised", instrument=instrument, error=str(exc), exc_info=True)
            return GatewayResult(ok=False, error=str(exc) or type(exc).__name__)

    async def close_position(self, instrument: str, reason: str = "manual") -> ExecutionResult:
        """Close the position on *instrument*; realized P&L uses the reported fill."""
        position = self._positions.get(instrument)
        if position is None:
            return ExecutionResult(ok=False, instrument=instrument, kind="policy",
                                   reason=f"no position found for {instrument}")

        self.close_attempts.append((instrument, reason))
        self._closing[instrument] = self._closing.get(instrument, 0) + 1
        try:
            return await self._close(position, reason)
        finally:
            remaining = self._closing[instrument] - 1
            if remaining:
                self._closing[instrument] = remaining
            else:
                del self._closing[instrument]

    async def _close(self, position: Position, reason: str) -> ExecutionResult:
        instrument = position.instrument
        key = new_idempotency_key()
        outcome: ExecutionOutcome | None = None
        if self.emergency_stop or self.queue.halted:
            result = await self._direct_close(instrument, key)
        else:
            order = OrderRequest(
                instrument=instrument,
                side=position.side,
                amount_usd=max(position.notional, 1e-9),
                leverage=position.leverage,
                reduce_only=True,
                idempotency_key=key,
                metadata={"action": "close_position", "reason": reason},
            )
            try:
                task_id = self.queue.submit(order, action="close")
            except QueueHaltedError:
                result = await self._direct_close(instrument, key)
            else:
                outcome = await self.queue.wait(task_id)
                result = outcome.result or GatewayResult(ok=False, error=outcome.error)

        if not result.ok:
            log.error("position_close_failed", instrument=instrument, reason=reason, error=result.error)
            if (
                outcome is not None
                and outcome.error_kind is ErrorKind.CRITICAL
                and not self.emergency_stop
            ):
                await self.activate_emergency_stop(f"critical error closing {instrument}: {result.error}")
            return ExecutionResult(ok=False, instrument=instrument, kind="transient",
                                   reason=result.error or "failed to close position")

        exit_price = result.executed_price or position.current_price
        quantity = result.quantity or position.size
        pnl = calculate_pnl(position.side, position.entry_price, exit_price, quantity) - (result.fees or 0.0)
        self._finalize_close(position, exit_price, pnl, reason)
        return ExecutionResult(
            ok=True,
            instrument=instrument,
            kind="executed",
            order_id=result.order_id,
            executed_price=exit_price,
            quantity=quantity,
            realized_pnl=pnl,
        )

    def _finalize_close(self, position: Position, exit_price: float, pnl: float, reason: str) -> None:
        if self._positions.pop(position.instrument, None) is None:
            # Already accounted for by another close path.
            log.debug("position_close_already_recorded", instrument=position.instrument, reason=reason)
            return
        self._record_realized(pnl)
        log.info(
            "position_closed",
            instrument=position.instrument,
            side=position.side,
            reason=reason,
            entry_price=position.entry_price,
            exit_price=exit_price,
            realized_pnl=pnl,
        )
        self._emit_closed(ClosedPosition(position=position, exit_price=exit_price,
                                         realized_pnl=pnl, reason=reason))
        self._emit_status()

    async def check_exits(self) -> list[str]:
        """Close positions whose mark has crossed their stop-loss or take-profit."""
        closed: list[str] = []
        for instrument, position in list(self._positions.items()):
            trigger = exit_triggered(
                position.side, position.current_price, position.stop_loss, position.take_profit,
            )
            if trigger is None:
                continue
            result = await self.close_position(instrument, trigger)
            if result.ok:
                closed.append(instrument)
        return closed

    # ── Emergency stop ────────────────────────────────────────

    async def activate_emergency_stop(self, reason: str) -> None:
        """Trip the latch, halt the queue, and try to flatten every position."""
        if self.emergency_stop:
            log.warning("emergency_stop_already_active", reason=reason)
            return

        self._emergency_reason = reason
        cancelled = self.queue.halt(reason)
        log.critical("emergency_stop_activated", reason=reason, cancelled_tasks=cancelled,
                     open_positions=len(self._positions))
        self._emit_status()

        instruments = list(self._positions)
        results = await asyncio.gather(
            *(self.close_position(i, "emergency_stop") for i in instruments),
            return_exceptions=True,
        )
        for instrument, result in zip(instruments, results):
            if isinstance(result, BaseException):
                log.error("emergency_close_raised", instrument=instrument, error=str(result))
            elif not result.ok:
                log.error("emergency_close_failed", instrument=instrument, error=result.reason)
        self._emit_status()

    def reset_emergency_stop(self) -> bool:
        """Operator action: re-arm trading after an emergency stop."""
        if not self.emergency_stop:
            return False
        log.warning("emergency_stop_reset", previous_reason=self._emergency_reason)
        self._emergency_reason = None
        self.queue.resume()
        self._emit_status()
        return True

    # ── Account refresh ───────────────────────────────────────

    async def refresh(self) -> bool:
        """Re-sync positions and balance from the gateway. Best-effort."""
        try:
            live_positions = await self.gateway.get_positions()
            balance = await self.gateway.get_balance()
        except Exception as exc:
            log.warning("account_refresh_failed", error=str(exc), exc_info=True)
            return False

        self._sync_positions(live_positions)
        self._update_balance(balance)
        self._last_refresh = datetime.now(timezone.utc)
        return True

    def _sync_positions(self, live_positions: list[Position]) -> None:
        synced: dict[str, Position] = {}
        for live in live_positions:
            if live.size <= 0:
                continue
            local = self._positions.get(live.instrument)
            if local is not None:
                live = live.model_copy(update={
                    "stop_loss": live.stop_loss if live.stop_loss is not None else local.stop_loss,
                    "take_profit": live.take_profit if live.take_profit is not None else local.take_profit,
                    "source_ids": live.source_ids or local.source_ids,
                    "opened_at": local.opened_at,
                })
            synced[live.instrument] = live
            self._marks[live.instrument] = live.current_price

        for instrument, local in self._positions.items():
            if instrument in synced:
                continue
            if instrument in self._closing:
                # Our own close is settling; it records the P&L when it returns.
                synced[instrument] = local
                continue
            if instrument in self._in_flight:
                continue
            # Closed on the exchange side; last unrealized is the best estimate.
            log.warning("position_closed_externally", instrument=instrument,
                        estimated_pnl=local.unrealized_pnl)
            self._record_realized(local.unrealized_pnl)
            self._emit_closed(ClosedPosition(position=local, exit_price=local.current_price,
                                             realized_pnl=local.unrealized_pnl, reason="external"))

        self._positions = synced
        log.debug("positions_synced", count=len(synced))

    def _update_balance(self, balance: Balance) -> None:
        self._equity = balance.total
        if self._peak_equity is None or balance.total > self._peak_equity:
            self._peak_equity = balance.total
        log.debug("balance_updated", total=balance.total, available=balance.available,
                  daily_pnl=self.daily_pnl, drawdown=self.total_drawdown)

    # ── Lifecycle ─────────────────────────────────────────────

    async def _refresh_loop(self) -> None:
        while True:
            try:
                if await self.refresh():
                    if self.config.close_on_stop_or_target and not self.emergency_stop:
                        await self.check_exits()
                    self._emit_status()
            except Exception:
                log.exception("refresh_tick_error")
            await asyncio.sleep(self.config.refresh_interval_s)

    async def start(self) -> None:
        """Start the periodic account refresh."""
        if self._refresh_task is not None:
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="account-refresh")
        log.info("live_trading_started", refresh_interval_s=self.config.refresh_interval_s)

    async def stop(self) -> None:
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        try:
            await self._refresh_task
        except asyncio.CancelledError:
            pass
        self._refresh_task = None
        log.info("live_trading_stopped")
