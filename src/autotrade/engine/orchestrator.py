"""AutomatedTradingEngine — signal buffer → consensus → risk gate → execution."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from autotrade.aggregation import SignalAggregator
from autotrade.config.schema import (
    AggregationConfig,
    EngineConfig,
    ExecutionConfig,
    RiskLimits,
    TradingConfig,
)
from autotrade.models import (
    AggregatedSignal,
    Direction,
    EngineStatus,
    ExecutionResult,
    RawSignal,
    TrackerStatus,
    TradeNotification,
)
from autotrade.notify import LogSink, NotificationSink
from autotrade.risk import TradeCandidate, evaluate
from autotrade.tracker import ClosedPosition, LiveTradingManager

log = structlog.get_logger("engine")

EngineListener = Callable[[EngineStatus], None]


class AutomatedTradingEngine:
    """Owns the signal buffer and drives the pipeline.

    At most one execution is in flight per instrument. The engine never
    touches positions directly; all account state lives in the tracker.
    """

    def __init__(
        self,
        aggregator: SignalAggregator,
        tracker: LiveTradingManager,
        sink: NotificationSink | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.tracker = tracker
        self.sink = sink or LogSink()
        self.config = config or EngineConfig()

        self._buffer: list[RawSignal] = []
        self._executions: dict[str, asyncio.Task] = {}
        self._executing_sides: dict[str, Direction] = {}
        self._background: set[asyncio.Task] = set()
        self._listeners: list[EngineListener] = []
        self._aggregation_task: asyncio.Task | None = None
        self._running = False
        self._last_signal_at: datetime | None = None
        self._last_emergency = False
        self.successful_trades = 0
        self.failed_trades = 0

        tracker.on_position_closed(self._on_position_closed)
        tracker.subscribe(self._on_tracker_status)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def buffer(self) -> list[RawSignal]:
        return list(self._buffer)

    def executing(self) -> list[str]:
        return sorted(self._executions)

    # ── Ingestion ─────────────────────────────────────────────

    async def on_signal(self, raw: RawSignal | Mapping[str, Any]) -> bool:
        """Buffer one signal. Returns False when it was malformed and dropped."""
        if isinstance(raw, RawSignal):
            signal = raw
        else:
            try:
                signal = RawSignal.model_validate(raw)
            except ValidationError as exc:
                log.warning("signal_dropped_malformed", errors=exc.error_count())
                return False

        self._buffer.append(signal)
        overflow = len(self._buffer) - self.config.buffer_limit
        if overflow > 0:
            del self._buffer[:overflow]
        self._last_signal_at = datetime.now(timezone.utc)
        log.debug(
            "signal_buffered",
            signal_id=signal.id,
            instrument=signal.instrument,
            direction=signal.direction,
            source_id=signal.source_id,
            buffered=len(self._buffer),
        )

        if self._running and self.config.aggregate_on_arrival:
            await self.process_buffer()
        return True

    def _prune(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.aggregator.config.window_s)
        self._buffer = [s for s in self._buffer if cutoff <= s.observed_at <= now]

    def _consume(self, instrument: str) -> None:
        self._buffer = [s for s in self._buffer if s.instrument != instrument]

    # ── Pipeline ──────────────────────────────────────────────

    async def process_buffer(self, now: datetime | None = None) -> list[AggregatedSignal]:
        """Run one aggregation pass and dispatch every approved consensus.

        Returns the consensus signals handed to execution.
        """
        now = now or datetime.now(timezone.utc)
        self._prune(now)
        if not self._buffer:
            return []
        if self.tracker.emergency_stop:
            log.debug("processing_skipped_emergency_stop", buffered=len(self._buffer))
            return []

        amount = self.config.position_size_usd
        dispatched: list[AggregatedSignal] = []
        for signal in self.aggregator.aggregate(self._buffer, now=now):
            instrument = signal.instrument
            if instrument in self._executions:
                log.debug("execution_already_in_flight", instrument=instrument)
                continue
            if not self.aggregator.validate_quality(signal):
                continue

            verdict = evaluate(
                TradeCandidate(instrument, signal.direction, amount),
                self.tracker.limits,
                self.tracker.risk_state(extra_in_flight=self._executing_sides),
            )
            self._consume(instrument)
            if not verdict.allowed:
                log.info(
                    "signal_rejected_by_risk",
                    instrument=instrument,
                    direction=signal.direction,
                    check=verdict.check,
                    reason=verdict.reason,
                )
                if self.config.notify_rejections:
                    await self._notify(TradeNotification(
                        event="rejected",
                        instrument=instrument,
                        signal=signal,
                        result=ExecutionResult(ok=False, instrument=instrument, kind="policy",
                                               reason=verdict.reason),
                        message=verdict.reason,
                    ))
                continue

            self._dispatch(signal, amount)
            dispatched.append(signal)
        return dispatched

    def _dispatch(self, signal: AggregatedSignal, amount_usd: float) -> None:
        instrument = signal.instrument
        self._executing_sides[instrument] = signal.direction
        task = asyncio.create_task(
            self._execute(signal, amount_usd), name=f"engine-execute-{instrument}",
        )
        self._executions[instrument] = task
        log.info(
            "consensus_dispatched",
            instrument=instrument,
            direction=signal.direction,
            consensus_score=round(signal.consensus_score, 4),
            confidence=signal.aggregated_confidence,
            amount_usd=amount_usd,
        )

    async def _execute(self, signal: AggregatedSignal, amount_usd: float) -> ExecutionResult:
        instrument = signal.instrument
        try:
            result = await self.tracker.execute_approved_signal(signal, amount_usd)
        except Exception as exc:
            log.exception("execution_raised", instrument=instrument)
            result = ExecutionResult(ok=False, instrument=instrument, kind="transient", reason=str(exc))
        finally:
            self._executing_sides.pop(instrument, None)
            self._executions.pop(instrument, None)

        if result.ok:
            self.successful_trades += 1
            await self._notify(TradeNotification(
                event="executed",
                instrument=instrument,
                signal=signal,
                result=result,
                message=f"{signal.direction} {instrument} at {result.executed_price}",
            ))
        elif result.kind == "policy":
            if self.config.notify_rejections:
                await self._notify(TradeNotification(
                    event="rejected", instrument=instrument, signal=signal, result=result,
                    message=result.reason or "",
                ))
        else:
            self.failed_trades += 1
            await self._notify(TradeNotification(
                event="failed", instrument=instrument, signal=signal, result=result,
                message=result.reason or "",
            ))
        self._broadcast()
        return result

    async def join(self) -> None:
        """Wait for every in-flight execution and pending notification."""
        while self._executions or self._background:
            await asyncio.gather(
                *self._executions.values(), *self._background, return_exceptions=True,
            )

    # ── Notifications ─────────────────────────────────────────

    async def _notify(self, notification: TradeNotification) -> None:
        try:
            await self.sink.notify(notification)
        except Exception:
            log.exception("notification_failed", notification_event=notification.event)

    def _notify_later(self, notification: TradeNotification) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._notify(notification))
        except RuntimeError:
            log.warning("notification_dropped_no_loop", notification_event=notification.event)
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_position_closed(self, closed: ClosedPosition) -> None:
        position = closed.position
        if closed.realized_pnl != 0:
            performance = 1.0 if closed.realized_pnl > 0 else 0.0
            for source_id in position.source_ids:
                self.aggregator.update_source_reliability(source_id, performance)
        self._notify_later(TradeNotification(
            event="closed",
            instrument=position.instrument,
            result=ExecutionResult(
                ok=True,
                instrument=position.instrument,
                kind="executed",
                reason=closed.reason,
                executed_price=closed.exit_price,
                quantity=position.size,
                realized_pnl=closed.realized_pnl,
            ),
            message=f"closed {position.side} {position.instrument} ({closed.reason})",
        ))

    def _on_tracker_status(self, status: TrackerStatus) -> None:
        if status.emergency_stop and not self._last_emergency:
            self._notify_later(TradeNotification(
                event="emergency_stop",
                message=status.emergency_reason or "emergency stop activated",
            ))
        self._last_emergency = status.emergency_stop
        self._broadcast()

    # ── Status ────────────────────────────────────────────────

    def get_status(self) -> EngineStatus:
        total = self.successful_trades + self.failed_trades
        return EngineStatus(
            is_running=self._running,
            active_positions=len(self.tracker.positions),
            daily_pnl=self.tracker.daily_pnl,
            total_trades=total,
            emergency_stop=self.tracker.emergency_stop,
            successful_trades=self.successful_trades,
            failed_trades=self.failed_trades,
            success_rate=(self.successful_trades / total * 100) if total else 0.0,
            total_drawdown=self.tracker.total_drawdown,
            emergency_reason=self.tracker.emergency_reason,
            last_signal_at=self._last_signal_at,
        )

    def subscribe(self, listener: EngineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _broadcast(self) -> None:
        if not self._listeners:
            return
        status = self.get_status()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                log.exception("engine_listener_error")

    # ── Operator actions ──────────────────────────────────────

    async def close_position(self, instrument: str, reason: str = "manual") -> ExecutionResult:
        return await self.tracker.close_position(instrument, reason)

    async def activate_emergency_stop(self, reason: str = "manual emergency stop") -> None:
        await self.tracker.activate_emergency_stop(reason)

    def reset_emergency_stop(self) -> bool:
        return self.tracker.reset_emergency_stop()

    def update_config(
        self,
        *,
        limits: RiskLimits | None = None,
        aggregation: AggregationConfig | None = None,
        trading: TradingConfig | None = None,
        execution: ExecutionConfig | None = None,
        engine: EngineConfig | None = None,
    ) -> None:
        """Apply new settings at runtime. Omitted sections are left as they are."""
        if limits is not None:
            self.tracker.update_limits(limits)
        if aggregation is not None:
            self.aggregator.update_config(aggregation)
        if trading is not None:
            self.tracker.update_config(trading)
        if execution is not None:
            self.tracker.queue.configure(
                max_concurrent=execution.max_concurrent,
                max_retries=execution.max_retries,
                retry_delay_s=execution.retry_delay_s,
            )
        if engine is not None:
            self.config = engine
            log.info("engine_config_updated", **engine.model_dump())
        self._broadcast()

    # ── Lifecycle ─────────────────────────────────────────────

    async def _aggregation_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.aggregation_interval_s)
            try:
                await self.process_buffer()
            except Exception:
                log.exception("aggregation_tick_error")

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.tracker.start()
        if self.config.aggregation_interval_s > 0:
            self._aggregation_task = asyncio.create_task(
                self._aggregation_loop(), name="engine-aggregation",
            )
        log.info(
            "engine_started",
            position_size_usd=self.config.position_size_usd,
            aggregate_on_arrival=self.config.aggregate_on_arrival,
            aggregation_interval_s=self.config.aggregation_interval_s,
        )
        self._broadcast()

    async def stop(self) -> None:
        """Stop loops and let in-flight executions finish."""
        if not self._running:
            return
        self._running = False
        if self._aggregation_task is not None:
            self._aggregation_task.cancel()
            try:
                await self._aggregation_task
            except asyncio.CancelledError:
                pass
            self._aggregation_task = None
        await self.join()
        await self.tracker.stop()
        log.info("engine_stopped", **self.get_status().model_dump(include={
            "active_positions", "total_trades", "daily_pnl",
        }))
        self._broadcast()
