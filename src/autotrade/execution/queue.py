"""ExecutionQueue — bounded-concurrency order runner with retries and idempotency."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from autotrade.execution.errors import (
    DEFAULT_CRITICAL_PATTERNS,
    ErrorKind,
    QueueHaltedError,
    classify_error,
)
from autotrade.execution.gateway import ExecutionGateway
from autotrade.models import GatewayResult, OrderRequest, QueuedTrade
from autotrade.models.trade import TradeAction

log = structlog.get_logger("execution_queue")

# Higher runs first; FIFO within a class.
PRIORITY_NEW = 0
PRIORITY_RETRY = 10
PRIORITY_CLOSE = 20


@dataclass
class ExecutionOutcome:
    """Terminal state of a queued trade."""

    trade: QueuedTrade
    result: GatewayResult | None = None
    error_kind: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.trade.status == "completed"

    @property
    def error(self) -> str | None:
        return self.trade.last_error


@dataclass
class QueueMetrics:
    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    retry_count: int = 0
    cancelled_count: int = 0
    last_processed_at: datetime | None = None


@dataclass
class _Entry:
    trade: QueuedTrade
    order: OrderRequest
    future: asyncio.Future = field(repr=False)


class ExecutionQueue:
    """Runs gateway submissions with at most ``max_concurrent`` in flight.

    Tasks for the same instrument never overlap. A transient failure puts the
    task back as ``pending`` with retry priority until ``max_retries`` is
    spent; critical failures are terminal immediately. Nothing is dropped:
    every task ends ``completed``, ``failed`` or ``cancelled`` and its
    awaiting caller receives an :class:`ExecutionOutcome`.
    """

    def __init__(
        self,
        gateway: ExecutionGateway,
        max_concurrent: int = 1,
        max_retries: int = 3,
        retry_delay_s: float = 2.0,
        critical_patterns: Iterable[str] = DEFAULT_CRITICAL_PATTERNS,
        history_size: int = 500,
    ) -> None:
        self.gateway = gateway
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.critical_patterns = tuple(critical_patterns)
        self.history_size = history_size

        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._entries: dict[str, _Entry] = {}
        self._by_key: dict[str, str] = {}
        self._processing: dict[str, asyncio.Task] = {}
        self._active_instruments: set[str] = set()
        self._archive: OrderedDict[str, _Entry] = OrderedDict()
        self._idle: asyncio.Event | None = None
        self._halted: str | None = None
        self._metrics = QueueMetrics()

    # ── Submission ────────────────────────────────────────────

    def submit(self, order: OrderRequest, action: TradeAction = "open") -> str:
        """Enqueue *order* and return its task id without waiting.

        A live or completed task with the same idempotency key is returned
        instead of enqueueing a duplicate.
        """
        if self._halted is not None:
            raise QueueHaltedError(f"execution queue halted: {self._halted}")

        existing_id = self._by_key.get(order.idempotency_key)
        if existing_id is not None:
            existing = self.get(existing_id)
            if existing is not None and existing.status in ("pending", "processing", "completed"):
                log.info(
                    "duplicate_submission_ignored",
                    task_id=existing_id,
                    instrument=order.instrument,
                    key=order.idempotency_key,
                )
                return existing_id

        loop = asyncio.get_running_loop()
        trade = QueuedTrade(
            instrument=order.instrument,
            side=order.side,
            amount_usd=order.amount_usd,
            leverage=order.leverage,
            action=action,
            priority=PRIORITY_CLOSE if action == "close" else PRIORITY_NEW,
            max_retries=self.max_retries,
            idempotency_key=order.idempotency_key,
        )
        self._entries[trade.id] = _Entry(trade=trade, order=order, future=loop.create_future())
        self._by_key[order.idempotency_key] = trade.id
        self._push(trade)
        self._idle_event().clear()

        log.info(
            "trade_queued",
            task_id=trade.id,
            instrument=trade.instrument,
            side=trade.side,
            action=action,
            amount_usd=trade.amount_usd,
        )
        self._start_ready()
        return trade.id

    async def wait(self, task_id: str) -> ExecutionOutcome:
        """Await the terminal outcome of a task."""
        entry = self._entries.get(task_id) or self._archive.get(task_id)
        if entry is None:
            raise KeyError(task_id)
        return await asyncio.shield(entry.future)

    async def join(self) -> None:
        """Wait until nothing is queued and nothing is processing."""
        while self._heap or self._processing:
            await self._idle_event().wait()

    def cancel(self, task_id: str) -> bool:
        """Remove a pending task. In-flight tasks cannot be cancelled."""
        entry = self._entries.get(task_id)
        if entry is None or entry.trade.status != "pending" or task_id in self._processing:
            return False
        self._heap = [item for item in self._heap if item[2] != task_id]
        heapq.heapify(self._heap)
        self._finish(entry, "cancelled", None, None, error="cancelled before execution")
        self._metrics.cancelled_count += 1
        self._check_idle()
        return True

    # ── Halt / resume ─────────────────────────────────────────

    @property
    def halted(self) -> bool:
        return self._halted is not None

    def halt(self, reason: str) -> int:
        """Reject new submissions and cancel every pending task."""
        self._halted = reason
        pending = [item[2] for item in self._heap]
        cancelled = sum(1 for task_id in pending if self.cancel(task_id))
        log.warning("execution_queue_halted", reason=reason, cancelled=cancelled)
        return cancelled

    def resume(self) -> None:
        if self._halted is not None:
            log.info("execution_queue_resumed", previous_reason=self._halted)
        self._halted = None

    def configure(
        self,
        max_concurrent: int | None = None,
        max_retries: int | None = None,
        retry_delay_s: float | None = None,
    ) -> None:
        """Update limits at runtime. Already-queued tasks keep their max_retries."""
        if max_concurrent is not None:
            self.max_concurrent = max(1, max_concurrent)
        if max_retries is not None:
            self.max_retries = max(0, max_retries)
        if retry_delay_s is not None:
            self.retry_delay_s = retry_delay_s
        log.info(
            "execution_queue_configured",
            max_concurrent=self.max_concurrent,
            max_retries=self.max_retries,
            retry_delay_s=self.retry_delay_s,
        )
        if self._entries:
            self._start_ready()

    # ── Introspection ─────────────────────────────────────────

    def get(self, task_id: str) -> QueuedTrade | None:
        entry = self._entries.get(task_id) or self._archive.get(task_id)
        return entry.trade if entry is not None else None

    def pending(self) -> list[QueuedTrade]:
        """Pending tasks in the order they will be considered."""
        return [self._entries[item[2]].trade for item in sorted(self._heap)]

    def processing(self) -> list[QueuedTrade]:
        return [self._entries[task_id].trade for task_id in self._processing]

    def history(self) -> list[QueuedTrade]:
        return [entry.trade for entry in self._archive.values()]

    def instruments_in_flight(self) -> set[str]:
        """Instruments with a pending or processing task."""
        return {entry.trade.instrument for entry in self._entries.values()}

    def metrics(self) -> QueueMetrics:
        return QueueMetrics(**vars(self._metrics))

    # ── Internals ─────────────────────────────────────────────

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            self._idle.set()
        return self._idle

    def _push(self, trade: QueuedTrade) -> None:
        heapq.heappush(self._heap, (-trade.priority, next(self._seq), trade.id))

    def _start_ready(self) -> None:
        """Start as many startable tasks as the concurrency bound allows."""
        skipped: list[tuple[int, int, str]] = []
        while self._heap and len(self._processing) < self.max_concurrent:
            item = heapq.heappop(self._heap)
            entry = self._entries[item[2]]
            if entry.trade.instrument in self._active_instruments:
                skipped.append(item)
                continue
            self._active_instruments.add(entry.trade.instrument)
            entry.trade.status = "processing"
            self._processing[entry.trade.id] = asyncio.create_task(
                self._run(entry), name=f"execute-{entry.trade.id}",
            )
        for item in skipped:
            heapq.heappush(self._heap, item)

    async def _call_gateway(self, entry: _Entry) -> GatewayResult:
        order = entry.order
        try:
            if entry.trade.action == "close":
                return await self.gateway.close(order.instrument, order.idempotency_key)
            return await self.gateway.execute(order)
        except Exception as exc:
            log.warning(
                "gateway_call_raised",
                task_id=entry.trade.id,
                instrument=order.instrument,
                error=str(exc),
                exc_info=True,
            )
            return GatewayResult(ok=False, error=str(exc) or type(exc).__name__)

    async def _run(self, entry: _Entry) -> None:
        trade = entry.trade
        requeued = False
        try:
            result = await self._call_gateway(entry)
            if result.ok:
                self._metrics.success_count += 1
                self._finish(entry, "completed", result, None)
                log.info(
                    "trade_completed",
                    task_id=trade.id,
                    instrument=trade.instrument,
                    order_id=result.order_id,
                    executed_price=result.executed_price,
                    attempts=trade.retries + 1,
                )
                return

            trade.last_error = result.error
            kind = classify_error(result.error, self.critical_patterns)
            if kind is ErrorKind.TRANSIENT and trade.retries < trade.max_retries:
                trade.retries += 1
                self._metrics.retry_count += 1
                log.warning(
                    "trade_retry_scheduled",
                    task_id=trade.id,
                    instrument=trade.instrument,
                    error=result.error,
                    attempt=trade.retries,
                    max_retries=trade.max_retries,
                )
                if self.retry_delay_s > 0:
                    await asyncio.sleep(self.retry_delay_s)
                if self._halted is not None:
                    self._finish(entry, "cancelled", result, kind, error=f"halted: {self._halted}")
                    self._metrics.cancelled_count += 1
                    return
                trade.status = "pending"
                trade.priority = max(trade.priority, PRIORITY_RETRY)
                self._push(trade)
                requeued = True
                return

            self._metrics.error_count += 1
            self._finish(entry, "failed", result, kind)
            log.error(
                "trade_failed",
                task_id=trade.id,
                instrument=trade.instrument,
                error=result.error,
                error_kind=kind.value,
                attempts=trade.retries + 1,
            )
        finally:
            self._processing.pop(trade.id, None)
            self._active_instruments.discard(trade.instrument)
            if not requeued:
                self._metrics.total_processed += 1
                self._metrics.last_processed_at = datetime.now(timezone.utc)
            self._start_ready()
            self._check_idle()

    def _finish(
        self,
        entry: _Entry,
        status: str,
        result: GatewayResult | None,
        kind: ErrorKind | None,
        error: str | None = None,
    ) -> None:
        trade = entry.trade
        trade.status = status
        trade.finished_at = datetime.now(timezone.utc)
        if error is not None:
            trade.last_error = error
        self._entries.pop(trade.id, None)
        self._archive[trade.id] = entry
        while len(self._archive) > self.history_size:
            old_id, old = self._archive.popitem(last=False)
            if self._by_key.get(old.trade.idempotency_key) == old_id:
                del self._by_key[old.trade.idempotency_key]
        if not entry.future.done():
            entry.future.set_result(ExecutionOutcome(trade=trade, result=result, error_kind=kind))

    def _check_idle(self) -> None:
        # Drained only when nothing is processing AND nothing new arrived meanwhile.
        if not self._processing and not self._heap:
            self._idle_event().set()
