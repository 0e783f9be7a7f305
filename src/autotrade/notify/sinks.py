"""Notification sinks — where trade events go after the engine acts."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

import httpx
import structlog
from sqlalchemy.orm import Session

from autotrade.db.tables.journal import JournalRow
from autotrade.models import TradeNotification

log = structlog.get_logger("notify")


@runtime_checkable
class NotificationSink(Protocol):
    async def notify(self, notification: TradeNotification) -> None: ...


class LogSink:
    """Writes every notification as a structured log event."""

    async def notify(self, notification: TradeNotification) -> None:
        result = notification.result
        fields = {
            "instrument": notification.instrument,
            "message": notification.message,
        }
        if result is not None:
            fields.update(kind=result.kind, ok=result.ok, reason=result.reason,
                          order_id=result.order_id, realized_pnl=result.realized_pnl)
        if notification.event in ("failed", "emergency_stop"):
            log.warning(f"trade_{notification.event}", **fields)
        else:
            log.info(f"trade_{notification.event}", **fields)


class WebhookSink:
    """POSTs the notification as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    async def notify(self, notification: TradeNotification) -> None:
        http = await self._get_http()
        resp = await http.post(self.url, json=notification.model_dump(mode="json"))
        resp.raise_for_status()


class JournalSink:
    """Appends one journal row per notification."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _row(self, notification: TradeNotification) -> JournalRow:
        result = notification.result
        signal = notification.signal
        return JournalRow(
            ts=notification.ts,
            event=notification.event,
            instrument=notification.instrument,
            direction=signal.direction if signal is not None else None,
            ok=result.ok if result is not None else None,
            kind=result.kind if result is not None else None,
            message=notification.message or (result.reason if result is not None else None),
            order_id=result.order_id if result is not None else None,
            executed_price=result.executed_price if result is not None else None,
            realized_pnl=result.realized_pnl if result is not None else None,
            payload=notification.model_dump(mode="json", exclude={"ts"}),
        )

    async def notify(self, notification: TradeNotification) -> None:
        session = self._session_factory()
        try:
            session.add(self._row(notification))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class CompositeSink:
    """Fans a notification out to several sinks; one failure does not block the rest."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks = list(sinks)

    async def notify(self, notification: TradeNotification) -> None:
        results = await asyncio.gather(
            *(sink.notify(notification) for sink in self.sinks),
            return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                log.error(
                    "notification_sink_failed",
                    sink=type(sink).__name__,
                    notification_event=notification.event,
                    error=str(result),
                )
