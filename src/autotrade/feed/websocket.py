"""WebSocket signal feed — pushes raw signals from an upstream scanner."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import structlog
import websockets
from pydantic import ValidationError

from autotrade.models import RawSignal

log = structlog.get_logger("signal_feed")

SignalHandler = Callable[[RawSignal], Awaitable[Any]]


def parse_message(raw: str | bytes) -> list[RawSignal]:
    """Decode one feed message into zero or more signals.

    Accepted shapes: ``{"type": "signal", "data": {...}}`` and
    ``{"type": "signals", "data": [{...}, ...]}``. Anything else is ignored;
    malformed entries are logged and skipped.
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        log.warning("feed_message_not_json")
        return []
    if not isinstance(msg, dict):
        return []

    kind = msg.get("type")
    if kind == "signal":
        items = [msg.get("data")]
    elif kind == "signals":
        items = msg.get("data") or []
    else:
        return []

    signals: list[RawSignal] = []
    for item in items:
        try:
            signals.append(RawSignal.model_validate(item))
        except ValidationError as exc:
            log.warning("feed_signal_invalid", errors=exc.error_count())
    return signals


class WebSocketSignalFeed:
    """Client for a JSON signal stream with automatic reconnection."""

    def __init__(self, url: str, reconnect_delay_s: float = 5.0) -> None:
        self.url = url
        self.reconnect_delay_s = reconnect_delay_s
        self._running = False

    async def signals(self) -> AsyncGenerator[RawSignal, None]:
        """Yield signals from a single connection; exits on disconnect."""
        async with websockets.connect(self.url) as ws:
            log.info("signal_feed_connected", url=self.url)
            async for raw in ws:
                for signal in parse_message(raw):
                    yield signal

    async def run(self, handler: SignalHandler) -> None:
        """Forward every signal to *handler*, reconnecting until stopped."""
        self._running = True
        while self._running:
            try:
                async for signal in self.signals():
                    if not self._running:
                        break
                    await handler(signal)
            except asyncio.CancelledError:
                break
            except Exception:
                log.exception("signal_feed_error", reconnect_in=self.reconnect_delay_s)
            if self._running:
                await asyncio.sleep(self.reconnect_delay_s)

    def stop(self) -> None:
        self._running = False
