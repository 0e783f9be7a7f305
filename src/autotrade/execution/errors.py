"""Error taxonomy for gateway failures."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

DEFAULT_CRITICAL_PATTERNS: tuple[str, ...] = (
    "insufficient balance",
    "invalid api credentials",
    "invalid credentials",
    "account suspended",
    "rate limit lockout",
    "risk limit exceeded",
)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    CRITICAL = "critical"


class QueueHaltedError(RuntimeError):
    """Raised by ExecutionQueue.submit while the queue is halted."""


def classify_error(
    message: str | None,
    critical_patterns: Iterable[str] = DEFAULT_CRITICAL_PATTERNS,
) -> ErrorKind:
    """Critical errors trip the emergency stop; everything else is retried."""
    text = (message or "").lower()
    for pattern in critical_patterns:
        if pattern.lower() in text:
            return ErrorKind.CRITICAL
    return ErrorKind.TRANSIENT
