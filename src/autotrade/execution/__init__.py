"""Order execution — gateway adapters and the execution queue."""

from autotrade.execution.errors import ErrorKind, QueueHaltedError, classify_error
from autotrade.execution.gateway import ExecutionGateway, HttpGateway
from autotrade.execution.paper import PaperGateway
from autotrade.execution.queue import (
    PRIORITY_CLOSE,
    PRIORITY_NEW,
    PRIORITY_RETRY,
    ExecutionOutcome,
    ExecutionQueue,
    QueueMetrics,
)

__all__ = [
    "ErrorKind",
    "ExecutionGateway",
    "ExecutionOutcome",
    "ExecutionQueue",
    "HttpGateway",
    "PRIORITY_CLOSE",
    "PRIORITY_NEW",
    "PRIORITY_RETRY",
    "PaperGateway",
    "QueueHaltedError",
    "QueueMetrics",
    "classify_error",
]
