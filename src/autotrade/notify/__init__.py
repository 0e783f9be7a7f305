"""Notification sinks for trade events."""

from autotrade.notify.sinks import CompositeSink, JournalSink, LogSink, NotificationSink, WebhookSink

__all__ = ["CompositeSink", "JournalSink", "LogSink", "NotificationSink", "WebhookSink"]
