"""Upstream signal feeds."""

from autotrade.feed.websocket import WebSocketSignalFeed, parse_message

__all__ = ["WebSocketSignalFeed", "parse_message"]
