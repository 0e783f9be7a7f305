"""Control API."""

from autotrade.api.app import create_app

__all__ = ["create_app"]
