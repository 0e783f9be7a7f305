"""Database layer — engine, session, ORM base."""

from autotrade.db.base import Base
from autotrade.db.engine import create_tables, get_engine, get_session, init_engine, session_factory

__all__ = ["Base", "create_tables", "get_engine", "get_session", "init_engine", "session_factory"]
