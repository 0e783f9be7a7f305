"""Database engine and session management."""

from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.schema import CreateSchema

from autotrade.db.base import Base
from autotrade.db.tables.journal import SCHEMA

_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def _ensure_psycopg_driver(url: str) -> str:
    """Rewrite postgresql:// to postgresql+psycopg:// for psycopg v3."""
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://"):]
    return url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def init_engine(url: str, **kwargs) -> Engine:
    """Create the global engine and session factory.

    SQLite has no schemas, so the journal schema is translated away; an
    in-memory SQLite database is pinned to one connection.
    """
    global _engine, _SessionLocal
    url = _ensure_psycopg_driver(url)
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs.setdefault("poolclass", StaticPool)
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, **kwargs)
    if _is_sqlite(url):
        engine = engine.execution_options(schema_translate_map={SCHEMA: None})
    _engine = engine
    _SessionLocal = sessionmaker(bind=_engine)
    return _engine


def get_engine() -> Engine:
    """Return the global engine (must call init_engine first)."""
    if _engine is None:
        raise RuntimeError("Database engine not initialised — call init_engine() first")
    return _engine


def session_factory() -> sessionmaker[Session]:
    if _SessionLocal is None:
        raise RuntimeError("Database engine not initialised — call init_engine() first")
    return _SessionLocal


def get_session() -> Generator[Session, None, None]:
    """Yield a session, closing it when done."""
    session = session_factory()()
    try:
        yield session
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create the journal schema and tables if they do not exist."""
    engine = engine or get_engine()
    with engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            conn.execute(CreateSchema(SCHEMA, if_not_exists=True))
        Base.metadata.create_all(conn)
