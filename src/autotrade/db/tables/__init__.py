"""Import all table modules so Base.metadata knows about them."""

from autotrade.db.tables.journal import SCHEMA, JournalRow

__all__ = ["JournalRow", "SCHEMA"]
