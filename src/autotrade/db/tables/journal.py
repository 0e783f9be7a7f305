"""SQLAlchemy ORM model for the trade journal."""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, Boolean, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from autotrade.db.base import Base

SCHEMA = "autotrade"


class JournalRow(Base):
    """One row per notification: executions, failures, rejections, closes, stops."""

    __tablename__ = "trade_journal"
    __table_args__ = {"schema": SCHEMA}

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True,
    )
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event: Mapped[str] = mapped_column(Text, nullable=False)
    instrument: Mapped[str | None] = mapped_column(Text, nullable=True)
    direction: Mapped[str | None] = mapped_column(Text, nullable=True)
    ok: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    kind: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_price: Mapped[float | None] = mapped_column(Numeric, nullable=True)
    realized_pnl: Mapped[float | None] = mapped_column(Numeric, nullable=True)
    payload: Mapped[dict | None] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=True,
    )
