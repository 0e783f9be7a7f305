"""Declarative base shared by all journal tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
