"""Declarative base shared by all quota ledger tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
