"""Database tables / schema"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def pair_key(first: str, second: str) -> str:
    """Identical for (a, b) and (b, a): one session per unordered pair of participants."""
    return "\x1f".join(sorted((first, second)))


class Base(DeclarativeBase):
    pass


class DBLedgerEntry(Base):
    __tablename__ = "ledger"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(unique=True, index=True)
    balance: Mapped[int]
    created_at: Mapped[datetime] = mapped_column(default=utc_now)


class DBSession(Base):
    __tablename__ = "sessions"
    id: Mapped[UUID] = mapped_column(primary_key=True)
    white: Mapped[str]
    black: Mapped[str]
    pair_key: Mapped[str] = mapped_column(unique=True)
    current_fen: Mapped[str]
    moves_san: Mapped[list[str]] = mapped_column(JSON, default=list)
    status: Mapped[dict[str, Any]] = mapped_column(JSON)
    settled: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)
