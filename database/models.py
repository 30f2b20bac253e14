"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB for the item payload.
  - String primary keys (uuid hex) — no database-specific sequences.
  - All timestamps stored as UTC.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import String, Integer, DateTime, Text, Index, JSON
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Application Queue
# ──────────────────────────────────────────────────────────────

class ApplicationQueueRow(Base):
    __tablename__ = "application_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cv_id: Mapped[str] = mapped_column(String(64), nullable=False)
    job_external_id: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(String(32), default="pending")
    priority: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    payload: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_application_queue_workflow_status", "workflow_id", "status"),
        Index("ix_application_queue_priority_next", "workflow_id", "priority", "next_run_at"),
        Index("ix_application_queue_user", "user_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "workflow_id": self.workflow_id,
            "user_id": self.user_id, "cv_id": self.cv_id,
            "job_external_id": self.job_external_id,
            "status": self.status, "priority": self.priority,
            "attempts": self.attempts, "last_error": self.last_error,
            "next_run_at": as_utc(self.next_run_at),
            "payload": self.payload or {},
            "created_at": as_utc(self.created_at),
            "updated_at": as_utc(self.updated_at),
        }
