"""
SqlQueueStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every public method opens its own short transaction, so the store handle can
be shared by the smart orchestrator and the submission workers.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import QueueItemNotFoundError
from database.models import ApplicationQueueRow
from database.session import session_scope
from database.store_base import BaseQueueStore, append_error, check_transition
from models.schemas import QueueItem, QueueStatus, RUNNABLE_STATUSES, empty_progress, utcnow

logger = structlog.get_logger()


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlQueueStore(BaseQueueStore):
    """
    Persistent queue store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # ── Creation ──────────────────────────────────────────

    async def create_items(
        self, workflow_id: str, user_id: str, cv_id: str,
        job_ids: Iterable[str], payloads: dict[str, dict[str, Any]] = None,
    ) -> int:
        payloads = payloads or {}
        now = utcnow()
        rows = [
            ApplicationQueueRow(
                workflow_id=workflow_id, user_id=user_id, cv_id=cv_id,
                job_external_id=job_id, status=QueueStatus.PENDING.value,
                priority=0, attempts=0, next_run_at=now,
                payload=dict(payloads.get(job_id, {})),
                created_at=now, updated_at=now,
            )
            for job_id in job_ids
        ]
        async with self._session() as db:
            db.add_all(rows)
        logger.info("workflow_items_created", workflow_id=workflow_id, count=len(rows))
        return len(rows)

    # ── Queries ───────────────────────────────────────────

    @staticmethod
    def _ordered(stmt):
        return stmt.order_by(
            ApplicationQueueRow.priority.desc(),
            ApplicationQueueRow.next_run_at.asc(),
            ApplicationQueueRow.created_at.asc(),
            ApplicationQueueRow.id.asc(),
        )

    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        async with self._session() as db:
            row = await db.get(ApplicationQueueRow, item_id)
            return self._row_to_item(row) if row else None

    async def get_items(self, workflow_id: str) -> list[QueueItem]:
        async with self._session() as db:
            stmt = self._ordered(
                select(ApplicationQueueRow).where(ApplicationQueueRow.workflow_id == workflow_id)
            )
            result = await db.execute(stmt)
            return [self._row_to_item(row) for row in result.scalars()]

    async def get_ready_items(self, workflow_id: str, now: datetime = None) -> list[QueueItem]:
        now = _to_utc(now or utcnow())
        async with self._session() as db:
            stmt = self._ordered(
                select(ApplicationQueueRow)
                .where(ApplicationQueueRow.workflow_id == workflow_id)
                .where(ApplicationQueueRow.status.in_([s.value for s in RUNNABLE_STATUSES]))
                .where(ApplicationQueueRow.next_run_at <= now)
            )
            result = await db.execute(stmt)
            return [self._row_to_item(row) for row in result.scalars()]

    async def get_progress(self, workflow_id: str) -> dict[str, int]:
        progress = empty_progress()
        async with self._session() as db:
            stmt = (
                select(ApplicationQueueRow.status, func.count(ApplicationQueueRow.id))
                .where(ApplicationQueueRow.workflow_id == workflow_id)
                .group_by(ApplicationQueueRow.status)
            )
            result = await db.execute(stmt)
            for status, count in result.all():
                if status in progress:
                    progress[status] = count
                else:
                    logger.warning("unknown_queue_status", workflow_id=workflow_id, status=status)
        return progress

    # ── Updates ───────────────────────────────────────────

    async def update_status(
        self, item_id: str, status: QueueStatus,
        error: str = None, next_run_at: datetime = None,
    ) -> QueueItem:
        status = QueueStatus(status)
        async with self._session() as db:
            row = await self._require(db, item_id)
            check_transition(self._row_to_item(row), status)
            row.status = status.value
            row.updated_at = utcnow()
            if error:
                row.last_error = append_error(row.last_error, error)
                row.attempts = (row.attempts or 0) + 1
            if next_run_at is not None:
                row.next_run_at = _to_utc(next_run_at)
            await db.flush()
            return self._row_to_item(row)

    async def update_priority(self, item_id: str, priority: int) -> QueueItem:
        async with self._session() as db:
            row = await self._require(db, item_id)
            row.priority = int(priority)
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_item(row)

    async def update_schedule(self, item_id: str, priority: int, next_run_at: datetime) -> QueueItem:
        async with self._session() as db:
            row = await self._require(db, item_id)
            row.priority = int(priority)
            row.next_run_at = _to_utc(next_run_at)
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_item(row)

    async def release_rate_limited(self, workflow_id: str, now: datetime = None) -> int:
        now = _to_utc(now or utcnow())
        async with self._session() as db:
            stmt = (
                select(ApplicationQueueRow)
                .where(ApplicationQueueRow.workflow_id == workflow_id)
                .where(ApplicationQueueRow.status == QueueStatus.RATE_LIMITED.value)
                .where(ApplicationQueueRow.next_run_at <= now)
            )
            result = await db.execute(stmt)
            rows = list(result.scalars())
            for row in rows:
                row.status = QueueStatus.PENDING.value
                row.updated_at = utcnow()
        if rows:
            logger.info("rate_limited_items_released", workflow_id=workflow_id, count=len(rows))
        return len(rows)

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    async def _require(db: AsyncSession, item_id: str) -> ApplicationQueueRow:
        row = await db.get(ApplicationQueueRow, item_id)
        if row is None:
            raise QueueItemNotFoundError(item_id)
        return row

    @staticmethod
    def _row_to_item(row: ApplicationQueueRow) -> QueueItem:
        return QueueItem(**row.to_dict())
