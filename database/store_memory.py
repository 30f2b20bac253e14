"""
InMemoryQueueStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlQueueStore
  - Mutations serialized by one asyncio.Lock (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog

from core.errors import QueueItemNotFoundError
from database.store_base import BaseQueueStore, append_error, check_transition, sort_key
from models.schemas import (
    QueueItem, QueueStatus, RUNNABLE_STATUSES, empty_progress, utcnow,
)

logger = structlog.get_logger()


class InMemoryQueueStore(BaseQueueStore):
    """
    Full-featured in-memory store with the same interface as SqlQueueStore.
    Returns copies, so callers never mutate stored state directly.
    """

    def __init__(self):
        self._items: dict[str, QueueItem] = {}               # id → item
        self._by_workflow: dict[str, list[str]] = {}         # workflow_id → [item ids]
        self._lock = asyncio.Lock()
        logger.info("inmemory_queue_store_initialized")

    # ── Creation ──────────────────────────────────────────

    async def create_items(
        self, workflow_id: str, user_id: str, cv_id: str,
        job_ids: Iterable[str], payloads: dict[str, dict[str, Any]] = None,
    ) -> int:
        payloads = payloads or {}
        now = utcnow()
        async with self._lock:
            ids = self._by_workflow.setdefault(workflow_id, [])
            count = 0
            for job_id in job_ids:
                item = QueueItem(
                    workflow_id=workflow_id, user_id=user_id, cv_id=cv_id,
                    job_external_id=job_id, payload=dict(payloads.get(job_id, {})),
                    next_run_at=now, created_at=now, updated_at=now,
                )
                self._items[item.id] = item
                ids.append(item.id)
                count += 1
        logger.info("workflow_items_created", workflow_id=workflow_id, count=count)
        return count

    # ── Queries ───────────────────────────────────────────

    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def get_items(self, workflow_id: str) -> list[QueueItem]:
        items = [self._items[i] for i in self._by_workflow.get(workflow_id, [])]
        return [i.model_copy(deep=True) for i in sorted(items, key=sort_key)]

    async def get_ready_items(self, workflow_id: str, now: datetime = None) -> list[QueueItem]:
        now = now or utcnow()
        return [
            i for i in await self.get_items(workflow_id)
            if i.status in RUNNABLE_STATUSES and i.next_run_at <= now
        ]

    async def get_progress(self, workflow_id: str) -> dict[str, int]:
        progress = empty_progress()
        for item_id in self._by_workflow.get(workflow_id, []):
            progress[QueueStatus(self._items[item_id].status).value] += 1
        return progress

    # ── Updates ───────────────────────────────────────────

    async def update_status(
        self, item_id: str, status: QueueStatus,
        error: str = None, next_run_at: datetime = None,
    ) -> QueueItem:
        async with self._lock:
            item = self._require(item_id)
            status = QueueStatus(status)
            check_transition(item, status)
            item.status = status
            item.updated_at = utcnow()
            if error:
                item.last_error = append_error(item.last_error, error)
                item.attempts += 1
            if next_run_at is not None:
                item.next_run_at = next_run_at
            return item.model_copy(deep=True)

    async def update_priority(self, item_id: str, priority: int) -> QueueItem:
        async with self._lock:
            item = self._require(item_id)
            item.priority = int(priority)
            item.updated_at = utcnow()
            return item.model_copy(deep=True)

    async def update_schedule(self, item_id: str, priority: int, next_run_at: datetime) -> QueueItem:
        async with self._lock:
            item = self._require(item_id)
            item.priority = int(priority)
            item.next_run_at = next_run_at
            item.updated_at = utcnow()
            return item.model_copy(deep=True)

    async def release_rate_limited(self, workflow_id: str, now: datetime = None) -> int:
        now = now or utcnow()
        released = 0
        async with self._lock:
            for item_id in self._by_workflow.get(workflow_id, []):
                item = self._items[item_id]
                if item.status == QueueStatus.RATE_LIMITED and item.next_run_at <= now:
                    item.status = QueueStatus.PENDING
                    item.updated_at = utcnow()
                    released += 1
        if released:
            logger.info("rate_limited_items_released", workflow_id=workflow_id, count=released)
        return released

    # ── Helpers ───────────────────────────────────────────

    def _require(self, item_id: str) -> QueueItem:
        item = self._items.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "items": len(self._items),
            "workflows": len(self._by_workflow),
        }
