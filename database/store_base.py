"""
Abstract Queue Store — Interface for all storage backends.

Implementations:
  - SqlQueueStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryQueueStore (dict-based, single-process, no persistence)

Ordering convention: a larger priority value means "submit earlier", so every
listing query returns priority DESC, then next_run_at ASC, then created_at
and id for a stable tie-break.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog

from core.errors import InvalidTransitionError, QueueStoreError
from models.schemas import (
    QueueItem, QueueStatus, RUNNABLE_STATUSES, ScheduleUpdate,
    can_transition, utcnow,
)

logger = structlog.get_logger()


def sort_key(item: QueueItem):
    return (-item.priority, item.next_run_at, item.created_at, item.id)


def check_transition(item: QueueItem, new_status: QueueStatus) -> None:
    if not can_transition(item.status, new_status):
        raise InvalidTransitionError(item.id, QueueStatus(item.status).value, QueueStatus(new_status).value)


def append_error(existing: Optional[str], error: str) -> str:
    return f"{existing}\n{error}" if existing else error


class BaseQueueStore(ABC):
    """Interface that all queue store backends must implement."""

    # ── Creation ──────────────────────────────────────────────

    @abstractmethod
    async def create_items(
        self, workflow_id: str, user_id: str, cv_id: str,
        job_ids: Iterable[str], payloads: dict[str, dict[str, Any]] = None,
    ) -> int:
        """Bulk-insert one pending item per job id; returns the count."""
        ...

    # ── Queries ───────────────────────────────────────────────

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def get_items(self, workflow_id: str) -> list[QueueItem]:
        ...

    @abstractmethod
    async def get_ready_items(self, workflow_id: str, now: datetime = None) -> list[QueueItem]:
        """Pending/ready items whose next_run_at has arrived."""
        ...

    @abstractmethod
    async def get_progress(self, workflow_id: str) -> dict[str, int]:
        """Counts per status; all seven statuses present, zero-filled."""
        ...

    # ── Updates ───────────────────────────────────────────────

    @abstractmethod
    async def update_status(
        self, item_id: str, status: QueueStatus,
        error: str = None, next_run_at: datetime = None,
    ) -> QueueItem:
        ...

    @abstractmethod
    async def update_priority(self, item_id: str, priority: int) -> QueueItem:
        ...

    @abstractmethod
    async def update_schedule(self, item_id: str, priority: int, next_run_at: datetime) -> QueueItem:
        ...

    @abstractmethod
    async def release_rate_limited(self, workflow_id: str, now: datetime = None) -> int:
        """Move due rate_limited items back to pending."""
        ...

    # ── Derived (shared by all backends) ──────────────────────

    async def get_high_priority_items(self, workflow_id: str, limit: int = 10) -> list[QueueItem]:
        items = await self.get_items(workflow_id)
        return [i for i in items if i.status in RUNNABLE_STATUSES][:limit]

    async def bulk_update_schedule(self, updates: Iterable[ScheduleUpdate]) -> list[bool]:
        """Apply each update independently; a failed row does not stop the rest."""
        results = []
        for update in updates:
            try:
                await self.update_schedule(update.id, update.priority, update.next_run_at)
                results.append(True)
            except QueueStoreError as e:
                logger.warning("schedule_update_failed", item_id=update.id, error=str(e))
                results.append(False)
        return results

    async def get_workflow_stats(self, workflow_id: str) -> dict[str, Any]:
        items = await self.get_items(workflow_id)
        progress = await self.get_progress(workflow_id)

        avg_priority = sum(i.priority for i in items) // len(items) if items else 0
        upcoming = [i.next_run_at for i in items if i.status in RUNNABLE_STATUSES]

        return {
            **progress,
            "total_items": len(items),
            "avg_priority": avg_priority,
            "next_scheduled": min(upcoming) if upcoming else utcnow(),
        }
