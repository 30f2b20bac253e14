"""
Smart Orchestrator — scores a workflow's queue items and reschedules them.

priority_score = 50 + match + freshness + urgency
  match      externally supplied payload["matchScore"], 0 if absent
  freshness  20 if the item is under 24h old, 10 under 48h, 5 under 72h
  urgency    15 for "urgent"-style wording in title/description, 8 for "soon"

Scores feed the optimizer; the resulting priority and next_run_at are
written back item by item. A failed write is logged and left out of the
scheduled count, it never aborts the rest of the batch.
"""
from __future__ import annotations

import random
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from core.errors import QueueStoreError
from core.locks import KeyedLocks
from database.store_base import BaseQueueStore
from models.schemas import (
    OrchestrationReport, QueueItem, SCHEDULABLE_STATUSES, ScoredItem, utcnow,
)
from scheduling.optimizer import optimize_schedule

logger = structlog.get_logger()

BASE_SCORE = 50

URGENT_KEYWORDS = ("urgent", "срочно", "asap", "немедленно")
SOON_KEYWORDS = ("soon", "quickly", "скоро")


def match_score(payload: dict[str, Any]) -> int:
    value = payload.get("matchScore", payload.get("match_score"))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(round(value))


def freshness_score(created_at: datetime, now: datetime) -> int:
    hours_old = (now - created_at).total_seconds() / 3600
    if hours_old < 24:
        return 20
    if hours_old < 48:
        return 10
    if hours_old < 72:
        return 5
    return 0


def urgency_score(payload: dict[str, Any]) -> int:
    title = payload.get("jobTitle") or payload.get("title") or ""
    description = payload.get("description") or ""
    text = f"{title} {description}".lower()

    if any(word in text for word in URGENT_KEYWORDS):
        return 15
    if any(word in text for word in SOON_KEYWORDS):
        return 8
    return 0


def score_item(item: QueueItem, now: datetime) -> ScoredItem:
    match = match_score(item.payload)
    fresh = freshness_score(item.created_at, now)
    urgent = urgency_score(item.payload)
    total = BASE_SCORE + match + fresh + urgent

    logger.debug("item_scored",
                 item_id=item.id, priority=total,
                 match=match, fresh=fresh, urgent=urgent)
    return ScoredItem(
        item=item, priority_score=total,
        match_score=match, freshness_score=fresh, urgency_score=urgent,
    )


class SmartOrchestrator:
    """
    Applies scoring + optimization to one workflow at a time.
    Passes for the same workflow run strictly one after another.
    """

    def __init__(
        self,
        store: BaseQueueStore,
        timezone: str = "Europe/Moscow",
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        min_gap_minutes: int = 30,
        max_gap_minutes: int = 60,
        start_hour: int = 9,
        end_hour: int = 17,
    ):
        self.store = store
        self.timezone = timezone
        self._clock = clock
        self._rng = rng or random.Random()
        self.min_gap_minutes = min_gap_minutes
        self.max_gap_minutes = max_gap_minutes
        self.start_hour = start_hour
        self.end_hour = end_hour
        self._workflow_locks = KeyedLocks()

    async def orchestrate(self, workflow_id: str, user_id: str) -> OrchestrationReport:
        async with self._workflow_locks.hold(workflow_id):
            return await self._orchestrate(workflow_id, user_id)

    async def _orchestrate(self, workflow_id: str, user_id: str) -> OrchestrationReport:
        logger.info("smart_orchestration_started", workflow_id=workflow_id, user_id=user_id)

        items = await self.store.get_items(workflow_id)
        schedulable = [i for i in items if i.status in SCHEDULABLE_STATUSES]

        if not schedulable:
            logger.info("nothing_to_schedule", workflow_id=workflow_id)
            return OrchestrationReport(workflow_id=workflow_id)

        now = self._clock()
        scored = [score_item(item, now) for item in schedulable]
        optimized = optimize_schedule(
            scored, user_id, self.timezone, now=now, rng=self._rng,
            min_gap_minutes=self.min_gap_minutes, max_gap_minutes=self.max_gap_minutes,
            start_hour=self.start_hour, end_hour=self.end_hour,
        )

        scheduled = 0
        for entry in optimized:
            update = entry.to_update()
            try:
                await self.store.update_schedule(update.id, update.priority, update.next_run_at)
                scheduled += 1
            except QueueStoreError as e:
                logger.error("schedule_write_back_failed",
                             workflow_id=workflow_id, item_id=update.id, error=str(e))
            except Exception as e:
                logger.error("schedule_write_back_error",
                             workflow_id=workflow_id, item_id=update.id,
                             error=str(e), error_type=type(e).__name__)

        logger.info("smart_orchestration_completed",
                    workflow_id=workflow_id, scheduled=scheduled, total=len(schedulable))
        return OrchestrationReport(
            workflow_id=workflow_id,
            scheduled_count=scheduled,
            total_count=len(schedulable),
        )
