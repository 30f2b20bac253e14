"""
Submission Worker — drains a workflow's ready items one at a time.

Each item walks the lifecycle:

    pending → customizing → ready → submitting → submitted
                   ↓                     ↓
                 failed          failed | rate_limited

The rate-limit token is taken while the item is `submitting`. A denied token
parks the item as `rate_limited` with next_run_at set to the moment the
bucket can pay for it; the next pass returns it to `pending`.

The write that moves an item out of `submitting` (or `customizing`) is
retried a few times. If it still fails, the outcome carries no stored status
but names the intended one and the board reference, so the caller can
reconcile the item.

Progress, rate-limit and completion events go to the user's topic through
the broadcaster when one is attached.

CV customization and the job-board submission call are external
collaborators behind CvCustomizer and ApplicationSubmitter.
"""
from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import structlog
from tenacity import (
    retry, retry_if_exception_type, retry_if_not_exception_type,
    stop_after_attempt, wait_exponential,
)

from core.errors import InvalidTransitionError, QueueItemNotFoundError, QueueStoreError
from core.rate_limiter import RateLimiter
from database.store_base import BaseQueueStore
from jobs.base import (
    APPLICATION_COMPLETED, APPLICATION_PROGRESS, RATE_LIMIT_UPDATE, Broadcaster,
)
from models.schemas import QueueItem, QueueStatus, SubmissionOutcome, utcnow

logger = structlog.get_logger()


class CvCustomizer(abc.ABC):
    """Tailors the CV / cover letter for one queue item."""

    @abc.abstractmethod
    async def customize(self, item: QueueItem) -> None:
        """Raise to mark the item failed."""
        ...


class PassThroughCustomizer(CvCustomizer):
    async def customize(self, item: QueueItem) -> None:
        return None


class ApplicationSubmitter(abc.ABC):
    """Sends one application to the job board."""

    @abc.abstractmethod
    async def submit(self, item: QueueItem) -> str:
        """Return the board's reference for the application; raise on rejection."""
        ...


class SubmissionWorker:
    def __init__(
        self,
        store: BaseQueueStore,
        rate_limiter: RateLimiter,
        submitter: ApplicationSubmitter,
        customizer: Optional[CvCustomizer] = None,
        clock: Callable[[], datetime] = utcnow,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.submitter = submitter
        self.customizer = customizer or PassThroughCustomizer()
        self.broadcaster = broadcaster
        self._clock = clock

    async def process_next(
        self, workflow_id: str, user_id: str, skip: Iterable[str] = (),
    ) -> SubmissionOutcome:
        """Process the highest-priority ready item. Returns an idle outcome if none is due."""
        now = self._clock()
        await self.store.release_rate_limited(workflow_id, now)

        skip = set(skip)
        ready = [i for i in await self.store.get_ready_items(workflow_id, now) if i.id not in skip]
        if not ready:
            logger.info("no_ready_items", workflow_id=workflow_id)
            return SubmissionOutcome()

        item = ready[0]
        try:
            return await self._process(item, user_id)
        except QueueStoreError as e:
            logger.error("submission_store_error", item_id=item.id, error=str(e))
            return SubmissionOutcome(item_id=item.id, error=str(e))

    async def drain(
        self, workflow_id: str, user_id: str, max_items: Optional[int] = None,
    ) -> dict[str, int]:
        """
        Keep processing until nothing is ready, the user is rate limited,
        or max_items have been handled.
        """
        counts = {"submitted": 0, "failed": 0, "rate_limited": 0, "errors": 0}
        seen: set[str] = set()

        while max_items is None or len(seen) < max_items:
            outcome = await self.process_next(workflow_id, user_id, skip=seen)
            if outcome.idle:
                break
            seen.add(outcome.item_id)

            if outcome.status is None:
                counts["errors"] += 1
            else:
                counts[outcome.status.value] += 1
            if QueueStatus.RATE_LIMITED in (outcome.status, outcome.intended_status):
                break

        logger.info("workflow_drain_finished", workflow_id=workflow_id, **counts)
        return counts

    async def _process(self, item: QueueItem, user_id: str) -> SubmissionOutcome:
        if item.status == QueueStatus.PENDING:
            item = await self.store.update_status(item.id, QueueStatus.CUSTOMIZING)
            try:
                await self.customizer.customize(item)
            except Exception as e:
                logger.error("customization_failed", item_id=item.id, error=str(e))
                outcome = await self._finish(item, QueueStatus.FAILED, error=f"customization: {e}")
                await self._notify_completed(user_id, item, error=str(e))
                return outcome
            item = await self.store.update_status(item.id, QueueStatus.READY)

        item = await self.store.update_status(item.id, QueueStatus.SUBMITTING)

        decision = await self.rate_limiter.acquire(user_id)
        if not decision.allowed:
            logger.warning("submission_rate_limited", item_id=item.id, user_id=user_id,
                           retry_at=decision.retry_at.isoformat() if decision.retry_at else None)
            outcome = await self._finish(item, QueueStatus.RATE_LIMITED, next_run_at=decision.retry_at)
            outcome.retry_at = decision.retry_at
            await self._notify_rate_limited(user_id, decision.retry_at)
            return outcome

        await self._notify_progress(user_id, item)

        try:
            reference = await self.submitter.submit(item)
        except Exception as e:
            logger.error("submission_failed", item_id=item.id,
                         job=item.job_external_id, error=str(e))
            outcome = await self._finish(item, QueueStatus.FAILED, error=str(e) or type(e).__name__)
            await self._notify_completed(user_id, item, error=str(e))
            return outcome

        outcome = await self._finish(item, QueueStatus.SUBMITTED)
        outcome.reference = str(reference)
        if outcome.status == QueueStatus.SUBMITTED:
            logger.info("application_submitted", item_id=item.id, job=item.job_external_id,
                        remaining_tokens=round(decision.remaining, 3))
        await self._notify_completed(user_id, item, reference=str(reference))
        return outcome

    # ── Final status write ────────────────────────────────────

    async def _finish(self, item: QueueItem, status: QueueStatus, **kwargs) -> SubmissionOutcome:
        """Store the item's exit status; report instead of raising if that keeps failing."""
        error = kwargs.get("error", "")
        try:
            await self._write_status(item.id, status, **kwargs)
        except QueueStoreError as e:
            logger.error("final_status_write_failed", item_id=item.id,
                         intended_status=status.value, error=str(e))
            return SubmissionOutcome(item_id=item.id, intended_status=status,
                                     error=f"{status.value} not stored: {e}")
        return SubmissionOutcome(item_id=item.id, status=status, intended_status=status, error=error)

    @retry(
        retry=(retry_if_exception_type(QueueStoreError)
               & retry_if_not_exception_type((QueueItemNotFoundError, InvalidTransitionError))),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=1),
        reraise=True,
    )
    async def _write_status(self, item_id: str, status: QueueStatus, **kwargs) -> QueueItem:
        return await self.store.update_status(item_id, status, **kwargs)

    # ── User events ───────────────────────────────────────────

    async def _notify(self, user_id: str, event_type: str, data: dict[str, Any]) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.notify(user_id, event_type, data)
        except Exception as e:
            logger.warning("user_event_failed", user_id=user_id, event_type=event_type, error=str(e))

    async def _notify_progress(self, user_id: str, item: QueueItem) -> None:
        if self.broadcaster is None:
            return
        try:
            progress = await self.store.get_progress(item.workflow_id)
        except Exception as e:
            logger.warning("progress_lookup_failed", workflow_id=item.workflow_id, error=str(e))
            return
        await self._notify(user_id, APPLICATION_PROGRESS, {
            "workflow_id": item.workflow_id,
            "completed": progress.get("submitted", 0),
            "total": sum(progress.get(k, 0) for k in ("submitted", "submitting", "pending", "ready")),
            "current_job": item.job_external_id,
        })

    async def _notify_rate_limited(self, user_id: str, retry_at: Optional[datetime]) -> None:
        if self.broadcaster is None:
            return
        status = await self.rate_limiter.get_status(user_id)
        await self._notify(user_id, RATE_LIMIT_UPDATE, {
            "tokens": status.tokens,
            "capacity": status.capacity,
            "next_refill": retry_at.isoformat() if retry_at else None,
            "can_apply": False,
        })

    async def _notify_completed(
        self, user_id: str, item: QueueItem, reference: str = "", error: str = "",
    ) -> None:
        data = {
            "job_title": item.payload.get("jobTitle") or "Job",
            "company": item.payload.get("company") or "Company",
            "job_id": item.job_external_id,
            "status": "failed" if error else "success",
        }
        if error:
            data["error_message"] = error
        else:
            data["reference"] = reference
        await self._notify(user_id, APPLICATION_COMPLETED, data)
