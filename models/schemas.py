"""
Core data models for the application orchestrator.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueueStatus(str, Enum):
    PENDING = "pending"
    CUSTOMIZING = "customizing"
    READY = "ready"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"


class FetchError(str, Enum):
    FETCH_FAILED = "fetch_failed"
    BROADCAST_FAILED = "broadcast_failed"
    NO_SCHEDULE = "no_schedule"


# Allowed lifecycle moves. rate_limited → pending is the only way back.
STATUS_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.CUSTOMIZING}),
    QueueStatus.CUSTOMIZING: frozenset({QueueStatus.READY, QueueStatus.FAILED}),
    QueueStatus.READY: frozenset({QueueStatus.SUBMITTING}),
    QueueStatus.SUBMITTING: frozenset({
        QueueStatus.SUBMITTED, QueueStatus.FAILED, QueueStatus.RATE_LIMITED,
    }),
    QueueStatus.RATE_LIMITED: frozenset({QueueStatus.PENDING}),
    QueueStatus.SUBMITTED: frozenset(),
    QueueStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({QueueStatus.SUBMITTED, QueueStatus.FAILED})
RUNNABLE_STATUSES = frozenset({QueueStatus.PENDING, QueueStatus.READY})
SCHEDULABLE_STATUSES = frozenset({
    QueueStatus.PENDING, QueueStatus.READY, QueueStatus.RATE_LIMITED,
})


def can_transition(current: QueueStatus, new: QueueStatus) -> bool:
    return QueueStatus(new) in STATUS_TRANSITIONS[QueueStatus(current)]


def empty_progress() -> dict[str, int]:
    """Zero-filled counts for every known status."""
    return {status.value: 0 for status in QueueStatus}


# ──────────────────────────────────────────────────────────────
#  QueueItem — one (job, CV) submission unit
# ──────────────────────────────────────────────────────────────

class QueueItem(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow_id: str
    user_id: str
    cv_id: str
    job_external_id: str
    status: QueueStatus = QueueStatus.PENDING
    priority: int = 0                         # larger ⇒ scheduled earlier
    attempts: int = 0
    last_error: Optional[str] = None
    next_run_at: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = {}              # jobTitle, description, company, matchScore, coverLetter
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ScheduleUpdate(BaseModel):
    """Write-back unit produced by the smart orchestrator."""
    id: str
    priority: int
    next_run_at: datetime


class ScoredItem(BaseModel):
    """
    A QueueItem annotated during one optimizer pass.
    priority_score and scheduled_time are folded back into the item's
    priority and next_run_at on write-back.
    """
    item: QueueItem
    priority_score: int
    match_score: int = 0
    freshness_score: int = 0
    urgency_score: int = 0
    scheduled_time: Optional[datetime] = None

    def to_update(self) -> ScheduleUpdate:
        return ScheduleUpdate(
            id=self.item.id,
            priority=self.priority_score,
            next_run_at=self.scheduled_time or self.item.next_run_at,
        )


# ──────────────────────────────────────────────────────────────
#  Schedule — per-user recurring fetch configuration
# ──────────────────────────────────────────────────────────────

class Schedule(BaseModel):
    user_id: str
    search_params: dict[str, Any] = {}
    enabled: bool = True
    last_run: Optional[datetime] = None
    interval: timedelta = timedelta(minutes=30)
    consecutive_failures: int = 0
    retry_after: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        if self.retry_after is not None and now < self.retry_after:
            return False
        return self.last_run is None or now - self.last_run >= self.interval


# ──────────────────────────────────────────────────────────────
#  Rate limiting
# ──────────────────────────────────────────────────────────────

class RateLimitStatus(BaseModel):
    tokens: float
    capacity: int
    refill_rate: float                        # tokens per second
    last_refill: datetime

    @property
    def can_apply(self) -> bool:
        return self.tokens >= 1


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: float
    retry_at: Optional[datetime] = None       # set when denied


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class FetchResult(BaseModel):
    """Outcome of one fetch → enrich → broadcast pipeline run."""
    ok: bool
    fetched: int = 0
    delivered: int = 0
    error: Optional[FetchError] = None
    reason: str = ""

    @classmethod
    def success(cls, fetched: int, delivered: int) -> FetchResult:
        return cls(ok=True, fetched=fetched, delivered=delivered)

    @classmethod
    def failure(cls, error: FetchError, reason: str = "", fetched: int = 0) -> FetchResult:
        return cls(ok=False, error=error, reason=reason, fetched=fetched)


class OrchestrationReport(BaseModel):
    workflow_id: str
    scheduled_count: int = 0
    total_count: int = 0


class CompletionEstimate(BaseModel):
    items_count: int
    hours_needed: int = 0
    days_needed: int = 0
    estimated_completion: datetime
    tokens_available: float = 0


class SubmissionOutcome(BaseModel):
    """
    What the submission worker did with one item.
    `status` is the status actually stored. When the final write could not
    be stored, status is None and `intended_status` says where the item
    should have gone (together with `reference`, for reconciliation).
    """
    item_id: Optional[str] = None
    status: Optional[QueueStatus] = None
    intended_status: Optional[QueueStatus] = None
    retry_at: Optional[datetime] = None
    reference: str = ""                       # board-side id of the application
    error: str = ""

    @property
    def idle(self) -> bool:
        return self.item_id is None
