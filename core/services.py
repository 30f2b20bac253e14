"""
Service container — builds explicit handles from settings.

Callers receive the store, rate limiter and orchestrators from here instead
of looking up module-level singletons.

Usage:
    services = build_services(load_settings(), source=my_board_client)
    await services.startup()
    workflow_id, count = await services.start_workflow("u1", "cv1", ["101", "102"])
    ...
    await services.shutdown()
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from config.settings import Settings, get_settings
from core.job_orchestrator import JobFetchOrchestrator
from core.rate_limiter import RateLimiter, create_rate_limiter
from database.session import close_db, init_db
from database.store_base import BaseQueueStore
from database.store_factory import create_store
from jobs.base import Broadcaster, JobEnricher, JobSource
from jobs.broadcaster import create_broadcaster
from jobs.sources import StaticJobSource
from models.schemas import CompletionEstimate, OrchestrationReport, empty_progress
from scheduling.optimizer import estimate_completion
from scheduling.smart_orchestrator import SmartOrchestrator
from workers.submission import ApplicationSubmitter, CvCustomizer, SubmissionWorker

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    store: BaseQueueStore
    rate_limiter: RateLimiter
    broadcaster: Broadcaster
    job_orchestrator: JobFetchOrchestrator
    smart_orchestrator: SmartOrchestrator
    submission_worker: Optional[SubmissionWorker] = None
    engine: Optional[AsyncEngine] = None

    async def startup(self) -> None:
        if self.engine is not None:
            await init_db(self.engine)
        await self.job_orchestrator.start()
        logger.info("services_started", app=self.settings.app_name)

    async def shutdown(self) -> None:
        await self.job_orchestrator.stop()
        await self.broadcaster.close()
        if self.engine is not None:
            await close_db(self.engine)
        logger.info("services_stopped")

    # ── Workflow operations ───────────────────────────────────

    async def start_workflow(
        self, user_id: str, cv_id: str, job_ids: list[str],
        payloads: dict[str, dict[str, Any]] = None,
    ) -> tuple[str, int]:
        """Create queue items for a new workflow and schedule them."""
        workflow_id = uuid.uuid4().hex
        count = await self.store.create_items(workflow_id, user_id, cv_id, job_ids, payloads)
        await self.smart_orchestrator.orchestrate(workflow_id, user_id)
        logger.info("workflow_started", workflow_id=workflow_id, user_id=user_id, items=count)
        return workflow_id, count

    async def reschedule_workflow(self, workflow_id: str, user_id: str) -> OrchestrationReport:
        return await self.smart_orchestrator.orchestrate(workflow_id, user_id)

    async def get_progress(self, workflow_id: str) -> dict[str, int]:
        """Progress snapshot; an unreadable store reports all-zero counts."""
        try:
            return await self.store.get_progress(workflow_id)
        except Exception as e:
            logger.error("progress_read_failed", workflow_id=workflow_id, error=str(e))
            return empty_progress()

    async def estimate_completion(self, workflow_id: str, user_id: str) -> CompletionEstimate:
        items = await self.store.get_items(workflow_id)
        status = await self.rate_limiter.get_status(user_id)
        return estimate_completion(items, tokens_available=status.tokens)

    async def rate_limit_status(self, user_id: str) -> dict[str, Any]:
        status = await self.rate_limiter.get_status(user_id)
        return {
            "tokens": status.tokens,
            "capacity": status.capacity,
            "refill_rate": status.refill_rate,
            "can_apply": status.can_apply,
        }


def build_services(
    settings: Optional[Settings] = None,
    source: Optional[JobSource] = None,
    broadcaster: Optional[Broadcaster] = None,
    enricher: Optional[JobEnricher] = None,
    submitter: Optional[ApplicationSubmitter] = None,
    customizer: Optional[CvCustomizer] = None,
) -> Services:
    settings = settings or get_settings()

    store, engine = create_store({
        "store_backend": settings.database.store_backend,
        "url": settings.database.url,
        "echo": settings.database.echo,
    })
    rate_limiter = create_rate_limiter(settings.rate_limit)
    broadcaster = broadcaster or create_broadcaster(settings.broadcaster)

    oc = settings.orchestrator
    job_orchestrator = JobFetchOrchestrator(
        source=source or StaticJobSource(),
        broadcaster=broadcaster,
        enricher=enricher,
        tick_interval_s=oc.tick_interval_s,
        default_interval=timedelta(seconds=oc.default_interval_s),
        max_jobs_per_fetch=oc.max_jobs_per_fetch,
        call_timeout_s=oc.call_timeout_s,
        backoff_base=timedelta(seconds=oc.backoff_base_s),
        backoff_max=timedelta(seconds=oc.backoff_max_s),
        source_tag=oc.source_tag,
    )

    sc = settings.scheduling
    smart_orchestrator = SmartOrchestrator(
        store,
        timezone=sc.timezone,
        min_gap_minutes=sc.min_gap_minutes,
        max_gap_minutes=sc.max_gap_minutes,
        start_hour=sc.business_hour_start,
        end_hour=sc.business_hour_end,
    )

    submission_worker = None
    if submitter is not None:
        submission_worker = SubmissionWorker(store, rate_limiter, submitter, customizer,
                                             broadcaster=broadcaster)

    return Services(
        settings=settings,
        store=store,
        rate_limiter=rate_limiter,
        broadcaster=broadcaster,
        job_orchestrator=job_orchestrator,
        smart_orchestrator=smart_orchestrator,
        submission_worker=submission_worker,
        engine=engine,
    )
