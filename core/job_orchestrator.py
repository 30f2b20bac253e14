"""
Job Fetch Orchestrator — periodic per-user fetch → enrich → broadcast.

Runs as a background task (start/stop). Every tick it walks the registered
schedules one after another and runs the pipeline for each due schedule:

    fetch (bounded) → cap at max_jobs_per_fetch → enrich → broadcast (bounded)

A schedule's last_run moves forward only when both fetch and broadcast
succeeded. Any failure leaves last_run alone and sets retry_after with
exponential backoff; with the default base of one tick the first retry
happens on the very next tick.

State is in-process only. Schedules are lost on restart and two running
instances will both fetch for the same user.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from core.errors import BroadcastFailedError, FetchFailedError
from core.locks import KeyedLocks
from jobs.base import Broadcaster, JobEnricher, JobSource
from jobs.enrichment import PassThroughEnricher
from models.schemas import FetchError, FetchResult, Schedule, utcnow

logger = structlog.get_logger()


class JobFetchOrchestrator:
    """
    Owns the schedule map. Short critical sections on a state lock guard the
    map; a per-user lock keeps "check last_run → run → update last_run"
    atomic between the tick and fetch_now.
    """

    def __init__(
        self,
        source: JobSource,
        broadcaster: Broadcaster,
        enricher: Optional[JobEnricher] = None,
        tick_interval_s: float = 300,
        default_interval: timedelta = timedelta(minutes=30),
        max_jobs_per_fetch: int = 100,
        call_timeout_s: float = 30.0,
        backoff_base: timedelta = timedelta(minutes=5),
        backoff_max: timedelta = timedelta(minutes=30),
        source_tag: str = "hh.ru",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.broadcaster = broadcaster
        self.enricher = enricher or PassThroughEnricher()
        self.tick_interval_s = tick_interval_s
        self.default_interval = default_interval
        self.max_jobs_per_fetch = max_jobs_per_fetch
        self.call_timeout_s = call_timeout_s
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.source_tag = source_tag
        self._clock = clock

        self._schedules: dict[str, Schedule] = {}
        self._state_lock = asyncio.Lock()
        self._user_locks = KeyedLocks()

        self.last_tick: Optional[datetime] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the tick loop as a background task."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._tick_loop(), name="job_fetch_orchestrator")
        logger.info("job_orchestrator_started", tick_interval_s=self.tick_interval_s)

    async def stop(self) -> None:
        """Gracefully stop the tick loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("job_orchestrator_stopped")

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def _tick_loop(self) -> None:
        """Main loop — runs until stopped."""
        while self._running:
            await asyncio.sleep(self.tick_interval_s)
            try:
                await self.run_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("tick_error", error=str(e), error_type=type(e).__name__)

    # ── Schedule management ───────────────────────────────────

    async def schedule(
        self, user_id: str, search_params: dict[str, Any],
        interval: Optional[timedelta] = None,
    ) -> Schedule:
        """Register (or replace) a user's recurring fetch. The first run is due immediately."""
        schedule = Schedule(
            user_id=user_id,
            search_params=dict(search_params),
            enabled=True,
            last_run=None,
            interval=interval if interval is not None else self.default_interval,
        )
        async with self._state_lock:
            self._schedules[user_id] = schedule
        logger.info("schedule_registered", user_id=user_id,
                    interval_s=schedule.interval.total_seconds())
        return schedule.model_copy()

    async def unschedule(self, user_id: str) -> bool:
        """Remove from future ticks. A run already in flight finishes normally."""
        async with self._state_lock:
            removed = self._schedules.pop(user_id, None) is not None
        logger.info("schedule_removed", user_id=user_id, existed=removed)
        return removed

    async def get_schedules(self) -> list[Schedule]:
        async with self._state_lock:
            return [s.model_copy() for s in self._schedules.values()]

    async def get_schedule(self, user_id: str) -> Optional[Schedule]:
        async with self._state_lock:
            schedule = self._schedules.get(user_id)
            return schedule.model_copy() if schedule else None

    # ── Fetching ──────────────────────────────────────────────

    async def fetch(self, search_params: dict[str, Any]) -> FetchResult:
        """One-off fetch; touches no schedule."""
        return await self._run_pipeline(search_params)

    async def fetch_now(self, user_id: str) -> FetchResult:
        """Run a registered user's pipeline immediately, with the same bookkeeping as a tick."""
        async with self._user_locks.hold(user_id):
            schedule = await self.get_schedule(user_id)
            if schedule is None:
                return FetchResult.failure(FetchError.NO_SCHEDULE, f"no schedule for user {user_id}")

            started = self._clock()
            result = await self._run_pipeline(schedule.search_params)
            await self._record(user_id, result, started)
            return result

    async def run_tick(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Evaluate every schedule once, sequentially.
        Returns counts: {"due": N, "succeeded": N, "failed": N}
        """
        now = now or self._clock()
        stats = {"due": 0, "succeeded": 0, "failed": 0}

        for candidate in await self.get_schedules():
            if not candidate.is_due(now):
                continue

            async with self._user_locks.hold(candidate.user_id):
                # fetch_now may have run while we waited for the lock
                schedule = await self.get_schedule(candidate.user_id)
                if schedule is None or not schedule.is_due(now):
                    continue

                stats["due"] += 1
                logger.info("scheduled_fetch_started", user_id=schedule.user_id)
                result = await self._run_pipeline(schedule.search_params)
                await self._record(schedule.user_id, result, now)

            if result.ok:
                stats["succeeded"] += 1
                logger.info("scheduled_fetch_completed", user_id=schedule.user_id,
                            fetched=result.fetched, delivered=result.delivered)
            else:
                stats["failed"] += 1
                if result.error == FetchError.BROADCAST_FAILED:
                    logger.warning("scheduled_fetch_will_retry", user_id=schedule.user_id,
                                   cause="broadcast_failure", reason=result.reason)
                else:
                    logger.error("scheduled_fetch_failed", user_id=schedule.user_id,
                                 reason=result.reason)

        self.last_tick = now
        return stats

    # ── Internals ─────────────────────────────────────────────

    async def _record(self, user_id: str, result: FetchResult, now: datetime) -> None:
        async with self._state_lock:
            schedule = self._schedules.get(user_id)
            if schedule is None:
                logger.info("schedule_gone_after_run", user_id=user_id)
                return

            if result.ok:
                schedule.last_run = now
                schedule.consecutive_failures = 0
                schedule.retry_after = None
                return

            schedule.consecutive_failures += 1
            schedule.retry_after = now + self._backoff(schedule.consecutive_failures)

    def _backoff(self, failures: int) -> timedelta:
        delay = self.backoff_base * (2 ** max(failures - 1, 0))
        return min(delay, self.backoff_max)

    async def _bounded(self, coro):
        return await asyncio.wait_for(coro, timeout=self.call_timeout_s)

    async def _run_pipeline(self, search_params: dict[str, Any]) -> FetchResult:
        """fetch → cap → enrich → broadcast. Never raises except on cancellation."""
        logger.info("fetching_jobs", params=search_params)

        try:
            jobs = await self._fetch_jobs(search_params)
        except FetchFailedError as e:
            logger.error("job_fetch_failed", reason=e.reason)
            return FetchResult.failure(FetchError.FETCH_FAILED, e.reason)

        total = len(jobs)
        batch = jobs[: self.max_jobs_per_fetch]

        try:
            enriched = await self._bounded(self.enricher.enrich(batch))
        except asyncio.TimeoutError:
            logger.error("job_enrichment_timeout", timeout_s=self.call_timeout_s)
            return FetchResult.failure(FetchError.FETCH_FAILED, "enrichment timed out", fetched=total)
        except Exception as e:
            logger.error("job_enrichment_failed", error=str(e))
            return FetchResult.failure(FetchError.FETCH_FAILED, f"enrichment: {e}", fetched=total)

        stats = {
            "total": total,
            "broadcasted": len(enriched),
            "source": self.source_tag,
            "timestamp": self._clock().isoformat(),
        }

        try:
            delivered = await self._broadcast(enriched, stats)
        except BroadcastFailedError as e:
            logger.error("job_broadcast_failed", reason=e.reason, fetched=total)
            return FetchResult.failure(FetchError.BROADCAST_FAILED, e.reason, fetched=total)

        logger.info("jobs_fetched_and_broadcast", fetched=total, delivered=delivered)
        return FetchResult.success(fetched=total, delivered=delivered)

    async def _fetch_jobs(self, search_params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            jobs = await self._bounded(self.source.fetch(search_params))
        except asyncio.TimeoutError:
            raise FetchFailedError(f"timed out after {self.call_timeout_s}s")
        except FetchFailedError:
            raise
        except Exception as e:
            raise FetchFailedError(str(e) or type(e).__name__) from e

        if not isinstance(jobs, list):
            raise FetchFailedError(f"unexpected result type {type(jobs).__name__}")
        return jobs

    async def _broadcast(self, jobs: list[dict[str, Any]], stats: dict[str, Any]) -> int:
        try:
            return await self._bounded(self.broadcaster.broadcast(jobs, stats))
        except asyncio.TimeoutError:
            raise BroadcastFailedError(f"timed out after {self.call_timeout_s}s", fetched=len(jobs))
        except BroadcastFailedError:
            raise
        except Exception as e:
            raise BroadcastFailedError(str(e) or type(e).__name__, fetched=len(jobs)) from e
