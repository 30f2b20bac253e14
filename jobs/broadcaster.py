"""
Broadcasters — deliver fetched jobs to subscribers.

  InMemoryBroadcaster  asyncio queues per subscriber (development, tests,
                       single-process deployments)
  HttpBroadcaster      POSTs to the companion API service, which pushes the
                       jobs to connected users over WebSocket

Both raise BroadcastFailedError when nothing could be delivered, so the
orchestrator can tell "no data" apart from "data lost in delivery".

Per-user submission events ({type, data, timestamp} on `user:<id>`) are
published in-process by InMemoryBroadcaster; the HTTP backend has no
endpoint for them and drops them.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import BroadcastFailedError
from jobs.base import Broadcaster, user_event, user_topic

logger = structlog.get_logger()


def normalize_job(job: dict[str, Any]) -> dict[str, Any]:
    """Project a board-specific job dict onto the fields subscribers consume."""
    return {
        "id": job.get("hh_vacancy_id") or job.get("id"),
        "title": job.get("title"),
        "company": job.get("company"),
        "salary": job.get("salary"),
        "area": job.get("area"),
        "url": job.get("url"),
        "skills": job.get("skills") or [],
        "description": job.get("description"),
        "has_test": bool(job.get("has_test", False)),
    }


# ──────────────────────────────────────────────────────────────
#  In-process fan-out
# ──────────────────────────────────────────────────────────────

class InMemoryBroadcaster(Broadcaster):
    """
    Fan-out to asyncio.Queue subscribers.
    A subscriber whose queue is full misses that message; the others still
    get it. Delivery fails only when every subscriber missed it.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: list[asyncio.Queue] = []
        self._topics: dict[str, list[asyncio.Queue]] = {}

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def subscribe_user(self, user_id: str) -> asyncio.Queue:
        """Queue receiving the events published on `user:<user_id>`."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._topics.setdefault(user_topic(user_id), []).append(queue)
        return queue

    def unsubscribe_user(self, user_id: str, queue: asyncio.Queue) -> None:
        topic = user_topic(user_id)
        queues = self._topics.get(topic, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._topics.pop(topic, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def notify(self, user_id: str, event_type: str, data: dict[str, Any]) -> bool:
        topic = user_topic(user_id)
        queues = self._topics.get(topic)
        if not queues:
            logger.debug("user_event_no_listeners", topic=topic, event_type=event_type)
            return False

        message = user_event(event_type, data)
        reached = 0
        for queue in list(queues):
            try:
                queue.put_nowait(message)
                reached += 1
            except asyncio.QueueFull:
                logger.warning("user_event_queue_full", topic=topic, event_type=event_type)

        logger.debug("user_event_published", topic=topic, event_type=event_type, listeners=reached)
        return reached > 0

    async def broadcast(self, jobs: list[dict[str, Any]], stats: dict[str, Any]) -> int:
        message = {"jobs": [normalize_job(j) for j in jobs], "stats": dict(stats)}
        if not self._subscribers:
            logger.debug("broadcast_no_subscribers", jobs=len(jobs))
            return 0

        reached = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
                reached += 1
            except asyncio.QueueFull:
                logger.warning("subscriber_queue_full", queue_size=queue.qsize())

        if reached == 0:
            raise BroadcastFailedError("all subscriber queues are full", fetched=len(jobs))

        logger.info("jobs_broadcast", jobs=len(jobs), subscribers=reached)
        return len(jobs)


# ──────────────────────────────────────────────────────────────
#  HTTP fan-out via the API service
# ──────────────────────────────────────────────────────────────

class HttpBroadcaster(Broadcaster):
    """
    POST {api_base_url}/api/v1/jobs/broadcast with the shared secret header.
    Expects {"ok": true, "delivered": N} back.
    """

    path = "/api/v1/jobs/broadcast"

    def __init__(self, api_base_url: str, secret: str = "", timeout_s: float = 30.0):
        self.api_base_url = api_base_url.rstrip("/")
        self.secret = secret
        self.timeout_s = timeout_s
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.api_base_url,
                headers={"X-Core-Secret": self.secret, "Content-Type": "application/json"},
                timeout=self.timeout_s,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(self.path, json=body)

    async def broadcast(self, jobs: list[dict[str, Any]], stats: dict[str, Any]) -> int:
        body = {"jobs": [normalize_job(j) for j in jobs], "stats": dict(stats)}
        try:
            response = await self._post(body)
        except httpx.HTTPError as e:
            logger.error("broadcast_request_failed", error=str(e))
            raise BroadcastFailedError(str(e), fetched=len(jobs)) from e

        if response.status_code != 200:
            logger.error("broadcast_bad_status", status=response.status_code, body=response.text[:500])
            raise BroadcastFailedError(f"API returned status {response.status_code}", fetched=len(jobs))

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not isinstance(data, dict) or data.get("ok") is not True or "delivered" not in data:
            logger.error("broadcast_unexpected_response", body=response.text[:500])
            raise BroadcastFailedError("unexpected response", fetched=len(jobs))

        delivered = int(data["delivered"])
        logger.info("jobs_broadcast", jobs=len(jobs), delivered=delivered)
        return delivered

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


def create_broadcaster(config=None) -> Broadcaster:
    """Build a broadcaster from a BroadcasterConfig (or defaults)."""
    backend = getattr(config, "backend", "memory")
    if backend == "http":
        return HttpBroadcaster(
            api_base_url=config.api_base_url,
            secret=config.secret,
            timeout_s=config.timeout_s,
        )
    if backend != "memory":
        raise ValueError(f"Unknown broadcaster backend: {backend}")
    return InMemoryBroadcaster()
