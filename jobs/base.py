"""
Collaborator interfaces for the fetch → enrich → broadcast pipeline.

The job-board client, enrichment and subscriber fan-out live outside the
scheduling core. The orchestrator only depends on these three contracts:

  JobSource.fetch(search_params)   → list of job dicts, raises on failure
  JobEnricher.enrich(jobs)         → list of job dicts (default: unchanged)
  Broadcaster.broadcast(jobs, stats) → delivered count, raises on failure

Broadcasters also carry per-user events from the submission worker
(Broadcaster.notify). Those are best effort: a user with no listener simply
misses them.
"""
from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Optional

import structlog

from models.schemas import utcnow

logger = structlog.get_logger()


# Per-user event types
APPLICATION_PROGRESS = "application_progress"
RATE_LIMIT_UPDATE = "rate_limit_update"
APPLICATION_COMPLETED = "application_completed"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def user_event(event_type: str, data: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    """The {type, data, timestamp} envelope every per-user event travels in."""
    return {
        "type": event_type,
        "data": dict(data),
        "timestamp": (now or utcnow()).isoformat(),
    }


class JobSource(abc.ABC):
    """Queries the external job board."""

    source_name: str = "generic"

    @abc.abstractmethod
    async def fetch(self, search_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Return matching jobs. Raise on network, parse or throttling errors."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(source_name={self.source_name!r})"


class JobEnricher(abc.ABC):
    """Adds details to fetched jobs before they are broadcast."""

    @abc.abstractmethod
    async def enrich(self, jobs: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ...


class Broadcaster(abc.ABC):
    """Fans fetched jobs out to subscribers."""

    @abc.abstractmethod
    async def broadcast(self, jobs: list[dict[str, Any]], stats: dict[str, Any]) -> int:
        """Deliver jobs; return how many were delivered. Raise if delivery failed."""
        ...

    async def notify(self, user_id: str, event_type: str, data: dict[str, Any]) -> bool:
        """
        Push one event to a single user's topic. Returns True if a listener
        received it. Backends without a per-user channel drop the event.
        """
        logger.debug("user_event_dropped", user_id=user_id, event_type=event_type,
                     broadcaster=self.__class__.__name__)
        return False

    async def close(self) -> None:
        """Release any held connections."""
        return None
