"""
Development job source.

The production job-board client (search, OAuth, token refresh) is an
external collaborator; this source serves a fixed list so the orchestrator
can be run end to end without credentials.
"""
from __future__ import annotations

from typing import Any, Iterable

import structlog

from jobs.base import JobSource

logger = structlog.get_logger()


class StaticJobSource(JobSource):
    """Returns a fixed job list, filtered by the `text` search parameter."""

    source_name = "static"

    def __init__(self, jobs: Iterable[dict[str, Any]] = ()):
        self._jobs = [dict(j) for j in jobs]

    async def fetch(self, search_params: dict[str, Any]) -> list[dict[str, Any]]:
        text = str(search_params.get("text", "")).lower()
        if not text:
            return [dict(j) for j in self._jobs]

        matched = [
            dict(j) for j in self._jobs
            if text in f"{j.get('title', '')} {j.get('description', '')}".lower()
        ]
        logger.debug("static_source_matched", text=text, count=len(matched))
        return matched
