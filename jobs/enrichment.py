"""Job enrichment steps."""
from __future__ import annotations

from typing import Any

from jobs.base import JobEnricher


class PassThroughEnricher(JobEnricher):
    """Returns jobs unchanged. Swap in a real enricher via the orchestrator."""

    async def enrich(self, jobs: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return list(jobs)
