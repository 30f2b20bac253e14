"""
Error hierarchy for the scheduling core.

Fetch and broadcast failures are raised inside the pipeline and converted
to FetchResult values at the orchestrator boundary. Store errors propagate
to the caller, which decides whether an item failure aborts anything.
"""
from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for all scheduling-core operations."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class FetchFailedError(OrchestratorError):
    """The job source could not be queried (network, parse, throttling)."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Fetch failed: {reason}", retryable=True)


class BroadcastFailedError(OrchestratorError):
    """Jobs were fetched but could not be delivered to subscribers."""

    def __init__(self, reason: str, fetched: int = 0):
        self.reason = reason
        self.fetched = fetched
        super().__init__(f"Broadcast failed: {reason}", retryable=True)


class QueueStoreError(OrchestratorError):
    pass


class QueueItemNotFoundError(QueueStoreError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Queue item {item_id} not found")


class InvalidTransitionError(QueueStoreError):
    def __init__(self, item_id: str, from_status: str, to_status: str):
        self.item_id = item_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Queue item {item_id}: transition {from_status} → {to_status} is not allowed"
        )


class SubmissionError(OrchestratorError):
    """Raised by an ApplicationSubmitter when the board rejects an application."""
    pass
