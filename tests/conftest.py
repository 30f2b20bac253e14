"""Shared test fixtures for the application orchestrator."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from core.errors import FetchFailedError, BroadcastFailedError
from jobs.base import Broadcaster, JobSource


class FakeClock:
    """Manually advanced UTC clock; call it like utcnow()."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeJobSource(JobSource):
    """Returns `jobs`, or raises FetchFailedError while `error` is set."""

    source_name = "fake"

    def __init__(self, jobs: list[dict[str, Any]] = None):
        self.jobs = jobs if jobs is not None else []
        self.error: str = None
        self.calls: list[dict[str, Any]] = []

    async def fetch(self, search_params: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append(dict(search_params))
        if self.error:
            raise FetchFailedError(self.error)
        return [dict(j) for j in self.jobs]


class RecordingBroadcaster(Broadcaster):
    """Records broadcasts and user events; raises BroadcastFailedError while `error` (or `notify_error`) is set."""

    def __init__(self):
        self.error: str = None
        self.messages: list[tuple[list[dict[str, Any]], dict[str, Any]]] = []
        self.events: list[tuple[str, str, dict[str, Any]]] = []
        self.notify_error: str = None

    async def broadcast(self, jobs: list[dict[str, Any]], stats: dict[str, Any]) -> int:
        if self.error:
            raise BroadcastFailedError(self.error, fetched=len(jobs))
        self.messages.append((list(jobs), dict(stats)))
        return len(jobs)

    async def notify(self, user_id: str, event_type: str, data: dict[str, Any]) -> bool:
        if self.notify_error:
            raise BroadcastFailedError(self.notify_error)
        self.events.append((user_id, event_type, dict(data)))
        return True

    def event_types(self) -> list[str]:
        return [event_type for _, event_type, _ in self.events]


def make_jobs(n: int) -> list[dict[str, Any]]:
    return [
        {"hh_vacancy_id": str(1000 + i), "title": f"Python developer {i}",
         "company": "Acme", "description": "Backend services", "skills": ["python"]}
        for i in range(n)
    ]


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def start_time() -> datetime:
    # Monday 06:00 UTC = 09:00 Moscow
    return datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time) -> FakeClock:
    return FakeClock(start_time)


@pytest.fixture
def job_source() -> FakeJobSource:
    return FakeJobSource(make_jobs(3))


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def memory_store():
    from database.store_memory import InMemoryQueueStore
    return InMemoryQueueStore()


@pytest_asyncio.fixture
async def sql_store():
    from database.session import create_engine, create_session_factory, init_db, close_db
    from database.store import SqlQueueStore

    engine = create_engine("sqlite:///:memory:")
    await init_db(engine)
    yield SqlQueueStore(create_session_factory(engine))
    await close_db(engine)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request):
    """Every queue store backend, one run each."""
    if request.param == "memory":
        from database.store_memory import InMemoryQueueStore
        yield InMemoryQueueStore()
        return

    from database.session import create_engine, create_session_factory, init_db, close_db
    from database.store import SqlQueueStore

    engine = create_engine("sqlite:///:memory:")
    await init_db(engine)
    yield SqlQueueStore(create_session_factory(engine))
    await close_db(engine)
