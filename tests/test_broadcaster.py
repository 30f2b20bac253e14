"""Tests for the broadcasters and job normalization."""
import json
import httpx
import pytest

from config.settings import BroadcasterConfig
from core.errors import BroadcastFailedError
from jobs.broadcaster import (
    HttpBroadcaster, InMemoryBroadcaster, create_broadcaster, normalize_job,
)


STATS = {"total": 1, "broadcasted": 1, "source": "hh.ru", "timestamp": "2024-01-15T06:00:00+00:00"}


class TestNormalizeJob:
    def test_prefers_board_vacancy_id(self):
        job = normalize_job({"hh_vacancy_id": "777", "id": "internal", "title": "Dev"})
        assert job["id"] == "777"
        assert job["title"] == "Dev"

    def test_defaults(self):
        job = normalize_job({"id": "1"})
        assert job == {
            "id": "1", "title": None, "company": None, "salary": None,
            "area": None, "url": None, "skills": [], "description": None,
            "has_test": False,
        }

    def test_drops_unknown_fields(self):
        assert "raw" not in normalize_job({"id": "1", "raw": {"x": 1}})


# ──────────────────────────────────────────────────────────────
#  In-process fan-out
# ──────────────────────────────────────────────────────────────

class TestInMemoryBroadcaster:
    @pytest.mark.asyncio
    async def test_no_subscribers_delivers_nothing(self):
        assert await InMemoryBroadcaster().broadcast([{"id": "1"}], STATS) == 0

    @pytest.mark.asyncio
    async def test_fan_out(self):
        broadcaster = InMemoryBroadcaster()
        q1, q2 = broadcaster.subscribe(), broadcaster.subscribe()

        delivered = await broadcaster.broadcast([{"id": "1"}, {"id": "2"}], STATS)
        assert delivered == 2
        for queue in (q1, q2):
            message = queue.get_nowait()
            assert [j["id"] for j in message["jobs"]] == ["1", "2"]
            assert message["stats"]["source"] == "hh.ru"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        broadcaster = InMemoryBroadcaster()
        queue = broadcaster.subscribe()
        broadcaster.unsubscribe(queue)
        broadcaster.unsubscribe(queue)
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_full_queue_skipped_when_others_reached(self):
        broadcaster = InMemoryBroadcaster(max_queue_size=1)
        slow, fast = broadcaster.subscribe(), broadcaster.subscribe()
        await broadcaster.broadcast([{"id": "1"}], STATS)
        fast.get_nowait()

        assert await broadcaster.broadcast([{"id": "2"}], STATS) == 1
        assert slow.qsize() == 1
        assert fast.get_nowait()["jobs"][0]["id"] == "2"

    @pytest.mark.asyncio
    async def test_all_queues_full_raises(self):
        broadcaster = InMemoryBroadcaster(max_queue_size=1)
        broadcaster.subscribe()
        await broadcaster.broadcast([{"id": "1"}], STATS)
        with pytest.raises(BroadcastFailedError) as exc:
            await broadcaster.broadcast([{"id": "2"}, {"id": "3"}], STATS)
        assert exc.value.fetched == 2


class TestUserEvents:
    @pytest.mark.asyncio
    async def test_notify_reaches_only_that_user(self):
        broadcaster = InMemoryBroadcaster()
        mine, other = broadcaster.subscribe_user("u1"), broadcaster.subscribe_user("u2")
        jobs_queue = broadcaster.subscribe()

        assert await broadcaster.notify("u1", "rate_limit_update", {"can_apply": False}) is True
        message = mine.get_nowait()
        assert message["type"] == "rate_limit_update"
        assert message["data"] == {"can_apply": False}
        assert "timestamp" in message
        assert other.empty()
        assert jobs_queue.empty()

    @pytest.mark.asyncio
    async def test_notify_without_listeners(self):
        broadcaster = InMemoryBroadcaster()
        assert await broadcaster.notify("u1", "application_progress", {}) is False

    @pytest.mark.asyncio
    async def test_unsubscribe_user(self):
        broadcaster = InMemoryBroadcaster()
        queue = broadcaster.subscribe_user("u1")
        broadcaster.unsubscribe_user("u1", queue)
        broadcaster.unsubscribe_user("u1", queue)
        assert await broadcaster.notify("u1", "application_progress", {}) is False

    @pytest.mark.asyncio
    async def test_full_user_queue_misses_event(self):
        broadcaster = InMemoryBroadcaster(max_queue_size=1)
        queue = broadcaster.subscribe_user("u1")
        assert await broadcaster.notify("u1", "application_progress", {"completed": 1})
        assert await broadcaster.notify("u1", "application_progress", {"completed": 2}) is False
        assert queue.get_nowait()["data"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_http_backend_drops_user_events(self):
        broadcaster = HttpBroadcaster("http://api.test")
        assert await broadcaster.notify("u1", "application_completed", {}) is False
        await broadcaster.close()


# ──────────────────────────────────────────────────────────────
#  HTTP fan-out
# ──────────────────────────────────────────────────────────────

def http_broadcaster(handler) -> HttpBroadcaster:
    broadcaster = HttpBroadcaster("http://api.test/", secret="s3cret")
    broadcaster.client = httpx.AsyncClient(
        base_url=broadcaster.api_base_url,
        headers={"X-Core-Secret": broadcaster.secret},
        transport=httpx.MockTransport(handler),
    )
    return broadcaster


class TestHttpBroadcaster:
    @pytest.mark.asyncio
    async def test_posts_normalized_jobs(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["secret"] = request.headers.get("X-Core-Secret")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "delivered": 4})

        broadcaster = http_broadcaster(handler)
        delivered = await broadcaster.broadcast([{"hh_vacancy_id": "9", "title": "Dev"}], STATS)
        await broadcaster.close()

        assert delivered == 4
        assert seen["path"] == "/api/v1/jobs/broadcast"
        assert seen["secret"] == "s3cret"
        assert seen["body"]["jobs"][0]["id"] == "9"
        assert seen["body"]["stats"]["source"] == "hh.ru"

    @pytest.mark.asyncio
    async def test_bad_status_raises(self):
        broadcaster = http_broadcaster(lambda r: httpx.Response(500, text="oops"))
        with pytest.raises(BroadcastFailedError) as exc:
            await broadcaster.broadcast([{"id": "1"}], STATS)
        assert "500" in exc.value.reason
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_unexpected_body_raises(self):
        broadcaster = http_broadcaster(lambda r: httpx.Response(200, json={"ok": False}))
        with pytest.raises(BroadcastFailedError):
            await broadcaster.broadcast([{"id": "1"}], STATS)
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self):
        broadcaster = http_broadcaster(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(BroadcastFailedError):
            await broadcaster.broadcast([{"id": "1"}], STATS)
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_transport_errors_retried_then_raised(self, monkeypatch):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("refused", request=request)

        broadcaster = http_broadcaster(handler)
        # no real waiting between retries
        monkeypatch.setattr(HttpBroadcaster._post.retry, "sleep", _no_sleep)
        with pytest.raises(BroadcastFailedError):
            await broadcaster.broadcast([{"id": "1"}], STATS)
        assert len(attempts) == 3
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        broadcaster = HttpBroadcaster("http://api.test")
        await broadcaster.close()
        await broadcaster.close()


async def _no_sleep(seconds):
    return None


class TestFactory:
    def test_memory_default(self):
        assert isinstance(create_broadcaster(None), InMemoryBroadcaster)
        assert isinstance(create_broadcaster(BroadcasterConfig()), InMemoryBroadcaster)

    def test_http(self):
        broadcaster = create_broadcaster(BroadcasterConfig(
            backend="http", api_base_url="http://api.test/", secret="x", timeout_s=5,
        ))
        assert isinstance(broadcaster, HttpBroadcaster)
        assert broadcaster.api_base_url == "http://api.test"
        assert broadcaster.timeout_s == 5

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_broadcaster(BroadcasterConfig(backend="kafka"))
