"""Tests for the per-user token bucket."""
import asyncio
import pytest
from datetime import timedelta

from config.settings import RateLimitConfig
from core.rate_limiter import RateLimiter, create_rate_limiter


@pytest.fixture
def limiter(clock) -> RateLimiter:
    return RateLimiter(capacity=20, refill_rate=8 / 3600, clock=clock)


class TestAcquire:
    @pytest.mark.asyncio
    async def test_new_bucket_starts_full(self, limiter):
        status = await limiter.get_status("u1")
        assert status.tokens == 20
        assert status.capacity == 20
        assert status.can_apply

    @pytest.mark.asyncio
    async def test_burst_up_to_capacity_then_deny(self, limiter, clock):
        for _ in range(20):
            decision = await limiter.acquire("u1")
            assert decision.allowed

        denied = await limiter.acquire("u1")
        assert not denied.allowed
        assert denied.remaining == pytest.approx(0)
        # one token at 8/hour takes 450s
        wait = (denied.retry_at - clock.now).total_seconds()
        assert wait == pytest.approx(450, abs=0.01)

    @pytest.mark.asyncio
    async def test_denial_does_not_consume(self, limiter, clock):
        for _ in range(20):
            await limiter.acquire("u1")
        await limiter.acquire("u1")
        await limiter.acquire("u1")

        clock.advance(seconds=451)
        assert (await limiter.acquire("u1")).allowed

    @pytest.mark.asyncio
    async def test_users_are_independent(self, limiter):
        for _ in range(20):
            await limiter.acquire("u1")
        assert not (await limiter.acquire("u1")).allowed
        assert (await limiter.acquire("u2")).allowed

    @pytest.mark.asyncio
    async def test_cost_larger_than_balance(self, limiter, clock):
        for _ in range(18):
            await limiter.acquire("u1")
        denied = await limiter.acquire("u1", cost=5)
        assert not denied.allowed
        # 3 missing tokens
        wait = (denied.retry_at - clock.now).total_seconds()
        assert wait == pytest.approx(3 * 450, abs=0.01)
        assert (await limiter.get_status("u1")).tokens == pytest.approx(2)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cost", [0, -5, 21])
    async def test_unpayable_cost_rejected(self, limiter, cost):
        with pytest.raises(ValueError):
            await limiter.acquire("u1", cost=cost)
        # bucket untouched
        assert (await limiter.get_status("u1")).tokens == 20

    @pytest.mark.asyncio
    async def test_cost_equal_to_capacity_allowed(self, limiter):
        decision = await limiter.acquire("u1", cost=20)
        assert decision.allowed
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_action_types_have_separate_buckets(self, limiter):
        for _ in range(20):
            await limiter.acquire("u1")
        assert not (await limiter.acquire("u1")).allowed
        assert (await limiter.acquire("u1", action_type="resume_publish")).allowed
        assert (await limiter.get_status("u1", action_type="resume_publish")).tokens == 19

        await limiter.reset("u1", action_type="resume_publish")
        assert (await limiter.get_status("u1")).tokens == pytest.approx(0)

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_overspend(self, limiter):
        decisions = await asyncio.gather(*[limiter.acquire("u1") for _ in range(30)])
        assert sum(d.allowed for d in decisions) == 20


class TestRefill:
    @pytest.mark.asyncio
    async def test_partial_refill(self, limiter, clock):
        for _ in range(20):
            await limiter.acquire("u1")
        clock.advance(hours=1)
        status = await limiter.get_status("u1")
        assert status.tokens == pytest.approx(8)

    @pytest.mark.asyncio
    async def test_full_after_capacity_over_rate(self, limiter, clock):
        for _ in range(20):
            await limiter.acquire("u1")
        clock.advance(seconds=20 / (8 / 3600))
        status = await limiter.get_status("u1")
        assert status.tokens == pytest.approx(20)
        assert status.tokens <= 20

    @pytest.mark.asyncio
    async def test_never_exceeds_capacity(self, limiter, clock):
        await limiter.acquire("u1")
        clock.advance(days=3)
        assert (await limiter.get_status("u1")).tokens == 20

    @pytest.mark.asyncio
    async def test_clock_going_backwards_adds_nothing(self, limiter, clock):
        for _ in range(20):
            await limiter.acquire("u1")
        clock.advance(minutes=-10)
        assert (await limiter.get_status("u1")).tokens == pytest.approx(0)


class TestAdministration:
    @pytest.mark.asyncio
    async def test_reset_restores_full_bucket(self, limiter):
        for _ in range(15):
            await limiter.acquire("u1")
        await limiter.reset("u1")
        assert (await limiter.get_status("u1")).tokens == 20

    @pytest.mark.asyncio
    async def test_reset_unknown_user_is_noop(self, limiter):
        await limiter.reset("nobody")

    @pytest.mark.asyncio
    async def test_prune_idle(self, limiter, clock):
        await limiter.acquire("stale")
        clock.advance(hours=25)
        await limiter.acquire("fresh")

        pruned = await limiter.prune_idle(timedelta(hours=24))
        assert pruned == 1
        assert ("stale", "application") not in limiter._buckets
        assert ("fresh", "application") in limiter._buckets

    def test_rejects_bad_parameters(self):
        with pytest.raises(ValueError):
            RateLimiter(capacity=0)
        with pytest.raises(ValueError):
            RateLimiter(refill_rate=0)

    def test_create_from_config(self, clock):
        limiter = create_rate_limiter(RateLimitConfig(capacity=5, refill_per_hour=36), clock=clock)
        assert limiter.capacity == 5
        assert limiter.refill_rate == pytest.approx(0.01)

    def test_create_with_defaults(self):
        limiter = create_rate_limiter()
        assert limiter.capacity == 20
        assert limiter.refill_rate == pytest.approx(8 / 3600)
