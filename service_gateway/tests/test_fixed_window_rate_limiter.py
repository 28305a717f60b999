"""
Tests for the fixed-window rate limiter.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from shared.errors import RateLimitError, TierRestrictedError
from shared.models import Tier


class TestFixedWindowRateLimiter:
    """Hourly budget per account."""

    @pytest.mark.asyncio
    async def test_starter_tier_allows_one_hundred_per_hour(self, engine, factory, clock):
        account = await factory.create_account(tier=Tier.STARTER)
        limiter = engine.rate_limiter

        for i in range(100):
            decision = await limiter.check_and_increment(account.id)
            assert decision.used == i + 1
        assert decision.remaining == 0

        clock.advance(minutes=30)
        with pytest.raises(RateLimitError) as exc_info:
            await limiter.check_and_increment(account.id)

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after_seconds == 1800
        assert exc_info.value.response_headers() == {"Retry-After": "1800"}

    @pytest.mark.asyncio
    async def test_window_rollover_resets_the_count(self, engine, factory, clock):
        account = await factory.create_account(tier=Tier.STARTER)
        for _ in range(100):
            await engine.rate_limiter.check_and_increment(account.id)

        clock.advance(hours=1)
        decision = await engine.rate_limiter.check_and_increment(account.id)

        assert decision.used == 1
        assert decision.reset_at == datetime(2026, 1, 5, 14, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_retry_after_is_at_least_one_second(self, engine, factory, clock):
        account = await factory.create_account(tier=Tier.STARTER)
        for _ in range(100):
            await engine.rate_limiter.check_and_increment(account.id)

        clock.advance(minutes=59, seconds=59, microseconds=500000)
        with pytest.raises(RateLimitError) as exc_info:
            await engine.rate_limiter.check_and_increment(account.id)

        assert exc_info.value.retry_after_seconds == 1

    @pytest.mark.asyncio
    async def test_rejected_requests_are_not_counted(self, engine, factory):
        account = await factory.create_account(tier=Tier.STARTER)
        for _ in range(100):
            await engine.rate_limiter.check_and_increment(account.id)
        for _ in range(3):
            with pytest.raises(RateLimitError):
                await engine.rate_limiter.check_and_increment(account.id)

        status = await engine.rate_limiter.get_status(account.id)

        assert status.used == 100

    @pytest.mark.asyncio
    async def test_free_tier_has_no_api_access(self, engine, factory):
        account = await factory.create_account(tier=Tier.FREE)

        with pytest.raises(TierRestrictedError) as exc_info:
            await engine.rate_limiter.check_and_increment(account.id)

        assert exc_info.value.code == "API_ACCESS_NOT_IN_TIER"
        assert exc_info.value.to_response().upgrade_required is True

    @pytest.mark.asyncio
    async def test_sub_account_shares_parent_limit(self, engine, factory):
        parent = await factory.create_agency(tier=Tier.BUSINESS)
        sub_account = await factory.attach_sub_account(parent)

        decision = await engine.rate_limiter.check_and_increment(sub_account.id)

        assert decision.limit == 1000
        assert decision.tier == Tier.BUSINESS

    @pytest.mark.asyncio
    async def test_get_status_and_reset(self, engine, factory):
        account = await factory.create_account(tier=Tier.BUSINESS)
        for _ in range(7):
            await engine.rate_limiter.check_and_increment(account.id)

        status = await engine.rate_limiter.get_status(account.id)
        assert (status.used, status.remaining, status.limit) == (7, 993, 1000)
        assert status.to_dict()["resetAt"] == "2026-01-05T13:00:00+00:00"

        await engine.rate_limiter.reset(account.id)
        assert (await engine.rate_limiter.get_status(account.id)).used == 0

    @pytest.mark.asyncio
    async def test_endpoint_allow_list(self, engine, factory):
        account = await factory.create_account(tier=Tier.STARTER)

        assert await engine.rate_limiter.check_endpoint_allowed(account.id, "GET /api/v1/links") is True
        assert await engine.rate_limiter.check_endpoint_allowed(account.id, "POST /api/v1/links") is False

    def test_concurrent_increments_are_never_lost(self, engine, factory):
        account = asyncio.run(factory.create_account(tier=Tier.STARTER))

        def attempt():
            try:
                asyncio.run(engine.rate_limiter.check_and_increment(account.id))
                return True
            except RateLimitError:
                return False

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: attempt(), range(120)))

        assert results.count(True) == 100
        assert asyncio.run(engine.rate_limiter.get_status(account.id)).used == 100
