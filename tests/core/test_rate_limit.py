"""
Tests for the per-domain rate limiters.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from wprank.core.rate_limit import (
    LocalDomainRateLimiter,
    RedisDomainRateLimiter,
    create_rate_limiter,
)


class TestLocalDomainRateLimiter:

    @pytest.mark.asyncio
    async def test_first_request_does_not_wait(self):
        limiter = LocalDomainRateLimiter(min_interval=10.0)
        start = time.monotonic()
        await limiter.acquire("example.com")
        assert time.monotonic() - start < 0.5

    @pytest.mark.asyncio
    async def test_same_domain_is_spaced(self):
        limiter = LocalDomainRateLimiter(min_interval=0.2)
        await limiter.acquire("example.com")
        start = time.monotonic()
        await limiter.acquire("example.com")
        assert time.monotonic() - start >= 0.15

    @pytest.mark.asyncio
    async def test_different_domains_are_independent(self):
        limiter = LocalDomainRateLimiter(min_interval=5.0)
        await limiter.acquire("a.example.com")
        start = time.monotonic()
        await limiter.acquire("b.example.com")
        assert time.monotonic() - start < 0.5

    @pytest.mark.asyncio
    async def test_idle_domains_are_forgotten(self):
        limiter = LocalDomainRateLimiter(min_interval=0.05)
        for domain in ("a.example.com", "b.example.com", "c.example.com"):
            await limiter.acquire(domain)
        assert limiter.tracked_domains == 3

        await asyncio.sleep(0.1)
        await limiter.acquire("d.example.com")

        assert limiter.tracked_domains == 1

    @pytest.mark.asyncio
    async def test_sweep_keeps_domains_inside_their_window(self):
        limiter = LocalDomainRateLimiter(min_interval=0.2)
        await limiter.acquire("old.example.com")
        await asyncio.sleep(0.12)
        await limiter.acquire("recent.example.com")
        await asyncio.sleep(0.1)

        start = time.monotonic()
        await limiter.acquire("recent.example.com")

        # old.example.com aged out; recent.example.com still had to wait
        assert time.monotonic() - start >= 0.05
        assert limiter.tracked_domains == 1


class TestRedisDomainRateLimiter:

    @pytest.mark.asyncio
    async def test_acquires_when_key_is_free(self):
        redis = AsyncMock()
        redis.set.return_value = True
        limiter = RedisDomainRateLimiter(redis, min_interval=1.0)

        await limiter.acquire("example.com")

        redis.set.assert_awaited_once_with("wprank:ratelimit:example.com", "1", nx=True, px=1000)
        redis.pttl.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_waits_for_key_expiry(self):
        redis = AsyncMock()
        redis.set.side_effect = [None, True]
        redis.pttl.return_value = 20
        limiter = RedisDomainRateLimiter(redis, min_interval=1.0)

        await limiter.acquire("example.com")

        assert redis.set.await_count == 2
        redis.pttl.assert_awaited_once_with("wprank:ratelimit:example.com")


def test_factory_picks_redis_when_client_given(settings):
    assert isinstance(create_rate_limiter(settings), LocalDomainRateLimiter)
    assert isinstance(create_rate_limiter(settings, redis=AsyncMock()), RedisDomainRateLimiter)
