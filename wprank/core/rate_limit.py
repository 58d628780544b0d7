"""
Per-domain request spacing.

Every outbound request to a crawled domain goes through acquire(domain), which
waits until at least `min_interval` seconds have passed since the previous
request to that same domain. The local limiter covers one process; the Redis
limiter shares the spacing across processor instances.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import redis.asyncio as aioredis
import structlog

from wprank.core.config import Settings

logger = structlog.get_logger(__name__)


class DomainRateLimiter(ABC):

    min_interval: float

    @abstractmethod
    async def acquire(self, domain: str) -> None:
        """Block until a request to `domain` is allowed."""
        ...


@dataclass
class LocalDomainRateLimiter(DomainRateLimiter):
    """
    In-process limiter: one lock and last-request timestamp per domain.
    A domain whose spacing window has passed and that nobody is waiting on is
    forgotten, so a long-lived worker only tracks recently contacted domains.
    """
    min_interval: float
    _last_request: dict[str, float] = field(default_factory=dict, init=False)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict, init=False)
    _waiting: dict[str, int] = field(default_factory=dict, init=False)
    _last_sweep: float = field(default=0.0, init=False)

    @property
    def tracked_domains(self) -> int:
        return len(self._locks)

    def _evict_idle(self, now: float) -> None:
        if now - self._last_sweep < self.min_interval:
            return
        self._last_sweep = now
        for domain in list(self._locks):
            if self._waiting.get(domain):
                continue
            last = self._last_request.get(domain)
            if last is None or now - last >= self.min_interval:
                del self._locks[domain]
                self._last_request.pop(domain, None)

    async def acquire(self, domain: str) -> None:
        self._evict_idle(time.monotonic())
        lock = self._locks.setdefault(domain, asyncio.Lock())
        self._waiting[domain] = self._waiting.get(domain, 0) + 1
        try:
            async with lock:
                last = self._last_request.get(domain)
                if last is not None:
                    wait_time = self.min_interval - (time.monotonic() - last)
                    if wait_time > 0:
                        await asyncio.sleep(wait_time)
                self._last_request[domain] = time.monotonic()
        finally:
            self._waiting[domain] -= 1
            if not self._waiting[domain]:
                del self._waiting[domain]


class RedisDomainRateLimiter(DomainRateLimiter):
    """
    Shared limiter: a key per domain that expires after min_interval.
    Whoever manages SET NX on the key owns the next request slot.
    """

    def __init__(self, redis: aioredis.Redis, min_interval: float, namespace: str = "wprank:ratelimit"):
        self.redis = redis
        self.min_interval = min_interval
        self.namespace = namespace

    def _key(self, domain: str) -> str:
        return f"{self.namespace}:{domain}"

    async def acquire(self, domain: str) -> None:
        key = self._key(domain)
        interval_ms = max(1, int(self.min_interval * 1000))
        while True:
            if await self.redis.set(key, "1", nx=True, px=interval_ms):
                return
            ttl_ms = await self.redis.pttl(key)
            # -2: key vanished, -1: no expiry (should not happen); retry soon either way
            await asyncio.sleep(max(ttl_ms, 10) / 1000)


def create_rate_limiter(settings: Settings, redis: aioredis.Redis | None = None) -> DomainRateLimiter:
    if redis is not None:
        logger.info("Using shared Redis rate limiter", min_interval=settings.domain_min_interval)
        return RedisDomainRateLimiter(redis, settings.domain_min_interval)
    return LocalDomainRateLimiter(min_interval=settings.domain_min_interval)
