"""
Shared fixtures: settings, a file-backed SQLite database per test, and helpers
for building httpx clients backed by MockTransport.
"""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from wprank.core.config import Settings
from wprank.core.database import create_engine, create_session_factory, init_models
from wprank.core.rate_limit import LocalDomainRateLimiter


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'wprank.db'}",
        PAGESPEED_API_KEY="test-key",
        PAGESPEED_MIN_INTERVAL_SECONDS=0.0,
        PER_DOMAIN_RPS=1000.0,
        IDLE_SLEEP_SECONDS=0.0,
        BATCH_PAUSE_SECONDS=0.0,
        LOG_FORMAT="console",
        _env_file=None,
    )


@pytest.fixture
async def db_engine(settings):
    engine = create_engine(settings)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def rate_limiter(settings) -> LocalDomainRateLimiter:
    return LocalDomainRateLimiter(min_interval=settings.domain_min_interval)


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Factory: wrap a request handler in an AsyncClient."""
    def _build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)

    return _build
