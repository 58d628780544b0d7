"""
Discovery Service - finds candidate domains and feeds them to the crawl queue.

Candidates come from the configured seed list and from the outbound links of
a few source pages (showcases, RSS feeds). Each candidate is normalized,
filtered through the discovery blocklist, and enqueued at discovery priority
unless the domain is already a known site or has a pending/processing item.
"""

from __future__ import annotations

import re
import time
from urllib.parse import urlsplit

import httpx
import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wprank.core.config import Settings
from wprank.core.domain import matches_blocklist, try_normalize_domain
from wprank.core.rate_limit import DomainRateLimiter
from wprank.models.models import Site
from wprank.workers.queue import SOURCE_DISCOVERY, CrawlQueue

logger = structlog.get_logger(__name__)

# Host part of an absolute http(s) URL, in markup or plain text
_URL_HOST_RE = re.compile(r"https?://([^/\s\"'<>?#\\]+)", re.IGNORECASE)


def extract_domains(content: str, blocklist: list[str]) -> list[str]:
    """Normalized, de-duplicated domains linked from `content`, in order of appearance."""
    found: dict[str, None] = {}
    for match in _URL_HOST_RE.finditer(content):
        domain = try_normalize_domain(match.group(1))
        if domain is None or matches_blocklist(domain, blocklist):
            continue
        found.setdefault(domain, None)
    return list(found)


class DiscoveryResult(BaseModel):
    discovered: int = 0
    queued: int = 0
    skipped: int = 0
    errors: int = 0
    domains: list[str] = Field(default_factory=list)


class DiscoveryService:

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        queue: CrawlQueue,
        http_client: httpx.AsyncClient,
        rate_limiter: DomainRateLimiter,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.queue = queue
        self.http_client = http_client
        self.rate_limiter = rate_limiter

    # ─────────────────────────────────────────────
    # Candidates
    # ─────────────────────────────────────────────

    async def fetch_source(self, url: str) -> list[str]:
        """Domains linked from one source page. Unreachable sources yield nothing."""
        await self.rate_limiter.acquire(urlsplit(url).hostname or url)
        try:
            response = await self.http_client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("Discovery source unreachable", url=url, error=str(exc))
            return []
        if response.status_code != 200:
            logger.warning("Discovery source returned an error", url=url, status_code=response.status_code)
            return []

        domains = extract_domains(response.text, self.settings.discovery_blocklist)
        logger.debug("Discovery source scanned", url=url, domains=len(domains))
        return domains

    async def candidates(self) -> list[str]:
        blocklist = self.settings.discovery_blocklist
        found: dict[str, None] = {}
        for seed in self.settings.discovery_seeds:
            domain = try_normalize_domain(seed)
            if domain is not None and not matches_blocklist(domain, blocklist):
                found.setdefault(domain, None)
        for url in self.settings.discovery_sources:
            for domain in await self.fetch_source(url):
                found.setdefault(domain, None)
        return list(found)

    # ─────────────────────────────────────────────
    # Enqueue
    # ─────────────────────────────────────────────

    async def is_known(self, session: AsyncSession, domain: str) -> bool:
        site_id = (await session.execute(select(Site.id).where(Site.domain == domain))).scalar_one_or_none()
        if site_id is not None:
            return True
        return await self.queue.find_active(session, domain) is not None

    async def _enqueue_if_new(self, domain: str) -> bool:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if await self.is_known(session, domain):
                        return False
                    item = await self.queue.add(session, domain, self.settings.DISCOVERY_PRIORITY, SOURCE_DISCOVERY)
                    return item is not None
        except IntegrityError:
            # Another writer queued it between the check and the insert
            return False

    async def discover(self, max_sites: int | None = None) -> DiscoveryResult:
        """One discovery run: enqueue up to `max_sites` domains nobody has seen yet."""
        limit = max_sites or self.settings.DISCOVERY_MAX_SITES
        start = time.perf_counter()
        result = DiscoveryResult()

        candidates = await self.candidates()
        result.discovered = len(candidates)

        for domain in candidates:
            if result.queued >= limit:
                break
            try:
                queued = await self._enqueue_if_new(domain)
            except SQLAlchemyError:
                result.errors += 1
                logger.error("Could not enqueue discovered domain", domain=domain, exc_info=True)
                continue
            if queued:
                result.queued += 1
                result.domains.append(domain)
            else:
                result.skipped += 1

        logger.info(
            "Discovery finished",
            discovered=result.discovered,
            queued=result.queued,
            skipped=result.skipped,
            errors=result.errors,
            elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result
