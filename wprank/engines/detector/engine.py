"""
WordPress Detector Engine

Flow (short-circuits on the first definitive signal):
1. robots.txt        -> a `User-agent: *` root disallow stops everything
2. REST API probe    -> /wp-json/ and /wp-json/wp/v2/ over HTTPS and HTTP
3. Homepage fetch    -> HTTPS then HTTP, first status in [200, 400)
4. HTML signatures   -> only when the REST probe was inconclusive
5. Plugins + theme   -> only for sites classified as WordPress

Every request to the crawled domain passes through the per-domain rate limiter.
Certificates are not verified: crawled sites routinely have broken TLS.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from wprank.core.config import Settings
from wprank.core.domain import base_urls
from wprank.core.rate_limit import DomainRateLimiter
from wprank.engines.base import (
    ERROR_ANALYSIS_FAILED,
    ERROR_FETCH_FAILED,
    ERROR_ROBOTS_DISALLOWED,
    CrawlEngine,
    DetectionMethod,
    DetectionResult,
)
from wprank.engines.detector.signatures import (
    count_signature_groups,
    detect_theme,
    estimate_plugins,
    is_wordpress_api_payload,
    match_signatures,
    MIN_SIGNATURE_MATCHES,
    robots_disallows_root,
)

REST_API_PATHS = ("/wp-json/", "/wp-json/wp/v2/")


@dataclass
class Homepage:
    url: str
    status_code: int
    html: str


def build_http_client(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Shared client for crawling arbitrary sites."""
    return httpx.AsyncClient(
        headers={
            "User-Agent": settings.CRAWLER_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        },
        timeout=httpx.Timeout(settings.HOMEPAGE_TIMEOUT, connect=settings.CONNECT_TIMEOUT),
        follow_redirects=True,
        max_redirects=5,
        verify=False,
        transport=transport,
    )


class WordPressDetector(CrawlEngine[DetectionResult]):
    """Classifies a domain as WordPress and estimates its plugins from public HTML."""

    ENGINE_NAME = "wordpress_detector"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, rate_limiter: DomainRateLimiter):
        super().__init__()
        self.settings = settings
        self.http = http_client
        self.rate_limiter = rate_limiter

    def failure_result(self, domain: str, exc: Exception) -> DetectionResult:
        return DetectionResult(domain=domain, error=f"{ERROR_ANALYSIS_FAILED}: {exc}")

    async def run(self, domain: str, **options) -> DetectionResult:
        result = DetectionResult(domain=domain)

        # ── 1. robots.txt ───────────────────────────────
        if not await self.is_robots_allowed(domain):
            self.logger.info("Blocked by robots.txt", domain=domain)
            result.robots_allowed = False
            result.error = ERROR_ROBOTS_DISALLOWED
            return result

        # ── 2. REST API probe ───────────────────────────
        api_positive = await self.has_wordpress_api(domain)

        # ── 3. Homepage ─────────────────────────────────
        homepage = await self.fetch_homepage(domain)
        if homepage is None:
            self.logger.info("Homepage unreachable", domain=domain)
            result.error = ERROR_FETCH_FAILED
            return result
        result.status_code = homepage.status_code

        # ── 4. Classification ───────────────────────────
        if api_positive:
            result.is_wordpress = True
            result.detection_method = DetectionMethod.REST_API
        else:
            matched = match_signatures(homepage.html)
            result.signatures_matched = matched
            if count_signature_groups(matched) >= MIN_SIGNATURE_MATCHES:
                result.is_wordpress = True
                result.detection_method = DetectionMethod.HTML_SIGNATURES

        # ── 5. Plugins and theme ────────────────────────
        if result.is_wordpress:
            count, evidence = estimate_plugins(homepage.html, self.settings.MAX_PLUGIN_EVIDENCE)
            result.plugin_count = count
            result.plugin_evidence = evidence
            result.theme_name = detect_theme(homepage.html)

        self.logger.info(
            "Detection finished",
            domain=domain,
            is_wordpress=result.is_wordpress,
            method=result.detection_method,
            plugin_count=result.plugin_count,
        )
        return result

    async def _get(self, domain: str, url: str) -> httpx.Response:
        await self.rate_limiter.acquire(domain)
        return await self.http.get(url)

    async def is_robots_allowed(self, domain: str) -> bool:
        """Missing or unreadable robots.txt means allowed."""
        try:
            response = await self._get(domain, f"https://{domain}/robots.txt")
        except httpx.HTTPError as exc:
            self.logger.debug("Could not fetch robots.txt", domain=domain, error=str(exc))
            return True
        if response.status_code != 200:
            return True
        return not robots_disallows_root(response.text)

    async def has_wordpress_api(self, domain: str) -> bool:
        for base in base_urls(domain):
            for path in REST_API_PATHS:
                try:
                    response = await self._get(domain, base + path)
                except httpx.HTTPError:
                    continue
                if response.status_code == 200 and is_wordpress_api_payload(
                    response.headers.get("content-type", ""), response.text
                ):
                    self.logger.debug("WordPress REST API found", domain=domain, url=base + path)
                    return True
        return False

    async def fetch_homepage(self, domain: str) -> Homepage | None:
        for url in base_urls(domain):
            try:
                response = await self._get(domain, url)
            except httpx.HTTPError as exc:
                self.logger.debug("Homepage fetch failed", url=url, error=str(exc))
                continue
            if 200 <= response.status_code < 400:
                return Homepage(url=str(response.url), status_code=response.status_code, html=response.text)
        return None
