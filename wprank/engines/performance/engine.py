"""
Performance Engine - Google PageSpeed Insights client.

Every failure path (missing key, non-200, rate limit, malformed body, network
error) degrades to None so a crawl can still be persisted without a score.

Combined score: 70/30 desktop/mobile weighted average when both strategies
produced a score, the single available score otherwise, else None.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx

from wprank.core.config import Settings
from wprank.engines.base import CrawlEngine, PerformanceMetrics, PerformanceReport, Strategy

# Lighthouse audit id -> metric field
AUDIT_MAPPINGS: dict[str, str] = {
    "largest-contentful-paint": "lcp_ms",
    "cumulative-layout-shift": "cls",
    "total-blocking-time": "tbt_ms",
    "first-contentful-paint": "fcp_ms",
    "speed-index": "si_ms",
    "interactive": "tti_ms",
}


def round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def combine_scores(desktop: int | None, mobile: int | None, desktop_weight: float = 0.70) -> int | None:
    if desktop is not None and mobile is not None:
        # Trim float noise first so exact halves (83.5) round up
        return round_half_up(round(desktop * desktop_weight + mobile * (1.0 - desktop_weight), 6))
    if desktop is not None:
        return desktop
    return mobile


def parse_pagespeed_response(data: dict[str, Any], strategy: Strategy) -> PerformanceMetrics | None:
    """Extract the performance score and timing audits from a PSI v5 document."""
    lighthouse = data.get("lighthouseResult")
    if not isinstance(lighthouse, dict):
        return None

    categories = lighthouse.get("categories") or {}
    audits = lighthouse.get("audits") or {}

    metrics: dict[str, Any] = {"strategy": strategy}

    raw_score = (categories.get("performance") or {}).get("score")
    if isinstance(raw_score, (int, float)):
        metrics["psi_score"] = max(0, min(100, round_half_up(raw_score * 100)))

    for audit_key, field_name in AUDIT_MAPPINGS.items():
        value = (audits.get(audit_key) or {}).get("numericValue")
        if not isinstance(value, (int, float)):
            continue
        # CLS is a ratio, everything else is milliseconds
        metrics[field_name] = round(float(value), 4) if field_name == "cls" else round_half_up(value)

    metrics["lighthouse_version"] = lighthouse.get("lighthouseVersion")
    metrics["fetch_time"] = lighthouse.get("fetchTime")
    metrics["final_url"] = lighthouse.get("finalUrl")
    return PerformanceMetrics(**metrics)


class PageSpeedClient(CrawlEngine["PerformanceMetrics | None"]):
    """Fetches PSI metrics for one domain and strategy."""

    ENGINE_NAME = "pagespeed"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        super().__init__()
        self.settings = settings
        self.http = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.PAGESPEED_API_KEY)

    def failure_result(self, domain: str, exc: Exception) -> PerformanceMetrics | None:
        return None

    async def run(self, domain: str, strategy: Strategy = Strategy.DESKTOP, **options) -> PerformanceMetrics | None:
        strategy = Strategy(strategy)
        if not self.is_configured:
            self.logger.debug("PSI API key not configured, skipping", domain=domain)
            return None

        params = {
            "url": f"https://{domain}",
            "category": "PERFORMANCE",
            "strategy": strategy.value.upper(),
            "key": self.settings.PAGESPEED_API_KEY,
        }

        try:
            response = await self.http.get(
                self.settings.PAGESPEED_API_URL,
                params=params,
                timeout=self.settings.PAGESPEED_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            self.logger.warning("PSI request failed", domain=domain, strategy=strategy.value, error=str(exc))
            return None

        if response.status_code == 429:
            self.logger.warning("PSI rate limit exceeded", domain=domain)
            return None
        if response.status_code != 200:
            self.logger.warning("PSI returned error status", domain=domain, status_code=response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            self.logger.warning("PSI returned invalid JSON", domain=domain)
            return None

        metrics = parse_pagespeed_response(data, strategy) if isinstance(data, dict) else None
        if metrics is None:
            self.logger.warning("Invalid PSI response structure", domain=domain)
        return metrics

    async def fetch_metrics(self, domain: str, strategy: Strategy = Strategy.DESKTOP) -> PerformanceMetrics | None:
        return await self.execute(domain, strategy=strategy)

    async def fetch_both(self, domain: str) -> PerformanceReport:
        """Desktop then mobile, spaced at least PAGESPEED_MIN_INTERVAL_SECONDS apart."""
        started = time.monotonic()
        desktop = await self.fetch_metrics(domain, Strategy.DESKTOP)

        remaining = self.settings.PAGESPEED_MIN_INTERVAL_SECONDS - (time.monotonic() - started)
        if remaining > 0:
            await asyncio.sleep(remaining)

        mobile = await self.fetch_metrics(domain, Strategy.MOBILE)

        combined = combine_scores(
            desktop.psi_score if desktop else None,
            mobile.psi_score if mobile else None,
            self.settings.PAGESPEED_DESKTOP_WEIGHT,
        )
        return PerformanceReport(domain=domain, desktop=desktop, mobile=mobile, combined_score=combined)
