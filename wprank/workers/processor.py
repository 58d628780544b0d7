"""
Queue Processor - drains the crawl queue in bounded batches.

Per item:
1. Claim (pending -> processing, atomic)
2. Detect            -> SKIPPED outcomes complete the item with a result code
3. PageSpeed         -> only for WordPress sites, or every site with ANALYZE_ALL_SITES
4. Persist           -> Site upsert + metrics snapshot in one transaction
5. Rank              -> score the site, then full recomputation
6. Complete

Anything raised in steps 2-5 (including the per-item time limit) sends the item
through retry/backoff. One item's failure never aborts the batch.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wprank.core.config import Settings
from wprank.engines.base import (
    CrawlOutcome,
    DetectionResult,
    OutcomeKind,
    PerformanceReport,
    QueueResult,
    QueueStatus,
    SiteStatus,
)
from wprank.engines.detector.engine import WordPressDetector
from wprank.engines.performance.engine import PageSpeedClient
from wprank.engines.ranking.engine import RankingEngine
from wprank.models.models import CrawlQueueItem, Site, SiteMetricsSnapshot, utcnow
from wprank.workers.queue import CrawlQueue

logger = structlog.get_logger(__name__)

# Per-item results reported by process_item()
ITEM_COMPLETED = "completed"
ITEM_SKIPPED = "skipped"
ITEM_RETRIED = "retried"
ITEM_FAILED = "failed"
ITEM_NOT_CLAIMED = "not_claimed"


class CrawlFailedError(Exception):
    """A crawl attempt failed in a way the retry path should handle."""

    def __init__(self, domain: str, reason: str):
        self.domain = domain
        self.reason = reason
        super().__init__(f"{domain}: {reason}")


class QueueProcessor:

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        queue: CrawlQueue,
        detector: WordPressDetector,
        pagespeed: PageSpeedClient,
        ranking: RankingEngine,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.queue = queue
        self.detector = detector
        self.pagespeed = pagespeed
        self.ranking = ranking
        self._stop = asyncio.Event()

    # ─────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_shutdown(self) -> None:
        """Finish in-flight items, claim nothing new."""
        if not self._stop.is_set():
            logger.info("Shutdown requested")
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that wakes early on shutdown."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_forever(self) -> None:
        logger.info(
            "Queue processor started",
            batch_size=self.settings.BATCH_SIZE,
            concurrency=self.settings.WORKER_CONCURRENCY,
            max_retries=self.settings.MAX_RETRIES,
        )
        await self.queue.recover_stuck()

        while not self.stopping:
            counts = await self.process_batch()
            if not counts:
                await self.queue.recover_stuck()
                await self._sleep(self.settings.IDLE_SLEEP_SECONDS)
            else:
                await self._sleep(self.settings.BATCH_PAUSE_SECONDS)

        logger.info("Queue processor stopped")

    # ─────────────────────────────────────────────
    # Batch
    # ─────────────────────────────────────────────

    async def process_batch(self) -> Counter:
        """Process up to BATCH_SIZE ready items. Returns per-result counts (empty when idle)."""
        if self.stopping:
            return Counter()

        items = await self.queue.fetch_ready(self.settings.BATCH_SIZE)
        if not items:
            logger.debug("No ready queue items")
            return Counter()

        semaphore = asyncio.Semaphore(self.settings.WORKER_CONCURRENCY)

        async def _bounded(item: CrawlQueueItem) -> str | None:
            async with semaphore:
                if self.stopping:
                    return None
                return await self.process_item(item)

        start = time.perf_counter()
        results = await asyncio.gather(*(_bounded(item) for item in items))
        counts = Counter(r for r in results if r is not None)

        logger.info(
            "Batch finished",
            items=len(items),
            elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
            **dict(counts),
        )
        return counts

    # ─────────────────────────────────────────────
    # Item
    # ─────────────────────────────────────────────

    async def process_item(self, item: CrawlQueueItem) -> str:
        if not await self.queue.claim(item.id):
            return ITEM_NOT_CLAIMED

        log = logger.bind(item_id=str(item.id), domain=item.domain, attempt=item.attempt_count + 1)
        log.info("Processing queue item")

        try:
            result = await asyncio.wait_for(
                self._handle(item),
                timeout=self.settings.ITEM_TIME_LIMIT_SECONDS,
            )
        except asyncio.TimeoutError:
            error = f"processing time limit exceeded ({self.settings.ITEM_TIME_LIMIT_SECONDS:g}s)"
            log.warning("Queue item timed out")
            return await self._record_failure(item, error)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            log.warning("Queue item failed", error=error, exc_info=not isinstance(exc, CrawlFailedError))
            return await self._record_failure(item, error)

        return result

    async def _record_failure(self, item: CrawlQueueItem, error: str) -> str:
        try:
            updated = await self.queue.retry_or_fail(item.id, error)
        except Exception:
            # Stays in processing; the stuck-item sweep returns it to pending
            logger.error("Could not record queue failure", item_id=str(item.id), exc_info=True)
            return ITEM_FAILED
        if updated is not None and updated.status == QueueStatus.PENDING.value:
            return ITEM_RETRIED
        return ITEM_FAILED

    async def _handle(self, item: CrawlQueueItem) -> str:
        domain = item.domain

        # ── 2. Detection ────────────────────────────
        detection = await self.detector.execute(domain)
        outcome = CrawlOutcome.classify(detection, self.settings.ANALYZE_ALL_SITES)

        if outcome.kind == OutcomeKind.FAILED:
            await self._mark_site_error(detection)
            raise CrawlFailedError(domain, outcome.reason or "unknown error")

        if outcome.kind == OutcomeKind.SKIPPED:
            status = SiteStatus.BLOCKED if outcome.reason == QueueResult.ROBOTS_DISALLOWED.value else SiteStatus.ACTIVE
            await self._save_site_only(detection, status)
            await self.queue.complete(item.id, outcome.reason)
            logger.info("Queue item skipped", domain=domain, reason=outcome.reason)
            return ITEM_SKIPPED

        # ── 3. Performance ──────────────────────────
        report = await self.pagespeed.fetch_both(domain)

        # ── 4. Persist ──────────────────────────────
        site_id = await self._persist(item, detection, report)

        # ── 5. Rank ─────────────────────────────────
        if detection.is_wordpress:
            await self.ranking.update_site(site_id)

        # ── 6. Complete ─────────────────────────────
        await self.queue.complete(item.id, QueueResult.COMPLETED.value)
        return ITEM_COMPLETED

    # ─────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────

    async def _upsert_site(self, session: AsyncSession, domain: str) -> Site:
        site = (await session.execute(select(Site).where(Site.domain == domain))).scalar_one_or_none()
        if site is None:
            site = Site(domain=domain)
            session.add(site)
        return site

    @staticmethod
    def _apply_detection(site: Site, detection: DetectionResult, status: SiteStatus, crawled_at: datetime) -> None:
        site.is_wordpress = detection.is_wordpress
        site.theme_name = detection.theme_name
        site.plugin_count = detection.plugin_count
        site.status = status.value
        site.last_crawled_at = crawled_at
        site.last_error = None
        site.updated_at = crawled_at

    @staticmethod
    def _snapshot_values(detection: DetectionResult, report: PerformanceReport, measured_at: datetime) -> dict:
        primary = report.primary
        return {
            "psi_score": report.combined_score,
            "desktop_score": report.desktop.psi_score if report.desktop else None,
            "mobile_score": report.mobile.psi_score if report.mobile else None,
            "lcp_ms": primary.lcp_ms if primary else None,
            "cls": primary.cls if primary else None,
            "tbt_ms": primary.tbt_ms if primary else None,
            "fcp_ms": primary.fcp_ms if primary else None,
            "si_ms": primary.si_ms if primary else None,
            "tti_ms": primary.tti_ms if primary else None,
            "lighthouse_version": primary.lighthouse_version if primary else None,
            "final_url": primary.final_url if primary else None,
            "is_wordpress": detection.is_wordpress,
            "plugin_count": detection.plugin_count,
            "plugin_evidence": list(detection.plugin_evidence),
            "theme_name": detection.theme_name,
            "detection_method": detection.detection_method.value if detection.detection_method else None,
            "signatures_matched": list(detection.signatures_matched),
            "status_code": detection.status_code,
            "measured_at": measured_at,
        }

    async def _persist(self, item: CrawlQueueItem, detection: DetectionResult, report: PerformanceReport) -> uuid.UUID:
        """
        Upsert the site and write this item's snapshot in one transaction.
        The snapshot is keyed by the queue item id: a retry after a later step
        failed overwrites the earlier attempt's row instead of adding one.
        """
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                site = await self._upsert_site(session, detection.domain)
                self._apply_detection(site, detection, SiteStatus.ACTIVE, now)
                await session.flush()

                values = self._snapshot_values(detection, report, now)
                snapshot = (
                    await session.execute(
                        select(SiteMetricsSnapshot).where(
                            SiteMetricsSnapshot.site_id == site.id,
                            SiteMetricsSnapshot.crawl_id == item.id,
                        )
                    )
                ).scalar_one_or_none()
                if snapshot is None:
                    session.add(SiteMetricsSnapshot(site_id=site.id, crawl_id=item.id, **values))
                else:
                    for key, value in values.items():
                        setattr(snapshot, key, value)
                site_id = site.id

        logger.info(
            "Crawl persisted",
            domain=detection.domain,
            site_id=str(site_id),
            psi_score=report.combined_score,
            plugin_count=detection.plugin_count,
        )
        return site_id

    async def _save_site_only(self, detection: DetectionResult, status: SiteStatus) -> None:
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                site = await self._upsert_site(session, detection.domain)
                self._apply_detection(site, detection, status, now)

    async def _mark_site_error(self, detection: DetectionResult) -> None:
        now = utcnow()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    site = await self._upsert_site(session, detection.domain)
                    site.status = SiteStatus.ERROR.value
                    site.last_error = detection.error
                    site.last_crawled_at = now
                    site.updated_at = now
        except Exception:
            logger.error("Could not record site error", domain=detection.domain, exc_info=True)
