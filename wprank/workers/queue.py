"""
Crawl Queue - durable priority queue with retry/backoff.

State machine:
    pending -> processing -> completed
                          -> pending (retry, attempt_count + 1, next_attempt_at in the future)
                          -> failed  (attempt_count reached max_retries)

Dequeue order is (priority DESC, created_at ASC) over pending rows whose
next_attempt_at is null or due. Claiming is a conditional UPDATE checked for
rowcount == 1, so two processors can never own the same item. The partial
unique index on crawl_queue.domain keeps one pending/processing row per domain.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wprank.core.config import Settings
from wprank.core.domain import normalize_domain
from wprank.engines.base import NON_TERMINAL_STATUSES, TERMINAL_STATUSES, QueueStatus, SiteStatus
from wprank.models.models import CrawlQueueItem, Site, utcnow

logger = structlog.get_logger(__name__)

SOURCE_MANUAL = "manual"
SOURCE_SUBMISSION = "submission"
SOURCE_RECRAWL = "recrawl"
SOURCE_DISCOVERY = "discovery"

RECLAIMED_ERROR = "reclaimed after processing timeout"


def backoff_delay(attempt_count: int, base_minutes: int = 10, cap_minutes: int = 240) -> timedelta:
    """2^attempt_count * base minutes, capped. attempt_count is the count after the failure."""
    minutes = min((2 ** max(attempt_count, 0)) * base_minutes, cap_minutes)
    return timedelta(minutes=minutes)


def truncate_error(message: str, limit: int = 1000) -> str:
    return message if len(message) <= limit else message[:limit]


class CrawlQueue:
    """Repository over the crawl_queue table."""

    def __init__(self, settings: Settings, session_factory: async_sessionmaker[AsyncSession]):
        self.settings = settings
        self.session_factory = session_factory

    # ─────────────────────────────────────────────
    # Enqueue
    # ─────────────────────────────────────────────

    async def find_active(self, session: AsyncSession, domain: str) -> CrawlQueueItem | None:
        return (
            await session.execute(
                select(CrawlQueueItem).where(
                    CrawlQueueItem.domain == domain,
                    CrawlQueueItem.status.in_(NON_TERMINAL_STATUSES),
                )
            )
        ).scalar_one_or_none()

    async def add(
        self,
        session: AsyncSession,
        domain: str,
        priority: int | None = None,
        source: str = SOURCE_MANUAL,
    ) -> CrawlQueueItem | None:
        """
        Insert a pending item inside the caller's transaction.
        Returns None when the domain already has a pending/processing item.
        `domain` must already be normalized.
        """
        if await self.find_active(session, domain) is not None:
            return None

        item = CrawlQueueItem(
            domain=domain,
            priority=self.settings.DEFAULT_PRIORITY if priority is None else priority,
            status=QueueStatus.PENDING.value,
            attempt_count=0,
            source=source,
        )
        session.add(item)
        await session.flush()
        return item

    async def enqueue(self, raw_domain: str, priority: int | None = None, source: str = SOURCE_MANUAL) -> CrawlQueueItem | None:
        """Normalize and enqueue. Raises InvalidDomainError for malformed input."""
        domain = normalize_domain(raw_domain)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    item = await self.add(session, domain, priority, source)
        except IntegrityError:
            # Lost a race against another enqueue of the same domain
            logger.info("Domain already queued", domain=domain)
            return None

        if item is None:
            logger.info("Domain already queued", domain=domain)
        else:
            logger.info("Domain enqueued", domain=domain, item_id=str(item.id), priority=item.priority, source=source)
        return item

    # ─────────────────────────────────────────────
    # Dequeue / claim
    # ─────────────────────────────────────────────

    async def fetch_ready(self, limit: int | None = None, now: datetime | None = None) -> list[CrawlQueueItem]:
        now = now or utcnow()
        async with self.session_factory() as session:
            rows = await session.execute(
                select(CrawlQueueItem)
                .where(
                    CrawlQueueItem.status == QueueStatus.PENDING.value,
                    or_(CrawlQueueItem.next_attempt_at.is_(None), CrawlQueueItem.next_attempt_at <= now),
                )
                .order_by(CrawlQueueItem.priority.desc(), CrawlQueueItem.created_at.asc())
                .limit(limit or self.settings.BATCH_SIZE)
            )
            return list(rows.scalars())

    async def claim(self, item_id: uuid.UUID) -> bool:
        """pending -> processing. False when another worker got there first."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(CrawlQueueItem)
                    .where(CrawlQueueItem.id == item_id, CrawlQueueItem.status == QueueStatus.PENDING.value)
                    .values(status=QueueStatus.PROCESSING.value, started_at=utcnow(), updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        claimed = result.rowcount == 1
        if not claimed:
            logger.debug("Claim lost", item_id=str(item_id))
        return claimed

    async def get(self, item_id: uuid.UUID) -> CrawlQueueItem | None:
        async with self.session_factory() as session:
            return await session.get(CrawlQueueItem, item_id)

    # ─────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────

    async def complete(self, item_id: uuid.UUID, result: str) -> None:
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(CrawlQueueItem)
                    .where(CrawlQueueItem.id == item_id)
                    .values(
                        status=QueueStatus.COMPLETED.value,
                        result=result,
                        next_attempt_at=None,
                        completed_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
        logger.info("Queue item completed", item_id=str(item_id), result=result)

    async def retry_or_fail(self, item_id: uuid.UUID, error: str) -> CrawlQueueItem | None:
        """
        Record a failed attempt. Below the retry ceiling the item goes back to
        pending with exponential backoff; at the ceiling it becomes failed.
        """
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                item = await session.get(CrawlQueueItem, item_id)
                if item is None:
                    logger.warning("Queue item vanished before failure was recorded", item_id=str(item_id))
                    return None

                item.attempt_count += 1
                item.last_error = truncate_error(error, self.settings.LAST_ERROR_MAX_LENGTH)
                item.started_at = None
                item.updated_at = now

                if item.attempt_count >= self.settings.MAX_RETRIES:
                    item.status = QueueStatus.FAILED.value
                    item.next_attempt_at = None
                    item.completed_at = now
                else:
                    item.status = QueueStatus.PENDING.value
                    item.next_attempt_at = now + backoff_delay(
                        item.attempt_count,
                        self.settings.BACKOFF_BASE_MINUTES,
                        self.settings.BACKOFF_CAP_MINUTES,
                    )

        if item.status == QueueStatus.FAILED.value:
            logger.warning("Queue item failed permanently", item_id=str(item_id), domain=item.domain, attempt=item.attempt_count)
        else:
            logger.info(
                "Queue item scheduled for retry",
                item_id=str(item_id),
                domain=item.domain,
                attempt=item.attempt_count,
                next_attempt_at=item.next_attempt_at.isoformat(),
            )
        return item

    # ─────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────

    async def recover_stuck(self, timeout_minutes: int | None = None) -> int:
        """Return items stuck in processing past the timeout to pending. attempt_count is left alone."""
        timeout = timeout_minutes if timeout_minutes is not None else self.settings.PROCESSING_TIMEOUT_MINUTES
        cutoff = utcnow() - timedelta(minutes=timeout)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(CrawlQueueItem)
                    .where(
                        CrawlQueueItem.status == QueueStatus.PROCESSING.value,
                        or_(CrawlQueueItem.started_at.is_(None), CrawlQueueItem.started_at < cutoff),
                    )
                    .values(
                        status=QueueStatus.PENDING.value,
                        started_at=None,
                        last_error=RECLAIMED_ERROR,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount:
            logger.warning("Reclaimed stuck queue items", count=result.rowcount, timeout_minutes=timeout)
        return result.rowcount

    async def cleanup(self, days: int | None = None) -> int:
        """Delete completed/failed items older than `days`. Never touches pending/processing rows."""
        retention = days if days is not None else self.settings.QUEUE_RETENTION_DAYS
        cutoff = utcnow() - timedelta(days=retention)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(CrawlQueueItem)
                    .where(
                        CrawlQueueItem.status.in_(TERMINAL_STATUSES),
                        func.coalesce(CrawlQueueItem.completed_at, CrawlQueueItem.updated_at) < cutoff,
                    )
                    .execution_options(synchronize_session=False)
                )
        logger.info("Queue cleanup finished", deleted=result.rowcount, retention_days=retention)
        return result.rowcount

    async def stats(self) -> dict[str, int]:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(CrawlQueueItem.status, func.count()).group_by(CrawlQueueItem.status)
            )
            counts = {status.value: 0 for status in QueueStatus}
            for status, count in rows:
                counts[status] = count
        counts["total"] = sum(counts[status.value] for status in QueueStatus)
        return counts

    async def enqueue_stale_sites(self, older_than_days: int | None = None, limit: int = 500) -> int:
        """Queue active sites whose last crawl is older than the cutoff, skipping already-queued domains."""
        days = older_than_days if older_than_days is not None else self.settings.RECRAWL_AFTER_DAYS
        cutoff = utcnow() - timedelta(days=days)
        already_queued = exists().where(
            and_(CrawlQueueItem.domain == Site.domain, CrawlQueueItem.status.in_(NON_TERMINAL_STATUSES))
        )

        async with self.session_factory() as session:
            async with session.begin():
                domains = (
                    await session.execute(
                        select(Site.domain)
                        .where(
                            Site.status == SiteStatus.ACTIVE.value,
                            or_(Site.last_crawled_at.is_(None), Site.last_crawled_at < cutoff),
                            ~already_queued,
                        )
                        .order_by(Site.last_crawled_at.asc())
                        .limit(limit)
                    )
                ).scalars().all()

                for domain in domains:
                    session.add(
                        CrawlQueueItem(
                            domain=domain,
                            priority=self.settings.RECRAWL_PRIORITY,
                            status=QueueStatus.PENDING.value,
                            source=SOURCE_RECRAWL,
                        )
                    )

        logger.info("Recrawl scheduled", count=len(domains), older_than_days=days)
        return len(domains)
