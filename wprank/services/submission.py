"""
Submission Service - public domain submissions into the crawl queue.

Checks, in order: domain validity, per-IP hourly limit, global hourly limit,
blocklist, already-known domain (Site table, then pending/processing queue
items). An accepted submission is recorded and enqueued in one transaction.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import timedelta

import structlog
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wprank.core.config import Settings
from wprank.core.domain import InvalidDomainError, matches_blocklist, normalize_domain
from wprank.engines.base import SiteStatus
from wprank.models.models import Site, Submission, utcnow
from wprank.workers.queue import SOURCE_SUBMISSION, CrawlQueue

logger = structlog.get_logger(__name__)

MSG_ACCEPTED = "Domain submitted successfully and queued for analysis"
MSG_IP_LIMIT = "Too many submissions from your IP address. Please try again later."
MSG_GLOBAL_LIMIT = "System is currently at capacity. Please try again later."
MSG_BLOCKED = "This domain cannot be submitted for analysis."
MSG_QUEUED = "This domain is already queued for analysis."
MSG_SYSTEM_ERROR = "Submission failed due to a system error"

SITE_STATUS_MESSAGES = {
    SiteStatus.BLOCKED.value: "This domain cannot be analyzed (blocked by robots.txt or other restrictions).",
    SiteStatus.ERROR.value: "This domain had analysis errors. It will be retried automatically.",
}


class SubmissionResult(BaseModel):
    success: bool = False
    domain: str | None = None
    message: str = ""
    submission_id: uuid.UUID | None = None
    existing_status: str | None = None


def hash_ip(ip: str) -> str:
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


def existing_site_message(site: Site) -> str:
    if site.status == SiteStatus.ACTIVE.value:
        if site.is_wordpress:
            return "This domain is already analyzed and ranked in our system."
        return "This domain has been analyzed but is not running WordPress."
    return SITE_STATUS_MESSAGES.get(site.status, "This domain is already in our system.")


class SubmissionService:

    def __init__(self, settings: Settings, session_factory: async_sessionmaker[AsyncSession], queue: CrawlQueue):
        self.settings = settings
        self.session_factory = session_factory
        self.queue = queue

    async def _count_recent(self, session: AsyncSession, ip_hash: str | None = None) -> int:
        since = utcnow() - timedelta(hours=1)
        query = select(func.count()).select_from(Submission).where(Submission.created_at > since)
        if ip_hash is not None:
            query = query.where(Submission.ip_hash == ip_hash)
        return (await session.execute(query)).scalar_one()

    async def submit(self, raw_input: str, client_ip: str | None = None) -> SubmissionResult:
        try:
            domain = normalize_domain(raw_input)
        except InvalidDomainError as exc:
            logger.info("Submission rejected", raw=raw_input, reason=exc.reason)
            return SubmissionResult(message=f"Invalid domain: {exc.reason}")

        result = SubmissionResult(domain=domain)
        ip_hash = hash_ip(client_ip) if client_ip else None

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    # ── Rate limits ─────────────────────────
                    if ip_hash and await self._count_recent(session, ip_hash) >= self.settings.SUBMISSIONS_MAX_PER_IP_HOUR:
                        result.message = MSG_IP_LIMIT
                        return result
                    if await self._count_recent(session) >= self.settings.SUBMISSIONS_MAX_PER_HOUR:
                        result.message = MSG_GLOBAL_LIMIT
                        return result

                    if matches_blocklist(domain, self.settings.submission_blocklist):
                        result.message = MSG_BLOCKED
                        return result

                    # ── Already known ───────────────────────
                    site = (await session.execute(select(Site).where(Site.domain == domain))).scalar_one_or_none()
                    if site is not None:
                        result.message = existing_site_message(site)
                        result.existing_status = site.status
                        return result
                    if await self.queue.find_active(session, domain) is not None:
                        result.message = MSG_QUEUED
                        result.existing_status = "queued"
                        return result

                    # ── Record + enqueue ────────────────────
                    item = await self.queue.add(session, domain, self.settings.SUBMISSION_PRIORITY, SOURCE_SUBMISSION)
                    submission = Submission(
                        domain=domain,
                        raw_input=raw_input[:2000],
                        ip_hash=ip_hash,
                        queue_item_id=item.id if item else None,
                    )
                    session.add(submission)
                    await session.flush()
                    result.submission_id = submission.id
        except SQLAlchemyError:
            logger.error("Submission failed", domain=domain, exc_info=True)
            return SubmissionResult(domain=domain, message=MSG_SYSTEM_ERROR)

        result.success = True
        result.message = MSG_ACCEPTED
        logger.info("Domain submitted", domain=domain, submission_id=str(result.submission_id))
        return result
