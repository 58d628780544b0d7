"""
Database Models - relational schema for the crawl-and-rank pipeline.

Design decisions:
- UUID primary keys (no sequential int exposure)
- Portable column types: JSON becomes JSONB on PostgreSQL, Uuid is native there
  and CHAR(32) on SQLite, so the same models run in production and in tests
- Timestamps are assigned in Python (UTC) so ordering does not depend on the
  server clock resolution
- crawl_queue carries a partial unique index: one pending/processing row per domain
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wprank.core.database import Base
from wprank.engines.base import QueueStatus, SiteStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")

NON_TERMINAL_WHERE = text("status IN ('pending', 'processing')")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ─────────────────────────────────────────────
# Mixins
# ─────────────────────────────────────────────

class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class UUIDPrimaryKeyMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4, nullable=False)


# ─────────────────────────────────────────────
# Sites
# ─────────────────────────────────────────────

class Site(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A crawled domain, keyed by its normalized form."""
    __tablename__ = "sites"

    domain: Mapped[str] = mapped_column(String(253), nullable=False, unique=True)
    is_wordpress: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    theme_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    plugin_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=SiteStatus.PENDING.value, nullable=False)
    # pending | active | error | blocked
    last_crawled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    snapshots: Mapped[list["SiteMetricsSnapshot"]] = relationship(
        "SiteMetricsSnapshot", back_populates="site", cascade="all, delete-orphan", passive_deletes=True
    )
    rank: Mapped["RankEntry | None"] = relationship(
        "RankEntry", back_populates="site", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_sites_status_is_wordpress", "status", "is_wordpress"),
        Index("ix_sites_last_crawled_at", "last_crawled_at"),
    )


# ─────────────────────────────────────────────
# Crawl queue
# ─────────────────────────────────────────────

class CrawlQueueItem(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One crawl attempt series for a domain."""
    __tablename__ = "crawl_queue"

    domain: Mapped[str] = mapped_column(String(253), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=QueueStatus.PENDING.value, nullable=False)
    # pending | processing | completed | failed
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(50), default="manual", nullable=False)
    result: Mapped[str | None] = mapped_column(String(50), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_crawl_queue_ready", "status", "next_attempt_at", "priority", "created_at"),
        Index(
            "uq_crawl_queue_domain_active",
            "domain",
            unique=True,
            postgresql_where=NON_TERMINAL_WHERE,
            sqlite_where=NON_TERMINAL_WHERE,
        ),
    )


# ─────────────────────────────────────────────
# Metrics history
# ─────────────────────────────────────────────

class SiteMetricsSnapshot(Base, UUIDPrimaryKeyMixin):
    """Immutable per-crawl measurements. Append-only."""
    __tablename__ = "site_metrics"

    site_id: Mapped[uuid.UUID] = mapped_column(Uuid(), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False)
    crawl_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)

    # Performance (combined score plus both strategies)
    psi_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    desktop_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mobile_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lcp_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cls: Mapped[float | None] = mapped_column(Float, nullable=True)
    tbt_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fcp_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    si_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tti_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lighthouse_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    final_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # Detection
    is_wordpress: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    plugin_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    plugin_evidence: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    theme_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    detection_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    signatures_matched: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    measured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    site: Mapped[Site] = relationship("Site", back_populates="snapshots")

    __table_args__ = (
        UniqueConstraint("site_id", "crawl_id", name="uq_site_metrics_site_crawl"),
        Index("ix_site_metrics_site_measured", "site_id", "measured_at"),
    )


# ─────────────────────────────────────────────
# Ranks
# ─────────────────────────────────────────────

class RankEntry(Base, UUIDPrimaryKeyMixin):
    """Current efficiency score and dense rank of one site. Overwritten in place."""
    __tablename__ = "ranks"

    site_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    efficiency_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    global_rank: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 0 = unranked
    psi_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    plugin_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    site: Mapped[Site] = relationship("Site", back_populates="rank")

    __table_args__ = (
        Index("ix_ranks_global_rank", "global_rank"),
        Index("ix_ranks_efficiency_score", "efficiency_score"),
    )


# ─────────────────────────────────────────────
# Submissions
# ─────────────────────────────────────────────

class Submission(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Audit trail of accepted public submissions."""
    __tablename__ = "submissions"

    domain: Mapped[str] = mapped_column(String(253), nullable=False)
    raw_input: Mapped[str] = mapped_column(String(2000), nullable=False)
    ip_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    queue_item_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)

    __table_args__ = (
        Index("ix_submissions_ip_hash_created", "ip_hash", "created_at"),
        Index("ix_submissions_created_at", "created_at"),
    )
