"""
Ranking Engine - efficiency score and dense global rank.

Score:
    efficiency = PSI_WEIGHT * clamp(psi / 100, 0, 1)
               + PLUGIN_WEIGHT * 1 / (1 + min(plugins, PLUGIN_WINSOR_CAP))

    Missing PSI counts as 0, missing plugin count as 0 plugins.
    Weights are not required to sum to 1; keeping them sensible is up to the caller.

Order (tie-break chain):
    efficiency desc -> psi desc -> plugins asc -> domain asc

Ranks are dense 1..N over that order; a site scoring <= 0 gets rank 0 (unranked).
A full recomputation runs inside one transaction so readers see either the old
or the new assignment, never a mix.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wprank.core.config import Settings
from wprank.engines.base import RankedSite, SiteStatus
from wprank.models.models import RankEntry, Site, SiteMetricsSnapshot, utcnow

logger = structlog.get_logger(__name__)

SCORE_PRECISION = 4


# ─────────────────────────────────────────────
# Pure scoring
# ─────────────────────────────────────────────

def normalize_psi(psi_score: int | float | None) -> float:
    if psi_score is None:
        return 0.0
    return max(0.0, min(1.0, psi_score / 100.0))


def normalize_plugins(plugin_count: int | None, cap: int = 50) -> float:
    plugins = max(0, plugin_count or 0)
    return 1.0 / (1.0 + min(plugins, cap))


def efficiency_score(
    psi_score: int | float | None,
    plugin_count: int | None,
    psi_weight: float = 0.70,
    plugin_weight: float = 0.30,
    winsor_cap: int = 50,
) -> float:
    score = psi_weight * normalize_psi(psi_score) + plugin_weight * normalize_plugins(plugin_count, winsor_cap)
    return round(score, SCORE_PRECISION)


def rank_sort_key(site: RankedSite) -> tuple:
    psi = site.psi_score if site.psi_score is not None else -1
    plugins = site.plugin_count if site.plugin_count is not None else 0
    return (-site.efficiency_score, -psi, plugins, site.domain)


def assign_ranks(sites: list[RankedSite]) -> list[RankedSite]:
    """Sort by the tie-break chain and assign dense ranks in place."""
    ordered = sorted(sites, key=rank_sort_key)
    position = 0
    for site in ordered:
        if site.efficiency_score > 0:
            position += 1
            site.global_rank = position
        else:
            site.global_rank = 0
    return ordered


# ─────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────

class RankingEngine:
    """Recomputes RankEntry rows from the latest snapshot of every ranked site."""

    def __init__(self, settings: Settings, session_factory: async_sessionmaker[AsyncSession]):
        self.settings = settings
        self.session_factory = session_factory

    def score(self, psi_score: int | None, plugin_count: int | None) -> float:
        return efficiency_score(
            psi_score,
            plugin_count,
            self.settings.PSI_WEIGHT,
            self.settings.PLUGIN_WEIGHT,
            self.settings.PLUGIN_WINSOR_CAP,
        )

    @staticmethod
    def latest_snapshots_subquery():
        """One row per site: its most recent snapshot."""
        numbered = select(
            SiteMetricsSnapshot.id.label("id"),
            SiteMetricsSnapshot.site_id.label("site_id"),
            SiteMetricsSnapshot.psi_score.label("psi_score"),
            SiteMetricsSnapshot.plugin_count.label("plugin_count"),
            func.row_number()
            .over(
                partition_by=SiteMetricsSnapshot.site_id,
                order_by=(SiteMetricsSnapshot.measured_at.desc(), SiteMetricsSnapshot.id.desc()),
            )
            .label("rn"),
        ).subquery()
        return select(numbered).where(numbered.c.rn == 1).subquery("latest")

    async def _gather(self, session: AsyncSession) -> list[RankedSite]:
        latest = self.latest_snapshots_subquery()
        rows = await session.execute(
            select(Site.id, Site.domain, Site.plugin_count, latest.c.psi_score, latest.c.plugin_count)
            .outerjoin(latest, latest.c.site_id == Site.id)
            .where(Site.status == SiteStatus.ACTIVE.value, Site.is_wordpress.is_(True))
        )
        sites = []
        for site_id, domain, site_plugins, psi, snap_plugins in rows:
            plugins = snap_plugins if snap_plugins is not None else site_plugins
            sites.append(
                RankedSite(
                    site_id=site_id,
                    domain=domain,
                    psi_score=psi,
                    plugin_count=plugins,
                    efficiency_score=self.score(psi, plugins),
                )
            )
        return sites

    async def _write(self, session: AsyncSession, ranked: list[RankedSite], computed_at: datetime) -> None:
        existing = {
            entry.site_id: entry
            for entry in (await session.execute(select(RankEntry))).scalars()
        }
        keep: set[uuid.UUID] = set()
        for site in ranked:
            keep.add(site.site_id)
            entry = existing.get(site.site_id)
            if entry is None:
                entry = RankEntry(site_id=site.site_id)
                session.add(entry)
            entry.efficiency_score = site.efficiency_score
            entry.global_rank = site.global_rank
            entry.psi_score = site.psi_score
            entry.plugin_count = site.plugin_count
            entry.computed_at = computed_at

        stale = [site_id for site_id in existing if site_id not in keep]
        if stale:
            await session.execute(delete(RankEntry).where(RankEntry.site_id.in_(stale)))

    async def recompute_all(self) -> list[RankedSite]:
        """Full pass: score, sort and rank every active WordPress site atomically."""
        async with self.session_factory() as session:
            async with session.begin():
                ranked = assign_ranks(await self._gather(session))
                await self._write(session, ranked, utcnow())

        logger.info(
            "Ranks recomputed",
            sites=len(ranked),
            ranked=sum(1 for s in ranked if s.global_rank > 0),
        )
        return ranked

    async def update_site(self, site_id: uuid.UUID) -> RankedSite | None:
        """
        Score one site after its crawl, then rerank everyone: a rank position
        is relative to all other sites and cannot be patched point-wise.
        """
        async with self.session_factory() as session:
            latest = self.latest_snapshots_subquery()
            row = (
                await session.execute(
                    select(Site.domain, latest.c.psi_score, latest.c.plugin_count)
                    .outerjoin(latest, latest.c.site_id == Site.id)
                    .where(Site.id == site_id)
                )
            ).first()

        if row is not None:
            logger.debug("Site scored", site_id=str(site_id), domain=row.domain, efficiency=self.score(row[1], row[2]))

        ranked = await self.recompute_all()
        return next((site for site in ranked if site.site_id == site_id), None)

    async def prune_snapshots(self, older_than_days: int | None = None) -> int:
        """Delete snapshots older than the cutoff, always keeping each site's latest one."""
        days = older_than_days if older_than_days is not None else self.settings.SNAPSHOT_RETENTION_DAYS
        if days <= 0:
            return 0
        cutoff = utcnow() - timedelta(days=days)
        latest = self.latest_snapshots_subquery()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(SiteMetricsSnapshot)
                    .where(
                        SiteMetricsSnapshot.measured_at < cutoff,
                        SiteMetricsSnapshot.id.not_in(select(latest.c.id)),
                    )
                    .execution_options(synchronize_session=False)
                )
        logger.info("Snapshots pruned", deleted=result.rowcount, older_than_days=days)
        return result.rowcount
