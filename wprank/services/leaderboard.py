"""
Leaderboard - read-only views over ranks, sites and the latest metrics snapshot.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wprank.core.config import Settings
from wprank.engines.base import SiteStatus
from wprank.engines.ranking.engine import RankingEngine
from wprank.models.models import RankEntry, Site, SiteMetricsSnapshot, as_utc
from wprank.workers.queue import CrawlQueue

SortKey = Literal["efficiency", "psi", "plugins", "rank"]


class LeaderboardQuery(BaseModel):
    page: int = Field(1, ge=1)
    per_page: int = Field(50, ge=1, le=100)
    sort: SortKey = "efficiency"
    order: Literal["asc", "desc"] = "desc"
    min_psi: int | None = Field(default=None, ge=0, le=100)
    max_plugins: int | None = Field(default=None, ge=0)


class LeaderboardEntry(BaseModel):
    rank: int
    domain: str
    theme_name: str | None = None
    psi_score: int | None = None
    plugin_count: int = 0
    efficiency_score: float
    last_crawl: datetime | None = None


class LeaderboardPage(BaseModel):
    items: list[LeaderboardEntry]
    page: int
    per_page: int
    total: int
    total_pages: int
    query: LeaderboardQuery


class LeaderboardService:

    def __init__(self, settings: Settings, session_factory: async_sessionmaker[AsyncSession]):
        self.settings = settings
        self.session_factory = session_factory

    def _base_query(self, query: LeaderboardQuery):
        latest = RankingEngine.latest_snapshots_subquery()
        snapshot = SiteMetricsSnapshot.__table__
        plugins = func.coalesce(latest.c.plugin_count, 0)

        stmt = (
            select(
                RankEntry.global_rank,
                Site.domain,
                Site.theme_name,
                latest.c.psi_score,
                plugins.label("plugin_count"),
                RankEntry.efficiency_score,
                snapshot.c.measured_at,
            )
            .join(Site, Site.id == RankEntry.site_id)
            .join(latest, latest.c.site_id == Site.id)
            .join(snapshot, snapshot.c.id == latest.c.id)
            .where(Site.is_wordpress.is_(True), Site.status == SiteStatus.ACTIVE.value)
        )
        if query.min_psi is not None:
            stmt = stmt.where(latest.c.psi_score >= query.min_psi)
        if query.max_plugins is not None:
            stmt = stmt.where(plugins <= query.max_plugins)
        return stmt, latest, plugins

    async def leaderboard(self, query: LeaderboardQuery | None = None) -> LeaderboardPage:
        query = query or LeaderboardQuery()
        stmt, latest, plugins = self._base_query(query)

        column = {
            "efficiency": RankEntry.efficiency_score,
            "psi": latest.c.psi_score,
            "plugins": plugins,
            "rank": RankEntry.global_rank,
        }[query.sort]
        ordering = column.asc() if query.order == "asc" else column.desc()

        async with self.session_factory() as session:
            total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
            rows = await session.execute(
                stmt.order_by(ordering, Site.domain.asc())
                .limit(query.per_page)
                .offset((query.page - 1) * query.per_page)
            )
            items = [
                LeaderboardEntry(
                    rank=rank,
                    domain=domain,
                    theme_name=theme,
                    psi_score=psi,
                    plugin_count=plugin_count,
                    efficiency_score=efficiency,
                    last_crawl=as_utc(measured_at),
                )
                for rank, domain, theme, psi, plugin_count, efficiency, measured_at in rows
            ]

        return LeaderboardPage(
            items=items,
            page=query.page,
            per_page=query.per_page,
            total=total,
            total_pages=math.ceil(total / query.per_page),
            query=query,
        )

    async def ranking_stats(self) -> dict[str, Any]:
        latest = RankingEngine.latest_snapshots_subquery()
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(
                        func.count(),
                        func.avg(RankEntry.efficiency_score),
                        func.min(RankEntry.efficiency_score),
                        func.max(RankEntry.efficiency_score),
                        func.avg(latest.c.psi_score),
                        func.avg(latest.c.plugin_count),
                        func.max(RankEntry.computed_at),
                    )
                    .select_from(RankEntry)
                    .join(Site, Site.id == RankEntry.site_id)
                    .join(latest, latest.c.site_id == Site.id)
                    .where(Site.is_wordpress.is_(True), Site.status == SiteStatus.ACTIVE.value)
                )
            ).one()

        count, avg_eff, min_eff, max_eff, avg_psi, avg_plugins, last_computation = row
        return {
            "total_ranked_sites": count or 0,
            "avg_efficiency_score": round(float(avg_eff or 0), 4),
            "min_efficiency_score": round(float(min_eff or 0), 4),
            "max_efficiency_score": round(float(max_eff or 0), 4),
            "avg_psi_score": round(float(avg_psi or 0), 1),
            "avg_plugin_count": round(float(avg_plugins or 0), 1),
            "last_computation": as_utc(last_computation),
            "weights": {
                "psi_weight": self.settings.PSI_WEIGHT,
                "plugin_weight": self.settings.PLUGIN_WEIGHT,
            },
        }

    async def queue_stats(self) -> dict[str, int]:
        return await CrawlQueue(self.settings, self.session_factory).stats()
