"""
Maintenance Tasks - Celery wrappers around the async pipeline.

Each task opens a fresh pipeline (engine, sessions, HTTP clients) on its own
event loop and disposes of it before returning, so tasks stay independent of
the worker process's state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from wprank.core.config import get_settings
from wprank.workers.celery_app import celery_app
from wprank.workers.crawl_worker import Pipeline, open_pipeline

logger = structlog.get_logger(__name__)
settings = get_settings()

T = TypeVar("T")


def run_async(coro):
    """Run an async coroutine in a Celery (sync) task context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_pipeline(action: Callable[[Pipeline], Awaitable[T]]) -> T:
    async with open_pipeline(settings) as pipeline:
        return await action(pipeline)


# ─────────────────────────────────────────────
# Tasks
# ─────────────────────────────────────────────

@celery_app.task(name="wprank.workers.maintenance_tasks.recompute_ranks")
def recompute_ranks() -> dict[str, Any]:
    ranked = run_async(_with_pipeline(lambda p: p.ranking.recompute_all()))
    return {"sites": len(ranked), "ranked": sum(1 for site in ranked if site.global_rank > 0)}


@celery_app.task(name="wprank.workers.maintenance_tasks.recover_stuck_items")
def recover_stuck_items() -> dict[str, int]:
    return {"reclaimed": run_async(_with_pipeline(lambda p: p.queue.recover_stuck()))}


@celery_app.task(name="wprank.workers.maintenance_tasks.cleanup_queue")
def cleanup_queue(days: int | None = None) -> dict[str, int]:
    async def _cleanup(pipeline: Pipeline) -> dict[str, int]:
        return {
            "deleted": await pipeline.queue.cleanup(days),
            "snapshots_deleted": await pipeline.ranking.prune_snapshots(),
        }

    return run_async(_with_pipeline(_cleanup))


@celery_app.task(name="wprank.workers.maintenance_tasks.schedule_recrawls")
def schedule_recrawls(older_than_days: int | None = None) -> dict[str, int]:
    return {"enqueued": run_async(_with_pipeline(lambda p: p.queue.enqueue_stale_sites(older_than_days)))}


@celery_app.task(name="wprank.workers.maintenance_tasks.discover_domains")
def discover_domains(max_sites: int | None = None) -> dict[str, Any]:
    result = run_async(_with_pipeline(lambda p: p.discovery.discover(max_sites)))
    return result.model_dump(exclude={"domains"})


@celery_app.task(
    name="wprank.workers.maintenance_tasks.process_queue_batch",
    bind=True,
    acks_late=True,
    soft_time_limit=settings.ITEM_TIME_LIMIT_SECONDS * 2,
)
def process_queue_batch(self) -> dict[str, int]:
    """Drain one bounded batch outside the long-lived worker."""
    counts = run_async(_with_pipeline(lambda p: p.processor.process_batch()))
    logger.info("Celery batch finished", task_id=self.request.id, **dict(counts))
    return dict(counts)
