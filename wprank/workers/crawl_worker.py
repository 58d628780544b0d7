"""
Crawl Worker - long-lived queue processor entrypoint.

    wprank-worker                      # run until SIGINT/SIGTERM
    wprank-worker --once               # one batch, then exit
    wprank-worker --batch-size 25 --concurrency 4

Command-line options override the matching environment settings. On a
termination signal the in-flight items finish and no new items are claimed.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from wprank.core.config import Settings, get_settings
from wprank.core.database import create_engine, create_session_factory, init_models
from wprank.core.logging import configure_logging
from wprank.core.rate_limit import create_rate_limiter
from wprank.core.redis import create_redis_client
from wprank.engines.detector.engine import WordPressDetector, build_http_client
from wprank.engines.performance.engine import PageSpeedClient
from wprank.engines.ranking.engine import RankingEngine
from wprank.services.discovery import DiscoveryService
from wprank.workers.processor import QueueProcessor
from wprank.workers.queue import CrawlQueue

logger = structlog.get_logger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    queue: CrawlQueue
    ranking: RankingEngine
    processor: QueueProcessor
    discovery: DiscoveryService


@asynccontextmanager
async def open_pipeline(settings: Settings) -> AsyncGenerator[Pipeline, None]:
    """Wire every component from one Settings instance and release them on exit."""
    engine = create_engine(settings)
    if settings.AUTO_CREATE_SCHEMA:
        await init_models(engine)
    session_factory = create_session_factory(engine)

    redis = create_redis_client(settings) if settings.REDIS_DSN else None
    crawl_http = build_http_client(settings)
    psi_http = httpx.AsyncClient(timeout=httpx.Timeout(settings.PAGESPEED_TIMEOUT))

    rate_limiter = create_rate_limiter(settings, redis)

    queue = CrawlQueue(settings, session_factory)
    ranking = RankingEngine(settings, session_factory)
    processor = QueueProcessor(
        settings,
        session_factory,
        queue,
        WordPressDetector(settings, crawl_http, rate_limiter),
        PageSpeedClient(settings, psi_http),
        ranking,
    )
    discovery = DiscoveryService(settings, session_factory, queue, crawl_http, rate_limiter)

    try:
        yield Pipeline(settings, engine, session_factory, queue, ranking, processor, discovery)
    finally:
        await crawl_http.aclose()
        await psi_http.aclose()
        if redis is not None:
            await redis.aclose()
        await engine.dispose()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wprank-worker",
        description="Drain the crawl queue: detect WordPress, fetch PageSpeed scores, update ranks.",
    )
    parser.add_argument("--batch-size", type=int, help="Items per batch (1-100)")
    parser.add_argument("--max-retries", type=int, help="Attempts before an item is marked failed (1-10)")
    parser.add_argument("--concurrency", type=int, help="Items processed in parallel within a batch")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit")
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace, base: Settings) -> Settings:
    overrides = {
        "BATCH_SIZE": args.batch_size,
        "MAX_RETRIES": args.max_retries,
        "WORKER_CONCURRENCY": args.concurrency,
        "LOG_LEVEL": args.log_level.upper() if args.log_level else None,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if not overrides:
        return base
    # Re-validate so out-of-range CLI values fail like env values do
    return Settings.model_validate({**base.model_dump(), **overrides})


async def run_worker(settings: Settings, once: bool = False) -> int:
    async with open_pipeline(settings) as pipeline:
        processor = pipeline.processor

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, processor.request_shutdown)
                installed.append(sig)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                pass

        try:
            if once:
                await pipeline.queue.recover_stuck()
                counts = await processor.process_batch()
                logger.info("Single batch finished", **dict(counts))
            else:
                await processor.run_forever()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = settings_from_args(args, get_settings())
    configure_logging(settings)
    logger.info("Starting crawl worker", version=settings.APP_VERSION, env=settings.ENV)

    try:
        return asyncio.run(run_worker(settings, once=args.once))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
