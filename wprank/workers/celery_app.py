"""
Celery Application Configuration

The crawl queue itself lives in the database and is drained by wprank-worker.
Celery only hosts periodic maintenance (via beat) and on-demand one-shot batches:

- maintenance queue: rank recomputation, stuck-item recovery, retention
  cleanup, recrawl scheduling, daily domain discovery
- crawl queue:       process_queue_batch (one bounded batch per task)
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import after_setup_logger, worker_ready
from kombu import Exchange, Queue

from wprank.core.config import get_settings

settings = get_settings()

# ─────────────────────────────────────────────
# Celery App
# ─────────────────────────────────────────────

celery_app = Celery(
    "wprank",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["wprank.workers.maintenance_tasks"],
)

# ─────────────────────────────────────────────
# Queue Definitions
# ─────────────────────────────────────────────

default_exchange = Exchange("default", type="direct")
maintenance_exchange = Exchange("maintenance", type="direct")
crawl_exchange = Exchange("crawl", type="direct")

celery_app.conf.task_queues = (
    Queue("default", default_exchange, routing_key="default"),
    Queue("maintenance_queue", maintenance_exchange, routing_key="maintenance"),
    Queue("crawl_queue", crawl_exchange, routing_key="crawl"),
)

celery_app.conf.task_default_queue = "default"
celery_app.conf.task_default_exchange = "default"
celery_app.conf.task_default_routing_key = "default"

celery_app.conf.task_routes = {
    "wprank.workers.maintenance_tasks.process_queue_batch": {"queue": "crawl_queue"},
    "wprank.workers.maintenance_tasks.*": {"queue": "maintenance_queue"},
}

# ─────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    result_expires=86400,

    beat_schedule={
        "recompute-ranks": {
            "task": "wprank.workers.maintenance_tasks.recompute_ranks",
            "schedule": crontab(hour=3, minute=0),
        },
        "recover-stuck-items": {
            "task": "wprank.workers.maintenance_tasks.recover_stuck_items",
            "schedule": 3600,
        },
        "cleanup-queue": {
            "task": "wprank.workers.maintenance_tasks.cleanup_queue",
            "schedule": crontab(hour=4, minute=0),
        },
        "discover-domains": {
            "task": "wprank.workers.maintenance_tasks.discover_domains",
            "schedule": crontab(hour=1, minute=0),
        },
        "schedule-recrawls": {
            "task": "wprank.workers.maintenance_tasks.schedule_recrawls",
            "schedule": crontab(hour=2, minute=0),
        },
    },
)


# ─────────────────────────────────────────────
# Signals
# ─────────────────────────────────────────────

@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    import structlog
    logger = structlog.get_logger("celery.worker")
    logger.info("Celery worker ready", hostname=sender.hostname)


@after_setup_logger.connect
def setup_celery_logging(logger, *args, **kwargs):
    from wprank.core.logging import configure_logging
    configure_logging(settings)
