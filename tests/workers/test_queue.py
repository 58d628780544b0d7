"""
Tests for the Crawl Queue repository and its state machine.
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from wprank.core.domain import InvalidDomainError
from wprank.models.models import CrawlQueueItem, Site, as_utc, utcnow
from wprank.workers.queue import CrawlQueue, backoff_delay, truncate_error


@pytest.fixture
def queue(settings, session_factory) -> CrawlQueue:
    return CrawlQueue(settings, session_factory)


async def set_fields(session_factory, item_id, **values):
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(CrawlQueueItem).where(CrawlQueueItem.id == item_id).values(**values))


# ─────────────────────────────────────────────
# Backoff
# ─────────────────────────────────────────────

class TestBackoff:

    @pytest.mark.parametrize("attempt,minutes", [(1, 20), (2, 40), (3, 80), (4, 160), (5, 240), (9, 240)])
    def test_exponential_with_cap(self, attempt, minutes):
        assert backoff_delay(attempt, 10, 240) == timedelta(minutes=minutes)

    def test_truncate_error(self):
        assert truncate_error("x" * 5000, 1000) == "x" * 1000
        assert truncate_error("short", 1000) == "short"


# ─────────────────────────────────────────────
# Enqueue
# ─────────────────────────────────────────────

class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_normalizes(self, queue):
        item = await queue.enqueue("http://WWW.Example.org/", priority=7, source="manual")
        assert item.domain == "example.org"
        assert item.status == "pending"
        assert item.attempt_count == 0
        assert item.priority == 7

    @pytest.mark.asyncio
    async def test_default_priority(self, queue, settings):
        item = await queue.enqueue("example.org")
        assert item.priority == settings.DEFAULT_PRIORITY

    @pytest.mark.asyncio
    async def test_invalid_domain_never_enters_queue(self, queue):
        with pytest.raises(InvalidDomainError):
            await queue.enqueue("-bad.com")
        assert (await queue.stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_non_terminal_rejected(self, queue):
        first = await queue.enqueue("example.org")
        assert await queue.enqueue("https://www.example.org") is None
        await queue.claim(first.id)
        assert await queue.enqueue("example.org") is None
        assert (await queue.stats())["total"] == 1

    @pytest.mark.asyncio
    async def test_terminal_item_allows_new_one(self, queue):
        first = await queue.enqueue("example.org")
        await queue.claim(first.id)
        await queue.complete(first.id, "completed")

        second = await queue.enqueue("example.org")

        assert second is not None
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_unique_index_backs_the_invariant(self, session_factory):
        with pytest.raises(IntegrityError):
            async with session_factory() as session:
                async with session.begin():
                    session.add(CrawlQueueItem(domain="example.org", status="pending"))
                    session.add(CrawlQueueItem(domain="example.org", status="processing"))


# ─────────────────────────────────────────────
# Dequeue / claim
# ─────────────────────────────────────────────

class TestDequeue:

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, queue, session_factory):
        low = await queue.enqueue("low.com", priority=1)
        high_old = await queue.enqueue("high-old.com", priority=50)
        high_new = await queue.enqueue("high-new.com", priority=50)
        now = utcnow()
        await set_fields(session_factory, high_old.id, created_at=now - timedelta(minutes=10))
        await set_fields(session_factory, high_new.id, created_at=now - timedelta(minutes=5))

        ready = await queue.fetch_ready(10)

        assert [i.domain for i in ready] == ["high-old.com", "high-new.com", "low.com"]
        assert ready[-1].id == low.id

    @pytest.mark.asyncio
    async def test_future_attempts_not_ready(self, queue, session_factory):
        item = await queue.enqueue("later.com")
        await set_fields(session_factory, item.id, next_attempt_at=utcnow() + timedelta(minutes=30))
        due = await queue.enqueue("due.com")
        await set_fields(session_factory, due.id, next_attempt_at=utcnow() - timedelta(minutes=1))

        assert [i.domain for i in await queue.fetch_ready(10)] == ["due.com"]

    @pytest.mark.asyncio
    async def test_batch_limit(self, queue):
        for i in range(5):
            await queue.enqueue(f"site{i}.com")
        assert len(await queue.fetch_ready(3)) == 3

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, queue):
        item = await queue.enqueue("example.org")

        assert await queue.claim(item.id) is True
        assert await queue.claim(item.id) is False

        claimed = await queue.get(item.id)
        assert claimed.status == "processing"
        assert claimed.started_at is not None
        assert await queue.fetch_ready(10) == []


# ─────────────────────────────────────────────
# Transitions
# ─────────────────────────────────────────────

class TestRetryOrFail:

    @pytest.mark.asyncio
    async def test_first_failure_backs_off_20_minutes(self, queue):
        item = await queue.enqueue("example.org")
        await queue.claim(item.id)
        before = utcnow()

        updated = await queue.retry_or_fail(item.id, "fetch_failed")

        assert updated.status == "pending"
        assert updated.attempt_count == 1
        assert updated.last_error == "fetch_failed"
        delay = as_utc(updated.next_attempt_at) - before
        assert timedelta(minutes=19, seconds=59) <= delay <= timedelta(minutes=20, seconds=5)

    @pytest.mark.asyncio
    async def test_third_failure_backs_off_80_minutes(self, settings, session_factory):
        queue = CrawlQueue(settings.model_copy(update={"MAX_RETRIES": 5}), session_factory)
        item = await queue.enqueue("example.org")
        for _ in range(2):
            await queue.retry_or_fail(item.id, "boom")
        before = utcnow()

        updated = await queue.retry_or_fail(item.id, "boom")

        assert updated.attempt_count == 3
        delay = as_utc(updated.next_attempt_at) - before
        assert timedelta(minutes=79, seconds=59) <= delay <= timedelta(minutes=80, seconds=5)

    @pytest.mark.asyncio
    async def test_fails_after_max_retries(self, queue, settings):
        item = await queue.enqueue("example.org")
        for _ in range(settings.MAX_RETRIES - 1):
            assert (await queue.retry_or_fail(item.id, "boom")).status == "pending"

        final = await queue.retry_or_fail(item.id, "boom")

        assert final.status == "failed"
        assert final.attempt_count == settings.MAX_RETRIES
        assert final.next_attempt_at is None
        assert final.completed_at is not None

    @pytest.mark.asyncio
    async def test_last_error_truncated(self, queue, settings):
        item = await queue.enqueue("example.org")
        updated = await queue.retry_or_fail(item.id, "e" * 5000)
        assert len(updated.last_error) == settings.LAST_ERROR_MAX_LENGTH

    @pytest.mark.asyncio
    async def test_missing_item(self, queue):
        assert await queue.retry_or_fail(uuid.uuid4(), "boom") is None


# ─────────────────────────────────────────────
# Maintenance
# ─────────────────────────────────────────────

class TestMaintenance:

    @pytest.mark.asyncio
    async def test_recover_stuck_items(self, queue, session_factory):
        stuck = await queue.enqueue("stuck.com")
        fresh = await queue.enqueue("fresh.com")
        await queue.claim(stuck.id)
        await queue.claim(fresh.id)
        await set_fields(session_factory, stuck.id, started_at=utcnow() - timedelta(hours=2))

        assert await queue.recover_stuck(timeout_minutes=30) == 1

        recovered = await queue.get(stuck.id)
        assert recovered.status == "pending"
        assert recovered.attempt_count == 0
        assert (await queue.get(fresh.id)).status == "processing"

    @pytest.mark.asyncio
    async def test_cleanup_only_removes_old_terminal_items(self, queue, session_factory):
        old_done = await queue.enqueue("old-done.com")
        await queue.complete(old_done.id, "completed")
        await set_fields(session_factory, old_done.id, completed_at=utcnow() - timedelta(days=30))
        recent_done = await queue.enqueue("recent-done.com")
        await queue.complete(recent_done.id, "completed")
        old_pending = await queue.enqueue("old-pending.com")
        await set_fields(session_factory, old_pending.id, updated_at=utcnow() - timedelta(days=30))

        assert await queue.cleanup(days=7) == 1

        assert await queue.get(old_done.id) is None
        assert await queue.get(recent_done.id) is not None
        assert await queue.get(old_pending.id) is not None

    @pytest.mark.asyncio
    async def test_stats(self, queue):
        a = await queue.enqueue("a.com")
        await queue.enqueue("b.com")
        await queue.claim(a.id)

        stats = await queue.stats()

        assert stats == {"pending": 1, "processing": 1, "completed": 0, "failed": 0, "total": 2}

    @pytest.mark.asyncio
    async def test_enqueue_stale_sites(self, queue, session_factory, settings):
        async with session_factory() as session:
            async with session.begin():
                session.add_all([
                    Site(domain="stale.com", status="active", last_crawled_at=utcnow() - timedelta(days=30)),
                    Site(domain="fresh.com", status="active", last_crawled_at=utcnow()),
                    Site(domain="blocked.com", status="blocked", last_crawled_at=utcnow() - timedelta(days=30)),
                    Site(domain="queued.com", status="active", last_crawled_at=utcnow() - timedelta(days=30)),
                ])
        await queue.enqueue("queued.com")

        assert await queue.enqueue_stale_sites(older_than_days=7) == 1

        ready = {i.domain: i for i in await queue.fetch_ready(10)}
        assert set(ready) == {"stale.com", "queued.com"}
        assert ready["stale.com"].source == "recrawl"
        assert ready["stale.com"].priority == settings.RECRAWL_PRIORITY
