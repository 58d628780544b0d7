"""
Tests for domain discovery: link extraction and enqueueing of unseen domains.
Uses httpx MockTransport for the source pages.
"""

import httpx
import pytest

from wprank.models.models import Site
from wprank.services.discovery import DiscoveryService, extract_domains
from wprank.workers.queue import CrawlQueue

SHOWCASE_HTML = """
<html><body>
  <a href="https://www.Gamma.com/case-study">Gamma</a>
  <a href="http://alpha.com:8080/">Alpha again</a>
  <a href="https://facebook.com/gamma">Social</a>
  <a href="https://cdn.facebook.com/x.js">CDN</a>
  <a href="https://bad_host.com/">Broken</a>
  <a href="/relative/link">Relative</a>
</body></html>
"""

FEED_XML = """<?xml version="1.0"?>
<rss><channel>
  <item><title>Delta relaunch</title><link>https://delta.org/news/</link>
  <description>Built on WordPress, see https://epsilon.net and https://delta.org</description></item>
</channel></rss>
"""


def handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "showcase.test-source.net":
        return httpx.Response(200, text=SHOWCASE_HTML)
    if request.url.host == "feeds.test-source.net":
        return httpx.Response(200, text=FEED_XML)
    if request.url.host == "broken.test-source.net":
        return httpx.Response(503, text="unavailable")
    raise httpx.ConnectError("connection refused", request=request)


@pytest.fixture
def build_service(settings, session_factory, rate_limiter, mock_client):
    def _build(**overrides) -> DiscoveryService:
        cfg = settings.model_copy(update={
            "DISCOVERY_SEEDS": "alpha.com,beta.com,www.alpha.com",
            "DISCOVERY_SOURCES": (
                "https://showcase.test-source.net/,https://broken.test-source.net/,"
                "https://down.test-source.net/,https://feeds.test-source.net/feed"
            ),
            **overrides,
        })
        queue = CrawlQueue(cfg, session_factory)
        return DiscoveryService(cfg, session_factory, queue, mock_client(handler), rate_limiter)
    return _build


class TestExtractDomains:

    def test_links_are_normalized_deduplicated_and_filtered(self):
        assert extract_domains(SHOWCASE_HTML, ["facebook.com"]) == ["gamma.com", "alpha.com"]

    def test_plain_text_urls(self):
        assert extract_domains(FEED_XML, []) == ["delta.org", "epsilon.net"]

    def test_nothing_to_find(self):
        assert extract_domains("no links here, just example dot com", []) == []


class TestDiscover:

    @pytest.mark.asyncio
    async def test_unseen_domains_are_queued(self, build_service, session_factory, settings):
        async with session_factory() as session:
            async with session.begin():
                session.add(Site(domain="beta.com", status="active", is_wordpress=True))
        service = build_service()

        result = await service.discover()

        assert result.discovered == 5
        assert result.domains == ["alpha.com", "gamma.com", "delta.org", "epsilon.net"]
        assert result.queued == 4
        assert result.skipped == 1
        assert result.errors == 0

        items = await service.queue.fetch_ready()
        assert sorted(item.domain for item in items) == ["alpha.com", "delta.org", "epsilon.net", "gamma.com"]
        assert {item.source for item in items} == {"discovery"}
        assert {item.priority for item in items} == {settings.DISCOVERY_PRIORITY}

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing_new(self, build_service):
        service = build_service()
        await service.discover()

        result = await service.discover()

        assert result.queued == 0
        assert result.skipped == result.discovered
        assert (await service.queue.stats())["total"] == 5

    @pytest.mark.asyncio
    async def test_max_sites_caps_new_items(self, build_service):
        service = build_service()

        result = await service.discover(max_sites=2)

        assert result.domains == ["alpha.com", "beta.com"]
        assert (await service.queue.stats())["pending"] == 2

    @pytest.mark.asyncio
    async def test_blocklisted_seed_is_ignored(self, build_service):
        service = build_service(DISCOVERY_SEEDS="wordpress.org,news.wordpress.org", DISCOVERY_SOURCES="")

        result = await service.discover()

        assert result.discovered == 0
        assert (await service.queue.stats())["total"] == 0
