"""
Tests for the PageSpeed Insights client.
"""

import time

import httpx
import pytest

from wprank.engines.base import Strategy
from wprank.engines.performance.engine import (
    PageSpeedClient,
    combine_scores,
    parse_pagespeed_response,
)


def psi_document(score: float | None = 0.91) -> dict:
    return {
        "lighthouseResult": {
            "lighthouseVersion": "11.5.0",
            "fetchTime": "2026-10-01T12:00:00.000Z",
            "finalUrl": "https://example.com/",
            "categories": {"performance": {"score": score}},
            "audits": {
                "largest-contentful-paint": {"numericValue": 1834.6},
                "cumulative-layout-shift": {"numericValue": 0.045678},
                "total-blocking-time": {"numericValue": 120.2},
                "first-contentful-paint": {"numericValue": 912.0},
                "speed-index": {"numericValue": 1500.49},
                "interactive": {"numericValue": 2100.5},
            },
        }
    }


# ─────────────────────────────────────────────
# Parsing / combination
# ─────────────────────────────────────────────

class TestParsing:

    def test_parses_score_and_audits(self):
        metrics = parse_pagespeed_response(psi_document(), Strategy.DESKTOP)

        assert metrics.psi_score == 91
        assert metrics.lcp_ms == 1835
        assert metrics.cls == 0.0457
        assert metrics.tbt_ms == 120
        assert metrics.fcp_ms == 912
        assert metrics.si_ms == 1500
        assert metrics.tti_ms == 2101
        assert metrics.lighthouse_version == "11.5.0"
        assert metrics.final_url == "https://example.com/"

    def test_missing_score_stays_none(self):
        metrics = parse_pagespeed_response(psi_document(score=None), Strategy.MOBILE)
        assert metrics.psi_score is None
        assert metrics.strategy == Strategy.MOBILE

    def test_missing_lighthouse_result(self):
        assert parse_pagespeed_response({"error": {"code": 500}}, Strategy.DESKTOP) is None


class TestCombineScores:

    def test_weighted_average(self):
        assert combine_scores(90, 60) == 81
        assert combine_scores(100, 0) == 70

    def test_rounds_half_up(self):
        # 0.7 * 85 + 0.3 * 80 = 83.5
        assert combine_scores(85, 80) == 84

    def test_single_score_used_directly(self):
        assert combine_scores(77, None) == 77
        assert combine_scores(None, 55) == 55

    def test_neither(self):
        assert combine_scores(None, None) is None


# ─────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────

class TestPageSpeedClient:

    @pytest.mark.asyncio
    async def test_fetch_metrics_sends_expected_params(self, settings, mock_client):
        captured: list[httpx.Request] = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json=psi_document())

        client = PageSpeedClient(settings, mock_client(handler))
        metrics = await client.fetch_metrics("example.com", Strategy.MOBILE)

        assert metrics.psi_score == 91
        params = captured[0].url.params
        assert params["url"] == "https://example.com"
        assert params["category"] == "PERFORMANCE"
        assert params["strategy"] == "MOBILE"
        assert params["key"] == "test-key"

    @pytest.mark.asyncio
    async def test_missing_api_key_returns_none_without_request(self, settings, mock_client):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=psi_document())

        client = PageSpeedClient(settings.model_copy(update={"PAGESPEED_API_KEY": ""}), mock_client(handler))

        assert await client.fetch_metrics("example.com") is None
        assert calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(429, json={"error": "rate limited"}),
        httpx.Response(500, text="oops"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=["unexpected"]),
    ])
    async def test_failures_degrade_to_none(self, settings, mock_client, response):
        client = PageSpeedClient(settings, mock_client(lambda request: response))
        assert await client.fetch_metrics("example.com") is None

    @pytest.mark.asyncio
    async def test_network_error_degrades_to_none(self, settings, mock_client):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = PageSpeedClient(settings, mock_client(handler))
        assert await client.fetch_metrics("example.com") is None

    @pytest.mark.asyncio
    async def test_fetch_both_combines(self, settings, mock_client):
        scores = {"DESKTOP": 0.9, "MOBILE": 0.6}

        def handler(request):
            return httpx.Response(200, json=psi_document(scores[request.url.params["strategy"]]))

        client = PageSpeedClient(settings, mock_client(handler))
        report = await client.fetch_both("example.com")

        assert report.desktop.psi_score == 90
        assert report.mobile.psi_score == 60
        assert report.combined_score == 81
        assert report.primary is report.desktop

    @pytest.mark.asyncio
    async def test_fetch_both_with_mobile_only(self, settings, mock_client):
        def handler(request):
            if request.url.params["strategy"] == "DESKTOP":
                return httpx.Response(500)
            return httpx.Response(200, json=psi_document(0.42))

        client = PageSpeedClient(settings, mock_client(handler))
        report = await client.fetch_both("example.com")

        assert report.desktop is None
        assert report.combined_score == 42
        assert report.primary is report.mobile

    @pytest.mark.asyncio
    async def test_fetch_both_spaces_calls(self, settings, mock_client):
        stamps: list[float] = []

        def handler(request):
            stamps.append(time.monotonic())
            return httpx.Response(200, json=psi_document())

        spaced = settings.model_copy(update={"PAGESPEED_MIN_INTERVAL_SECONDS": 0.2})
        client = PageSpeedClient(spaced, mock_client(handler))
        await client.fetch_both("example.com")

        assert len(stamps) == 2
        assert stamps[1] - stamps[0] >= 0.15
