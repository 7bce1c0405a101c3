"""Tests for the analytics sink."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx

from wallet_broker.analytics import Analytics
from wallet_broker.config import AnalyticsConfig


class TestAnalytics:
    def test_counts_without_loop_or_endpoint(self):
        analytics = Analytics()
        analytics.track("connect")
        analytics.track("connect")
        analytics.track("provider_error", "timeout")
        assert analytics.snapshot() == {"connect": 2, "provider_error": 1}

    async def test_posts_when_enabled(self):
        config = AnalyticsConfig(enabled=True, endpoint="https://stats.example/hit", site_id="s1")
        analytics = Analytics(config)
        with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as post:
            analytics.track("compose", "send")
            await analytics.aclose()
        post.assert_awaited_once_with(
            "https://stats.example/hit",
            json={"site_id": "s1", "event": "compose", "value": "send"},
        )

    async def test_post_failures_are_swallowed(self):
        config = AnalyticsConfig(enabled=True, endpoint="https://stats.example/hit")
        analytics = Analytics(config)
        failing = AsyncMock(side_effect=httpx.ConnectError("down"))
        with patch.object(httpx.AsyncClient, "post", failing):
            analytics.track("connect")
            await analytics.aclose()
        assert analytics.counts["connect"] == 1
        failing.assert_awaited_once()
