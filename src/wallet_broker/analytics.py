"""Fire-and-forget analytics counters.

Events are counted in memory. When an endpoint is configured each event is
also posted from a background task; the caller never waits on the network
and never sees a failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any

import httpx

from wallet_broker.config import AnalyticsConfig

logger = logging.getLogger("wallet_broker.analytics")


class Analytics:
    """Counter sink for provider events (``connect``, ``provider_error``, ...)."""

    def __init__(self, config: AnalyticsConfig | None = None) -> None:
        self.config = config or AnalyticsConfig()
        self.counts: Counter[str] = Counter()
        self._tasks: set[asyncio.Task] = set()

    @property
    def remote_enabled(self) -> bool:
        return self.config.enabled and bool(self.config.endpoint)

    def track(self, event: str, value: Any = None) -> None:
        self.counts[event] += 1
        if not self.remote_enabled:
            return
        try:
            task = asyncio.get_running_loop().create_task(self._post(event, value))
        except RuntimeError:
            # No running loop (CLI one-shots); the local count is enough
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, event: str, value: Any) -> None:
        payload = {"site_id": self.config.site_id, "event": event}
        if value is not None:
            payload["value"] = str(value)
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                await client.post(self.config.endpoint, json=payload)
        except httpx.HTTPError as e:
            logger.debug(f"Analytics post for '{event}' failed: {e}")

    def snapshot(self) -> dict[str, int]:
        return dict(self.counts)

    async def aclose(self) -> None:
        """Wait briefly for in-flight posts, then drop them."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(list(self._tasks), timeout=2)
        for task in pending:
            task.cancel()
