"""Surfacing the approval UI.

Strategies are tried in order, each bounded by a short timeout:

1. :class:`NavigateOpenSurface` asks an already-open UI (the ``popup`` context
   on the bus) to navigate to the route.
2. :class:`LaunchSurface` starts a new UI surface through a launcher callable
   (a browser window, a desktop notification, ...).

If every strategy fails :meth:`UISurface.open` raises
:class:`UIUnavailableError`, so the caller can reject the request instead of
waiting on a screen nobody will see.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Protocol, Sequence, Union

from wallet_broker.core.message_bus import POPUP, MessageBus
from wallet_broker.errors import UIUnavailableError

logger = logging.getLogger("wallet_broker.ui_surface")

NAVIGATE_CHANNEL = "ui-navigate"

Launcher = Callable[[str], Union[bool, None, Awaitable[Union[bool, None]]]]


class SurfaceStrategy(Protocol):
    name: str

    async def open(self, route: str, request_id: str | None) -> bool: ...


class NavigateOpenSurface:
    """Reuse a UI that is already connected to the bus."""

    name = "navigate"

    def __init__(self, bus: MessageBus) -> None:
        self.bus = bus

    async def open(self, route: str, request_id: str | None) -> bool:
        if not self.bus.has_handler(POPUP, NAVIGATE_CHANNEL):
            return False
        response = await self.bus.send(
            NAVIGATE_CHANNEL, {"route": route, "requestId": request_id}, POPUP
        )
        return response is not False


class LaunchSurface:
    """Open a fresh UI surface at ``base_url + route``.

    The UI token travels in the URL fragment, which browsers never send to
    a server.
    """

    name = "launch"

    def __init__(self, launcher: Launcher, base_url: str = "", token: str = "") -> None:
        self.launcher = launcher
        self.base_url = base_url
        self.token = token

    def url_for(self, route: str) -> str:
        url = f"{self.base_url}{route}"
        if self.token:
            url += f"#token={self.token}"
        return url

    async def open(self, route: str, request_id: str | None) -> bool:
        result: Any = self.launcher(self.url_for(route))
        if inspect.isawaitable(result):
            result = await result
        return result is not False


class UISurface:
    """Ordered list of :class:`SurfaceStrategy` objects."""

    def __init__(
        self,
        strategies: Sequence[SurfaceStrategy] = (),
        strategy_timeout: float = 2.0,
    ) -> None:
        self.strategies = list(strategies)
        self.strategy_timeout = strategy_timeout

    async def open(self, route: str, request_id: str | None = None) -> str:
        """Surface *route*; return the name of the strategy that worked."""
        for strategy in self.strategies:
            try:
                opened = await asyncio.wait_for(
                    strategy.open(route, request_id), timeout=self.strategy_timeout
                )
            except asyncio.TimeoutError:
                logger.debug(f"UI strategy '{strategy.name}' timed out")
                continue
            except Exception as e:
                logger.debug(f"UI strategy '{strategy.name}' failed: {e}")
                continue
            if opened:
                logger.debug(f"Opened UI via '{strategy.name}' at {route}")
                return strategy.name
        raise UIUnavailableError("Unable to open the approval window")
