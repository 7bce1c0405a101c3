"""Correlation table for requests parked on a human decision.

Each outstanding request id owns exactly one :class:`PendingEntry`: the future
the caller awaits, its timeout timer, the bus listeners scoped to it, and any
cleanup callbacks (queue removal, critical-operation release, handoff
pruning). :meth:`PendingRequests.settle` is the only way an entry leaves the
table, and it tears all of that down in one synchronous step before the
future is resolved or rejected. Whichever of complete/cancel/timeout/dismiss
arrives first wins; later ones find no entry and do nothing.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from wallet_broker.core.message_bus import EventHandler, MessageBus
from wallet_broker.errors import RequestCancelledError, RequestPendingError, RequestTimeoutError
from wallet_broker.storage.models import RequestState

logger = logging.getLogger("wallet_broker.pending")


@dataclass
class PendingEntry:
    request_id: str
    future: asyncio.Future
    state: RequestState = RequestState.PENDING
    timer: asyncio.TimerHandle | None = None
    listeners: list[tuple[str, EventHandler]] = field(default_factory=list)
    cleanups: list[Callable[[], None]] = field(default_factory=list)


class PendingRequests:
    """request id -> :class:`PendingEntry`, with atomic settle."""

    def __init__(self, bus: MessageBus) -> None:
        self.bus = bus
        self._entries: dict[str, PendingEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._entries

    def state_of(self, request_id: str) -> RequestState | None:
        entry = self._entries.get(request_id)
        return entry.state if entry else None

    def create(
        self,
        request_id: str,
        *,
        timeout: float | None = None,
        timeout_message: str = "Request timed out",
    ) -> asyncio.Future:
        """Open an entry and return its future.

        Raises :class:`RequestPendingError` if *request_id* is already
        outstanding. When *timeout* is given the entry settles itself with
        :class:`RequestTimeoutError` after that many seconds.
        """
        if request_id in self._entries:
            raise RequestPendingError(f"Request {request_id} is already pending")
        loop = asyncio.get_running_loop()
        entry = PendingEntry(request_id=request_id, future=loop.create_future())
        if timeout is not None:
            entry.timer = loop.call_later(
                timeout,
                self.settle,
                request_id,
                None,
                RequestTimeoutError(timeout_message),
                RequestState.TIMED_OUT,
            )
        self._entries[request_id] = entry
        return entry.future

    def listen(self, request_id: str, event: str, handler: EventHandler) -> None:
        """Subscribe *handler* to *event* for the lifetime of the entry."""
        entry = self._entries[request_id]
        self.bus.on(event, handler)
        entry.listeners.append((event, handler))

    def add_cleanup(self, request_id: str, cleanup: Callable[[], None]) -> None:
        self._entries[request_id].cleanups.append(cleanup)

    def settle(
        self,
        request_id: str,
        result: Any = None,
        error: BaseException | None = None,
        state: RequestState | None = None,
    ) -> bool:
        """Finish *request_id* exactly once.

        Returns False if the entry was already settled or never existed.
        """
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        entry.state = state or (RequestState.DENIED if error else RequestState.COMPLETED)
        if entry.timer is not None:
            entry.timer.cancel()
        for event, handler in entry.listeners:
            self.bus.off(event, handler)
        for cleanup in entry.cleanups:
            try:
                cleanup()
            except Exception as e:
                logger.error(f"Cleanup for {request_id} failed: {e}")
        if not entry.future.done():
            if error is not None:
                entry.future.set_exception(error)
            else:
                entry.future.set_result(result)
        logger.debug(f"Request {request_id} settled as {entry.state.value}")
        return True

    async def wait(self, request_id: str, future: asyncio.Future) -> Any:
        """Await *future*; if the waiting task is cancelled, settle the entry too."""
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            self.settle(
                request_id,
                error=RequestCancelledError("Request was cancelled"),
                state=RequestState.CANCELLED,
            )
            # The rejection set above has no waiter left to retrieve it
            if future.done() and not future.cancelled():
                future.exception()
            raise

    def cancel_all(self, reason: str = "Service shutting down") -> int:
        """Reject every outstanding entry with :class:`RequestCancelledError`."""
        ids = list(self._entries)
        for request_id in ids:
            self.settle(
                request_id,
                error=RequestCancelledError(reason),
                state=RequestState.CANCELLED,
            )
        return len(ids)
