"""In-process async message bus between execution contexts.

Two styles of traffic share the bus:

- request/response: a context (``background``, ``popup``, ``page``) registers
  a handler for a channel with :meth:`MessageBus.handle`; :meth:`send` awaits
  that handler's return value. If the target has no handler the call fails
  fast, callers decide on their own fallback.
- publish/subscribe: :meth:`on` / :meth:`off` / :meth:`emit` for events such
  as ``wallet-unlocked`` or ``compose-complete-<id>``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union

from wallet_broker.errors import ContextUnavailableError

logger = logging.getLogger("wallet_broker.message_bus")

BACKGROUND = "background"
POPUP = "popup"
PAGE = "page"

PROVIDER_EVENT = "emit-provider-event"


@dataclass
class BusEvent:
    name: str
    data: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


RequestHandler = Callable[[Any], Awaitable[Any]]
EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class MessageBus:
    """Async request/response and pub/sub bus for broker contexts."""

    def __init__(self, timeout: float = 10.0, history_size: int = 200):
        self.timeout = timeout
        self._handlers: dict[tuple[str, str], RequestHandler] = {}  # (context, channel)
        self._subscribers: dict[str, list[EventHandler]] = {}  # event -> handlers
        self._history: list[BusEvent] = []
        self._history_size = history_size
        self._pending_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Request / response
    # ------------------------------------------------------------------

    def handle(self, context: str, channel: str, handler: RequestHandler) -> None:
        """Register *handler* as the responder for *channel* in *context*."""
        self._handlers[(context, channel)] = handler

    def unhandle(self, context: str, channel: str, handler: RequestHandler | None = None) -> None:
        """Remove a responder. Passing *handler* only removes it if it is still current."""
        key = (context, channel)
        if handler is not None and self._handlers.get(key) is not handler:
            return
        self._handlers.pop(key, None)

    def has_handler(self, context: str, channel: str) -> bool:
        return (context, channel) in self._handlers

    async def send(
        self,
        channel: str,
        payload: Any,
        target: str,
        timeout: float | None = None,
    ) -> Any:
        """Deliver *payload* to *target* and return its response.

        Raises :class:`ContextUnavailableError` when nothing in *target*
        listens on *channel* or the handler does not answer in time.
        Exceptions raised by the handler propagate to the caller unchanged.
        """
        handler = self._handlers.get((target, channel))
        if handler is None:
            raise ContextUnavailableError(
                f"No listener for '{channel}' in context '{target}'"
            )
        logger.debug(f"Sending '{channel}' to {target}")
        try:
            return await asyncio.wait_for(handler(payload), timeout=timeout or self.timeout)
        except asyncio.TimeoutError:
            raise ContextUnavailableError(
                f"Context '{target}' did not answer '{channel}' in time"
            ) from None

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        handlers = self._subscribers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        """Unsubscribe *handler*. Unknown handlers are ignored."""
        handlers = self._subscribers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._subscribers[event]

    def listener_count(self, event: str) -> int:
        return len(self._subscribers.get(event, []))

    def emit(self, event: str, data: Any = None) -> None:
        """Notify every subscriber of *event* once.

        Synchronous handlers run inline; coroutine handlers are scheduled on
        the running loop. Handler errors are logged, not raised.
        """
        self._record(BusEvent(name=event, data=data))
        # Snapshot so handlers may unsubscribe while we iterate
        for handler in list(self._subscribers.get(event, [])):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending_tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception as e:
                logger.error(f"Subscriber error on event '{event}': {e}")

    def emit_provider_event(self, origin: str, event: str, data: Any = None) -> None:
        """Publish a page-scoped provider event (``accountsChanged``, ``disconnect``...)."""
        self.emit(PROVIDER_EVENT, {"origin": origin, "event": event, "data": data})

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async subscriber failed: {exc}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _record(self, event: BusEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._history_size:
            del self._history[: len(self._history) - self._history_size]

    def get_history(self, limit: int = 50, name: str | None = None) -> list[BusEvent]:
        # Return a copy to avoid mutation during iteration
        events = list(self._history)
        if name:
            events = [e for e in events if e.name == name]
        return events[-limit:]

    def clear(self) -> None:
        """Drop every handler and subscriber (teardown)."""
        self._handlers.clear()
        self._subscribers.clear()
        for task in list(self._pending_tasks):
            task.cancel()
        self._pending_tasks.clear()
