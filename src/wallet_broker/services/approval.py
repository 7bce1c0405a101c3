"""Human-approval workflows.

:class:`ApprovalService` puts requests in front of the user and turns the
user's decision (or its absence) into a resolved or rejected future. Two
flavours exist:

- :meth:`ApprovalService.request_approval` for yes/no decisions such as a
  connection request, resolved by :meth:`resolve_approval` or the
  ``resolve-pending-request`` bus event;
- :meth:`ApprovalService.await_ui_completion` for sensitive operations
  (signing, compose) that the UI finishes by emitting a request-scoped
  ``*-complete-<id>`` or ``*-cancel-<id>`` event. These also hold a critical
  operation for their whole lifetime.

Every exit path (approval, denial, dismissal, timeout, cancellation of the
awaiting task) runs through :meth:`PendingRequests.settle`, which removes the
queue entry and releases everything the request registered.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Callable

from wallet_broker.analytics import Analytics
from wallet_broker.config import TimeoutConfig
from wallet_broker.core.approval_queue import ApprovalQueue
from wallet_broker.core.critical_ops import CriticalOperationRegistry
from wallet_broker.core.message_bus import MessageBus
from wallet_broker.core.pending import PendingRequests
from wallet_broker.core.ui_surface import UISurface
from wallet_broker.errors import (
    RequestCancelledError,
    RequestPendingError,
    UIUnavailableError,
    UserDeniedError,
)
from wallet_broker.storage.models import ApprovalOutcome, ApprovalRequest, ApprovalType, RequestState

logger = logging.getLogger("wallet_broker.approval")

RESOLVE_EVENT = "resolve-pending-request"


class ApprovalService:
    """Queue, surface, and settle requests that need the user."""

    def __init__(
        self,
        bus: MessageBus,
        ui: UISurface,
        queue: ApprovalQueue | None = None,
        pending: PendingRequests | None = None,
        critical_ops: CriticalOperationRegistry | None = None,
        analytics: Analytics | None = None,
        timeouts: TimeoutConfig | None = None,
        max_pending: int = 10,
    ) -> None:
        self.bus = bus
        self.ui = ui
        self.queue = queue or ApprovalQueue()
        self.pending = pending or PendingRequests(bus)
        self.critical_ops = critical_ops or CriticalOperationRegistry.get()
        self.analytics = analytics or Analytics()
        self.timeouts = timeouts or TimeoutConfig()
        self.max_pending = max_pending
        self._initialized = False
        self._ui_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        if self._initialized:
            return
        self.bus.on(RESOLVE_EVENT, self._on_resolve_event)
        self._initialized = True
        logger.info("Approval service initialized")

    def destroy(self) -> None:
        self.bus.off(RESOLVE_EVENT, self._on_resolve_event)
        self._initialized = False
        for task in list(self._ui_tasks):
            task.cancel()
        cleared = self.clear_all_requests("Approval service shutting down")
        logger.info(f"Approval service destroyed ({cleared} request(s) cancelled)")

    def _on_resolve_event(self, data: Any) -> None:
        if not isinstance(data, dict) or "requestId" not in data:
            logger.warning(f"Ignoring malformed {RESOLVE_EVENT} payload")
            return
        outcome = ApprovalOutcome(
            approved=bool(data.get("approved")),
            updated_params=data.get("updatedParams"),
        )
        self.resolve_approval(data["requestId"], outcome)

    # ------------------------------------------------------------------
    # UI surfacing
    # ------------------------------------------------------------------

    async def surface(self, route: str, request_id: str) -> bool:
        """Open the UI for *request_id*; on failure reject the request.

        Returns False when no UI could be opened (the request is then
        already settled with :class:`UIUnavailableError`).
        """
        try:
            await self.ui.open(route, request_id)
        except UIUnavailableError as e:
            logger.warning(f"No UI for request {request_id}: {e}")
            self.pending.settle(request_id, error=e, state=RequestState.CANCELLED)
            return False
        return True

    def open_ui(self, route: str, request_id: str) -> None:
        """Schedule :meth:`surface` without blocking the waiter."""
        task = asyncio.ensure_future(self.surface(route, request_id))
        self._ui_tasks.add(task)
        task.add_done_callback(self._ui_tasks.discard)

    # ------------------------------------------------------------------
    # Yes/no approvals
    # ------------------------------------------------------------------

    async def request_approval(
        self,
        request: ApprovalRequest,
        timeout: float | None = None,
        route: str | None = None,
    ) -> ApprovalOutcome:
        """Queue *request*, surface the UI, and wait for the decision.

        Raises :class:`UserDeniedError` on denial or dismissal,
        :class:`RequestTimeoutError` when nobody answers in time, and
        :class:`RequestPendingError` if the queue is full.
        """
        self._check_capacity()
        future = self.pending.create(
            request.id,
            timeout=timeout if timeout is not None else self.timeouts.approval_seconds,
            timeout_message="Approval request timed out",
        )
        self._enqueue(request)
        self.analytics.track("approval_requested", request.type.value)

        self.open_ui(route or f"/provider/approval?id={request.id}", request.id)
        return await self.pending.wait(request.id, future)

    def resolve_approval(
        self,
        request_id: str,
        outcome: ApprovalOutcome | bool,
        updated_params: Any = None,
    ) -> bool:
        """Deliver the user's decision on a queued yes/no request.

        Returns False if the request is unknown, already resolved, or is a
        sensitive operation; those only finish through their own
        ``*-complete-<id>`` / ``*-cancel-<id>`` events.
        """
        request = self.queue.get(request_id)
        if request is None:
            return False
        if request.type != ApprovalType.CONNECTION:
            logger.warning(
                f"Refusing yes/no resolution of {request.type.value} request {request_id}"
            )
            return False
        if isinstance(outcome, bool):
            outcome = ApprovalOutcome(approved=outcome, updated_params=updated_params)
        if outcome.approved:
            state = RequestState.APPROVED
            resolved = self.pending.settle(request_id, result=outcome, state=state)
        else:
            state = RequestState.DENIED
            resolved = self.pending.settle(
                request_id, error=UserDeniedError("User rejected the request"), state=state
            )
        if resolved:
            logger.debug(f"Approval {request_id} resolved: {state.value}")
            self.analytics.track(f"approval_{state.value}")
        return resolved

    def reject_approval(self, request_id: str, reason: str = "User rejected the request") -> bool:
        return self.pending.settle(
            request_id, error=UserDeniedError(reason), state=RequestState.DENIED
        )

    # ------------------------------------------------------------------
    # Sensitive operations
    # ------------------------------------------------------------------

    async def await_ui_completion(
        self,
        request: ApprovalRequest,
        *,
        complete_event: str,
        cancel_event: str,
        route: str,
        timeout: float,
        on_settle: Callable[[], None] | None = None,
    ) -> Any:
        """Hold a critical operation while the UI finishes *request*.

        Resolves with the payload of *complete_event*; *cancel_event* rejects
        with :class:`RequestCancelledError`, silence with
        :class:`RequestTimeoutError`.
        """
        self._check_capacity()
        request_id = request.id
        future = self.pending.create(
            request_id,
            timeout=timeout,
            timeout_message=f"{request.type.value} request timed out",
        )
        self.critical_ops.register(request_id)
        self.pending.add_cleanup(request_id, lambda: self.critical_ops.unregister(request_id))
        self._enqueue(request)
        if on_settle is not None:
            self.pending.add_cleanup(request_id, on_settle)

        def _complete(data: Any) -> None:
            self.pending.settle(request_id, result=data, state=RequestState.COMPLETED)

        def _cancel(data: Any) -> None:
            self.pending.settle(
                request_id,
                error=RequestCancelledError("User cancelled the request"),
                state=RequestState.CANCELLED,
            )

        self.pending.listen(request_id, complete_event, _complete)
        self.pending.listen(request_id, cancel_event, _cancel)
        self.analytics.track("approval_requested", request.type.value)

        self.open_ui(route, request_id)
        return await self.pending.wait(request_id, future)

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    def _check_capacity(self) -> None:
        if len(self.queue) >= self.max_pending:
            raise RequestPendingError(
                f"Too many pending approval requests (max {self.max_pending})"
            )

    def _enqueue(self, request: ApprovalRequest) -> None:
        self.queue.add(request)
        self.pending.add_cleanup(request.id, lambda: self.queue.remove(request.id))
        logger.debug(f"Queued {request.type.value} request {request.id} from {request.origin}")

    def get_approval_queue(self) -> list[ApprovalRequest]:
        return self.queue.get_all()

    def get_request(self, request_id: str) -> ApprovalRequest | None:
        return self.queue.get(request_id)

    def remove_approval_request(self, request_id: str) -> bool:
        """Dismiss a request. Its waiter rejects with :class:`RequestCancelledError`."""
        settled = self.pending.settle(
            request_id,
            error=RequestCancelledError("Request was dismissed"),
            state=RequestState.CANCELLED,
        )
        # Entries with no waiter (should not happen) are dropped anyway
        return self.queue.remove(request_id) or settled

    def clear_by_origin(self, origin: str, reason: str = "Origin disconnected") -> int:
        ids = [r.id for r in self.queue.get_by_origin(origin)]
        for request_id in ids:
            self.pending.settle(
                request_id,
                error=RequestCancelledError(reason),
                state=RequestState.CANCELLED,
            )
            self.queue.remove(request_id)
        return len(ids)

    def clear_all_requests(self, reason: str = "All requests cleared") -> int:
        count = self.pending.cancel_all(reason)
        self.queue.clear_all()
        return count

    def get_approval_stats(self) -> dict:
        requests = self.queue.get_all()
        now = time.time()
        return {
            "pending": len(requests),
            "by_type": dict(Counter(r.type.value for r in requests)),
            "by_origin": dict(Counter(r.origin for r in requests)),
            "oldest_age_seconds": round(now - requests[0].created_at, 1) if requests else 0,
        }

    def badge_text(self) -> str:
        return self.queue.badge_text()
