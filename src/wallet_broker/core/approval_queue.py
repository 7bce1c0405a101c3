"""Ordered queue of approval requests shown to the user."""

from __future__ import annotations

from wallet_broker.storage.models import ApprovalRequest


class ApprovalQueue:
    """Pending :class:`ApprovalRequest` objects, oldest first.

    The queue is a UI concern (what to display, badge count); promise
    resolution lives in :class:`~wallet_broker.core.pending.PendingRequests`.
    """

    def __init__(self) -> None:
        self._requests: dict[str, ApprovalRequest] = {}

    def add(self, request: ApprovalRequest) -> None:
        self._requests[request.id] = request

    def get(self, request_id: str) -> ApprovalRequest | None:
        return self._requests.get(request_id)

    def get_next(self) -> ApprovalRequest | None:
        ordered = self.get_all()
        return ordered[0] if ordered else None

    def get_all(self) -> list[ApprovalRequest]:
        return sorted(self._requests.values(), key=lambda r: r.created_at)

    def get_by_origin(self, origin: str) -> list[ApprovalRequest]:
        return [r for r in self.get_all() if r.origin == origin]

    def remove(self, request_id: str) -> bool:
        return self._requests.pop(request_id, None) is not None

    def clear_by_origin(self, origin: str) -> int:
        ids = [r.id for r in self._requests.values() if r.origin == origin]
        for rid in ids:
            del self._requests[rid]
        return len(ids)

    def clear_all(self) -> None:
        self._requests.clear()

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._requests

    def badge_text(self) -> str:
        count = len(self._requests)
        if count == 0:
            return ""
        return "9+" if count > 9 else str(count)
