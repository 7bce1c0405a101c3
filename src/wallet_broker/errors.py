"""Error taxonomy for provider requests.

Every failure a web page can observe is a :class:`ProviderError` subclass with
a numeric ``code`` (EIP-1193 style where one exists) and a short ``kind`` so
the page relay can tell a user denial apart from a timeout or a rate limit.
Anything that is *not* a ``ProviderError`` is an unexpected failure and is
re-raised unchanged by the orchestrator.
"""

from __future__ import annotations

from typing import Any


class ProviderError(Exception):
    """Base class for all errors surfaced to a requesting page."""

    code: int = -32603
    kind: str = "internal"

    def __init__(self, message: str, *, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
        }
        if self.data is not None:
            payload["data"] = self.data
        return payload


class ValidationError(ProviderError):
    """Oversized, malformed, or otherwise invalid request parameters."""

    code = -32602
    kind = "validation"


class UnsupportedMethodError(ValidationError):
    """The requested method is not part of the provider namespace."""

    code = 4200
    kind = "unsupported_method"

    def __init__(self, method: str) -> None:
        super().__init__(f"Unsupported method: {method}")
        self.method = method


class UnauthorizedError(ProviderError):
    """The origin has no connection grant for this call."""

    code = 4100
    kind = "unauthorized"


class RateLimitError(ProviderError):
    """Too many calls in the current window. Retryable after ``retry_after`` seconds."""

    code = -32005
    kind = "rate_limited"

    def __init__(self, message: str, *, retry_after: float) -> None:
        super().__init__(message, data={"retry_after": retry_after})
        self.retry_after = retry_after


class UserDeniedError(ProviderError):
    """The user explicitly rejected the request."""

    code = 4001
    kind = "user_denied"


class RequestCancelledError(UserDeniedError):
    """The request was dismissed from the queue or cancelled by the UI."""

    kind = "cancelled"


class RequestTimeoutError(ProviderError):
    """No decision arrived before the deadline."""

    code = -32603
    kind = "timeout"


class ReplayError(ProviderError):
    """The payload was already broadcast or is being broadcast right now."""

    code = -32003
    kind = "replay"


class SetupRequiredError(ProviderError):
    """No wallet exists yet; the user has to finish setup first."""

    code = 4900
    kind = "setup_required"


class RequestPendingError(ProviderError):
    """An equivalent request is already waiting for the user."""

    code = -32002
    kind = "request_pending"


class ContextUnavailableError(ProviderError):
    """The target execution context has no listener for the channel."""

    kind = "context_unavailable"


class UIUnavailableError(ProviderError):
    """Every strategy for surfacing the approval UI failed."""

    kind = "ui_unavailable"
