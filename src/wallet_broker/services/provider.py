"""Single entry point for every request a web page makes."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

from wallet_broker.analytics import Analytics
from wallet_broker.config import BrokerConfig
from wallet_broker.core.message_bus import MessageBus
from wallet_broker.core.rate_limiter import CONNECTION, GENERAL, TRANSACTION, RateLimiters
from wallet_broker.errors import (
    ProviderError,
    RateLimitError,
    ReplayError,
    UnauthorizedError,
    UnsupportedMethodError,
    ValidationError,
)
from wallet_broker.security.replay import ReplayLedger
from wallet_broker.services.approval import ApprovalService
from wallet_broker.services.connection import ConnectionService
from wallet_broker.storage.handoff import HandoffStore
from wallet_broker.storage.models import ApprovalRequest, ApprovalType, new_request_id
from wallet_broker.wallet.keychain import Keychain

logger = logging.getLogger("wallet_broker.provider")

# ---------------------------------------------------------------------------
# Method namespace
# ---------------------------------------------------------------------------

QUERY_METHODS = frozenset({
    "wallet_accounts",
    "wallet_isConnected",
    "wallet_chainId",
    "wallet_getNetwork",
})

CONNECTION_METHODS = frozenset({"wallet_requestAccounts"})

# method -> (approval type, event prefix, UI route)
SIGN_METHODS: dict[str, tuple[ApprovalType, str, str]] = {
    "wallet_signMessage": (ApprovalType.SIGN_MESSAGE, "sign-message", "/provider/sign-message"),
    "wallet_signTransaction": (ApprovalType.SIGN_TRANSACTION, "sign-tx", "/provider/sign-transaction"),
    "wallet_signPsbt": (ApprovalType.SIGN_PSBT, "sign-psbt", "/provider/sign-psbt"),
}

COMPOSE_TYPES = (
    "send", "mpma", "order", "cancel", "issuance", "dispenser", "dispense",
    "dividend", "sweep", "burn", "destroy", "broadcast", "bet", "btcpay",
    "fairminter", "fairmint", "attach", "detach", "move",
)

_COMPOSE_METHOD_NAMES = {
    "mpma": "MPMA",
    "btcpay": "BTCPay",
}

COMPOSE_METHODS: dict[str, str] = {
    f"wallet_compose{_COMPOSE_METHOD_NAMES.get(t, t.capitalize())}": t
    for t in COMPOSE_TYPES
}

BROADCAST_METHOD = "wallet_broadcastTransaction"
DISCONNECT_METHOD = "wallet_disconnect"

# Known but never served to pages: method -> reason
REFUSED_METHODS: dict[str, str] = {
    "wallet_getHistory": "wallet_getHistory is not available to web pages",
    "wallet_getAssets": "wallet_getAssets is not available; query the API directly",
}

TRANSACTION_METHODS = frozenset(SIGN_METHODS) | frozenset(COMPOSE_METHODS) | {BROADCAST_METHOD}


def classify(method: str) -> str:
    """Rate-limit category for *method*."""
    if method in CONNECTION_METHODS:
        return CONNECTION
    if method in TRANSACTION_METHODS:
        return TRANSACTION
    return GENERAL


def _hostname(origin: str) -> str:
    return urlsplit(origin).hostname or origin


class ProviderService:
    """Validates, rate-limits, authorizes and dispatches provider requests."""

    def __init__(
        self,
        config: BrokerConfig,
        bus: MessageBus,
        keychain: Keychain,
        connections: ConnectionService,
        approvals: ApprovalService,
        replay: ReplayLedger,
        handoff: HandoffStore,
        limiters: RateLimiters | None = None,
        analytics: Analytics | None = None,
    ) -> None:
        self.config = config
        self.bus = bus
        self.keychain = keychain
        self.connections = connections
        self.approvals = approvals
        self.replay = replay
        self.handoff = handoff
        self.limiters = limiters or RateLimiters.get()
        self.analytics = analytics or approvals.analytics
        self._stats: dict[str, int] = {"total": 0, "succeeded": 0, "failed": 0}
        self._handlers: dict[str, Callable[[str, list, dict], Awaitable[Any]]] = {
            "wallet_accounts": self._accounts,
            "wallet_isConnected": self._is_connected,
            "wallet_chainId": self._chain_id,
            "wallet_getNetwork": self._get_network,
            "wallet_requestAccounts": self._request_accounts,
            DISCONNECT_METHOD: self._disconnect,
            BROADCAST_METHOD: self._broadcast,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_request(
        self,
        origin: str,
        method: str,
        params: list | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Any:
        params = list(params or [])
        metadata = metadata or {}
        self._stats["total"] += 1
        try:
            self._validate_payload(params, metadata)
            self._check_rate_limit(origin, method)
            result = await self._dispatch(origin, method, params, metadata)
        except ProviderError as e:
            self._stats["failed"] += 1
            logger.warning(f"{method} from {_hostname(origin)} rejected: {e.kind}: {e.message}")
            self.analytics.track("provider_error", e.kind)
            raise
        except Exception as e:
            self._stats["failed"] += 1
            logger.error(f"{method} from {_hostname(origin)} failed: {type(e).__name__}: {e}")
            self.analytics.track("provider_error", "internal")
            raise
        self._stats["succeeded"] += 1
        return result

    def _validate_payload(self, params: list, metadata: dict) -> None:
        """Params and metadata together must serialize within ``max_param_bytes``."""
        try:
            encoded = json.dumps([params, metadata])
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Request payload is not serializable: {e}") from None
        limit = self.config.security.max_param_bytes
        if len(encoded.encode("utf-8")) > limit:
            raise ValidationError(f"Request payload exceeds {limit} bytes")

    def _check_rate_limit(self, origin: str, method: str) -> None:
        limiter = self.limiters.for_category(classify(method))
        if not limiter.is_allowed(origin):
            retry_after = max(1, -(-limiter.get_reset_time(origin) // 1000))
            raise RateLimitError(
                f"Rate limit exceeded. Retry in {retry_after}s", retry_after=retry_after
            )

    async def _dispatch(self, origin: str, method: str, params: list, metadata: dict) -> Any:
        handler = self._handlers.get(method)
        if handler is not None:
            return await handler(origin, params, metadata)
        if method in SIGN_METHODS:
            return await self._sign(origin, method, params, metadata)
        if method in COMPOSE_METHODS:
            return await self._compose(origin, method, params, metadata)
        if method in REFUSED_METHODS:
            raise UnauthorizedError(REFUSED_METHODS[method])
        raise UnsupportedMethodError(method)

    def _require_connection(self, origin: str) -> None:
        if not self.connections.has_permission(origin):
            raise UnauthorizedError("Origin is not connected. Call wallet_requestAccounts first")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _accounts(self, origin: str, params: list, metadata: dict) -> list[str]:
        return self.connections.get_accounts(origin)

    async def _is_connected(self, origin: str, params: list, metadata: dict) -> bool:
        return self.is_connected(origin)

    async def _chain_id(self, origin: str, params: list, metadata: dict) -> str:
        return self.keychain.get_chain().chain_id_hex

    async def _get_network(self, origin: str, params: list, metadata: dict) -> str:
        return self.keychain.get_chain().network

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _request_accounts(self, origin: str, params: list, metadata: dict) -> list[str]:
        accounts = await self.connections.connect(origin, metadata)
        self.analytics.track("connect")
        return accounts

    async def _disconnect(self, origin: str, params: list, metadata: dict) -> bool:
        await self.connections.disconnect(origin)
        self.analytics.track("disconnect")
        return True

    # ------------------------------------------------------------------
    # Sensitive operations
    # ------------------------------------------------------------------

    async def _sign(self, origin: str, method: str, params: list, metadata: dict) -> Any:
        self._require_connection(origin)
        approval_type, prefix, route = SIGN_METHODS[method]
        if not params:
            raise ValidationError(f"{method} requires a payload")
        result = await self._await_ui(
            origin,
            method,
            approval_type,
            kind=prefix,
            payload={"method": method, "params": params},
            route=route,
            complete_event=f"{prefix}-complete-{{id}}",
            cancel_event=f"{prefix}-cancel-{{id}}",
            timeout=self.config.timeouts.sign_seconds,
            metadata=metadata,
        )
        self.analytics.track(prefix.replace("-", "_"))
        return result

    async def _compose(self, origin: str, method: str, params: list, metadata: dict) -> Any:
        self._require_connection(origin)
        compose_type = COMPOSE_METHODS[method]
        compose_params = params[0] if params else {}
        if not isinstance(compose_params, dict):
            raise ValidationError(f"{method} expects an object of compose parameters")
        result = await self._await_ui(
            origin,
            method,
            ApprovalType.COMPOSE,
            kind="compose",
            payload={"type": compose_type, "params": compose_params},
            route=f"/compose/{compose_type}",
            complete_event="compose-complete-{id}",
            cancel_event="compose-cancel-{id}",
            timeout=self.config.timeouts.compose_seconds,
            metadata={**metadata, "composeType": compose_type},
        )
        self.analytics.track("compose", compose_type)
        return result

    async def _await_ui(
        self,
        origin: str,
        method: str,
        approval_type: ApprovalType,
        *,
        kind: str,
        payload: dict,
        route: str,
        complete_event: str,
        cancel_event: str,
        timeout: float,
        metadata: dict,
    ) -> Any:
        request_id = new_request_id(kind)
        await self.handoff.store(kind, origin, payload, request_id=request_id)
        request = ApprovalRequest(
            id=request_id,
            origin=origin,
            method=method,
            params=payload,
            type=approval_type,
            metadata=metadata,
        )
        try:
            return await self.approvals.await_ui_completion(
                request,
                complete_event=complete_event.format(id=request_id),
                cancel_event=cancel_event.format(id=request_id),
                route=f"{route}?id={request_id}",
                timeout=timeout,
                on_settle=lambda: self.handoff.discard(request_id),
            )
        finally:
            await self.handoff.remove(request_id)

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def _broadcast(self, origin: str, params: list, metadata: dict) -> dict:
        self._require_connection(origin)
        if not params or not isinstance(params[0], str) or not params[0].strip():
            raise ValidationError("wallet_broadcastTransaction expects a signed transaction hex")
        signed_hex = params[0].strip()

        check = self.replay.check_replay_attempt(origin, BROADCAST_METHOD, [signed_hex])
        if check.is_replay:
            raise ReplayError(check.reason or "Replay detected")

        fp = check.fingerprint
        self.replay.record_transaction(fp, origin, BROADCAST_METHOD)
        await self.replay.flush()
        try:
            result = await self.keychain.broadcast_transaction(signed_hex)
        except Exception:
            self.replay.discard_pending(fp)
            await self.replay.flush()
            raise
        self.replay.mark_transaction_broadcasted(fp, result.get("txid"))
        await self.replay.flush()
        self.analytics.track("broadcast")
        return result

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def is_connected(self, origin: str) -> bool:
        return self.connections.has_permission(origin)

    async def disconnect(self, origin: str) -> bool:
        return await self.connections.disconnect(origin)

    def get_approval_queue(self) -> list[ApprovalRequest]:
        return self.approvals.get_approval_queue()

    def remove_approval_request(self, request_id: str) -> bool:
        return self.approvals.remove_approval_request(request_id)

    def get_request_stats(self) -> dict:
        return {
            "requests": dict(self._stats),
            "approvals": self.approvals.get_approval_stats(),
            "replay": self.replay.get_stats(),
            "connections": len(self.connections.list_connections()),
            "timestamp": time.time(),
        }

    def destroy(self) -> None:
        self.approvals.destroy()
        logger.info("Provider service destroyed")
