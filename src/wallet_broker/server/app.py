"""FastAPI relay between web pages, the approval UI, and the broker."""

from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from wallet_broker.config import BrokerConfig
from wallet_broker.core.broker import get_broker, init_broker, shutdown_broker
from wallet_broker.core.message_bus import POPUP, PROVIDER_EVENT
from wallet_broker.core.ui_surface import NAVIGATE_CHANNEL, UISurface
from wallet_broker.errors import (
    ProviderError,
    RateLimitError,
    ReplayError,
    RequestTimeoutError,
    UnauthorizedError,
    UserDeniedError,
)
from wallet_broker.server.auth import WS_FORBIDDEN_ORIGIN, admit_ui_socket, require_ui_token
from wallet_broker.services.approval import RESOLVE_EVENT
from wallet_broker.wallet.keychain import Keychain

logger = logging.getLogger("wallet_broker.server")

# Events the UI may publish onto the bus
UI_EVENT_RE = re.compile(
    r"^(compose|sign-message|sign-tx|sign-psbt)-(complete|cancel)-[A-Za-z0-9-]+$"
)

_config: BrokerConfig | None = None
_keychain: Keychain | None = None
_ui: UISurface | None = None


@asynccontextmanager
async def _lifespan(app: FastAPI):
    broker = await init_broker(_config, keychain=_keychain, ui=_ui)
    logger.info(f"Relay started for '{broker.config.name}'")
    yield
    await shutdown_broker()


_app = FastAPI(title="Wallet Broker", lifespan=_lifespan)

_ui_only = [Depends(require_ui_token)]


class ProviderRequestBody(BaseModel):
    origin: str
    method: str
    params: list[Any] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ResolveBody(BaseModel):
    approved: bool
    updatedParams: Optional[Any] = None


class UIEventBody(BaseModel):
    event: str
    data: Any = None


def _status_for(error: ProviderError) -> int:
    if isinstance(error, RateLimitError):
        return 429
    if isinstance(error, (UnauthorizedError, UserDeniedError)):
        return 403
    if isinstance(error, ReplayError):
        return 409
    if isinstance(error, RequestTimeoutError):
        return 408
    return 400


def _is_ui_event(event: str) -> bool:
    return event == RESOLVE_EVENT or bool(UI_EVENT_RE.match(event))


# ------------------------------------------------------------------
# Provider
# ------------------------------------------------------------------


@_app.post("/api/provider/request")
async def api_provider_request(body: ProviderRequestBody, request: Request):
    broker = get_broker()
    # Browsers always send Origin; a page may not speak for another origin
    header_origin = request.headers.get("origin")
    if header_origin is not None and header_origin != body.origin:
        error = UnauthorizedError("Request origin does not match the calling page")
        return JSONResponse(status_code=_status_for(error), content={"error": error.to_dict()})
    try:
        result = await broker.provider.handle_request(
            body.origin, body.method, body.params, body.metadata
        )
    except ProviderError as e:
        return JSONResponse(status_code=_status_for(e), content={"error": e.to_dict()})
    return {"result": result}


# ------------------------------------------------------------------
# Approval UI
# ------------------------------------------------------------------


@_app.get("/api/approvals", dependencies=_ui_only)
async def api_approvals():
    broker = get_broker()
    return {
        "requests": [r.model_dump(mode="json") for r in broker.provider.get_approval_queue()],
        "badge": broker.approvals.badge_text(),
    }


@_app.post("/api/approvals/{request_id}/resolve", dependencies=_ui_only)
async def api_resolve_approval(request_id: str, body: ResolveBody):
    resolved = get_broker().approvals.resolve_approval(
        request_id, body.approved, body.updatedParams
    )
    return {"resolved": resolved}


@_app.delete("/api/approvals/{request_id}", dependencies=_ui_only)
async def api_remove_approval(request_id: str):
    return {"removed": get_broker().provider.remove_approval_request(request_id)}


@_app.post("/api/ui/events", dependencies=_ui_only)
async def api_ui_event(body: UIEventBody):
    if not _is_ui_event(body.event):
        return JSONResponse(status_code=400, content={"error": f"Unknown UI event '{body.event}'"})
    get_broker().bus.emit(body.event, body.data)
    return {"status": "emitted"}


@_app.get("/api/handoff/{request_id}", dependencies=_ui_only)
async def api_handoff(request_id: str):
    record = await get_broker().handoff.get(request_id)
    if record is None:
        return JSONResponse(status_code=404, content={"error": "Request not found or expired"})
    return record.model_dump(mode="json")


@_app.get("/api/status", dependencies=_ui_only)
async def api_status():
    broker = get_broker()
    return {
        "name": broker.config.name,
        "wallet": {
            "exists": broker.keychain.has_wallets(),
            "unlocked": broker.keychain.is_unlocked(),
        },
        "critical_operations": broker.critical_ops.list_operations(),
        "badge": broker.approvals.badge_text(),
        "stats": broker.provider.get_request_stats(),
    }


# ------------------------------------------------------------------
# Wallet
# ------------------------------------------------------------------


@_app.post("/api/wallet/unlock", dependencies=_ui_only)
async def api_wallet_unlock(body: dict):
    keychain = get_broker().keychain
    unlock = getattr(keychain, "unlock", None)
    if unlock is None:
        return JSONResponse(status_code=400, content={"error": "Keychain cannot be unlocked here"})
    try:
        unlocked = unlock(body.get("password", ""))
    except FileNotFoundError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    return {"unlocked": unlocked}


@_app.post("/api/wallet/lock", dependencies=_ui_only)
async def api_wallet_lock():
    lock = getattr(get_broker().keychain, "lock", None)
    if lock is not None:
        lock()
    return {"unlocked": False}


# ------------------------------------------------------------------
# WebSockets
# ------------------------------------------------------------------


@_app.websocket("/ws/page")
async def ws_page(ws: WebSocket):
    """Stream provider events (``accountsChanged``, ``disconnect``) to the
    page named by the socket's ``Origin`` header."""
    origin = ws.headers.get("origin")
    if not origin:
        await ws.close(code=WS_FORBIDDEN_ORIGIN, reason="Origin header required")
        return
    bus = get_broker().bus

    async def _forward(envelope: dict) -> None:
        if envelope.get("origin") != origin:
            return
        await ws.send_text(json.dumps({"event": envelope["event"], "data": envelope["data"]}))

    bus.on(PROVIDER_EVENT, _forward)
    try:
        await ws.accept()
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        bus.off(PROVIDER_EVENT, _forward)


@_app.websocket("/ws/ui")
async def ws_ui(ws: WebSocket, token: Optional[str] = Query(default=None)):
    """The approval UI. While connected it is the ``popup`` context on the bus."""
    if not await admit_ui_socket(ws, token):
        return
    bus = get_broker().bus

    async def _navigate(payload: dict) -> bool:
        await ws.send_text(json.dumps({"event": "navigate", "data": payload}))
        return True

    bus.handle(POPUP, NAVIGATE_CHANNEL, _navigate)
    try:
        await ws.accept()
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
                event = msg["event"]
            except (json.JSONDecodeError, KeyError, TypeError):
                continue
            if _is_ui_event(event):
                bus.emit(event, msg.get("data"))
            else:
                logger.warning(f"UI sent unknown event '{event}'")
    except WebSocketDisconnect:
        pass
    finally:
        bus.unhandle(POPUP, NAVIGATE_CHANNEL, _navigate)


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


def configure(
    config: BrokerConfig | None = None,
    keychain: Keychain | None = None,
    ui: UISurface | None = None,
) -> FastAPI:
    """Set what the app's startup builds the broker from; returns the app."""
    global _config, _keychain, _ui
    _config, _keychain, _ui = config, keychain, ui
    return _app


def run_server(config: BrokerConfig) -> None:
    configure(config)
    uvicorn.run(_app, host=config.server.host, port=config.server.port, log_level="info")
