"""Who may act as the approval UI.

Approval endpoints and the ``/ws/ui`` socket settle requests on the user's
behalf, so they require the per-process UI token:

    Authorization: Bearer <token>          (HTTP)
    /ws/ui?token=<token>                   (WebSocket)

The UI socket additionally refuses browser connections whose ``Origin`` is
not the relay's own (or one listed in ``server.ui_origins``); WebSockets are
not covered by CORS.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from wallet_broker.core.broker import get_broker

logger = logging.getLogger("wallet_broker.server.auth")

_bearer_scheme = HTTPBearer(auto_error=False)

# Close codes for refused sockets
WS_UNAUTHORIZED = 4001
WS_FORBIDDEN_ORIGIN = 4003


def token_matches(candidate: Optional[str]) -> bool:
    expected = get_broker().ui_token
    return bool(candidate) and secrets.compare_digest(candidate, expected)


def trusted_ui_origins() -> set[str]:
    server = get_broker().config.server
    return {server.base_url(), *server.ui_origins}


def is_trusted_ui_origin(origin: Optional[str]) -> bool:
    """Non-browser clients send no ``Origin``; browsers must send a trusted one."""
    return origin is None or origin in trusted_ui_origins()


async def require_ui_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency guarding the approval UI endpoints."""
    if credentials is None or not token_matches(credentials.credentials):
        logger.warning(
            f"Refused UI call {request.method} {request.url.path} "
            f"from origin {request.headers.get('origin')}"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="A valid UI token is required",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def admit_ui_socket(ws: WebSocket, token: Optional[str]) -> bool:
    """Close *ws* and return False unless it may act as the approval UI."""
    origin = ws.headers.get("origin")
    if not is_trusted_ui_origin(origin):
        logger.warning(f"Refused UI socket from origin {origin}")
        await ws.close(code=WS_FORBIDDEN_ORIGIN, reason="Origin not allowed")
        return False
    if not token_matches(token):
        logger.warning(f"Refused UI socket without a valid token (origin {origin})")
        await ws.close(code=WS_UNAUTHORIZED, reason="Unauthorized")
        return False
    return True
