"""Pydantic models for broker records and the rows they persist to."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ApprovalType(str, Enum):
    CONNECTION = "connection"
    SIGN_MESSAGE = "sign-message"
    SIGN_TRANSACTION = "sign-transaction"
    SIGN_PSBT = "sign-psbt"
    COMPOSE = "compose"


class RequestState(str, Enum):
    """Lifecycle of one pending request. PENDING is the only non-final state."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class ReplayStatus(str, Enum):
    PENDING = "pending"
    BROADCASTED = "broadcasted"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def new_request_id(prefix: str = "") -> str:
    """Generate an unguessable request id, optionally namespaced."""
    token = uuid.uuid4().hex
    return f"{prefix}-{token}" if prefix else token


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------

class ConnectionGrant(BaseModel):
    """Maps to the ``connections`` table."""

    origin: str
    address: str = ""
    granted_at: float = Field(default_factory=time.time)


class ApprovalRequest(BaseModel):
    """A unit of work waiting on explicit human confirmation."""

    id: str = Field(default_factory=new_request_id)
    origin: str
    method: str
    params: Any = None
    type: ApprovalType
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)


class ApprovalOutcome(BaseModel):
    """What the UI decided for an approval request."""

    approved: bool
    updated_params: Any = None


class HandoffRecord(BaseModel):
    """Maps to the ``request_handoff`` table.

    Parameters of a sign/compose request parked for the UI to pick up.
    """

    id: str
    kind: str
    origin: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)


class ReplayRecord(BaseModel):
    """Maps to the ``replay_ledger`` table."""

    fingerprint: str
    origin: str
    method: str
    status: ReplayStatus = ReplayStatus.PENDING
    txid: Optional[str] = None
    first_seen_at: float = Field(default_factory=time.time)
