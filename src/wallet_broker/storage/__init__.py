"""Broker storage layer -- async SQLite database and Pydantic models."""

from wallet_broker.storage.database import Database, get_database
from wallet_broker.storage.handoff import HandoffStore
from wallet_broker.storage.models import (
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalType,
    ConnectionGrant,
    HandoffRecord,
    ReplayRecord,
    ReplayStatus,
    RequestState,
    new_request_id,
)

__all__ = [
    "Database",
    "get_database",
    "HandoffStore",
    "ApprovalOutcome",
    "ApprovalRequest",
    "ApprovalType",
    "ConnectionGrant",
    "HandoffRecord",
    "ReplayRecord",
    "ReplayStatus",
    "RequestState",
    "new_request_id",
]
