"""Broker services -- approvals, connections, the provider entry point, updates."""

from wallet_broker.services.approval import ApprovalService
from wallet_broker.services.connection import ConnectionService
from wallet_broker.services.provider import ProviderService
from wallet_broker.services.update import UpdateManager

__all__ = ["ApprovalService", "ConnectionService", "ProviderService", "UpdateManager"]
