"""Origin allow-list and the connection workflow."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from wallet_broker.core.message_bus import MessageBus
from wallet_broker.errors import RequestPendingError, SetupRequiredError
from wallet_broker.services.approval import ApprovalService
from wallet_broker.storage.database import Database
from wallet_broker.storage.models import (
    ApprovalRequest,
    ApprovalType,
    ConnectionGrant,
    new_request_id,
)
from wallet_broker.wallet.keychain import WALLET_UNLOCKED, Keychain

logger = logging.getLogger("wallet_broker.connection")

PENDING_UNLOCK_EVENT = "pending-unlock-connection"

_DAY = 86400


class ConnectionService:
    """Owner of the ``connections`` table.

    An origin either holds a :class:`ConnectionGrant` or it does not; grant
    and revoke are idempotent and update memory before the database write.
    """

    def __init__(
        self,
        bus: MessageBus,
        keychain: Keychain,
        approvals: ApprovalService,
        db: Database | None = None,
        ttl_days: int = 0,
        unlock_timeout: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.bus = bus
        self.keychain = keychain
        self.approvals = approvals
        self.db = db
        self.ttl_days = ttl_days
        self.unlock_timeout = unlock_timeout
        self._clock = clock
        self._grants: dict[str, ConnectionGrant] = {}
        self._connecting: set[str] = set()

    async def load(self) -> int:
        """Read persisted grants into memory, dropping expired ones."""
        if self.db is None:
            return 0
        rows = await self.db.fetch_all("SELECT * FROM connections")
        for row in rows:
            self._grants[row["origin"]] = ConnectionGrant(
                origin=row["origin"],
                address=row["address"] or "",
                granted_at=row["granted_at"],
            )
        expired = await self.prune_expired()
        logger.info(f"Loaded {len(self._grants)} connection grant(s) ({expired} expired)")
        return len(self._grants)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def _is_expired(self, grant: ConnectionGrant) -> bool:
        if self.ttl_days <= 0:
            return False
        return self._clock() - grant.granted_at >= self.ttl_days * _DAY

    def has_permission(self, origin: str) -> bool:
        grant = self._grants.get(origin)
        return grant is not None and not self._is_expired(grant)

    def get_grant(self, origin: str) -> ConnectionGrant | None:
        grant = self._grants.get(origin)
        if grant is None or self._is_expired(grant):
            return None
        return grant

    def list_connections(self) -> list[ConnectionGrant]:
        return sorted(
            (g for g in self._grants.values() if not self._is_expired(g)),
            key=lambda g: g.granted_at,
        )

    async def grant(self, origin: str, address: str = "") -> ConnectionGrant:
        record = ConnectionGrant(origin=origin, address=address, granted_at=self._clock())
        self._grants[origin] = record
        if self.db is not None:
            await self.db.execute(
                "INSERT OR REPLACE INTO connections (origin, address, granted_at) "
                "VALUES (?, ?, ?)",
                (record.origin, record.address, record.granted_at),
            )
        logger.info(f"Granted connection to {origin}")
        return record

    async def revoke(self, origin: str) -> bool:
        existed = self._grants.pop(origin, None) is not None
        if self.db is not None:
            await self.db.execute("DELETE FROM connections WHERE origin = ?", (origin,))
        if existed:
            logger.info(f"Revoked connection for {origin}")
        return existed

    async def prune_expired(self) -> int:
        expired = [o for o, g in self._grants.items() if self._is_expired(g)]
        for origin in expired:
            await self.revoke(origin)
        return len(expired)

    # ------------------------------------------------------------------
    # Accounts and disconnect
    # ------------------------------------------------------------------

    def get_accounts(self, origin: str) -> list[str]:
        """Active address for a connected origin while unlocked, else ``[]``."""
        if not self.has_permission(origin) or not self.keychain.is_unlocked():
            return []
        address = self.keychain.get_active_address()
        return [address] if address else []

    async def disconnect(self, origin: str) -> bool:
        """Revoke *origin* and tell its pages the accounts are gone."""
        existed = await self.revoke(origin)
        self.approvals.clear_by_origin(origin, "Origin disconnected")
        self.bus.emit_provider_event(origin, "accountsChanged", [])
        self.bus.emit_provider_event(origin, "disconnect", {})
        return existed

    async def disconnect_all(self) -> int:
        origins = list(self._grants)
        for origin in origins:
            await self.disconnect(origin)
        return len(origins)

    # ------------------------------------------------------------------
    # Connection workflow
    # ------------------------------------------------------------------

    async def connect(self, origin: str, metadata: dict[str, Any] | None = None) -> list[str]:
        """Return accounts for *origin*, asking the user first if needed.

        Raises :class:`SetupRequiredError` when no wallet exists,
        :class:`RequestPendingError` if *origin* already has a connection
        request in flight, and :class:`UserDeniedError` on denial.
        """
        if self.has_permission(origin) and self.keychain.is_unlocked():
            return self.get_accounts(origin)

        if not self.keychain.has_wallets():
            raise SetupRequiredError("Wallet setup required before connecting")

        if origin in self._connecting:
            raise RequestPendingError(f"A connection request from {origin} is already pending")
        self._connecting.add(origin)
        try:
            if not self.keychain.is_unlocked():
                await self._wait_for_unlock(origin)

            # The grant may have been given while we waited
            if self.has_permission(origin):
                return self.get_accounts(origin)

            request = ApprovalRequest(
                origin=origin,
                method="wallet_requestAccounts",
                type=ApprovalType.CONNECTION,
                metadata=metadata or {},
            )
            await self.approvals.request_approval(
                request, route=f"/provider/approval?id={request.id}"
            )
            address = self.keychain.get_active_address() or ""
            await self.grant(origin, address)
            accounts = [address] if address else []
            self.bus.emit_provider_event(origin, "accountsChanged", accounts)
            return accounts
        finally:
            self._connecting.discard(origin)

    async def _wait_for_unlock(self, origin: str) -> None:
        pending = self.approvals.pending
        request_id = new_request_id("unlock")
        future = pending.create(
            request_id,
            timeout=self.unlock_timeout,
            timeout_message="Timed out waiting for the wallet to be unlocked",
        )
        pending.listen(
            request_id,
            WALLET_UNLOCKED,
            lambda data: pending.settle(request_id, result=data),
        )
        logger.debug(f"Connection from {origin} waiting for unlock")
        self.bus.emit(PENDING_UNLOCK_EVENT, {"origin": origin, "requestId": request_id})
        self.approvals.open_ui(f"/unlock-wallet?requestId={request_id}", request_id)
        await pending.wait(request_id, future)
