"""Keychain collaborator consumed by the provider service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from wallet_broker.core.message_bus import MessageBus
from wallet_broker.wallet.chains import Chain, get_chain
from wallet_broker.wallet.keystore import (
    create_keystore,
    keystore_path,
    read_address,
    verify_password,
)
from wallet_broker.wallet.provider import Web3Provider

logger = logging.getLogger("wallet_broker.wallet.keychain")

WALLET_UNLOCKED = "wallet-unlocked"
WALLET_LOCKED = "wallet-locked"


@runtime_checkable
class Keychain(Protocol):
    """What the broker needs to know about key material. It never sees keys."""

    def has_wallets(self) -> bool: ...

    def is_unlocked(self) -> bool: ...

    def get_active_address(self) -> str | None: ...

    def get_chain(self) -> Chain: ...

    async def broadcast_transaction(self, signed_hex: str) -> dict: ...


class KeystoreKeychain:
    """Keychain backed by a single encrypted ``keystore.json``."""

    def __init__(
        self,
        wallet_dir: Path,
        bus: MessageBus | None = None,
        chain: str = "ethereum",
        rpc_url: str | None = None,
    ) -> None:
        self.wallet_dir = wallet_dir
        self.bus = bus
        self.chain_name = chain
        overrides = {chain: rpc_url} if rpc_url else None
        self.provider = Web3Provider(overrides)
        self._unlocked = False

    # ------------------------------------------------------------------
    # Wallet lifecycle
    # ------------------------------------------------------------------

    def create(self, password: str) -> str:
        """Create a new wallet and return the address."""
        address = create_keystore(self.wallet_dir, password)
        logger.info(f"Created wallet {address}")
        return address

    def has_wallets(self) -> bool:
        return keystore_path(self.wallet_dir).exists()

    def is_unlocked(self) -> bool:
        return self._unlocked and self.has_wallets()

    def get_active_address(self) -> str | None:
        return read_address(self.wallet_dir)

    def get_chain(self) -> Chain:
        return get_chain(self.chain_name)

    def unlock(self, password: str) -> bool:
        """Check *password* against the keystore and emit ``wallet-unlocked`` on success."""
        if not verify_password(self.wallet_dir, password):
            logger.warning("Unlock attempt with wrong password")
            return False
        self._unlocked = True
        logger.info("Wallet unlocked")
        if self.bus is not None:
            self.bus.emit(WALLET_UNLOCKED, {"address": self.get_active_address()})
        return True

    def lock(self) -> None:
        if not self._unlocked:
            return
        self._unlocked = False
        logger.info("Wallet locked")
        if self.bus is not None:
            self.bus.emit(WALLET_LOCKED, None)

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    async def broadcast_transaction(self, signed_hex: str) -> dict:
        """Submit an already-signed transaction. Returns ``{"txid": ...}``."""
        txid = await self.provider.broadcast(signed_hex, self.chain_name)
        return {"txid": txid}
