"""Web3 connection used to broadcast already-signed transactions."""

from __future__ import annotations

import asyncio
import logging

from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from wallet_broker.wallet.chains import Chain, get_chain

logger = logging.getLogger("wallet_broker.wallet.provider")


class Web3Provider:
    """Manages Web3 connections across the supported chains."""

    def __init__(self, rpc_overrides: dict[str, str] | None = None) -> None:
        self._instances: dict[str, Web3] = {}
        self._rpc_overrides = rpc_overrides or {}

    def get_web3(self, chain_name: str) -> Web3:
        """Return a (cached) Web3 instance for the given chain.

        Injects POA middleware for non-mainnet chains.
        """
        if chain_name in self._instances:
            return self._instances[chain_name]

        chain: Chain = get_chain(chain_name)
        rpc_url = self._rpc_overrides.get(chain_name, chain.rpc_url)
        w3 = Web3(Web3.HTTPProvider(rpc_url))

        if chain.chain_id != 1:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self._instances[chain_name] = w3
        return w3

    def send_raw_transaction(self, signed_hex: str, chain_name: str) -> str:
        """Submit a signed transaction and return its hash as a hex string."""
        w3 = self.get_web3(chain_name)
        raw = signed_hex if signed_hex.startswith("0x") else "0x" + signed_hex
        tx_hash = w3.eth.send_raw_transaction(raw)
        logger.info(f"Broadcast on {chain_name}: {tx_hash.hex()}")
        return tx_hash.hex()

    async def broadcast(self, signed_hex: str, chain_name: str) -> str:
        """Non-blocking wrapper around :meth:`send_raw_transaction`."""
        return await asyncio.to_thread(self.send_raw_transaction, signed_hex, chain_name)
