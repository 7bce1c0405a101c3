"""Wallet adapters -- keystore, chains, and network broadcast."""

from wallet_broker.wallet.chains import CHAINS, Chain, get_chain, list_chain_names
from wallet_broker.wallet.keychain import (
    WALLET_LOCKED,
    WALLET_UNLOCKED,
    Keychain,
    KeystoreKeychain,
)
from wallet_broker.wallet.provider import Web3Provider

__all__ = [
    "CHAINS",
    "Chain",
    "get_chain",
    "list_chain_names",
    "Keychain",
    "KeystoreKeychain",
    "WALLET_LOCKED",
    "WALLET_UNLOCKED",
    "Web3Provider",
]
