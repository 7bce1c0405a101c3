"""Encrypted keystore file handling using eth-account.

The broker never signs; it only needs to know whether a wallet exists, which
address is active, and whether the user's password unlocks the keystore.
"""

from __future__ import annotations

import json
from pathlib import Path

from eth_account import Account
from web3 import Web3

KEYSTORE_FILE = "keystore.json"


def keystore_path(wallet_dir: Path) -> Path:
    return wallet_dir / KEYSTORE_FILE


def create_keystore(wallet_dir: Path, password: str) -> str:
    """Generate a keypair, write it encrypted, and return the checksummed address.

    Raises
    ------
    FileExistsError
        If a keystore already exists in *wallet_dir*.
    """
    path = keystore_path(wallet_dir)
    if path.exists():
        raise FileExistsError(
            f"Wallet already exists at {path}. "
            "Delete it first if you want to create a new one."
        )

    acct = Account.create()
    encrypted = Account.encrypt(acct.key, password)

    wallet_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(encrypted, indent=2), encoding="utf-8")
    return acct.address


def read_address(wallet_dir: Path) -> str | None:
    """Read the keystore address without decrypting. ``None`` if there is no keystore."""
    path = keystore_path(wallet_dir)
    if not path.exists():
        return None

    data = json.loads(path.read_text(encoding="utf-8"))
    raw_address = data.get("address", "")
    if not raw_address:
        return None
    if not raw_address.startswith("0x"):
        raw_address = "0x" + raw_address
    return Web3.to_checksum_address(raw_address)


def verify_password(wallet_dir: Path, password: str) -> bool:
    """Return True if *password* decrypts the keystore.

    Raises ``FileNotFoundError`` when no keystore exists.
    """
    path = keystore_path(wallet_dir)
    if not path.exists():
        raise FileNotFoundError(f"No keystore found at {path}")

    data = json.loads(path.read_text(encoding="utf-8"))
    try:
        Account.decrypt(data, password)
    except ValueError:
        return False
    return True
