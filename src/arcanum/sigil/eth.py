"""
ECDSA / secp256k1 signing identity for Arcanum.

The key signs every transaction sent to the confidential network.  It is
stored in ~/.arcanum/.env as PRIVATE_KEY (hex format) or supplied through
the environment.  Only the ``Signer`` crosses into the protocol core: the
core asks it for an address and for signatures, never for the key itself.

Dependencies: eth-account (lightweight, no full web3.py needed)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Protocol

from dotenv import load_dotenv
from eth_account import Account
from eth_account.signers.local import LocalAccount


# Default config directory
ARCANUM_DIR = Path.home() / ".arcanum"
ARCANUM_ENV = ARCANUM_DIR / ".env"


class Signer(Protocol):
    @property
    def address(self) -> str:
        ...

    def sign(self, transaction: dict) -> str:
        """Sign a transaction dict and return the 0x-prefixed raw transaction."""
        ...


class LocalSigner:
    """Signer backed by an in-process eth-account key."""

    def __init__(self, account: LocalAccount) -> None:
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "LocalSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, transaction: dict) -> str:
        signed = self._account.sign_transaction(transaction)
        raw = signed.raw_transaction.hex()
        return raw if raw.startswith("0x") else "0x" + raw

    def __repr__(self) -> str:
        return f"LocalSigner({self.address})"


def load_config(env_path: Optional[Path] = None) -> None:
    """Load ~/.arcanum/.env (if present) into the process environment."""
    env_path = env_path or ARCANUM_ENV
    if env_path.exists():
        load_dotenv(env_path, override=True)


def load_private_key(env_path: Optional[Path] = None) -> str:
    """
    Load private key from .env file or environment.

    Returns:
        0x-prefixed hex private key

    Raises:
        ValueError: If PRIVATE_KEY is not configured
    """
    env_path = env_path or ARCANUM_ENV
    load_config(env_path)

    private_key = os.environ.get("PRIVATE_KEY")
    if not private_key:
        raise ValueError(
            f"PRIVATE_KEY not found. Set it in the environment or in {env_path}"
        )

    if not private_key.startswith("0x"):
        private_key = "0x" + private_key

    return private_key


def get_account(private_key: Optional[str] = None) -> LocalAccount:
    """
    Get an eth-account LocalAccount from a private key.

    Args:
        private_key: 0x-prefixed hex private key.
                     If None, loads from .env.
    """
    if private_key is None:
        private_key = load_private_key()
    return Account.from_key(private_key)


def get_signer(private_key: Optional[str] = None) -> LocalSigner:
    return LocalSigner(get_account(private_key))


def get_address(private_key: Optional[str] = None) -> str:
    """
    Get the address for a private key.

    Returns:
        0x-prefixed checksummed address
    """
    return get_account(private_key).address
