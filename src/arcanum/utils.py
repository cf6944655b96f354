from __future__ import annotations

import re

from eth_hash.auto import keccak

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def keccak256(data: bytes) -> bytes:
    """Keccak-256 (Ethereum flavour, not NIST SHA3-256)."""
    return keccak(data)


def to_checksum_address(address: str) -> str:
    """Convert an address to EIP-55 checksummed format.

    eth-account requires checksummed addresses in transaction fields.
    """
    if not is_address(address):
        raise ValueError(f"Not a 20-byte hex address: {address!r}")
    addr = address.lower().replace("0x", "")
    addr_hash = keccak256(addr.encode("utf-8")).hex()
    result = "0x"
    for i, c in enumerate(addr):
        if c in "abcdef":
            result += c.upper() if int(addr_hash[i], 16) >= 8 else c
        else:
            result += c
    return result


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value or ""))


def hex_to_bytes(value: str) -> bytes:
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


def bytes_to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def short_ref(data: bytes, length: int = 8) -> str:
    """Abbreviated hex reference for logs and error messages."""
    return "0x" + data[:length].hex()


def sanitize_name(value: str) -> str:
    """Strip everything except ASCII letters, digits and underscore."""
    return re.sub(r"[^a-zA-Z0-9_]", "", value)
