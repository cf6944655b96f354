"""
Transaction Builder - Build, sign, send and confirm transactions.

Uses a ``Signer`` for signing and the httpx-based JSON-RPC client for
sending.  All gas is paid by the signer's EOA.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from ..errors import NetworkUnavailable, TransactionFailed, Unconfirmed
from ..utils import hex_to_bytes, to_checksum_address
from . import rpc

logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 500_000
DEFAULT_CONFIRMATION_TIMEOUT = 120.0
DEFAULT_POLL_INTERVAL = 2.0

EXPLORER_TX_URL = "https://explorer-evm.testnet.swisstronik.com/tx/{}"

# Error(string) and Panic(uint256) selectors
_ERROR_SELECTOR = bytes.fromhex("08c379a0")
_PANIC_SELECTOR = bytes.fromhex("4e487b71")

PENDING = "pending"
CONFIRMED = "confirmed"
FAILED = "failed"


@dataclass(frozen=True)
class TransactionOutcome:
    """
    Result of a submitted transaction.

    Attributes:
        tx_hash: 0x-prefixed transaction hash
        status: "pending", "confirmed" or "failed"
        nonce: Nonce the transaction was signed with
        block_number: Inclusion block (None while pending)
        block_hash: Inclusion block hash (None while pending)
        contract_address: Created contract (deployments only)
        gas_used: Gas consumed, once included
    """
    tx_hash: str
    status: str = PENDING
    nonce: Optional[int] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    contract_address: Optional[str] = None
    gas_used: Optional[int] = None
    receipt: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def confirmed(self) -> bool:
        return self.status == CONFIRMED

    @property
    def explorer_url(self) -> str:
        return EXPLORER_TX_URL.format(self.tx_hash)

    @classmethod
    def from_receipt(cls, receipt: dict[str, Any], nonce: Optional[int] = None) -> "TransactionOutcome":
        status = CONFIRMED if int(receipt.get("status", "0x0"), 16) == 1 else FAILED
        block_number = receipt.get("blockNumber")
        gas_used = receipt.get("gasUsed")
        contract_address = receipt.get("contractAddress")
        return cls(
            tx_hash=receipt["transactionHash"],
            status=status,
            nonce=nonce,
            block_number=int(block_number, 16) if block_number else None,
            block_hash=receipt.get("blockHash"),
            contract_address=to_checksum_address(contract_address) if contract_address else None,
            gas_used=int(gas_used, 16) if gas_used else None,
            receipt=receipt,
        )


def decode_revert_reason(data: Any) -> Optional[str]:
    """
    Decode revert data returned by the node.

    Understands Error(string) and Panic(uint256); anything else is returned
    as raw hex so it still reaches the operator.
    """
    if isinstance(data, dict):
        data = data.get("data")
    if not isinstance(data, str) or not data.startswith("0x") or len(data) <= 2:
        return None
    try:
        raw = hex_to_bytes(data)
    except ValueError:
        return data
    try:
        if raw[:4] == _ERROR_SELECTOR:
            return decode(["string"], raw[4:])[0]
        if raw[:4] == _PANIC_SELECTOR:
            return f"panic 0x{decode(['uint256'], raw[4:])[0]:02x}"
    except DecodingError:
        pass
    return data


def revert_reason_from_error(exc: rpc.RpcError) -> str:
    reason = decode_revert_reason(exc.data)
    if reason:
        return reason
    message = exc.message
    marker = "execution reverted"
    if marker in message:
        tail = message.split(marker, 1)[1].lstrip(": ").strip()
        return tail or marker
    return message


class NonceTracker:
    """
    Per-signer nonce allocation.

    ``lock_for`` returns the lock the caller holds across
    nonce allocation, signing and submission, so two sends from
    the same signer never share a nonce.  The chain's pending count is
    reconciled with the locally tracked next nonce: when the chain falls
    behind and the last submitted transaction has no receipt, that
    transaction was dropped and the chain's count wins.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._next: dict[str, int] = {}
        self._last_hash: dict[str, str] = {}

    def lock_for(self, address: str) -> threading.Lock:
        key = address.lower()
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def next_nonce(self, address: str, endpoint: rpc.NetworkEndpoint) -> int:
        """Caller must hold ``lock_for(address)``."""
        key = address.lower()
        chain_nonce = rpc.get_nonce(address, endpoint, "pending")
        local_nonce = self._next.get(key, 0)
        if chain_nonce >= local_nonce:
            return chain_nonce

        last_hash = self._last_hash.get(key)
        if last_hash is not None and rpc.get_transaction_receipt(last_hash, endpoint) is None:
            logger.warning(
                "tx %s left the pending pool; reusing nonce %d for %s",
                last_hash,
                chain_nonce,
                address,
            )
            self._next[key] = chain_nonce
            del self._last_hash[key]
            return chain_nonce
        return local_nonce

    def mark_used(self, address: str, nonce: int, tx_hash: Optional[str] = None) -> None:
        """Caller must hold ``lock_for(address)``."""
        key = address.lower()
        self._next[key] = nonce + 1
        if tx_hash is not None:
            self._last_hash[key] = tx_hash


def build_transaction(
    endpoint: rpc.NetworkEndpoint,
    *,
    to: Optional[str],
    data: str,
    value: int,
    nonce: int,
    gas_limit: int,
    gas_price: Optional[int] = None,
) -> dict[str, Any]:
    """Build an unsigned legacy transaction dict (``to=None`` creates a contract)."""
    tx: dict[str, Any] = {
        "data": data,
        "value": value,
        "nonce": nonce,
        "gas": gas_limit,
        "gasPrice": gas_price if gas_price is not None else rpc.get_gas_price(endpoint),
        "chainId": endpoint.chain_id,
    }
    if to is not None:
        tx["to"] = to_checksum_address(to)
    return tx


def wait_for_confirmation(
    tx_hash: str,
    endpoint: rpc.NetworkEndpoint,
    *,
    nonce: Optional[int] = None,
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    cancel: Optional[threading.Event] = None,
    destination: Optional[str] = None,
) -> TransactionOutcome:
    """
    Poll for a receipt until inclusion or deadline.

    Returns:
        Outcome with status "confirmed" or "failed" (reverted on-chain)

    Raises:
        Unconfirmed: Deadline expired or ``cancel`` was set.  The transaction
            stays submitted; only local waiting stops.
    """
    deadline = time.monotonic() + timeout
    while True:
        receipt = rpc.get_transaction_receipt(tx_hash, endpoint)
        if receipt is not None:
            return TransactionOutcome.from_receipt(receipt, nonce=nonce)

        pending = TransactionOutcome(tx_hash=tx_hash, status=PENDING, nonce=nonce)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning("transaction %s not confirmed within %ss", tx_hash, timeout)
            raise Unconfirmed(
                f"Transaction not confirmed within {timeout}s",
                outcome=pending,
                phase="confirmation",
                destination=destination,
            )

        wait = min(poll_interval, remaining)
        if cancel is not None:
            if cancel.wait(wait):
                raise Unconfirmed(
                    "Confirmation wait cancelled",
                    outcome=pending,
                    cancelled=True,
                    phase="confirmation",
                    destination=destination,
                )
        else:
            time.sleep(wait)


def fetch_revert_reason(tx: dict[str, Any], sender: str, outcome: TransactionOutcome, endpoint: rpc.NetworkEndpoint) -> Optional[str]:
    """Replay a reverted transaction as a call at its block to recover the reason."""
    call: dict[str, Any] = {"from": sender, "data": tx["data"], "value": hex(tx["value"])}
    if "to" in tx:
        call["to"] = tx["to"]
    block = hex(outcome.block_number) if outcome.block_number is not None else "latest"
    try:
        rpc.call(call, endpoint, block)
    except rpc.RpcError as exc:
        return revert_reason_from_error(exc)
    except NetworkUnavailable:
        logger.warning("could not replay %s to recover the revert reason", outcome.tx_hash)
    return None


def raise_for_outcome(
    outcome: TransactionOutcome,
    *,
    tx: dict[str, Any],
    sender: str,
    endpoint: rpc.NetworkEndpoint,
    destination: Optional[str] = None,
    context_ref: Optional[str] = None,
) -> TransactionOutcome:
    """Return confirmed outcomes; raise TransactionFailed for reverted ones."""
    if outcome.confirmed:
        return outcome
    reason = fetch_revert_reason(tx, sender, outcome, endpoint)
    raise TransactionFailed(
        "Transaction reverted on-chain",
        outcome=outcome,
        revert_reason=reason,
        fee_spent=True,
        phase="confirmation",
        destination=destination,
        context_ref=context_ref,
    )
