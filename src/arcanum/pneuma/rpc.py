"""
JSON-RPC Client for a confidential EVM network (Swisstronik testnet by default).

Lightweight alternative to web3.py: uses httpx for HTTP.  Every call is
bound to an explicit ``NetworkEndpoint`` so that no module-level state
decides which network a session talks to.
"""

from __future__ import annotations

import itertools
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ..errors import ArcanumError, NetworkUnavailable

logger = logging.getLogger(__name__)

# Default RPC endpoint (Swisstronik testnet)
DEFAULT_RPC_URL = "https://json-rpc.testnet.swisstronik.com/"
DEFAULT_CHAIN_ID = 1291
DEFAULT_TIMEOUT = 30.0

# JSON-RPC error code used by EVM nodes for reverted executions
REVERT_ERROR_CODE = 3

_request_ids = itertools.count(1)


def get_rpc_url() -> str:
    """Get the RPC URL from environment or default."""
    return os.environ.get("SWISSTRONIK_RPC", DEFAULT_RPC_URL)


def get_chain_id() -> int:
    """Get the chain ID from environment or default."""
    return int(os.environ.get("CHAIN_ID", str(DEFAULT_CHAIN_ID)))


class RpcError(ArcanumError):
    """A JSON-RPC error object returned by the node."""

    exit_code = 15
    default_phase = "rpc"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        data: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.code = code
        self.data = data

    @property
    def is_revert(self) -> bool:
        return self.code == REVERT_ERROR_CODE or "revert" in self.message.lower()


@dataclass(frozen=True)
class NetworkEndpoint:
    """
    RPC URL plus chain identity, immutable for a session.

    Attributes:
        url: JSON-RPC endpoint URL
        chain_id: EIP-155 chain id used when signing
        timeout: HTTP timeout per request, in seconds
        transport: Optional httpx transport (tests inject a MockTransport)
    """
    url: str
    chain_id: int
    timeout: float = DEFAULT_TIMEOUT
    transport: Optional[httpx.BaseTransport] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_env(
        cls,
        rpc_url: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> "NetworkEndpoint":
        return cls(
            url=rpc_url or get_rpc_url(),
            chain_id=chain_id if chain_id is not None else get_chain_id(),
        )


def _rpc_call(method: str, params: list, endpoint: NetworkEndpoint) -> Any:
    """
    Make a JSON-RPC call.

    Args:
        method: RPC method name (e.g., "eth_call")
        params: RPC parameters
        endpoint: Network endpoint to talk to

    Returns:
        Result field from the RPC response

    Raises:
        NetworkUnavailable: Connection failure, timeout, 5xx or 429
        RpcError: The node answered with a JSON-RPC error object
    """
    payload = {
        "jsonrpc": "2.0",
        "method": method,
        "params": params,
        "id": next(_request_ids),
    }

    try:
        with httpx.Client(timeout=endpoint.timeout, transport=endpoint.transport) as client:
            response = client.post(endpoint.url, json=payload)
    except httpx.TimeoutException as exc:
        raise NetworkUnavailable(f"RPC timeout on {method}", phase="rpc") from exc
    except httpx.TransportError as exc:
        raise NetworkUnavailable(f"RPC unreachable on {method}: {exc}", phase="rpc") from exc

    if response.status_code == 429 or response.status_code >= 500:
        raise NetworkUnavailable(
            f"RPC {method} answered HTTP {response.status_code}", phase="rpc"
        )
    if response.status_code >= 400:
        raise RpcError(f"RPC {method} answered HTTP {response.status_code}")

    try:
        data = response.json()
    except ValueError as exc:
        raise RpcError(f"RPC {method} returned a non-JSON body") from exc

    if "error" in data and data["error"] is not None:
        error = data["error"]
        if not isinstance(error, dict):
            raise RpcError(f"RPC error on {method}: {error}")
        raise RpcError(
            f"RPC error on {method}: {error.get('message', 'unknown error')}",
            code=error.get("code"),
            data=error.get("data"),
        )

    logger.debug("rpc %s ok", method)
    return data.get("result")


def get_node_public_key(endpoint: NetworkEndpoint) -> str:
    """
    Fetch the node's current confidentiality public key.

    Returns:
        0x-prefixed hex X25519 public key (may be None if the node has none)
    """
    return _rpc_call("eth_getNodePublicKey", ["latest"], endpoint)


def get_balance(address: str, endpoint: NetworkEndpoint) -> int:
    """
    Get native balance for an address.

    Returns:
        Balance in wei
    """
    result = _rpc_call("eth_getBalance", [address, "latest"], endpoint)
    return int(result, 16)


def get_nonce(address: str, endpoint: NetworkEndpoint, block: str = "pending") -> int:
    """
    Get transaction count for an address.

    ``pending`` includes transactions accepted by the node but not yet mined,
    which is what a sender needs when choosing its next nonce.
    """
    result = _rpc_call("eth_getTransactionCount", [address, block], endpoint)
    return int(result, 16)


def get_gas_price(endpoint: NetworkEndpoint) -> int:
    """
    Get current gas price.

    Returns:
        Gas price in wei
    """
    result = _rpc_call("eth_gasPrice", [], endpoint)
    return int(result, 16)


def get_code(address: str, endpoint: NetworkEndpoint) -> str:
    """Get the runtime bytecode at an address ("0x" when there is none)."""
    return _rpc_call("eth_getCode", [address, "latest"], endpoint) or "0x"


def estimate_gas(call: dict, endpoint: NetworkEndpoint) -> int:
    result = _rpc_call("eth_estimateGas", [call], endpoint)
    return int(result, 16)


def call(call: dict, endpoint: NetworkEndpoint, block: str = "latest") -> str:
    """
    Execute a read-only call (eth_call).

    Returns:
        0x-prefixed hex return data
    """
    return _rpc_call("eth_call", [call, block], endpoint) or "0x"


def send_raw_transaction(raw_tx: str, endpoint: NetworkEndpoint) -> str:
    """
    Send a signed raw transaction.

    Args:
        raw_tx: 0x-prefixed hex encoded signed transaction

    Returns:
        Transaction hash (0x-prefixed hex)
    """
    return _rpc_call("eth_sendRawTransaction", [raw_tx], endpoint)


def get_transaction_receipt(tx_hash: str, endpoint: NetworkEndpoint) -> Optional[dict]:
    """Return the receipt, or None while the transaction is not yet included."""
    return _rpc_call("eth_getTransactionReceipt", [tx_hash], endpoint)
