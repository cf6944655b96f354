"""
Shielded Transaction Client.

Composes context negotiation and encryption with transaction submission,
confirmation waiting and read-only calls.  Every operation negotiates its
own context; contexts are dropped as soon as the call returns.

Sends from one signer are serialised through a per-signer lock so nonces
strictly increase.  Queries carry no nonce and may run concurrently.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from ..anamnesis.registry import ContractHandle
from ..errors import (
    ArcanumError,
    DecryptionFailed,
    EncodingMismatch,
    NetworkUnavailable,
    TransactionFailed,
    Unconfirmed,
)
from ..sigil.eth import Signer
from ..sigil.shield import ContextNegotiator, ShieldedCodec, seal
from ..utils import bytes_to_hex, hex_to_bytes
from . import rpc
from .abi import ContractArtifact
from .tx import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    NonceTracker,
    TransactionOutcome,
    build_transaction,
    raise_for_outcome,
    revert_reason_from_error,
    wait_for_confirmation,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryResult:
    """
    Attributes:
        raw: Decrypted plaintext return data
        value: Decoded value(s) per the function's return shape
        context_ref: Reference of the context the call was made under
    """
    raw: bytes
    value: Any
    context_ref: str


def _annotate(exc: ArcanumError, phase: str, destination: Optional[str], context_ref: Optional[str]) -> ArcanumError:
    if exc.phase in ("rpc", "unknown", exc.default_phase) and phase:
        exc.phase = phase
    exc.destination = exc.destination or destination
    exc.context_ref = exc.context_ref or context_ref
    return exc


class ShieldedClient:
    """
    Shielded send / shielded query against one NetworkEndpoint.

    Args:
        endpoint: Network to talk to
        confirmation_timeout: Default deadline for confirmation waits (seconds)
        poll_interval: Receipt polling interval (seconds)
    """

    def __init__(
        self,
        endpoint: rpc.NetworkEndpoint,
        negotiator: Optional[ContextNegotiator] = None,
        codec: Optional[ShieldedCodec] = None,
        nonces: Optional[NonceTracker] = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.endpoint = endpoint
        self.negotiator = negotiator or ContextNegotiator()
        self.codec = codec or ShieldedCodec()
        self.nonces = nonces or NonceTracker()
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Shielded send
    # ------------------------------------------------------------------

    def shielded_send(
        self,
        signer: Signer,
        destination: str,
        call_data: bytes,
        value: int = 0,
        *,
        gas_limit: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> TransactionOutcome:
        """
        Encrypt ``call_data``, submit it as a signed transaction, and block
        until the network reports inclusion.

        Raises:
            NetworkUnavailable: Transport failure (``phase`` tells where)
            KeyExchangeRejected: Node refused the key exchange
            EncodingMismatch: Empty call data, negative value, or a
                transaction the signer cannot sign
            TransactionFailed: Reverted at estimation (no fee) or on-chain
                (fee spent); never retried here
            Unconfirmed: Deadline expired or ``cancel`` set; the transaction
                remains submitted
        """
        if not call_data:
            raise EncodingMismatch(
                "Shielded transactions need non-empty call data",
                phase="encoding",
                destination=destination,
            )
        if value < 0:
            raise EncodingMismatch(
                f"Transaction value cannot be negative: {value}",
                phase="encoding",
                destination=destination,
            )

        # A transaction answers with a receipt, so the context is not kept.
        _, payload = seal(self.negotiator, self.codec, self.endpoint, destination, call_data)

        return self._submit(
            signer,
            to=destination,
            data=payload.data,
            value=value,
            gas_limit=gas_limit,
            timeout=timeout,
            cancel=cancel,
            context_ref=payload.context_ref,
        )

    # ------------------------------------------------------------------
    # Shielded query
    # ------------------------------------------------------------------

    def shielded_query(
        self,
        signer: Optional[Signer],
        destination: str,
        call_data: bytes,
        decoder: Optional[Callable[[bytes], Any]] = None,
    ) -> QueryResult:
        """
        Encrypt ``call_data``, run it as a read-only call, and decrypt the
        response with the same context.

        Raises:
            DecryptionFailed: Response not sealed under this call's context;
                safe to retry the whole query (a new context is negotiated)
            EncodingMismatch: Decrypted bytes do not fit the return shape
            TransactionFailed: The call reverted or the node rejected it
                (no fee is spent)
        """
        context, payload = seal(self.negotiator, self.codec, self.endpoint, destination, call_data)

        call: dict[str, Any] = {"to": destination, "data": payload.data}
        if signer is not None:
            call["from"] = signer.address

        try:
            response = rpc.call(call, self.endpoint)
        except rpc.RpcError as exc:
            if exc.is_revert:
                raise TransactionFailed(
                    "Query reverted",
                    revert_reason=revert_reason_from_error(exc),
                    fee_spent=False,
                    phase="query",
                    destination=destination,
                    context_ref=payload.context_ref,
                ) from exc
            raise TransactionFailed(
                f"Node rejected the query: {exc.message}",
                fee_spent=False,
                phase="query",
                destination=destination,
                context_ref=payload.context_ref,
            ) from exc
        except NetworkUnavailable as exc:
            raise _annotate(exc, "query", destination, payload.context_ref)

        try:
            raw = hex_to_bytes(response)
        except ValueError as exc:
            raise DecryptionFailed(
                "Node response is not hex",
                destination=destination,
                context_ref=payload.context_ref,
            ) from exc

        try:
            plaintext = self.codec.decrypt(context, raw)
        except DecryptionFailed as exc:
            raise _annotate(exc, "decryption", destination, payload.context_ref)

        value = None
        if decoder is not None:
            try:
                value = decoder(plaintext)
            except EncodingMismatch as exc:
                raise _annotate(exc, "decoding", destination, payload.context_ref)

        logger.debug("query to %s answered under context %s", destination, payload.context_ref)
        return QueryResult(raw=plaintext, value=value, context_ref=payload.context_ref)

    # ------------------------------------------------------------------
    # Contract-level helpers
    # ------------------------------------------------------------------

    def send_function(
        self,
        signer: Signer,
        handle: ContractHandle,
        function_name: str,
        args: Optional[Sequence[Any]] = None,
        value: int = 0,
        **kwargs: Any,
    ) -> TransactionOutcome:
        interface = handle.require_interface()
        call_data = self._encode(interface.encode_call, handle, function_name, args)
        return self.shielded_send(signer, handle.address, call_data, value, **kwargs)

    def query_function(
        self,
        signer: Optional[Signer],
        handle: ContractHandle,
        function_name: str,
        args: Optional[Sequence[Any]] = None,
    ) -> QueryResult:
        interface = handle.require_interface()
        call_data = self._encode(interface.encode_call, handle, function_name, args)
        return self.shielded_query(
            signer,
            handle.address,
            call_data,
            decoder=lambda data: interface.decode_return(function_name, data),
        )

    def deploy(
        self,
        signer: Signer,
        artifact: ContractArtifact,
        constructor_args: Optional[Sequence[Any]] = None,
        *,
        gas_limit: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ContractHandle:
        """
        Deploy a contract and return its handle once the creation is confirmed.

        Creation transactions are sent as plaintext; only calls into the
        deployed contract are shielded.
        """
        deploy_data = artifact.deploy_data(constructor_args)
        outcome = self._submit(
            signer,
            to=None,
            data=bytes_to_hex(deploy_data),
            value=0,
            gas_limit=gas_limit,
            timeout=timeout,
            cancel=cancel,
            context_ref=None,
        )
        if not outcome.contract_address:
            raise TransactionFailed(
                "Deployment receipt carries no contract address",
                outcome=outcome,
                phase="confirmation",
            )
        logger.info("deployed %s at %s (tx %s)", artifact.name, outcome.contract_address, outcome.tx_hash)
        return ContractHandle(outcome.contract_address, artifact.interface)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(encode: Callable[..., bytes], handle: ContractHandle, name: str, args: Optional[Sequence[Any]]) -> bytes:
        try:
            return encode(name, args)
        except EncodingMismatch as exc:
            raise _annotate(exc, "encoding", handle.address, None)

    def _estimate(self, sender: str, to: Optional[str], data: str, value: int, context_ref: Optional[str]) -> int:
        call: dict[str, Any] = {"from": sender, "data": data, "value": hex(value)}
        if to is not None:
            call["to"] = to
        try:
            return rpc.estimate_gas(call, self.endpoint)
        except rpc.RpcError as exc:
            raise TransactionFailed(
                "Transaction would revert",
                revert_reason=revert_reason_from_error(exc),
                fee_spent=False,
                phase="submission",
                destination=to,
                context_ref=context_ref,
            ) from exc

    def _submit(
        self,
        signer: Signer,
        *,
        to: Optional[str],
        data: str,
        value: int,
        gas_limit: Optional[int],
        timeout: Optional[float],
        cancel: Optional[threading.Event],
        context_ref: Optional[str],
    ) -> TransactionOutcome:
        sender = signer.address
        try:
            if gas_limit is None:
                gas_limit = self._estimate(sender, to, data, value, context_ref)

            with self.nonces.lock_for(sender):
                nonce = self.nonces.next_nonce(sender, self.endpoint)
                tx = build_transaction(
                    self.endpoint,
                    to=to,
                    data=data,
                    value=value,
                    nonce=nonce,
                    gas_limit=gas_limit,
                )
                try:
                    raw_tx = signer.sign(tx)
                except (TypeError, ValueError) as exc:
                    raise EncodingMismatch(
                        f"Could not sign the transaction: {exc}",
                        phase="submission",
                        destination=to,
                        context_ref=context_ref,
                    ) from exc
                try:
                    tx_hash = rpc.send_raw_transaction(raw_tx, self.endpoint)
                except rpc.RpcError as exc:
                    raise TransactionFailed(
                        f"Node rejected the transaction: {exc.message}",
                        revert_reason=revert_reason_from_error(exc) if exc.is_revert else exc.message,
                        fee_spent=False,
                        phase="submission",
                        destination=to,
                        context_ref=context_ref,
                    ) from exc
                self.nonces.mark_used(sender, nonce, tx_hash)
        except NetworkUnavailable as exc:
            raise _annotate(exc, "submission", to, context_ref)
        except rpc.RpcError as exc:
            raise TransactionFailed(
                f"Could not prepare the transaction: {exc.message}",
                fee_spent=False,
                phase="submission",
                destination=to,
                context_ref=context_ref,
            ) from exc

        logger.info(
            "submitted %s nonce=%d to=%s",
            tx_hash,
            nonce,
            to or "(create)",
            extra={"tx_hash": tx_hash, "context_ref": context_ref},
        )

        try:
            outcome = wait_for_confirmation(
                tx_hash,
                self.endpoint,
                nonce=nonce,
                timeout=self.confirmation_timeout if timeout is None else timeout,
                poll_interval=self.poll_interval,
                cancel=cancel,
                destination=to,
            )
        except rpc.RpcError as exc:
            # Submitted, so the outcome is unknown rather than failed.
            raise Unconfirmed(
                f"Receipt polling failed: {exc.message}",
                outcome=TransactionOutcome(tx_hash=tx_hash, nonce=nonce),
                phase="confirmation",
                destination=to,
                context_ref=context_ref,
            ) from exc
        except ArcanumError as exc:
            raise _annotate(exc, "confirmation", to, context_ref)

        return raise_for_outcome(
            outcome,
            tx=tx,
            sender=sender,
            endpoint=self.endpoint,
            destination=to,
            context_ref=context_ref,
        )

