"""
Arcanum error taxonomy.

Every failure of a shielded operation is raised as its own subclass so that
callers can pick a recovery (retry, abort, re-deploy) without parsing
messages.  Errors carry the phase that failed and the public identifiers
needed for diagnosis.  Key material is never attached to an error.
"""

from __future__ import annotations

from typing import Any, Optional


class ArcanumError(RuntimeError):
    exit_code: int = 1
    default_phase: str = "unknown"

    def __init__(
        self,
        message: str,
        *,
        phase: Optional[str] = None,
        destination: Optional[str] = None,
        context_ref: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase or self.default_phase
        self.destination = destination
        self.context_ref = context_ref

    def identifiers(self) -> dict[str, str]:
        """Public identifiers attached to this failure (for rendering)."""
        result = {"phase": self.phase}
        if self.destination:
            result["destination"] = self.destination
        if self.context_ref:
            result["context"] = self.context_ref
        return result

    def __str__(self) -> str:
        details = ", ".join(f"{k}={v}" for k, v in self.identifiers().items())
        return f"{self.message} ({details})"


class NetworkUnavailable(ArcanumError):
    """Connection failure or timeout talking to the RPC endpoint. Retryable."""

    exit_code = 10
    default_phase = "negotiation"


class KeyExchangeRejected(ArcanumError):
    """The network refused to provide usable key material."""

    exit_code = 11
    default_phase = "negotiation"


class EncodingMismatch(ArcanumError):
    """Contract interface shape disagrees with the payload."""

    exit_code = 12
    default_phase = "decoding"


class DecryptionFailed(ArcanumError):
    """Ciphertext was not produced under the paired context."""

    exit_code = 13
    default_phase = "decryption"


class ContextConsumed(ArcanumError):
    """An encryption context was reused for a second payload or response."""

    exit_code = 14
    default_phase = "encryption"


class TransactionFailed(ArcanumError):
    exit_code = 20
    default_phase = "confirmation"

    def __init__(
        self,
        message: str,
        *,
        outcome: Any = None,
        revert_reason: Optional[str] = None,
        fee_spent: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.outcome = outcome
        self.revert_reason = revert_reason
        self.fee_spent = fee_spent

    def identifiers(self) -> dict[str, str]:
        result = super().identifiers()
        tx_hash = getattr(self.outcome, "tx_hash", None)
        if tx_hash:
            result["tx"] = tx_hash
        if self.revert_reason:
            result["reason"] = self.revert_reason
        result["fee_spent"] = "yes" if self.fee_spent else "no"
        return result


class Unconfirmed(ArcanumError):
    """Confirmation deadline expired (or waiting was cancelled).

    The transaction stays submitted; only local waiting has stopped.
    """

    exit_code = 21
    default_phase = "confirmation"

    def __init__(
        self,
        message: str,
        *,
        outcome: Any = None,
        cancelled: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.outcome = outcome
        self.cancelled = cancelled

    def identifiers(self) -> dict[str, str]:
        result = super().identifiers()
        tx_hash = getattr(self.outcome, "tx_hash", None)
        if tx_hash:
            result["tx"] = tx_hash
        return result


class NoActiveContract(ArcanumError):
    exit_code = 30
    default_phase = "registry"


class ArtifactNotFound(ArcanumError):
    exit_code = 31
    default_phase = "artifacts"
