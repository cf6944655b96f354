__all__ = [
    # Errors
    "ArcanumError",
    "NetworkUnavailable",
    "KeyExchangeRejected",
    "EncodingMismatch",
    "DecryptionFailed",
    "ContextConsumed",
    "TransactionFailed",
    "Unconfirmed",
    "NoActiveContract",
    "ArtifactNotFound",
    # Network
    "NetworkEndpoint",
    "RpcError",
    # Shielded protocol
    "ContextNegotiator",
    "EncryptionContext",
    "ShieldedCodec",
    "ShieldedPayload",
    "ShieldedClient",
    "QueryResult",
    "TransactionOutcome",
    # Contracts
    "ContractArtifact",
    "ContractInterface",
    "FunctionShape",
    "load_artifact",
    "ContractHandle",
    "ContractHandleRegistry",
    # Identity
    "LocalSigner",
    "Signer",
    "get_signer",
    "load_private_key",
]

from .errors import (
    ArcanumError,
    ArtifactNotFound,
    ContextConsumed,
    DecryptionFailed,
    EncodingMismatch,
    KeyExchangeRejected,
    NetworkUnavailable,
    NoActiveContract,
    TransactionFailed,
    Unconfirmed,
)
from .pneuma.rpc import NetworkEndpoint, RpcError
from .sigil.shield import ContextNegotiator, EncryptionContext, ShieldedCodec, ShieldedPayload
from .pneuma.shielded import QueryResult, ShieldedClient
from .pneuma.tx import TransactionOutcome
from .pneuma.abi import ContractArtifact, ContractInterface, FunctionShape, load_artifact
from .anamnesis.registry import ContractHandle, ContractHandleRegistry
from .sigil.eth import LocalSigner, Signer, get_signer, load_private_key
