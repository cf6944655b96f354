"""
Shielded call cryptography.

The confidential network publishes a node X25519 public key.  For every
outbound payload the client creates an ephemeral X25519 key pair, derives a
symmetric key from the shared secret, and encrypts the call data.  The
ephemeral public key travels in front of the ciphertext so the node can
derive the same key, run the call, and encrypt the response back to it.

Wire layout:

    request  = ephemeral_pub (32) || nonce (12) || AES-256-GCM(plaintext)
    response = nonce (12) || AES-256-GCM(return data)

A context is single-use: it encrypts one payload and decrypts at most the
paired response.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import (
    ArcanumError,
    ContextConsumed,
    DecryptionFailed,
    EncodingMismatch,
    KeyExchangeRejected,
    NetworkUnavailable,
)
from ..pneuma import rpc
from ..utils import hex_to_bytes, short_ref

logger = logging.getLogger(__name__)

KEY_DERIVATION_LABEL = b"IOEncryptionKeyV1"
PUBLIC_KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


def derive_encryption_key(private_key: X25519PrivateKey, peer_public_key: bytes) -> bytes:
    """HMAC-SHA256(label, X25519(private, peer)) -> 32-byte AEAD key."""
    shared = private_key.exchange(X25519PublicKey.from_public_bytes(peer_public_key))
    mac = hmac.HMAC(KEY_DERIVATION_LABEL, hashes.SHA256())
    mac.update(shared)
    return mac.finalize()


def _raw_public_key(private_key: X25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


@dataclass(eq=False)
class EncryptionContext:
    """
    Ephemeral key material for one payload and its matching response.

    Attributes:
        public_key: Ephemeral X25519 public key; also the context reference
            the node uses to find the response key
        node_public_key: Node key the context was negotiated against
        plaintext_length: Length of the payload this context was made for
    """
    public_key: bytes
    node_public_key: bytes
    plaintext_length: int
    _key: bytes = field(repr=False)
    encrypted: bool = False
    decrypted: bool = False

    @property
    def reference(self) -> str:
        return short_ref(self.public_key)

    def __repr__(self) -> str:
        return f"EncryptionContext(ref={self.reference}, plaintext_length={self.plaintext_length})"


@dataclass(frozen=True)
class ShieldedPayload:
    destination: str
    ciphertext: bytes
    plaintext_length: int
    context_ref: str

    @property
    def data(self) -> str:
        return "0x" + self.ciphertext.hex()


class ContextNegotiator:
    """Obtains per-payload key material from the network's RPC endpoint.

    No retries happen here: retry policy belongs to the caller.
    """

    def negotiate(self, endpoint: rpc.NetworkEndpoint, plaintext: bytes) -> EncryptionContext:
        try:
            node_key_hex = rpc.get_node_public_key(endpoint)
        except NetworkUnavailable as exc:
            exc.phase = "negotiation"
            raise
        except rpc.RpcError as exc:
            raise KeyExchangeRejected(
                f"Node refused key exchange: {exc.message}", phase="negotiation"
            ) from exc

        node_public_key = self._parse_node_key(node_key_hex)

        private_key = X25519PrivateKey.generate()
        context = EncryptionContext(
            public_key=_raw_public_key(private_key),
            node_public_key=node_public_key,
            plaintext_length=len(plaintext),
            _key=derive_encryption_key(private_key, node_public_key),
        )
        logger.debug(
            "negotiated context %s against node key %s",
            context.reference,
            short_ref(node_public_key),
        )
        return context

    @staticmethod
    def _parse_node_key(value: object) -> bytes:
        if not isinstance(value, str) or not value:
            raise KeyExchangeRejected("Node returned no public key", phase="negotiation")
        try:
            key = hex_to_bytes(value)
        except ValueError as exc:
            raise KeyExchangeRejected(
                "Node public key is not hex", phase="negotiation"
            ) from exc
        if len(key) != PUBLIC_KEY_LENGTH:
            raise KeyExchangeRejected(
                f"Node public key has {len(key)} bytes, expected {PUBLIC_KEY_LENGTH}",
                phase="negotiation",
            )
        return key


class ShieldedCodec:
    """Pure transform between plaintext call data and ciphertext."""

    def encrypt(self, context: EncryptionContext, plaintext: bytes) -> bytes:
        if context.encrypted:
            raise ContextConsumed(
                "Encryption context already used for another payload",
                context_ref=context.reference,
            )
        if len(plaintext) != context.plaintext_length:
            raise EncodingMismatch(
                f"Context was negotiated for {context.plaintext_length} bytes, got {len(plaintext)}",
                phase="encryption",
                context_ref=context.reference,
            )
        context.encrypted = True
        nonce = os.urandom(NONCE_LENGTH)
        sealed = AESGCM(context._key).encrypt(nonce, plaintext, None)
        return context.public_key + nonce + sealed

    def decrypt(self, context: EncryptionContext, ciphertext: bytes) -> bytes:
        """
        Decrypt a node response (or an envelope produced by ``encrypt``).

        Fails closed: anything not sealed under this context's key raises
        DecryptionFailed instead of returning garbage.
        """
        if context.decrypted:
            raise ContextConsumed(
                "Encryption context already decrypted its response",
                phase="decryption",
                context_ref=context.reference,
            )

        body = ciphertext
        if len(body) >= PUBLIC_KEY_LENGTH and body[:PUBLIC_KEY_LENGTH] == context.public_key:
            body = body[PUBLIC_KEY_LENGTH:]

        if len(body) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionFailed(
                f"Ciphertext too short ({len(ciphertext)} bytes)",
                context_ref=context.reference,
            )

        nonce, sealed = body[:NONCE_LENGTH], body[NONCE_LENGTH:]
        try:
            plaintext = AESGCM(context._key).decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise DecryptionFailed(
                "Ciphertext was not produced under this context",
                context_ref=context.reference,
            ) from exc
        context.decrypted = True
        return plaintext


def seal(
    negotiator: ContextNegotiator,
    codec: ShieldedCodec,
    endpoint: rpc.NetworkEndpoint,
    destination: str,
    plaintext: bytes,
) -> tuple[EncryptionContext, ShieldedPayload]:
    """Negotiate a fresh context and encrypt ``plaintext`` for ``destination``."""
    try:
        context = negotiator.negotiate(endpoint, plaintext)
    except ArcanumError as exc:
        exc.destination = exc.destination or destination
        raise
    ciphertext = codec.encrypt(context, plaintext)
    payload = ShieldedPayload(
        destination=destination,
        ciphertext=ciphertext,
        plaintext_length=len(plaintext),
        context_ref=context.reference,
    )
    return context, payload
