"""
Sigil - Keys and ciphers.

- eth:    secp256k1 signing identity (transaction signer)
- shield: ephemeral X25519 contexts and the call-data codec
"""
