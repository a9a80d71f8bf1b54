"""
tapforge - Cryptographic Operations Module

This module provides the cryptographic utilities the builders depend on:
- Hash helpers (HASH160, HASH256, BIP340 tagged hashes)
- secp256k1 key wrappers and BIP341 Taproot tweaking
- ECDSA and BIP340 Schnorr signatures
- The Signer interface consumed by transaction builders

Dependencies:
- coincurve: Fast secp256k1 operations
- pycryptodome: RIPEMD160 for HASH160
"""

from .exceptions import (
    CryptoError,
    InvalidKeyError,
    InvalidSignatureError,
)
from .keys import (
    NUMS_INTERNAL_KEY,
    PrivateKey,
    PublicKey,
    hash160,
    hash256,
    sha256,
    tagged_hash,
    to_x_only,
    taproot_tweak_public_key,
)
from .signatures import (
    SchnorrSignature,
    sign_ecdsa,
    sign_schnorr,
    verify_ecdsa,
    verify_schnorr,
)
from .signer import KeyPairSigner, Signer, tweak_signer

__all__ = [
    "CryptoError",
    "InvalidKeyError",
    "InvalidSignatureError",
    "NUMS_INTERNAL_KEY",
    "PrivateKey",
    "PublicKey",
    "hash160",
    "hash256",
    "sha256",
    "tagged_hash",
    "to_x_only",
    "taproot_tweak_public_key",
    "SchnorrSignature",
    "sign_ecdsa",
    "sign_schnorr",
    "verify_ecdsa",
    "verify_schnorr",
    "KeyPairSigner",
    "Signer",
    "tweak_signer",
]
