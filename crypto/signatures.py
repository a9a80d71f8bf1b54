"""
ECDSA and Schnorr Signature Operations for tapforge

This module provides ECDSA signatures for legacy and segwit v0 inputs and
BIP340 Schnorr signatures for Taproot key-path and script-path inputs.

References:
- BIP340: https://github.com/bitcoin/bips/blob/master/bip-0340.mediawiki
- RFC6979: https://tools.ietf.org/rfc/rfc6979.txt (Deterministic ECDSA)
"""

from dataclasses import dataclass
from typing import Optional

from coincurve import PublicKeyXOnly

from .exceptions import InvalidSignatureError, InvalidKeyError
from .keys import PrivateKey, PublicKey, to_x_only


@dataclass
class SchnorrSignature:
    """
    BIP340 Schnorr signature representation.
    """
    r: bytes  # 32-byte x-coordinate of R point
    s: bytes  # 32-byte scalar

    def __post_init__(self):
        """Validate signature components."""
        if len(self.r) != 32:
            raise InvalidSignatureError("Schnorr r must be 32 bytes")
        if len(self.s) != 32:
            raise InvalidSignatureError("Schnorr s must be 32 bytes")

    @classmethod
    def from_bytes(cls, sig_bytes: bytes) -> 'SchnorrSignature':
        """
        Parse a Schnorr signature.

        Args:
            sig_bytes: 64-byte signature, or 65 bytes with a trailing sighash type

        Returns:
            SchnorrSignature object
        """
        if len(sig_bytes) == 65:
            sig_bytes = sig_bytes[:64]
        if len(sig_bytes) != 64:
            raise InvalidSignatureError("Schnorr signature must be 64 bytes")

        return cls(r=sig_bytes[:32], s=sig_bytes[32:])

    def to_bytes(self) -> bytes:
        return self.r + self.s


def sign_ecdsa(private_key: PrivateKey, message_hash: bytes) -> bytes:
    """
    Sign a message hash with ECDSA.

    Args:
        private_key: Private key for signing
        message_hash: 32-byte message hash

    Returns:
        Low-S DER encoded signature
    """
    if len(message_hash) != 32:
        raise InvalidSignatureError("Message hash must be 32 bytes")

    return private_key._key.sign(message_hash, hasher=None)


def verify_ecdsa(public_key: PublicKey, signature_der: bytes, message_hash: bytes) -> bool:
    """
    Verify a DER encoded ECDSA signature.

    Returns:
        True if signature is valid
    """
    if len(message_hash) != 32:
        return False

    try:
        return public_key._key.verify(signature_der, message_hash, hasher=None)
    except ValueError:
        return False


def sign_schnorr(private_key: PrivateKey, message: bytes,
                 aux_rand: Optional[bytes] = None) -> bytes:
    """
    Create a BIP340 Schnorr signature.

    Args:
        private_key: Private key for signing
        message: 32-byte message (a sighash)
        aux_rand: Optional 32 bytes of auxiliary randomness; fresh randomness
            is drawn when omitted

    Returns:
        64-byte signature
    """
    if len(message) != 32:
        raise InvalidSignatureError("Message must be 32 bytes")
    if aux_rand is not None and len(aux_rand) != 32:
        raise InvalidSignatureError("Auxiliary randomness must be 32 bytes")

    return private_key._key.sign_schnorr(message, aux_rand or b'')


def verify_schnorr(public_key, signature: bytes, message: bytes) -> bool:
    """
    Verify a BIP340 Schnorr signature.

    Args:
        public_key: x-only key bytes, compressed key bytes or PublicKey
        signature: 64-byte signature (a 65th sighash byte is ignored)
        message: 32-byte message

    Returns:
        True if signature is valid
    """
    if len(message) != 32:
        return False

    try:
        sig = SchnorrSignature.from_bytes(signature).to_bytes()
        return PublicKeyXOnly(to_x_only(public_key)).verify(sig, message)
    except (InvalidSignatureError, InvalidKeyError, ValueError):
        return False
