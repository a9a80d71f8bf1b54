"""
Signer interface consumed by the transaction builders.

Key management lives outside tapforge; builders only need something that
exposes a public key and can produce ECDSA and Schnorr signatures over a
32-byte digest.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .exceptions import InvalidKeyError
from .keys import PrivateKey, PublicKey
from .signatures import sign_ecdsa, sign_schnorr, verify_ecdsa, verify_schnorr


class Signer(ABC):
    """Opaque signing capability."""

    @property
    @abstractmethod
    def public_key(self) -> bytes:
        """33-byte compressed public key."""

    @abstractmethod
    def sign(self, message_hash: bytes) -> bytes:
        """ECDSA signature (DER) over a 32-byte digest."""

    @abstractmethod
    def sign_schnorr(self, message_hash: bytes) -> bytes:
        """BIP340 signature (64 bytes) over a 32-byte digest."""

    @abstractmethod
    def verify(self, message_hash: bytes, signature: bytes) -> bool:
        """Check an ECDSA or Schnorr signature made by this key."""

    @property
    def x_only_public_key(self) -> bytes:
        return self.public_key[1:]


class KeyPairSigner(Signer):
    """
    In-memory signer backed by a private key.
    """

    def __init__(self, private_key: PrivateKey, aux_rand: Optional[bytes] = None):
        self.private_key = private_key
        self.aux_rand = aux_rand
        self._public_key = private_key.public_key()

    @classmethod
    def from_hex(cls, key_hex: str) -> 'KeyPairSigner':
        return cls(PrivateKey.from_hex(key_hex))

    @classmethod
    def from_seed(cls, seed: bytes) -> 'KeyPairSigner':
        return cls(PrivateKey.from_seed(seed))

    @classmethod
    def random(cls) -> 'KeyPairSigner':
        return cls(PrivateKey())

    @property
    def public_key(self) -> bytes:
        return self._public_key.bytes

    def sign(self, message_hash: bytes) -> bytes:
        return sign_ecdsa(self.private_key, message_hash)

    def sign_schnorr(self, message_hash: bytes) -> bytes:
        return sign_schnorr(self.private_key, message_hash, self.aux_rand)

    def verify(self, message_hash: bytes, signature: bytes) -> bool:
        if len(signature) in (64, 65):
            return verify_schnorr(self._public_key, signature, message_hash)
        return verify_ecdsa(self._public_key, signature, message_hash)

    def __repr__(self) -> str:
        return f"KeyPairSigner({self._public_key.hex})"


def tweak_signer(signer: Signer, merkle_root: Optional[bytes] = None) -> KeyPairSigner:
    """
    Produce the BIP341 tweaked key pair used for key-path spends.

    Args:
        signer: Signer holding the internal private key
        merkle_root: Script tree Merkle root, None for a bare key-path output

    Raises:
        InvalidKeyError: If the signer does not expose its private key
    """
    if not isinstance(signer, KeyPairSigner):
        raise InvalidKeyError(f"Cannot tweak opaque signer {signer!r}")

    tweaked = signer.private_key.taproot_tweak_private_key(merkle_root)
    return KeyPairSigner(tweaked, signer.aux_rand)
