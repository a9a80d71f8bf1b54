"""
Key Handling and Taproot Tweaking for tapforge

This module wraps coincurve keys and implements the hash helpers and the
BIP341 key tweak used by every Taproot output the builders create.

References:
- BIP32: https://github.com/bitcoin/bips/blob/master/bip-0032.mediawiki
- BIP340: https://github.com/bitcoin/bips/blob/master/bip-0340.mediawiki
- BIP341: https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki
"""

import hashlib
import hmac
import secrets
from typing import Optional, Tuple, Union

from coincurve import PrivateKey as CoinCurvePrivateKey, PublicKey as CoinCurvePublicKey
from Crypto.Hash import RIPEMD160

from .exceptions import InvalidKeyError


CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Provably unspendable internal key (BIP341 "H" point), used for vault outputs
NUMS_INTERNAL_KEY = bytes.fromhex(
    '50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0'
)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """Double SHA256, as used for txids and envelope commitments."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """
    Compute HASH160 (RIPEMD160(SHA256(data))).

    Args:
        data: Input data to hash

    Returns:
        20-byte HASH160 digest
    """
    rmd = RIPEMD160.new()
    rmd.update(hashlib.sha256(data).digest())
    return rmd.digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """
    Compute BIP340/341 tagged hash: SHA256(SHA256(tag) + SHA256(tag) + data).

    Args:
        tag: Tag string for the hash
        data: Data to hash

    Returns:
        32-byte tagged hash
    """
    tag_hash = hashlib.sha256(tag.encode('utf-8')).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def lift_x(x: bytes) -> bytes:
    """
    Lift an x-only key to the compressed point with even y.

    Raises:
        InvalidKeyError: If x is not the coordinate of a curve point
    """
    if len(x) != 32:
        raise InvalidKeyError("x-only key must be 32 bytes")
    try:
        return CoinCurvePublicKey(b'\x02' + x).format(compressed=True)
    except ValueError as e:
        raise InvalidKeyError(f"Not a valid x coordinate: {e}")


def has_even_y(pubkey: bytes) -> bool:
    """Check if a 33-byte compressed public key has an even y-coordinate."""
    return pubkey[0] == 0x02


def to_x_only(key: Union[bytes, 'PublicKey']) -> bytes:
    """
    Reduce a public key to its 32-byte x-only form.

    Accepts 32-byte x-only, 33-byte compressed or 65-byte uncompressed keys.
    """
    if isinstance(key, PublicKey):
        return key.x_only
    if not isinstance(key, (bytes, bytearray)):
        raise InvalidKeyError("Public key data must be bytes")
    key = bytes(key)
    if len(key) == 32:
        return key
    if len(key) == 33 and key[0] in (0x02, 0x03):
        return key[1:]
    if len(key) == 65 and key[0] == 0x04:
        return key[1:33]
    raise InvalidKeyError(f"Cannot derive x-only key from {len(key)}-byte public key")


def compute_taproot_tweak(internal_pubkey_x: bytes, merkle_root: Optional[bytes] = None) -> bytes:
    """
    Compute Taproot tweak according to BIP341.

    Args:
        internal_pubkey_x: 32-byte x-only internal public key
        merkle_root: Optional 32-byte Merkle root of script tree

    Returns:
        32-byte tweak value
    """
    if len(internal_pubkey_x) != 32:
        raise InvalidKeyError("Internal pubkey x-coordinate must be 32 bytes")

    tweak_data = internal_pubkey_x
    if merkle_root is not None:
        if len(merkle_root) != 32:
            raise InvalidKeyError("Merkle root must be 32 bytes")
        tweak_data += merkle_root

    tweak = tagged_hash("TapTweak", tweak_data)
    if int.from_bytes(tweak, 'big') >= CURVE_ORDER:
        raise InvalidKeyError("Taproot tweak exceeds curve order")
    return tweak


def taproot_tweak_public_key(internal_pubkey_x: bytes,
                             merkle_root: Optional[bytes] = None) -> Tuple[bytes, int]:
    """
    Tweak an x-only internal key by a script tree Merkle root.

    Returns:
        Tuple of (32-byte x-only output key, parity bit of the output point)
    """
    tweak = compute_taproot_tweak(internal_pubkey_x, merkle_root)
    internal_point = CoinCurvePublicKey(lift_x(internal_pubkey_x))
    tweaked = internal_point.add(tweak).format(compressed=True)
    return tweaked[1:], tweaked[0] & 1


def taproot_output_script(tweaked_pubkey_x: bytes) -> bytes:
    """
    Create Taproot output script (witness program).

    Args:
        tweaked_pubkey_x: 32-byte x-only tweaked public key

    Returns:
        34-byte P2TR output script
    """
    if len(tweaked_pubkey_x) != 32:
        raise InvalidKeyError("Tweaked pubkey must be 32 bytes")

    # P2TR script: OP_1 <32-byte-tweaked-pubkey>
    return b'\x51\x20' + tweaked_pubkey_x


class PrivateKey:
    """
    Wrapper for secp256k1 private keys.
    """

    def __init__(self, key_bytes: Optional[bytes] = None):
        """
        Initialize private key.

        Args:
            key_bytes: 32-byte private key. If None, generates random key.
        """
        if key_bytes is None:
            key_bytes = (secrets.randbelow(CURVE_ORDER - 1) + 1).to_bytes(32, 'big')

        if not isinstance(key_bytes, bytes) or len(key_bytes) != 32:
            raise InvalidKeyError("Private key must be 32 bytes")

        key_int = int.from_bytes(key_bytes, 'big')
        if key_int == 0 or key_int >= CURVE_ORDER:
            raise InvalidKeyError("Private key out of valid range")

        self._key = CoinCurvePrivateKey(key_bytes)

    @classmethod
    def from_hex(cls, key_hex: str) -> 'PrivateKey':
        try:
            return cls(bytes.fromhex(key_hex))
        except ValueError as e:
            raise InvalidKeyError(f"Invalid private key hex: {e}")

    @classmethod
    def from_seed(cls, seed: bytes) -> 'PrivateKey':
        """
        Derive the BIP32 master private key for a seed.

        Only the master key is needed: the builders turn random bytes or a
        contract seed into a throwaway signing key, they never walk a path.
        """
        if len(seed) < 16 or len(seed) > 64:
            raise InvalidKeyError("Seed must be 16-64 bytes")

        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(digest[:32])

    @property
    def bytes(self) -> bytes:
        """Get private key as bytes."""
        return self._key.secret

    @property
    def hex(self) -> str:
        return self._key.secret.hex()

    def public_key(self) -> 'PublicKey':
        """Get corresponding public key."""
        return PublicKey(self._key.public_key)

    def negate(self) -> 'PrivateKey':
        negated = (-int.from_bytes(self.bytes, 'big')) % CURVE_ORDER
        return PrivateKey(negated.to_bytes(32, 'big'))

    def tweak_add(self, tweak: bytes) -> 'PrivateKey':
        """
        Add tweak to private key.

        Args:
            tweak: 32-byte tweak value

        Returns:
            Tweaked private key
        """
        if len(tweak) != 32:
            raise InvalidKeyError("Tweak must be 32 bytes")

        tweaked_int = (int.from_bytes(self.bytes, 'big') + int.from_bytes(tweak, 'big')) % CURVE_ORDER
        if tweaked_int == 0:
            raise InvalidKeyError("Tweaked key is zero")

        return PrivateKey(tweaked_int.to_bytes(32, 'big'))

    def taproot_tweak_private_key(self, merkle_root=None) -> 'PrivateKey':
        """
        Tweak private key for Taproot key-path spending according to BIP341.

        Args:
            merkle_root: 32-byte Merkle root of script tree (None for key-path only)

        Returns:
            Tweaked private key whose x-only public key is the output key
        """
        internal_pubkey = self.public_key()

        # BIP341 works with the even-y representative of the internal key
        base = self if internal_pubkey.has_even_y else self.negate()
        tweak = compute_taproot_tweak(internal_pubkey.x_only, merkle_root)
        return base.tweak_add(tweak)

    def __repr__(self) -> str:
        return f"PrivateKey(pub={self.public_key().hex})"


class PublicKey:
    """
    Wrapper for secp256k1 public keys.
    """

    def __init__(self, key_data: Union[bytes, CoinCurvePublicKey]):
        """
        Initialize public key.

        Args:
            key_data: Public key bytes (33 or 65 bytes, or 32-byte x-only lifted
                to even y) or CoinCurvePublicKey
        """
        if isinstance(key_data, CoinCurvePublicKey):
            self._key = key_data
            return

        if not isinstance(key_data, bytes):
            raise InvalidKeyError("Public key data must be bytes")
        if len(key_data) == 32:
            key_data = lift_x(key_data)
        if len(key_data) not in (33, 65):
            raise InvalidKeyError("Public key must be 32, 33 or 65 bytes")

        try:
            self._key = CoinCurvePublicKey(key_data)
        except ValueError as e:
            raise InvalidKeyError(f"Failed to create public key: {e}")

    @property
    def bytes(self) -> bytes:
        """Get compressed public key as bytes."""
        return self._key.format(compressed=True)

    @property
    def hex(self) -> str:
        return self.bytes.hex()

    @property
    def x_only(self) -> bytes:
        """Get x-only public key for Taproot (32 bytes)."""
        return self.bytes[1:]

    @property
    def has_even_y(self) -> bool:
        return has_even_y(self.bytes)

    def tweak_add(self, tweak: bytes) -> 'PublicKey':
        """Return P + tweak*G."""
        if len(tweak) != 32:
            raise InvalidKeyError("Tweak must be 32 bytes")
        try:
            return PublicKey(self._key.add(tweak))
        except ValueError as e:
            raise InvalidKeyError(f"Failed to tweak public key: {e}")

    def taproot_tweak_public_key(self, merkle_root=None):
        """
        Tweak public key for Taproot according to BIP341.

        Returns:
            Tuple of (32-byte x-only output key, output parity)
        """
        return taproot_tweak_public_key(self.x_only, merkle_root)

    def __eq__(self, other) -> bool:
        return isinstance(other, PublicKey) and self.bytes == other.bytes

    def __hash__(self) -> int:
        return hash(self.bytes)

    def __repr__(self) -> str:
        return f"PublicKey({self.hex})"
