"""
Tests for Crypto Keys, Signatures and Signers

Covers the BIP340/341 helpers the builders rely on: tagged hashes, x-only
reduction, Taproot tweaking, Schnorr and ECDSA signing, and the signer
interface.
"""

import hashlib

import pytest

from crypto.exceptions import InvalidKeyError, InvalidSignatureError
from crypto.keys import (
    CURVE_ORDER,
    NUMS_INTERNAL_KEY,
    PrivateKey,
    PublicKey,
    lift_x,
    tagged_hash,
    taproot_output_script,
    taproot_tweak_public_key,
    to_x_only,
)
from crypto.signatures import SchnorrSignature, sign_ecdsa, sign_schnorr, verify_ecdsa, verify_schnorr
from crypto.signer import KeyPairSigner, tweak_signer

GENERATOR_X = bytes.fromhex('79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798')


class TestHashes:

    def test_tagged_hash(self):
        tag = hashlib.sha256(b'TapLeaf').digest()
        assert tagged_hash('TapLeaf', b'data') == hashlib.sha256(tag + tag + b'data').digest()
        assert tagged_hash('TapLeaf', b'data') != tagged_hash('TapBranch', b'data')


class TestKeys:
    """Test key construction and encodings."""

    def test_generator(self):
        key = PrivateKey(b'\x00' * 31 + b'\x01')
        assert key.public_key().x_only == GENERATOR_X
        assert key.public_key().has_even_y

    def test_out_of_range(self):
        with pytest.raises(InvalidKeyError):
            PrivateKey(b'\x00' * 32)
        with pytest.raises(InvalidKeyError):
            PrivateKey(CURVE_ORDER.to_bytes(32, 'big'))
        with pytest.raises(InvalidKeyError):
            PrivateKey(b'\x01' * 31)

    def test_from_hex(self):
        assert PrivateKey.from_hex('01' * 32).bytes == b'\x01' * 32
        with pytest.raises(InvalidKeyError):
            PrivateKey.from_hex('not hex')

    def test_from_seed_master_key(self):
        # BIP32 test vector 1
        key = PrivateKey.from_seed(bytes.fromhex('000102030405060708090a0b0c0d0e0f'))
        assert key.hex == 'e8f32e723decf4051aefac8e2c93c9c5b214313817cdb01a1494b917c8436b35'

    def test_from_seed_length(self):
        with pytest.raises(InvalidKeyError):
            PrivateKey.from_seed(b'\x00' * 8)

    def test_to_x_only(self):
        public = PrivateKey(b'\x05' * 32).public_key()
        uncompressed = public._key.format(compressed=False)

        assert to_x_only(public) == public.x_only
        assert to_x_only(public.bytes) == public.x_only
        assert to_x_only(public.x_only) == public.x_only
        assert to_x_only(uncompressed) == public.x_only

        with pytest.raises(InvalidKeyError):
            to_x_only(b'\x02' * 20)

    def test_x_only_lifts_to_even_y(self):
        public = PublicKey(GENERATOR_X)
        assert public.bytes == b'\x02' + GENERATOR_X

    def test_nums_key_is_on_curve(self):
        assert lift_x(NUMS_INTERNAL_KEY)[1:] == NUMS_INTERNAL_KEY

    def test_lift_x_rejects_non_point(self):
        with pytest.raises(InvalidKeyError):
            # BIP340 test vector 5
            lift_x(bytes.fromhex('eefdea4cdb677750a420fee807eacf21eb9898ae79b9768766e4faa04a2d4a34'))


class TestTaprootTweak:
    """Test BIP341 output key derivation."""

    def test_bip86_vector(self):
        internal = bytes.fromhex('cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115')
        output_key, _ = taproot_tweak_public_key(internal)
        assert output_key.hex() == 'a60869f0dbcf1dc659c9cecbaf8050135ea9e8cdc487053f1dc6880949dc684c'
        assert taproot_output_script(output_key) == b'\x51\x20' + output_key

    @pytest.mark.parametrize('merkle_root', [None, b'\x42' * 32])
    def test_tweaked_signer_matches_output_key(self, signer_factory, merkle_root):
        signer = signer_factory(3)
        expected, _ = taproot_tweak_public_key(signer.x_only_public_key, merkle_root)
        assert tweak_signer(signer, merkle_root).x_only_public_key == expected

    def test_odd_internal_key(self, signer_factory):
        signer = next(s for s in map(signer_factory, range(1, 20)) if s.public_key[0] == 0x03)
        expected, _ = taproot_tweak_public_key(signer.x_only_public_key)
        assert tweak_signer(signer).x_only_public_key == expected

    def test_bad_merkle_root(self):
        with pytest.raises(InvalidKeyError):
            taproot_tweak_public_key(GENERATOR_X, b'\x00' * 31)


class TestSchnorr:

    def test_bip340_vector_0(self):
        key = PrivateKey((3).to_bytes(32, 'big'))
        signature = sign_schnorr(key, b'\x00' * 32, b'\x00' * 32)

        assert key.public_key().x_only.hex() == \
            'f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9'
        assert signature.hex() == (
            'e907831f80848d1069a5371b402410364bdf1c5f8307b0084c55f1ce2dca8215'
            '25f66a4a85ea8b71e482a74f382d2ce5ebeee8fdb2172f477df4900d310536c0'
        )
        assert verify_schnorr(key.public_key().x_only, signature, b'\x00' * 32)

    def test_sighash_byte_ignored(self):
        key = PrivateKey(b'\x07' * 32)
        message = hashlib.sha256(b'tapforge').digest()
        signature = sign_schnorr(key, message)
        assert verify_schnorr(key.public_key(), signature + b'\x01', message)

    def test_wrong_message(self):
        key = PrivateKey(b'\x07' * 32)
        signature = sign_schnorr(key, b'\x01' * 32)
        assert not verify_schnorr(key.public_key(), signature, b'\x02' * 32)
        assert not verify_schnorr(key.public_key(), signature, b'\x01' * 31)

    def test_invalid_inputs(self):
        key = PrivateKey(b'\x07' * 32)
        with pytest.raises(InvalidSignatureError):
            sign_schnorr(key, b'\x01' * 31)
        with pytest.raises(InvalidSignatureError):
            sign_schnorr(key, b'\x01' * 32, b'\x00' * 16)
        with pytest.raises(InvalidSignatureError):
            SchnorrSignature.from_bytes(b'\x00' * 63)


class TestECDSA:

    def test_sign_verify(self):
        key = PrivateKey(b'\x07' * 32)
        digest = hashlib.sha256(b'segwit v0').digest()
        signature = sign_ecdsa(key, digest)

        assert signature[0] == 0x30
        assert verify_ecdsa(key.public_key(), signature, digest)
        assert not verify_ecdsa(key.public_key(), signature, b'\x00' * 32)

    def test_low_s(self):
        key = PrivateKey(b'\x07' * 32)
        for i in range(8):
            signature = sign_ecdsa(key, hashlib.sha256(bytes([i])).digest())
            r_len = signature[3]
            s_len = signature[5 + r_len]
            s = int.from_bytes(signature[6 + r_len:6 + r_len + s_len], 'big')
            assert s <= CURVE_ORDER // 2


class TestKeyPairSigner:

    def test_from_hex(self):
        signer = KeyPairSigner.from_hex('01' * 32)
        assert signer.public_key == PrivateKey(b'\x01' * 32).public_key().bytes
        assert signer.x_only_public_key == signer.public_key[1:]

    def test_verify_dispatches_on_length(self, wallet):
        digest = hashlib.sha256(b'message').digest()
        assert wallet.verify(digest, wallet.sign_schnorr(digest))
        assert wallet.verify(digest, wallet.sign(digest))

    def test_deterministic_aux(self):
        signer = KeyPairSigner(PrivateKey(b'\x07' * 32), aux_rand=b'\x00' * 32)
        digest = b'\x05' * 32
        assert signer.sign_schnorr(digest) == signer.sign_schnorr(digest)
        assert tweak_signer(signer).aux_rand == b'\x00' * 32

    def test_random(self):
        assert KeyPairSigner.random().public_key != KeyPairSigner.random().public_key
