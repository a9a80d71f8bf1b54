"""
Tests for the script layer: script codec, envelope compilers, feature
records, the binary writer and taproot trees.
"""

import struct

import pytest

from crypto.keys import NUMS_INTERNAL_KEY, hash160, hash256, tagged_hash, taproot_tweak_public_key
from psbt.exceptions import ConstructionError
from scripts.binary_writer import BinaryWriter
from scripts.challenge import ChallengeSolution
from scripts.compressor import compress, decompress
from scripts.envelope import (
    CalldataGenerator,
    DeploymentGenerator,
    HEADER_LENGTH,
    MAGIC,
    envelope_tree,
    lock_leaf_script,
    split_buffer,
)
from scripts.features import (
    AccessListFeature,
    EpochSubmissionFeature,
    FeatureOpcode,
    encode_feature,
    encode_features,
    feature_flags,
    sort_features,
)
from scripts.opcodes import Opcode
from scripts.script import (
    ScriptBuilder,
    compile_script,
    decompile_script,
    encode_script_number,
    script_to_asm,
)
from scripts.taproot import TapLeaf, TaprootTree


def payload(length: int) -> bytes:
    return bytes(i % 251 for i in range(length))


def reveal_section(script: bytes) -> list:
    """Chunks between the magic push and OP_ELSE."""
    chunks = decompile_script(script)
    start = chunks.index(MAGIC) + 1
    end = len(chunks) - 1 - chunks[::-1].index(Opcode.OP_ELSE)
    return chunks[start:end]


class TestScriptCodec:
    """Test script compilation and decompilation."""

    def test_minimal_pushes(self):
        assert compile_script([b'']) == bytes([Opcode.OP_0])
        assert compile_script([b'\x05']) == bytes([Opcode.OP_5])
        assert compile_script([b'\x81']) == bytes([Opcode.OP_1NEGATE])
        assert compile_script([b'\xaa' * 75])[:1] == b'\x4b'
        assert compile_script([b'\xaa' * 76])[:2] == bytes([Opcode.OP_PUSHDATA1, 76])
        assert compile_script([b'\xaa' * 300])[:3] == bytes([Opcode.OP_PUSHDATA2]) + struct.pack('<H', 300)

    def test_decompile_roundtrip(self):
        chunks = [Opcode.OP_DUP, b'\x01' * 32, Opcode.OP_CHECKSIG, b'\x02' * 520]
        script = compile_script(chunks)
        assert decompile_script(script) == chunks
        assert compile_script(decompile_script(script)) == script

    def test_truncated_push(self):
        assert decompile_script(b'\x20' + b'\x00' * 10) is None
        assert decompile_script(bytes([Opcode.OP_PUSHDATA1])) is None

    def test_invalid_chunk(self):
        with pytest.raises(ConstructionError):
            compile_script([0x100])
        with pytest.raises(ConstructionError):
            compile_script(["OP_DUP"])

    def test_script_numbers(self):
        assert encode_script_number(0) == b''
        assert encode_script_number(127) == b'\x7f'
        assert encode_script_number(128) == b'\x80\x00'
        assert encode_script_number(-1) == b'\x81'
        assert encode_script_number(255) == b'\xff\x00'

    def test_builder_numbers(self):
        script = ScriptBuilder().push_number(0).push_number(16).push_number(17).push_number(-1).build()
        assert script == bytes([Opcode.OP_0, Opcode.OP_16, 0x01, 0x11, Opcode.OP_1NEGATE])

    def test_asm(self):
        assert script_to_asm(b'\x00\x69') == "OP_0 OP_VERIFY"
        assert script_to_asm(b'\x20' + b'\x00').startswith("[error]")


class TestSplitBuffer:
    """Test payload chunking."""

    def test_split_1500_bytes(self):
        data = payload(1500)
        chunks = split_buffer(data)
        assert [len(c) for c in chunks] == [512, 512, 476]
        assert b''.join(chunks) == data

    def test_exact_multiple(self):
        assert [len(c) for c in split_buffer(payload(1024))] == [512, 512]

    def test_empty(self):
        assert split_buffer(b'') == []

    def test_invalid_chunk_size(self):
        with pytest.raises(ConstructionError):
            split_buffer(b'abc', 0)


class TestCalldataEnvelope:
    """Test interaction envelope compilation."""

    @pytest.fixture
    def generator(self, wallet, signer_factory):
        return CalldataGenerator(wallet.public_key, signer_factory(8).public_key)

    def test_layout(self, generator, wallet, challenge):
        secret = b'\x42' * 32
        calldata = payload(1500)
        script = generator.compile(calldata, secret, challenge, max_priority_fee=1000)
        chunks = decompile_script(script)

        header = chunks[0]
        assert len(header) == HEADER_LENGTH
        assert header[0] == wallet.public_key[0]
        assert int.from_bytes(header[1:4], 'big') == 0
        assert int.from_bytes(header[4:], 'big') == 1000
        assert chunks[1] == Opcode.OP_TOALTSTACK
        assert chunks[2] == challenge.public_key
        assert chunks[4] == challenge.solution

        assert wallet.x_only_public_key in chunks
        assert hash256(wallet.x_only_public_key) in chunks
        assert hash160(secret) in chunks
        assert chunks[-3:] == [Opcode.OP_ELSE, Opcode.OP_1, Opcode.OP_ENDIF]

    def test_calldata_reassembles(self, generator, challenge):
        calldata = payload(1500)
        section = reveal_section(generator.compile(calldata, b'\x42' * 32, challenge, 0))
        assert section[0] == Opcode.OP_1NEGATE
        assert [len(c) for c in section[1:]] == [512, 512, 476]
        assert b''.join(section[1:]) == calldata

    def test_deterministic(self, generator, challenge):
        first = generator.compile(b'call', b'\x42' * 32, challenge, 5)
        second = generator.compile(b'call', b'\x42' * 32, challenge, 5)
        assert first == second

    def test_features_in_header_and_body(self, generator, challenge):
        access = AccessListFeature({b'\x01' * 32: [b'\x02' * 32]})
        script = generator.compile(b'call', b'\x42' * 32, challenge, 0, [access])
        chunks = decompile_script(script)
        assert int.from_bytes(chunks[0][1:4], 'big') == FeatureOpcode.ACCESS_LIST
        section = reveal_section(script)
        assert section[0] == encode_features([access])

    def test_missing_salt_key(self, wallet, challenge):
        generator = CalldataGenerator(wallet.public_key)
        with pytest.raises(ConstructionError):
            generator.compile(b'call', b'\x42' * 32, challenge, 0)

    def test_bad_secret_length(self, generator, challenge):
        with pytest.raises(ConstructionError):
            generator.compile(b'call', b'\x42' * 31, challenge, 0)

    def test_requires_challenge(self, generator):
        with pytest.raises(ConstructionError):
            generator.compile(b'call', b'\x42' * 32, None, 0)

    def test_empty_calldata(self, generator, challenge):
        with pytest.raises(ConstructionError):
            generator.compile(b'', b'\x42' * 32, challenge, 0)

    def test_sender_must_be_compressed(self, wallet):
        with pytest.raises(ConstructionError):
            CalldataGenerator(wallet.x_only_public_key)


class TestDeploymentEnvelope:
    """Test deployment envelope compilation."""

    def test_sections(self, wallet, signer_factory, challenge):
        generator = DeploymentGenerator(wallet.public_key, signer_factory(8).public_key)
        salt = b'\x33' * 32
        bytecode = payload(700)
        calldata = b'constructor-args'
        script = generator.compile(bytecode, salt, challenge, 0, calldata)

        assert hash256(salt) in decompile_script(script)
        section = reveal_section(script)
        assert section[0] == Opcode.OP_0
        separator = section.index(Opcode.OP_1NEGATE)
        assert b''.join(section[1:separator]) == calldata
        assert b''.join(section[separator + 1:]) == bytecode

    def test_without_calldata(self, wallet, signer_factory, challenge):
        generator = DeploymentGenerator(wallet.public_key, signer_factory(8).public_key)
        section = reveal_section(generator.compile(b'\x60' * 40, b'\x33' * 32, challenge, 0))
        assert section[:2] == [Opcode.OP_0, Opcode.OP_1NEGATE]

    def test_empty_bytecode(self, wallet, signer_factory, challenge):
        generator = DeploymentGenerator(wallet.public_key, signer_factory(8).public_key)
        with pytest.raises(ConstructionError):
            generator.compile(b'', b'\x33' * 32, challenge, 0)


class TestFeatures:
    """Test feature record encoding."""

    def test_record_layout(self):
        submission = EpochSubmissionFeature(b'\x02' + b'\x01' * 32, b'\x05' * 32)
        encoded = encode_feature(submission)
        assert encoded[0] == FeatureOpcode.EPOCH_SUBMISSION
        assert struct.unpack('<I', encoded[1:5])[0] == 65
        assert encoded[5:] == submission.encode()

    def test_graffiti(self):
        submission = EpochSubmissionFeature(b'\x01' * 32, b'\x05' * 32, graffiti=b'hello')
        assert submission.encode().endswith(b'\x00\x00\x00\x05hello')
        with pytest.raises(ConstructionError):
            EpochSubmissionFeature(b'\x01' * 32, b'\x05' * 32, graffiti=b'x' * 17)

    def test_access_list_is_compressed(self):
        feature = AccessListFeature({b'\x01' * 32: [b'\x02' * 32, b'\x03' * 32]})
        raw = decompress(feature.encode())
        assert raw[:2] == b'\x00\x01'
        assert raw[2:34] == b'\x01' * 32
        assert raw[34:38] == b'\x00\x00\x00\x02'
        assert len(raw) == 2 + 32 + 4 + 64

    def test_access_list_validation(self):
        with pytest.raises(ConstructionError):
            AccessListFeature({b'\x01' * 31: []})
        with pytest.raises(ConstructionError):
            AccessListFeature({b'\x01' * 32: [b'\x02' * 16]})

    def test_priority_order(self):
        submission = EpochSubmissionFeature(b'\x01' * 32, b'\x05' * 32)
        access = AccessListFeature()
        assert sort_features([submission, access]) == [access, submission]
        assert encode_features([submission, access]) == encode_feature(access) + encode_feature(submission)

    def test_flags(self):
        submission = EpochSubmissionFeature(b'\x01' * 32, b'\x05' * 32)
        assert feature_flags([]) == 0
        assert feature_flags([submission]) == 2
        assert feature_flags([submission, AccessListFeature()]) == 3

    def test_unrecognized_feature(self):
        with pytest.raises(ConstructionError):
            feature_flags([object()])
        with pytest.raises(ConstructionError):
            encode_features(["graffiti"])

    def test_challenge_submission(self, challenge):
        submission = challenge.to_submission()
        assert submission.public_key == challenge.public_key
        assert submission.solution == challenge.solution


class TestChallenge:
    """Test challenge solution validation."""

    def test_solution_length(self, wallet):
        with pytest.raises(ConstructionError):
            ChallengeSolution(public_key=wallet.public_key, solution=b'\x00' * 31)

    def test_from_dict(self, wallet):
        solution = ChallengeSolution.from_dict({
            'public_key': wallet.public_key.hex(),
            'solution': '11' * 32,
            'difficulty': 12,
            'graffiti': '6869',
        })
        assert solution.difficulty == 12
        assert solution.graffiti == b'hi'
        assert solution.x_only_public_key == wallet.x_only_public_key


class TestBinaryWriter:
    """Test fixed-width encodings."""

    def test_widths(self):
        writer = BinaryWriter()
        writer.write_u8(1).write_u16(2).write_u24(3).write_u32(4).write_u64(5)
        assert writer.get_buffer() == bytes.fromhex('01' '0002' '000003' '00000004' '0000000000000005')
        assert len(writer) == 18

    def test_little_endian(self):
        assert BinaryWriter().write_u32(1, le=True).get_buffer() == b'\x01\x00\x00\x00'

    @pytest.mark.parametrize("method,value", [
        ('write_u8', 256),
        ('write_u16', 1 << 16),
        ('write_u24', 1 << 24),
        ('write_u32', -1),
        ('write_u64', 1 << 64),
        ('write_u256', 1 << 256),
    ])
    def test_out_of_range(self, method, value):
        with pytest.raises(ConstructionError):
            getattr(BinaryWriter(), method)(value)

    def test_u256_and_address(self):
        buffer = BinaryWriter().write_address(b'\x07' * 32).write_u256(1).get_buffer()
        assert buffer == b'\x07' * 32 + b'\x00' * 31 + b'\x01'
        with pytest.raises(ConstructionError):
            BinaryWriter().write_address(b'\x07' * 20)

    def test_length_prefixed(self):
        assert BinaryWriter().write_bytes_with_length(b'ab').get_buffer() == b'\x00\x00\x00\x02ab'
        assert BinaryWriter().write_string_with_length('hé').get_buffer() == b'\x00\x03h\xc3\xa9'


class TestCompressor:

    def test_deterministic(self):
        assert compress(b'bytecode' * 100) == compress(b'bytecode' * 100)
        assert decompress(compress(b'bytecode')) == b'bytecode'


class TestTaprootTree:
    """Test script trees and control blocks."""

    def test_two_leaf_control_block(self, wallet):
        envelope = TapLeaf(b'\x51')
        lock = TapLeaf(lock_leaf_script(wallet.public_key))
        tree = TaprootTree([envelope, lock])

        control_block = tree.control_block(envelope, wallet.public_key)
        assert len(control_block) == 65
        assert control_block[0] & 0xfe == 0xc0
        assert control_block[1:33] == wallet.x_only_public_key
        assert control_block[33:] == lock.leaf_hash()

    def test_leaf_hash(self):
        script = b'\x4c\x50' + b'\x11' * 80 + b'\x75\x51'
        assert TapLeaf(script).leaf_hash() == tagged_hash('TapLeaf', bytes([0xc0, len(script)]) + script)

    def test_three_leaf_paths(self, wallet):
        a, b, c = TapLeaf(b'\x51'), TapLeaf(b'\x52'), TapLeaf(b'\x53')
        tree = TaprootTree([a, b, c])

        def branch(left, right):
            return tagged_hash('TapBranch', min(left, right) + max(left, right))

        ab = branch(a.leaf_hash(), b.leaf_hash())
        assert tree.merkle_root == branch(ab, c.leaf_hash())

        output_key, parity = taproot_tweak_public_key(wallet.x_only_public_key, tree.merkle_root)
        assert tree.output_key(wallet.public_key) == output_key
        assert tree.control_block(a, wallet.public_key) == \
            bytes([0xc0 | parity]) + wallet.x_only_public_key + b.leaf_hash() + c.leaf_hash()
        assert tree.control_block(c, wallet.public_key)[33:] == ab

    def test_unknown_leaf(self, wallet):
        tree = TaprootTree([TapLeaf(b'\x51')])
        assert tree.merkle_root == TapLeaf(b'\x51').leaf_hash()
        with pytest.raises(ConstructionError):
            tree.control_block(TapLeaf(b'\x52'), wallet.public_key)

    def test_output_depends_on_leaves(self, wallet):
        lock = TapLeaf(lock_leaf_script(wallet.public_key))
        first = TaprootTree([TapLeaf(b'\x51'), lock])
        second = TaprootTree([TapLeaf(b'\x52'), lock])
        assert first.script_pubkey(NUMS_INTERNAL_KEY) != second.script_pubkey(NUMS_INTERNAL_KEY)
        assert first.script_pubkey(NUMS_INTERNAL_KEY)[:2] == b'\x51\x20'

    def test_leaf_validation(self):
        with pytest.raises(ConstructionError):
            TapLeaf(b'')
        with pytest.raises(ConstructionError):
            TapLeaf(b'\x51', leaf_version=0xc1)
        with pytest.raises(ConstructionError):
            TapLeaf(b'\x51', leaf_version=0xc2)


class TestLockLeaf:
    """Test the sender recovery leaf of envelope trees."""

    def test_sender_checksig(self, wallet):
        script = lock_leaf_script(wallet.public_key)
        assert decompile_script(script) == [wallet.x_only_public_key, Opcode.OP_CHECKSIG]
        assert lock_leaf_script(wallet.x_only_public_key) == script

    def test_envelope_tree(self, wallet, other_wallet):
        tree = envelope_tree(b'\x51', wallet.public_key)
        assert [leaf.script for leaf in tree.leaves] == [b'\x51', lock_leaf_script(wallet.public_key)]
        assert envelope_tree(b'\x51', other_wallet.public_key).merkle_root != tree.merkle_root
