"""
tapforge - Envelope script compiler

An envelope is a tapscript leaf that proves the sender, the salt key and the
committed secret, then carries the protocol payload inside a branch that only
runs when the stack depth is exactly one. The payload therefore costs nothing
to evaluate but is revealed on-chain when the leaf is spent.

Layout::

    header OP_TOALTSTACK
    challenge.public_key OP_TOALTSTACK
    challenge.solution OP_TOALTSTACK
    xsender OP_DUP OP_HASH256 <hash256(xsender)> OP_EQUALVERIFY OP_CHECKSIGVERIFY
    salt_pubkey OP_CHECKSIGVERIFY
    <secret check>
    OP_DEPTH OP_1 OP_NUMEQUAL OP_IF
        "op" <feature chunks> <payload sections>
    OP_ELSE OP_1 OP_ENDIF
"""

import logging
from typing import Iterable, List, Optional, Sequence

from crypto.exceptions import InvalidKeyError
from crypto.keys import hash160, hash256, to_x_only
from psbt.exceptions import ConstructionError, ScriptIntegrityError
from scripts.binary_writer import BinaryWriter
from scripts.challenge import ChallengeSolution
from scripts.features import Feature, encode_features, feature_flags
from scripts.opcodes import Opcode
from scripts.script import ScriptChunk, compile_script, decompile_script
from scripts.taproot import TapLeaf, TaprootTree

DATA_CHUNK_SIZE = 512
MAGIC = b'op'
HEADER_LENGTH = 12
SECRET_LENGTH = 32


def lock_leaf_script(sender_pubkey: bytes) -> bytes:
    """
    Second leaf of every envelope tree: ``<x_sender> OP_CHECKSIG``.

    A single sender signature spends it, so an envelope output that was
    funded but never revealed can still be swept back to the wallet.
    """
    return compile_script([to_x_only(sender_pubkey), Opcode.OP_CHECKSIG])


def envelope_tree(script: bytes, sender_pubkey: bytes) -> TaprootTree:
    """The ``[envelope, lock]`` script tree an envelope address commits to."""
    return TaprootTree([TapLeaf(script), TapLeaf(lock_leaf_script(sender_pubkey))])


def split_buffer(data: bytes, chunk_size: int = DATA_CHUNK_SIZE) -> List[bytes]:
    """
    Split data into pushes of at most chunk_size bytes.

    The concatenation of the returned chunks is always equal to data.
    """
    if chunk_size <= 0:
        raise ConstructionError(f"Invalid chunk size: {chunk_size}")
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


class EnvelopeGenerator:
    """
    Shared state and helpers for the envelope compilers.

    Args:
        sender_pubkey: Sender public key (33-byte compressed; the first byte
            goes into the header)
        contract_salt_pubkey: Public key of the per-transaction script signer
        chunk_size: Maximum push size for payload data
    """

    def __init__(self, sender_pubkey: bytes, contract_salt_pubkey: Optional[bytes] = None,
                 chunk_size: int = DATA_CHUNK_SIZE):
        if len(sender_pubkey) != 33:
            raise ConstructionError(
                f"Sender public key must be 33 bytes compressed, got {len(sender_pubkey)}"
            )
        self.sender_pubkey = bytes(sender_pubkey)
        self.x_sender_pubkey = to_x_only(self.sender_pubkey)
        self.contract_salt_pubkey = contract_salt_pubkey
        self.chunk_size = chunk_size
        self.logger = logging.getLogger(__name__)

    def build_header(self, max_priority_fee: int, features: Sequence[Feature] = ()) -> bytes:
        """12-byte header: key prefix byte, u24 feature flags, u64 priority fee."""
        writer = BinaryWriter()
        writer.write_u8(self.sender_pubkey[0])
        writer.write_u24(feature_flags(features))
        writer.write_u64(max_priority_fee)
        return writer.get_buffer()

    def split_buffer(self, data: bytes) -> List[bytes]:
        return split_buffer(data, self.chunk_size)

    def _salt_key(self) -> bytes:
        if not self.contract_salt_pubkey:
            raise ConstructionError("Contract salt public key not set")
        try:
            return to_x_only(self.contract_salt_pubkey)
        except InvalidKeyError as e:
            raise ConstructionError(f"Invalid contract salt public key: {e}")

    def _prologue(self, max_priority_fee: int, challenge: ChallengeSolution,
                  features: Sequence[Feature]) -> List[ScriptChunk]:
        if not isinstance(challenge, ChallengeSolution):
            raise ConstructionError("A challenge solution is required")

        return [
            self.build_header(max_priority_fee, features),
            Opcode.OP_TOALTSTACK,

            challenge.public_key,
            Opcode.OP_TOALTSTACK,

            challenge.solution,
            Opcode.OP_TOALTSTACK,

            self.x_sender_pubkey,
            Opcode.OP_DUP,
            Opcode.OP_HASH256,
            hash256(self.x_sender_pubkey),
            Opcode.OP_EQUALVERIFY,
            Opcode.OP_CHECKSIGVERIFY,

            self._salt_key(),
            Opcode.OP_CHECKSIGVERIFY,
        ]

    def _reveal_branch(self, features: Sequence[Feature],
                       body: Iterable[ScriptChunk]) -> List[ScriptChunk]:
        chunks: List[ScriptChunk] = [
            Opcode.OP_DEPTH,
            Opcode.OP_1,
            Opcode.OP_NUMEQUAL,
            Opcode.OP_IF,
            MAGIC,
        ]
        if features:
            chunks.extend(self.split_buffer(encode_features(features)))
        chunks.extend(body)
        chunks.extend([Opcode.OP_ELSE, Opcode.OP_1, Opcode.OP_ENDIF])
        return chunks

    def _assemble(self, chunks: List[ScriptChunk]) -> bytes:
        compiled = compile_script(chunks)

        decompiled = decompile_script(compiled)
        if decompiled is None or compile_script(decompiled) != compiled:
            raise ScriptIntegrityError("Compiled envelope failed to decompile")

        self.logger.debug(f"Compiled envelope script of {len(compiled)} bytes")
        return compiled


class CalldataGenerator(EnvelopeGenerator):
    """Envelope for contract interactions."""

    def compile(self, calldata: bytes, contract_secret: bytes, challenge: ChallengeSolution,
                max_priority_fee: int, features: Sequence[Feature] = ()) -> bytes:
        """
        Compile an interaction envelope.

        Args:
            calldata: Compressed calldata
            contract_secret: 32-byte contract secret, committed by HASH160
            challenge: Epoch challenge solution for the reward preimage
            max_priority_fee: Upper bound of the priority fee in satoshis
            features: Optional feature records

        Returns:
            Compiled leaf script

        Raises:
            ConstructionError: On missing salt key or malformed inputs
            ScriptIntegrityError: If the result cannot be decompiled
        """
        if len(contract_secret) != SECRET_LENGTH:
            raise ConstructionError(
                f"Contract secret must be {SECRET_LENGTH} bytes, got {len(contract_secret)}"
            )

        data_chunks = self.split_buffer(calldata)
        if not data_chunks:
            raise ConstructionError("No calldata chunks to embed")

        chunks = self._prologue(max_priority_fee, challenge, features)
        chunks += [
            Opcode.OP_HASH160,
            hash160(contract_secret),
            Opcode.OP_EQUALVERIFY,
        ]
        chunks += self._reveal_branch(features, [Opcode.OP_1NEGATE, *data_chunks])
        return self._assemble(chunks)


class DeploymentGenerator(EnvelopeGenerator):
    """Envelope for contract deployments."""

    def compile(self, bytecode: bytes, salt: bytes, challenge: ChallengeSolution,
                max_priority_fee: int, calldata: Optional[bytes] = None,
                features: Sequence[Feature] = ()) -> bytes:
        """
        Compile a deployment envelope.

        Bytecode sits after calldata; ``OP_0`` and ``OP_1NEGATE`` separate the
        two sections. Salt is committed by HASH256.
        """
        if len(salt) != SECRET_LENGTH:
            raise ConstructionError(f"Contract salt must be {SECRET_LENGTH} bytes, got {len(salt)}")

        bytecode_chunks = self.split_buffer(bytecode)
        if not bytecode_chunks:
            raise ConstructionError("Contract bytecode is empty")
        calldata_chunks = self.split_buffer(calldata) if calldata else []

        chunks = self._prologue(max_priority_fee, challenge, features)
        chunks += [
            Opcode.OP_HASH256,
            hash256(salt),
            Opcode.OP_EQUALVERIFY,
        ]
        body = [Opcode.OP_0, *calldata_chunks, Opcode.OP_1NEGATE, *bytecode_chunks]
        chunks += self._reveal_branch(features, body)
        return self._assemble(chunks)
