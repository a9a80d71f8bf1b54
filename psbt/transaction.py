"""
tapforge - Transaction model and signature hashing

The dataclasses below are the model the builders mutate; serialization, ids
and signature hashes are delegated to ``bitcoinutils`` (BIP144 encoding,
legacy P2PKH, BIP143 P2WPKH and BIP341/342 Taproot key and script paths).

Parsing stays here: the library's ``from_raw`` re-tokenizes scripts and
drops empty witness stacks, which would misalign witnesses with inputs.
"""

import struct
from copy import deepcopy
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional, Sequence

from bitcoinutils.transactions import Transaction as UtilsTransaction
from bitcoinutils.transactions import TxInput as UtilsTxInput
from bitcoinutils.transactions import TxOutput as UtilsTxOutput
from bitcoinutils.transactions import TxWitnessInput

from scripts.script import CompiledScript
from .exceptions import ConstructionError, PSBTParseError
from .utils import read_compact_size, read_exact, read_varstr

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

TAPROOT_SIGHASH_TYPES = (0x00, 0x01, 0x02, 0x03, 0x81, 0x82, 0x83)

SEQUENCE_RBF = 0xfffffffd
SEQUENCE_FINAL = 0xffffffff

LEAF_VERSION_TAPSCRIPT = 0xc0


def _le32(value: int) -> bytes:
    return struct.pack('<I', value)


@dataclass
class TxInput:
    """Transaction input."""
    txid: str
    vout: int
    script_sig: bytes = b''
    sequence: int = SEQUENCE_RBF
    witness: List[bytes] = field(default_factory=list)

    def to_library(self) -> UtilsTxInput:
        try:
            txid_bytes = bytes.fromhex(self.txid)
        except ValueError:
            txid_bytes = b''
        if len(txid_bytes) != 32:
            raise ConstructionError(f"Transaction id must be 32 bytes: {self.txid}")
        return UtilsTxInput(self.txid, self.vout, CompiledScript(self.script_sig), _le32(self.sequence))

    def serialize(self) -> bytes:
        return self.to_library().to_bytes()


@dataclass
class TxOutput:
    """Transaction output."""
    value: int
    script_pubkey: bytes

    def to_library(self) -> UtilsTxOutput:
        if self.value < 0:
            raise ConstructionError(f"Output value cannot be negative: {self.value}")
        return UtilsTxOutput(self.value, CompiledScript(self.script_pubkey))

    def serialize(self) -> bytes:
        return self.to_library().to_bytes()


@dataclass
class Transaction:
    """A Bitcoin transaction (version 2 by default)."""
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    version: int = 2
    locktime: int = 0

    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def to_library(self, include_witness: bool = True) -> UtilsTransaction:
        """
        Build the equivalent ``bitcoinutils`` transaction.

        Args:
            include_witness: Carry the witness stacks when any input has one
        """
        segwit = include_witness and self.has_witness()
        witnesses = []
        if segwit:
            # One stack per input, empty ones included, so they stay aligned
            witnesses = [TxWitnessInput([item.hex() for item in txin.witness])
                         for txin in self.inputs]
        return UtilsTransaction(
            inputs=[txin.to_library() for txin in self.inputs],
            outputs=[txout.to_library() for txout in self.outputs],
            locktime=_le32(self.locktime),
            version=_le32(self.version),
            has_segwit=segwit,
            witnesses=witnesses,
        )

    def serialize(self, include_witness: bool = True) -> bytes:
        """
        Serialize the transaction.

        Args:
            include_witness: Emit the BIP144 form when any input carries a witness

        Returns:
            Raw transaction bytes
        """
        tx = self.to_library(include_witness)
        return tx.to_bytes(tx.has_segwit)

    def to_hex(self) -> str:
        return self.serialize().hex()

    @classmethod
    def parse(cls, data: bytes) -> 'Transaction':
        """Parse a raw transaction, with or without witness data."""
        stream = BytesIO(data)
        version = struct.unpack('<I', read_exact(stream, 4))[0]

        segwit = False
        count = read_compact_size(stream)
        if count == 0:
            flag = read_exact(stream, 1)
            if flag != b'\x01':
                raise PSBTParseError(f"Unsupported segwit flag {flag.hex()}")
            segwit = True
            count = read_compact_size(stream)

        inputs = []
        for _ in range(count):
            txid = read_exact(stream, 32)[::-1].hex()
            vout = struct.unpack('<I', read_exact(stream, 4))[0]
            script_sig = read_varstr(stream)
            sequence = struct.unpack('<I', read_exact(stream, 4))[0]
            inputs.append(TxInput(txid, vout, script_sig, sequence))

        outputs = []
        for _ in range(read_compact_size(stream)):
            value = struct.unpack('<Q', read_exact(stream, 8))[0]
            outputs.append(TxOutput(value, read_varstr(stream)))

        if segwit:
            for txin in inputs:
                txin.witness = [read_varstr(stream) for _ in range(read_compact_size(stream))]

        locktime = struct.unpack('<I', read_exact(stream, 4))[0]
        if stream.read(1):
            raise PSBTParseError("Trailing bytes after transaction")

        return cls(inputs, outputs, version, locktime)

    @classmethod
    def from_hex(cls, raw_hex: str) -> 'Transaction':
        return cls.parse(bytes.fromhex(raw_hex))

    @property
    def txid(self) -> str:
        """Transaction id in display (reversed) byte order."""
        return self.to_library(include_witness=False).get_txid()

    @property
    def wtxid(self) -> str:
        return self.to_library().get_wtxid()

    @property
    def weight(self) -> int:
        # bitcoinutils' get_vsize miscounts stacks of 128 items or more
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        return base * 3 + total

    @property
    def vsize(self) -> int:
        return (self.weight + 3) // 4

    def copy(self) -> 'Transaction':
        return deepcopy(self)

    # Signature hashes

    def _check_index(self, index: int, sighash: int) -> None:
        if not 0 <= index < len(self.inputs):
            raise ConstructionError(f"Input index {index} out of range")
        if sighash & 0x03 == SIGHASH_SINGLE and index >= len(self.outputs):
            raise ConstructionError("SIGHASH_SINGLE without a matching output")

    def legacy_sighash(self, index: int, script_code: bytes, sighash: int = SIGHASH_ALL) -> bytes:
        """Pre-segwit signature hash."""
        self._check_index(index, sighash)
        return self.to_library(False).get_transaction_digest(
            index, CompiledScript(script_code), sighash
        )

    def segwit_v0_sighash(self, index: int, script_code: bytes, amount: int,
                          sighash: int = SIGHASH_ALL) -> bytes:
        """
        BIP143 signature hash.

        Args:
            index: Input being signed
            script_code: For P2WPKH, the equivalent P2PKH script
            amount: Value of the output being spent
            sighash: Sighash type
        """
        if not 0 <= index < len(self.inputs):
            raise ConstructionError(f"Input index {index} out of range")
        return self.to_library(False).get_transaction_segwit_digest(
            index, CompiledScript(script_code), amount, sighash
        )

    def taproot_sighash(self, index: int, prevout_scripts: Sequence[bytes],
                        amounts: Sequence[int], sighash: int = SIGHASH_DEFAULT,
                        leaf_script: Optional[bytes] = None,
                        leaf_version: int = LEAF_VERSION_TAPSCRIPT) -> bytes:
        """
        BIP341 signature message, hashed with the TapSighash tag.

        Args:
            index: Input being signed
            prevout_scripts: scriptPubKeys of every spent output, in input order
            amounts: Values of every spent output, in input order
            sighash: SIGHASH_DEFAULT, or ALL/NONE/SINGLE with optional ANYONECANPAY
            leaf_script: Tapscript being executed for a script-path spend
            leaf_version: Leaf version of leaf_script; only tapscript is supported

        Returns:
            32-byte digest to sign with BIP340
        """
        if len(prevout_scripts) != len(self.inputs) or len(amounts) != len(self.inputs):
            raise ConstructionError("Taproot sighash needs the prevout of every input")
        if sighash not in TAPROOT_SIGHASH_TYPES:
            raise ConstructionError(f"Invalid taproot sighash type {sighash:#x}")
        if leaf_version != LEAF_VERSION_TAPSCRIPT:
            raise ConstructionError(f"Unsupported leaf version {leaf_version:#x}")
        self._check_index(index, sighash)

        return self.to_library(False).get_transaction_taproot_digest(
            index,
            [CompiledScript(script) for script in prevout_scripts],
            list(amounts),
            ext_flag=0 if leaf_script is None else 1,
            script=None if leaf_script is None else CompiledScript(leaf_script),
            sighash=sighash,
        )
