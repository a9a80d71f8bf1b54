"""
tapforge - PSBT interchange

BIP174 (version 0) serialization with the BIP371 Taproot fields. Partially
built or partially signed transactions travel between processes in this
format; the multisig flow depends on ``tap_script_sigs`` surviving a
round trip unchanged.
"""

import base64
import binascii
import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import Dict, List, Optional, Tuple

from .exceptions import FinalizationError, PSBTParseError
from .transaction import Transaction, TxInput, TxOutput
from .utils import parse_witness, read_exact, read_varstr, serialize_witness, varstr

# PSBT Magic Bytes
PSBT_MAGIC = b'psbt\xff'

# PSBT Global Types (BIP-174)
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_VERSION = 0xfb

# PSBT Input Types
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

# Taproot Input Types (BIP-371)
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18

# PSBT Output Types
PSBT_OUT_TAP_INTERNAL_KEY = 0x05


@dataclass
class PSBTKeyValue:
    """Represents a key-value pair in PSBT format."""
    key_type: int
    key_data: bytes = field(default_factory=bytes)
    value: bytes = field(default_factory=bytes)

    def serialize(self) -> bytes:
        """Serialize key-value pair to PSBT format."""
        key = bytes([self.key_type]) + self.key_data
        return varstr(key) + varstr(self.value)


def _read_map(stream: BytesIO) -> List[Tuple[bytes, bytes]]:
    """Read key-value pairs up to the 0x00 separator."""
    pairs = []
    seen = set()
    while True:
        key = read_varstr(stream)
        if not key:
            return pairs
        if key in seen:
            raise PSBTParseError(f"Duplicate PSBT key {key.hex()}")
        seen.add(key)
        pairs.append((key, read_varstr(stream)))


@dataclass
class PSBTInput:
    """Represents a PSBT input with associated metadata."""
    non_witness_utxo: Optional[bytes] = None
    witness_utxo: Optional[TxOutput] = None
    partial_sigs: Dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: Optional[int] = None
    final_scriptsig: Optional[bytes] = None
    final_scriptwitness: Optional[List[bytes]] = None
    tap_key_sig: Optional[bytes] = None
    # (x-only pubkey, leaf hash) -> signature
    tap_script_sigs: Dict[Tuple[bytes, bytes], bytes] = field(default_factory=dict)
    # control block -> (script, leaf version)
    tap_leaf_scripts: Dict[bytes, Tuple[bytes, int]] = field(default_factory=dict)
    tap_internal_key: Optional[bytes] = None
    tap_merkle_root: Optional[bytes] = None
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_scriptwitness is not None or self.final_scriptsig is not None

    def finalize(self, witness: Optional[List[bytes]] = None, script_sig: Optional[bytes] = None):
        """Store the final scripts and drop the signing data, as a BIP174 finalizer does."""
        self.final_scriptwitness = witness
        self.final_scriptsig = script_sig
        self.partial_sigs = {}
        self.sighash_type = None
        self.tap_key_sig = None
        self.tap_script_sigs = {}
        self.tap_leaf_scripts = {}
        self.tap_internal_key = None
        self.tap_merkle_root = None

    def serialize(self) -> bytes:
        """Serialize input to PSBT format."""
        result = BytesIO()

        if self.non_witness_utxo:
            result.write(PSBTKeyValue(PSBT_IN_NON_WITNESS_UTXO, b'', self.non_witness_utxo).serialize())

        if self.witness_utxo:
            result.write(PSBTKeyValue(PSBT_IN_WITNESS_UTXO, b'', self.witness_utxo.serialize()).serialize())

        for pubkey, sig in self.partial_sigs.items():
            result.write(PSBTKeyValue(PSBT_IN_PARTIAL_SIG, pubkey, sig).serialize())

        if self.sighash_type is not None:
            value = struct.pack('<I', self.sighash_type)
            result.write(PSBTKeyValue(PSBT_IN_SIGHASH_TYPE, b'', value).serialize())

        if self.final_scriptsig is not None:
            result.write(PSBTKeyValue(PSBT_IN_FINAL_SCRIPTSIG, b'', self.final_scriptsig).serialize())

        if self.final_scriptwitness is not None:
            value = serialize_witness(self.final_scriptwitness)
            result.write(PSBTKeyValue(PSBT_IN_FINAL_SCRIPTWITNESS, b'', value).serialize())

        if self.tap_key_sig:
            result.write(PSBTKeyValue(PSBT_IN_TAP_KEY_SIG, b'', self.tap_key_sig).serialize())

        for (pubkey, leaf_hash), sig in self.tap_script_sigs.items():
            result.write(PSBTKeyValue(PSBT_IN_TAP_SCRIPT_SIG, pubkey + leaf_hash, sig).serialize())

        for control_block, (script, leaf_version) in self.tap_leaf_scripts.items():
            value = script + bytes([leaf_version])
            result.write(PSBTKeyValue(PSBT_IN_TAP_LEAF_SCRIPT, control_block, value).serialize())

        if self.tap_internal_key:
            result.write(PSBTKeyValue(PSBT_IN_TAP_INTERNAL_KEY, b'', self.tap_internal_key).serialize())

        if self.tap_merkle_root:
            result.write(PSBTKeyValue(PSBT_IN_TAP_MERKLE_ROOT, b'', self.tap_merkle_root).serialize())

        for key, value in self.unknown.items():
            result.write(varstr(key) + varstr(value))

        # End marker
        result.write(b'\x00')
        return result.getvalue()

    @classmethod
    def parse(cls, stream: BytesIO) -> 'PSBTInput':
        psbt_input = cls()

        for key, value in _read_map(stream):
            key_type, key_data = key[0], key[1:]

            if key_type == PSBT_IN_NON_WITNESS_UTXO and not key_data:
                psbt_input.non_witness_utxo = value
            elif key_type == PSBT_IN_WITNESS_UTXO and not key_data:
                value_stream = BytesIO(value)
                amount = struct.unpack('<Q', read_exact(value_stream, 8))[0]
                psbt_input.witness_utxo = TxOutput(amount, read_varstr(value_stream))
            elif key_type == PSBT_IN_PARTIAL_SIG:
                psbt_input.partial_sigs[key_data] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE and not key_data:
                psbt_input.sighash_type = struct.unpack('<I', value)[0]
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG and not key_data:
                psbt_input.final_scriptsig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and not key_data:
                psbt_input.final_scriptwitness = parse_witness(value)
            elif key_type == PSBT_IN_TAP_KEY_SIG and not key_data:
                psbt_input.tap_key_sig = value
            elif key_type == PSBT_IN_TAP_SCRIPT_SIG:
                if len(key_data) != 64:
                    raise PSBTParseError("Tap script sig key must be x-only pubkey and leaf hash")
                psbt_input.tap_script_sigs[(key_data[:32], key_data[32:])] = value
            elif key_type == PSBT_IN_TAP_LEAF_SCRIPT:
                if not value:
                    raise PSBTParseError("Empty tap leaf script")
                psbt_input.tap_leaf_scripts[key_data] = (value[:-1], value[-1])
            elif key_type == PSBT_IN_TAP_INTERNAL_KEY and not key_data:
                psbt_input.tap_internal_key = value
            elif key_type == PSBT_IN_TAP_MERKLE_ROOT and not key_data:
                psbt_input.tap_merkle_root = value
            else:
                psbt_input.unknown[key] = value

        return psbt_input


@dataclass
class PSBTOutput:
    """Represents a PSBT output with associated metadata."""
    tap_internal_key: Optional[bytes] = None
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    def serialize(self) -> bytes:
        result = BytesIO()

        if self.tap_internal_key:
            result.write(PSBTKeyValue(PSBT_OUT_TAP_INTERNAL_KEY, b'', self.tap_internal_key).serialize())

        for key, value in self.unknown.items():
            result.write(varstr(key) + varstr(value))

        result.write(b'\x00')
        return result.getvalue()

    @classmethod
    def parse(cls, stream: BytesIO) -> 'PSBTOutput':
        psbt_output = cls()
        for key, value in _read_map(stream):
            if key == bytes([PSBT_OUT_TAP_INTERNAL_KEY]):
                psbt_output.tap_internal_key = value
            else:
                psbt_output.unknown[key] = value
        return psbt_output


class PSBT:
    """
    A partially signed transaction.

    ``tx`` is the unsigned transaction; ``inputs`` and ``outputs`` hold the
    per-input and per-output maps in the same order.
    """

    def __init__(self, tx: Optional[Transaction] = None):
        self.tx = tx or Transaction()
        self.inputs: List[PSBTInput] = [PSBTInput() for _ in self.tx.inputs]
        self.outputs: List[PSBTOutput] = [PSBTOutput() for _ in self.tx.outputs]
        self.global_unknown: Dict[bytes, bytes] = {}

    def add_input(self, txin: TxInput, psbt_input: Optional[PSBTInput] = None) -> int:
        self.tx.inputs.append(TxInput(txin.txid, txin.vout, b'', txin.sequence))
        self.inputs.append(psbt_input or PSBTInput())
        return len(self.inputs) - 1

    def add_output(self, txout: TxOutput, psbt_output: Optional[PSBTOutput] = None) -> int:
        self.tx.outputs.append(txout)
        self.outputs.append(psbt_output or PSBTOutput())
        return len(self.outputs) - 1

    def spent_output(self, index: int) -> TxOutput:
        """Return the output an input spends, from witness or non-witness utxo data."""
        psbt_input = self.inputs[index]
        if psbt_input.witness_utxo is not None:
            return psbt_input.witness_utxo
        if psbt_input.non_witness_utxo is not None:
            prev_tx = Transaction.parse(psbt_input.non_witness_utxo)
            txin = self.tx.inputs[index]
            if prev_tx.txid != txin.txid:
                raise PSBTParseError(f"Non-witness utxo of input {index} does not match its outpoint")
            return prev_tx.outputs[txin.vout]
        raise PSBTParseError(f"Input {index} has no utxo information")

    def prevouts(self) -> Tuple[List[bytes], List[int]]:
        """scriptPubKeys and amounts of every spent output, in input order."""
        spent = [self.spent_output(i) for i in range(len(self.inputs))]
        return [out.script_pubkey for out in spent], [out.value for out in spent]

    def input_amount(self) -> int:
        return sum(self.prevouts()[1])

    def output_amount(self) -> int:
        return sum(out.value for out in self.tx.outputs)

    def fee(self) -> int:
        return self.input_amount() - self.output_amount()

    @property
    def is_finalized(self) -> bool:
        return all(psbt_input.is_finalized for psbt_input in self.inputs)

    def extract_transaction(self) -> Transaction:
        """
        Build the network transaction from finalized inputs.

        Raises:
            FinalizationError: If any input is not finalized
        """
        tx = self.tx.copy()
        for index, (txin, psbt_input) in enumerate(zip(tx.inputs, self.inputs)):
            if not psbt_input.is_finalized:
                raise FinalizationError(index, reason="is not finalized")
            txin.script_sig = psbt_input.final_scriptsig or b''
            txin.witness = list(psbt_input.final_scriptwitness or [])
        return tx

    def serialize(self) -> bytes:
        """
        Serialize PSBT to binary format.

        Returns:
            Serialized PSBT data
        """
        result = BytesIO()
        result.write(PSBT_MAGIC)

        unsigned = self.tx.copy()
        for txin in unsigned.inputs:
            txin.script_sig = b''
            txin.witness = []
        result.write(PSBTKeyValue(PSBT_GLOBAL_UNSIGNED_TX, b'', unsigned.serialize(False)).serialize())
        for key, value in self.global_unknown.items():
            result.write(varstr(key) + varstr(value))
        result.write(b'\x00')

        for psbt_input in self.inputs:
            result.write(psbt_input.serialize())
        for psbt_output in self.outputs:
            result.write(psbt_output.serialize())

        return result.getvalue()

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode('ascii')

    def to_hex(self) -> str:
        return self.serialize().hex()

    @classmethod
    def parse(cls, data: bytes) -> 'PSBT':
        if not data.startswith(PSBT_MAGIC):
            raise PSBTParseError("Invalid PSBT magic bytes")

        stream = BytesIO(data[len(PSBT_MAGIC):])
        tx = None
        global_unknown = {}
        for key, value in _read_map(stream):
            if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                tx = Transaction.parse(value)
            elif key == bytes([PSBT_GLOBAL_VERSION]) and struct.unpack('<I', value)[0] != 0:
                raise PSBTParseError("Only PSBT version 0 is supported")
            else:
                global_unknown[key] = value

        if tx is None:
            raise PSBTParseError("Missing unsigned transaction in global fields")
        if any(txin.script_sig or txin.witness for txin in tx.inputs):
            raise PSBTParseError("Global transaction must be unsigned")

        psbt = cls(tx)
        psbt.global_unknown = global_unknown
        psbt.inputs = [PSBTInput.parse(stream) for _ in tx.inputs]
        psbt.outputs = [PSBTOutput.parse(stream) for _ in tx.outputs]

        if stream.read(1):
            raise PSBTParseError("Trailing bytes after PSBT")
        return psbt

    @classmethod
    def from_base64(cls, data: str) -> 'PSBT':
        try:
            raw = base64.b64decode(data, validate=True)
        except binascii.Error as e:
            raise PSBTParseError(f"Invalid base64 encoding: {e}")
        return cls.parse(raw)

    @classmethod
    def from_hex(cls, data: str) -> 'PSBT':
        try:
            raw = bytes.fromhex(data)
        except ValueError as e:
            raise PSBTParseError(f"Invalid hex encoding: {e}")
        return cls.parse(raw)

    def copy(self) -> 'PSBT':
        return PSBT.parse(self.serialize())
