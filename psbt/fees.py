"""
tapforge - Fee estimation

Virtual size is estimated from the shape of the inputs and outputs rather
than by serializing a draft transaction. Weight units follow BIP141: every
non-witness byte weighs 4, witness bytes weigh 1.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

from scripts.address import ScriptType
from .exceptions import ConstructionError
from .utils import compact_size_len, witness_size

# version (4) + locktime (4) + input count (1) + output count (1)
TX_OVERHEAD_WEIGHT = 40
# segwit marker and flag, witness bytes
SEGWIT_MARKER_WEIGHT = 2

# outpoint (36) + scriptSig length (1) + sequence (4)
INPUT_BASE_WEIGHT = 164

# element count + 64-byte signature
KEY_PATH_WITNESS_WEIGHT = 66
# element count + 73-byte signature + 33-byte key
P2WPKH_WITNESS_WEIGHT = 109
# 72-byte signature + 33-byte key, each with a push opcode
P2PKH_SCRIPT_SIG_WEIGHT = 4 * 107
# empty witness of a legacy input inside a segwit transaction
EMPTY_WITNESS_WEIGHT = 1

SCHNORR_SIGNATURE_SIZE = 64
CONTROL_BLOCK_SIZE = 65
P2TR_SCRIPT_SIZE = 34


@dataclass(frozen=True)
class InputShape:
    """
    What an input will look like once signed.

    ``witness_elements`` lists the byte length of each witness stack element
    for script-path spends and is ignored otherwise.
    """
    script_type: ScriptType
    witness_elements: Tuple[int, ...] = ()
    script_path: bool = False

    @property
    def is_segwit(self) -> bool:
        return self.script_type not in (ScriptType.P2PKH, ScriptType.P2SH)

    def weight(self, segwit_tx: bool = True) -> int:
        if self.script_path:
            return INPUT_BASE_WEIGHT + witness_size(list(self.witness_elements))
        if self.script_type == ScriptType.P2TR:
            return INPUT_BASE_WEIGHT + KEY_PATH_WITNESS_WEIGHT
        if self.script_type == ScriptType.P2WPKH:
            return INPUT_BASE_WEIGHT + P2WPKH_WITNESS_WEIGHT
        if self.script_type == ScriptType.P2PKH:
            return INPUT_BASE_WEIGHT + P2PKH_SCRIPT_SIG_WEIGHT + (EMPTY_WITNESS_WEIGHT if segwit_tx else 0)
        raise ConstructionError(f"Cannot estimate the size of a {self.script_type.value} input")


def key_path_input() -> InputShape:
    return InputShape(ScriptType.P2TR)


def script_path_input(witness_elements: Iterable[int]) -> InputShape:
    return InputShape(ScriptType.P2TR, tuple(witness_elements), script_path=True)


def output_weight(script_pubkey: bytes) -> int:
    """Value (8) + script length prefix + script, all non-witness."""
    return 4 * (8 + compact_size_len(len(script_pubkey)) + len(script_pubkey))


def estimate_vsize(inputs: Sequence[InputShape], output_scripts: Sequence[bytes]) -> int:
    """
    Estimate the virtual size of a transaction.

    Each input is rounded up to whole vbytes on its own, so the estimate
    never falls below the real size when signatures come out shorter.
    """
    segwit_tx = any(shape.is_segwit for shape in inputs)

    shared = TX_OVERHEAD_WEIGHT + sum(output_weight(script) for script in output_scripts)
    if segwit_tx:
        shared += SEGWIT_MARKER_WEIGHT

    vsize = math.ceil(shared / 4)
    for shape in inputs:
        vsize += math.ceil(shape.weight(segwit_tx) / 4)
    return vsize


def fee_for(vsize: int, fee_rate: float) -> int:
    """Fee in satoshis for a virtual size at fee_rate sat/vB, rounded up."""
    if fee_rate <= 0:
        raise ConstructionError(f"Fee rate must be positive, got {fee_rate}")
    return math.ceil(vsize * fee_rate)


def pre_estimate_taproot_fees(fee_rate: float, num_inputs: int, num_outputs: int,
                              num_signatures: int, num_empty_witnesses: int, script_size: int,
                              signature_size: int = SCHNORR_SIGNATURE_SIZE,
                              control_block_size: int = CONTROL_BLOCK_SIZE,
                              output_script_size: int = P2TR_SCRIPT_SIZE) -> int:
    """
    Fee of a set of Taproot script-path inputs estimated from counts alone.

    Used to price vault inputs before any of their signatures exist.

    Args:
        fee_rate: sat/vB
        num_inputs: Script-path inputs
        num_outputs: P2TR outputs
        num_signatures: Signatures across all inputs
        num_empty_witnesses: Empty signature slots across all inputs
        script_size: Leaf script size of each input
        signature_size: Size of each signature
        control_block_size: Size of each control block
        output_script_size: Size of each output script

    Returns:
        Estimated fee in satoshis
    """
    per_input_witness = (
        compact_size_len(script_size) + script_size
        + compact_size_len(control_block_size) + control_block_size
        + 1
    )
    witness_weight = (
        num_inputs * per_input_witness
        + num_signatures * (compact_size_len(signature_size) + signature_size)
        + num_empty_witnesses
    )
    base_weight = (
        num_inputs * INPUT_BASE_WEIGHT
        + num_outputs * 4 * (8 + compact_size_len(output_script_size) + output_script_size)
    )
    vsize = math.ceil((base_weight + witness_weight) / 4)
    return fee_for(vsize, fee_rate)
