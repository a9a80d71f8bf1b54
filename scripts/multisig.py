"""
tapforge - Threshold multisig leaf

Compiles the M-of-N ``OP_CHECKSIGADD`` tapscript used by vaults and the
script tree / address that commits to it.
"""

from typing import Iterable, List

from crypto.exceptions import InvalidKeyError
from crypto.keys import NUMS_INTERNAL_KEY, to_x_only
from psbt.exceptions import ConstructionError
from scripts.opcodes import Opcode
from scripts.script import ScriptBuilder, compile_script
from scripts.taproot import TapLeaf, TaprootTree

MIN_SIGNATURES = 2
MAX_KEYS = 255

# Second leaf of every vault tree; it can never validate.
VAULT_LOCK_LEAF_SCRIPT = compile_script([Opcode.OP_XOR, Opcode.OP_NOP, Opcode.OP_CODESEPARATOR])


def validate_threshold(key_count: int, minimum: int):
    """
    Check vault parameters before anything is compiled.

    Raises:
        ConstructionError: If minimum < 2, minimum > 255, key count > 255 or
            there are fewer keys than minimum
    """
    if minimum < MIN_SIGNATURES:
        raise ConstructionError(f"Minimum signatures must be at least {MIN_SIGNATURES}, got {minimum}")
    if minimum > MAX_KEYS:
        raise ConstructionError(f"Minimum signatures cannot exceed {MAX_KEYS}, got {minimum}")
    if key_count > MAX_KEYS:
        raise ConstructionError(f"A vault cannot have more than {MAX_KEYS} keys, got {key_count}")
    if key_count < minimum:
        raise ConstructionError(
            f"Not enough public keys ({key_count}) for {minimum} required signatures"
        )


class MultiSignGenerator:
    """Generator for ``OP_0 (key OP_CHECKSIGADD)* M OP_NUMEQUAL`` leaves."""

    @staticmethod
    def canonical_keys(public_keys: Iterable[bytes]) -> List[bytes]:
        """x-only keys, deduplicated and sorted ascending by bytes."""
        unique = set()
        for key in public_keys:
            try:
                unique.add(to_x_only(key))
            except InvalidKeyError as e:
                raise ConstructionError(f"Invalid vault public key: {e}")
        return sorted(unique)

    @classmethod
    def compile(cls, public_keys: Iterable[bytes], minimum: int) -> bytes:
        keys = cls.canonical_keys(public_keys)
        validate_threshold(len(keys), minimum)

        builder = ScriptBuilder().push_opcode(Opcode.OP_0)
        for key in keys:
            builder.push_data(key).push_opcode(Opcode.OP_CHECKSIGADD)
        builder.push_number(minimum).push_opcode(Opcode.OP_NUMEQUAL)
        return builder.build()


def vault_tree(public_keys: Iterable[bytes], minimum: int) -> TaprootTree:
    """Script tree of a vault: the multisig leaf first, then the lock leaf."""
    return TaprootTree([
        TapLeaf(MultiSignGenerator.compile(public_keys, minimum)),
        TapLeaf(VAULT_LOCK_LEAF_SCRIPT),
    ])


def vault_address(public_keys: Iterable[bytes], minimum: int, network: str = 'bitcoin') -> str:
    """P2TR address of a vault, committed to the unspendable NUMS internal key."""
    return vault_tree(public_keys, minimum).address(NUMS_INTERNAL_KEY, network)
