"""
tapforge - Taproot script trees

Builds the Merkle tree over tap leaves, the BIP341 output key and the control
blocks needed for script-path spends. Leaf and branch hashing, Merkle paths
and control-block layout come from ``bitcoinutils``; the tweak itself is
computed with coincurve in ``crypto.keys``.
"""

from dataclasses import dataclass
from typing import List, Sequence, Union

from bitcoinutils.keys import PublicKey as UtilsPublicKey
from bitcoinutils.utils import ControlBlock, get_tag_hashed_merkle_root, tapleaf_tagged_hash

from crypto.keys import taproot_tweak_public_key, taproot_output_script, to_x_only
from psbt.exceptions import ConstructionError
from scripts.address import p2tr_address
from scripts.script import CompiledScript

LEAF_VERSION_TAPSCRIPT = 0xc0
MAX_TAPSCRIPT_SIZE = 400_000


@dataclass(frozen=True)
class TapLeaf:
    """Represents a single leaf in the Taproot script tree."""
    script: bytes
    leaf_version: int = LEAF_VERSION_TAPSCRIPT

    def __post_init__(self):
        """Validate leaf parameters."""
        if not self.script:
            raise ConstructionError("Tap leaf script cannot be empty")
        if len(self.script) > MAX_TAPSCRIPT_SIZE:
            raise ConstructionError(f"Tap leaf script too large: {len(self.script)} bytes")
        if self.leaf_version != LEAF_VERSION_TAPSCRIPT:
            raise ConstructionError(f"Invalid leaf version: {self.leaf_version:#x}")

    def leaf_hash(self) -> bytes:
        """Compute TapLeaf hash for this leaf."""
        return tapleaf_tagged_hash(CompiledScript(self.script))


@dataclass(frozen=True)
class TapBranch:
    """Represents an internal node in the Taproot script tree."""
    left: Union['TapBranch', TapLeaf]
    right: Union['TapBranch', TapLeaf]


@dataclass(frozen=True)
class TapLeafScript:
    """Minimum data needed to satisfy a script-path spend."""
    leaf_version: int
    script: bytes
    control_block: bytes


def _library_tree(node: Union[TapBranch, TapLeaf]):
    """Nested ``[left, right]`` lists of scripts, the shape bitcoinutils hashes."""
    if isinstance(node, TapLeaf):
        return CompiledScript(node.script)
    return [_library_tree(node.left), _library_tree(node.right)]


class TaprootTree:
    """
    Balanced script tree over an ordered list of leaves.

    Leaves are paired left to right; an odd node carries up unchanged, so a
    depth-first walk visits the leaves in list order.
    """

    def __init__(self, leaves: Sequence[TapLeaf]):
        if not leaves:
            raise ConstructionError("Script tree needs at least one leaf")
        self.leaves = list(leaves)
        self.root = self._build(self.leaves)
        self.scripts = _library_tree(self.root)

    @staticmethod
    def _build(leaves: List[TapLeaf]) -> Union[TapBranch, TapLeaf]:
        level: List[Union[TapBranch, TapLeaf]] = list(leaves)
        while len(level) > 1:
            next_level = []
            for i in range(0, len(level), 2):
                if i + 1 < len(level):
                    next_level.append(TapBranch(level[i], level[i + 1]))
                else:
                    next_level.append(level[i])
            level = next_level
        return level[0]

    @property
    def merkle_root(self) -> bytes:
        return get_tag_hashed_merkle_root(self.scripts)

    def output_key(self, internal_key: bytes) -> bytes:
        output_key, _ = taproot_tweak_public_key(to_x_only(internal_key), self.merkle_root)
        return output_key

    def control_block(self, leaf: TapLeaf, internal_key: bytes) -> bytes:
        """
        Generate control block for script-path spending.

        Args:
            leaf: Leaf being revealed
            internal_key: Internal key (any encoding reducible to x-only)

        Returns:
            ``(leaf_version | parity) || internal_x || merkle path``
        """
        if leaf not in self.leaves:
            raise ConstructionError("Leaf is not part of this script tree")
        internal_x = to_x_only(internal_key)
        _, parity = taproot_tweak_public_key(internal_x, self.merkle_root)
        block = ControlBlock(
            UtilsPublicKey('02' + internal_x.hex()),
            self.scripts,
            self.leaves.index(leaf),
            is_odd=bool(parity),
        )
        return block.to_bytes()

    def leaf_script(self, leaf: TapLeaf, internal_key: bytes) -> TapLeafScript:
        return TapLeafScript(
            leaf_version=leaf.leaf_version,
            script=leaf.script,
            control_block=self.control_block(leaf, internal_key),
        )

    def script_pubkey(self, internal_key: bytes) -> bytes:
        return taproot_output_script(self.output_key(internal_key))

    def address(self, internal_key: bytes, network: str = 'bitcoin') -> str:
        return p2tr_address(self.output_key(internal_key), network)


def key_path_script_pubkey(internal_key: bytes) -> bytes:
    """P2TR output script for a key with no script tree (BIP86 style)."""
    output_key, _ = taproot_tweak_public_key(to_x_only(internal_key))
    return taproot_output_script(output_key)
