"""
Cancel operation: recover the coins of an envelope address that was funded
but never revealed.

The envelope tree is ``[envelope, lock]``; the lock leaf is
``<x_sender> OP_CHECKSIG``, so the sender alone can spend it and send the
funds back to the refund script.
"""

from typing import List

from scripts.envelope import envelope_tree, lock_leaf_script
from scripts.taproot import TapLeaf, TaprootTree
from ..builder import OperationStrategy, TransactionBuilder
from ..exceptions import ConstructionError, SignatureError
from ..fees import SCHNORR_SIGNATURE_SIZE
from ..psbt import PSBTInput
from ..transaction import TxOutput


class CancelOperation(OperationStrategy):
    """
    Args:
        compiled_target_script: Envelope script committed in the stuck address
    """

    def __init__(self, compiled_target_script: bytes):
        if not compiled_target_script:
            raise ConstructionError("The compiled envelope script is required to cancel")
        self.compiled_target_script = compiled_target_script

    def prepare(self, builder: TransactionBuilder):
        super().prepare(builder)
        sender = builder.signer.public_key
        self.lock = TapLeaf(lock_leaf_script(sender))
        self.tree = envelope_tree(self.compiled_target_script, sender)
        script_pubkey = self.tree.script_pubkey(self.internal_key())
        for utxo in builder.utxos:
            if utxo.script_pubkey != script_pubkey:
                raise ConstructionError(f"UTXO {utxo.outpoint} is not locked by this envelope")

    def build_script(self) -> bytes:
        return self.lock.script

    def script_tree(self) -> TaprootTree:
        return self.tree

    def build_witness(self, psbt_input: PSBTInput) -> List[bytes]:
        key = (self.builder.signer.x_only_public_key, self.lock.leaf_hash())
        signature = psbt_input.tap_script_sigs.get(key)
        if signature is None:
            raise SignatureError(f"Missing lock leaf signature from {key[0].hex()}")
        return [signature]

    def witness_shape(self):
        return (SCHNORR_SIGNATURE_SIZE,)

    def estimated_extra_outputs(self) -> List[TxOutput]:
        return []
