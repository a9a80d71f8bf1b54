"""
Spending side of an envelope leaf, shared by the operations that reveal one.
"""

from typing import List, Tuple

from crypto.signer import Signer
from scripts.envelope import SECRET_LENGTH, envelope_tree
from scripts.taproot import TapLeaf
from ..exceptions import SignatureError
from ..fees import SCHNORR_SIGNATURE_SIZE
from ..psbt import PSBTInput


class EnvelopeSpend:
    """
    Script tree and witness of a compiled envelope.

    The tree is ``[envelope, lock]``; the witness solution is
    ``[secret, salt_key_sig, sender_sig]``, sender signature on top.
    """

    witness_shape: Tuple[int, ...] = (SECRET_LENGTH, SCHNORR_SIGNATURE_SIZE, SCHNORR_SIGNATURE_SIZE)

    def __init__(self, script: bytes, sender: Signer, salt_signer: Signer, secret: bytes):
        self.script = script
        self.leaf = TapLeaf(script)
        self.tree = envelope_tree(script, sender.public_key)
        self.sender = sender
        self.salt_signer = salt_signer
        self.secret = secret

    def _signature(self, psbt_input: PSBTInput, signer: Signer) -> bytes:
        key = (signer.x_only_public_key, self.leaf.leaf_hash())
        signature = psbt_input.tap_script_sigs.get(key)
        if signature is None:
            raise SignatureError(f"Missing envelope signature from {key[0].hex()}")
        return signature

    def witness(self, psbt_input: PSBTInput) -> List[bytes]:
        return [
            self.secret,
            self._signature(psbt_input, self.salt_signer),
            self._signature(psbt_input, self.sender),
        ]
