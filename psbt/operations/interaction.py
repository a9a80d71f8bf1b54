"""
Interaction operation: call a contract through an envelope.
"""

from typing import List, Optional, Sequence

from crypto.signer import KeyPairSigner, Signer
from scripts.address import address_to_script
from scripts.challenge import ChallengeSolution
from scripts.compressor import compress
from scripts.envelope import CalldataGenerator
from scripts.features import Feature
from scripts.taproot import TaprootTree
from ..builder import OperationStrategy, TransactionBuilder
from ..exceptions import ConstructionError
from ..psbt import PSBTInput
from ..transaction import TxOutput
from .envelope import EnvelopeSpend


class InteractionOperation(OperationStrategy):
    """
    Args:
        to: Contract address; receives the protocol fee output
        contract_secret: 32-byte contract identifier committed by HASH160
        calldata: Uncompressed call data
        challenge: Epoch challenge solution
        features: Optional feature records
    """

    def __init__(self, to: str, contract_secret: bytes, calldata: bytes,
                 challenge: ChallengeSolution, features: Sequence[Feature] = ()):
        if not calldata:
            raise ConstructionError("Calldata is required")
        self.to = to
        self.contract_secret = contract_secret
        self.calldata = calldata
        self.challenge = challenge
        self.features = list(features)
        self.spend: Optional[EnvelopeSpend] = None

    def prepare(self, builder: TransactionBuilder):
        super().prepare(builder)
        if len(self.calldata) > builder.consensus.max_calldata_size:
            raise ConstructionError(
                f"Calldata exceeds {builder.consensus.max_calldata_size} bytes: {len(self.calldata)}"
            )
        self.to_script = address_to_script(self.to, builder.network)

        script_signer = KeyPairSigner.from_seed(builder.random_bytes)
        generator = CalldataGenerator(builder.signer.public_key, script_signer.public_key,
                                      builder.consensus.chunk_size)
        script = generator.compile(compress(self.calldata), self.contract_secret, self.challenge,
                                   builder.priority_fee, self.features)
        self.spend = EnvelopeSpend(script, builder.signer, script_signer, self.contract_secret)

    def build_script(self) -> bytes:
        return self.spend.script

    def script_tree(self) -> TaprootTree:
        return self.spend.tree

    def script_signers(self) -> List[Signer]:
        return [self.spend.salt_signer]

    def build_witness(self, psbt_input: PSBTInput) -> List[bytes]:
        return self.spend.witness(psbt_input)

    def witness_shape(self):
        return self.spend.witness_shape

    def estimated_extra_outputs(self) -> List[TxOutput]:
        return [TxOutput(self.builder.get_opnet_fee(), self.to_script)]
