"""
Deployment operation: publish contract bytecode through an envelope.

The contract key is derived from the deployer, the salt and the bytecode,
so the contract address is known before the transaction is mined::

    contract_seed = hash256(xsender ‖ hash256(salt) ‖ hash256(bytecode))
"""

from typing import List, Optional, Sequence

from crypto.keys import hash256
from crypto.signer import KeyPairSigner, Signer
from scripts.address import script_to_address
from scripts.challenge import ChallengeSolution
from scripts.compressor import compress
from scripts.envelope import DeploymentGenerator
from scripts.features import Feature
from scripts.taproot import TaprootTree, key_path_script_pubkey
from ..builder import OperationStrategy, TransactionBuilder
from ..exceptions import ConstructionError
from ..psbt import PSBTInput
from ..transaction import TxOutput
from .envelope import EnvelopeSpend

BYTECODE_VERSION = b'\x00'


class DeploymentOperation(OperationStrategy):
    """
    Args:
        bytecode: Uncompressed contract bytecode
        challenge: Epoch challenge solution
        calldata: Optional constructor calldata
        features: Optional feature records
    """

    def __init__(self, bytecode: bytes, challenge: ChallengeSolution,
                 calldata: Optional[bytes] = None, features: Sequence[Feature] = ()):
        if not bytecode:
            raise ConstructionError("Bytecode is required")
        self.bytecode = bytecode
        self.challenge = challenge
        self.calldata = calldata
        self.features = list(features)
        self.spend: Optional[EnvelopeSpend] = None

    def prepare(self, builder: TransactionBuilder):
        super().prepare(builder)
        consensus = builder.consensus
        if len(self.bytecode) > consensus.max_contract_size:
            raise ConstructionError(
                f"Contract bytecode exceeds {consensus.max_contract_size} bytes: {len(self.bytecode)}"
            )
        if self.calldata and len(self.calldata) > consensus.max_calldata_size:
            raise ConstructionError(f"Calldata exceeds {consensus.max_calldata_size} bytes")

        self.salt = builder.random_bytes
        self.compressed_bytecode = compress(BYTECODE_VERSION + self.bytecode)
        self.contract_seed = hash256(
            builder.signer.x_only_public_key + hash256(self.salt) + hash256(self.compressed_bytecode)
        )
        self.contract_signer = KeyPairSigner.from_seed(self.contract_seed)

        generator = DeploymentGenerator(builder.signer.public_key, self.contract_signer.public_key,
                                        consensus.chunk_size)
        script = generator.compile(
            self.compressed_bytecode, self.salt, self.challenge, builder.priority_fee,
            compress(self.calldata) if self.calldata else None, self.features,
        )
        self.spend = EnvelopeSpend(script, builder.signer, self.contract_signer, self.salt)

    @property
    def contract_script(self) -> bytes:
        return key_path_script_pubkey(self.contract_signer.x_only_public_key)

    @property
    def contract_address(self) -> str:
        return script_to_address(self.contract_script, self.builder.network)

    def build_script(self) -> bytes:
        return self.spend.script

    def script_tree(self) -> TaprootTree:
        return self.spend.tree

    def script_signers(self) -> List[Signer]:
        return [self.contract_signer]

    def build_witness(self, psbt_input: PSBTInput) -> List[bytes]:
        return self.spend.witness(psbt_input)

    def witness_shape(self):
        return self.spend.witness_shape

    def estimated_extra_outputs(self) -> List[TxOutput]:
        return [TxOutput(self.builder.get_opnet_fee(), self.contract_script)]
