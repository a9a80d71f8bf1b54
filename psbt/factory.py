"""
tapforge - Transaction factory

Envelope operations spend a script address that does not hold any coins
yet, so each of them is a pair: a funding transaction paying the script
address exactly what the operation needs, then the operation spending that
output. The factory runs both builders and returns the signed pair.

1. Build the operation speculatively from the wallet UTXOs, to validate
   parameters and learn the script address.
2. Ask the builder what the funding output must hold.
3. Sign the funding transaction.
4. Rebuild the operation on the funding output with the same random bytes,
   so the script address does not change.
"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from crypto.signer import Signer
from scripts.challenge import ChallengeSolution
from scripts.features import Feature
from .builder import FundingParameters, OperationStrategy, TransactionBuilder
from .consensus import ConsensusConfig, DEFAULT_CONSENSUS
from .exceptions import ConstructionError, FinalizationError
from .multisig import VaultParameters
from .operations import (
    CancelOperation,
    DeploymentOperation,
    FundingOperation,
    InteractionOperation,
    UnwrapOperation,
    VaultUTXOs,
    WrapOperation,
)
from .transaction import Transaction, TxOutput
from .utxo import UTXO


@dataclass
class TransactionParameters:
    """Parameters shared by every factory call."""
    signer: Signer
    utxos: List[UTXO]
    fee_rate: float
    priority_fee: int = 0
    gas_sat_fee: int = 0
    network: str = 'bitcoin'
    consensus: ConsensusConfig = DEFAULT_CONSENSUS
    refund_script: Optional[bytes] = None
    note: Optional[bytes] = None
    optional_outputs: List[TxOutput] = field(default_factory=list)
    optional_inputs: List[UTXO] = field(default_factory=list)
    random_bytes: Optional[bytes] = None


@dataclass
class InteractionParameters(TransactionParameters):
    to: str = ''
    contract_secret: bytes = b''
    calldata: bytes = b''
    challenge: Optional[ChallengeSolution] = None
    features: List[Feature] = field(default_factory=list)


@dataclass
class DeploymentParameters(TransactionParameters):
    bytecode: bytes = b''
    challenge: Optional[ChallengeSolution] = None
    calldata: Optional[bytes] = None
    features: List[Feature] = field(default_factory=list)


@dataclass
class WrapParameters(TransactionParameters):
    to: str = ''
    contract_secret: bytes = b''
    amount: int = 0
    receiver: bytes = b''
    vault: Optional[VaultParameters] = None
    vault_address: str = ''
    challenge: Optional[ChallengeSolution] = None
    features: List[Feature] = field(default_factory=list)


@dataclass
class UnwrapParameters(TransactionParameters):
    to: str = ''
    contract_secret: bytes = b''
    amount: int = 0
    vault_utxos: List[VaultUTXOs] = field(default_factory=list)
    challenge: Optional[ChallengeSolution] = None
    features: List[Feature] = field(default_factory=list)


@dataclass
class CancelParameters(TransactionParameters):
    """utxos are the stuck envelope outputs; optional_inputs may add wallet coins for the fee."""
    compiled_target_script: bytes = b''


@dataclass
class FundingRequest:
    signer: Signer
    utxos: List[UTXO]
    to_script: bytes
    amount: int
    fee_rate: float
    network: str = 'bitcoin'
    consensus: ConsensusConfig = DEFAULT_CONSENSUS
    refund_script: Optional[bytes] = None
    split_inputs_into: int = 1


@dataclass
class FundingResponse:
    tx_hex: str
    original_amount: int
    fee: int
    next_utxos: List[UTXO]


@dataclass
class InteractionResponse:
    funding_transaction: str
    interaction_transaction: str
    estimated_fees: int
    next_utxos: List[UTXO]


@dataclass
class DeploymentResponse:
    funding_transaction: str
    deployment_transaction: str
    contract_address: str
    contract_public_key: str
    estimated_fees: int
    next_utxos: List[UTXO]


@dataclass
class CancelResponse:
    transaction: str
    estimated_fees: int
    next_utxos: List[UTXO]


@dataclass
class UnwrapResponse:
    funding_transaction: str
    psbt: str
    fee_loss: int
    next_utxos: List[UTXO]


def refund_utxos(tx: Transaction, builder: TransactionBuilder) -> List[UTXO]:
    """Wallet outputs a signed transaction sends back to its signer."""
    if builder.refund_output is None:
        return []
    output = tx.outputs[builder.refund_output]
    return [UTXO(tx.txid, builder.refund_output, output.value, output.script_pubkey)]


class TransactionFactory:
    """Signs funding + operation pairs."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _builder(self, params: TransactionParameters, operation: OperationStrategy,
                 utxos: Sequence[UTXO], random_bytes: Optional[bytes],
                 optional_inputs: Sequence[UTXO] = ()) -> TransactionBuilder:
        return TransactionBuilder(
            signer=params.signer,
            utxos=utxos,
            operation=operation,
            fee_rate=params.fee_rate,
            priority_fee=params.priority_fee,
            gas_sat_fee=params.gas_sat_fee,
            network=params.network,
            consensus=params.consensus,
            refund_script=params.refund_script,
            note=params.note,
            optional_outputs=params.optional_outputs,
            optional_inputs=optional_inputs,
            random_bytes=random_bytes,
        )

    def _sign_funding(self, funding: FundingParameters):
        builder = TransactionBuilder(
            signer=funding.signer,
            utxos=funding.utxos,
            operation=FundingOperation(funding.to_script, funding.amount),
            fee_rate=funding.fee_rate,
            network=funding.network,
            consensus=funding.consensus,
            refund_script=funding.refund_script,
        )
        tx = builder.sign_transaction()
        self.logger.info(f"Signed funding transaction {tx.txid} paying {funding.amount} sat")
        return tx, builder

    def _fund_and_rebuild(self, params: TransactionParameters,
                          make_operation: Callable[[], OperationStrategy]):
        """
        Run the funding flow and return the funding tx and its builder, the
        final builder and the wallet change.
        """
        random_bytes = params.random_bytes or secrets.token_bytes(32)

        speculative = self._builder(params, make_operation(), params.utxos, random_bytes,
                                    params.optional_inputs)
        speculative.build()
        funding = speculative.get_funding_parameters()

        funding_tx, funding_builder = self._sign_funding(funding)
        funding_utxo = UTXO(funding_tx.txid, 0, funding.amount, funding.to_script)

        final = self._builder(params, make_operation(), [funding_utxo], random_bytes,
                              params.optional_inputs)
        return funding_tx, final, refund_utxos(funding_tx, funding_builder)

    @staticmethod
    def _require_challenge(params):
        if params.challenge is None:
            raise ConstructionError("A challenge solution is required")

    def sign_interaction(self, params: InteractionParameters) -> InteractionResponse:
        self._require_challenge(params)

        def make_operation():
            return InteractionOperation(params.to, params.contract_secret, params.calldata,
                                        params.challenge, params.features)

        funding_tx, builder, next_utxos = self._fund_and_rebuild(params, make_operation)
        tx = builder.sign_transaction()
        return InteractionResponse(
            funding_transaction=funding_tx.to_hex(),
            interaction_transaction=tx.to_hex(),
            estimated_fees=builder.fee,
            next_utxos=next_utxos,
        )

    def sign_deployment(self, params: DeploymentParameters) -> DeploymentResponse:
        self._require_challenge(params)

        def make_operation():
            return DeploymentOperation(params.bytecode, params.challenge, params.calldata, params.features)

        funding_tx, builder, next_utxos = self._fund_and_rebuild(params, make_operation)
        tx = builder.sign_transaction()
        operation = builder.operation
        return DeploymentResponse(
            funding_transaction=funding_tx.to_hex(),
            deployment_transaction=tx.to_hex(),
            contract_address=operation.contract_address,
            contract_public_key=operation.contract_signer.public_key.hex(),
            estimated_fees=builder.fee,
            next_utxos=next_utxos,
        )

    def wrap(self, params: WrapParameters) -> InteractionResponse:
        self._require_challenge(params)
        if params.vault is None:
            raise ConstructionError("Vault parameters are required to wrap")

        def make_operation():
            return WrapOperation(params.to, params.contract_secret, params.amount, params.receiver,
                                 params.vault, params.vault_address, params.challenge, params.features)

        funding_tx, builder, next_utxos = self._fund_and_rebuild(params, make_operation)
        tx = builder.sign_transaction()
        return InteractionResponse(
            funding_transaction=funding_tx.to_hex(),
            interaction_transaction=tx.to_hex(),
            estimated_fees=builder.fee,
            next_utxos=next_utxos,
        )

    def unwrap(self, params: UnwrapParameters) -> UnwrapResponse:
        """
        Sign the funding and the wallet side of an unwrap.

        The vault inputs stay open: the returned PSBT goes to the vault
        signers, who finish it with ``MultiSignTransaction``.
        """
        self._require_challenge(params)

        def make_operation():
            return UnwrapOperation(params.to, params.contract_secret, params.amount,
                                   params.vault_utxos, params.challenge, params.features)

        funding_tx, builder, next_utxos = self._fund_and_rebuild(params, make_operation)
        psbt = builder.sign_psbt()
        if not psbt.inputs[0].is_finalized:
            raise FinalizationError(0, reason=builder.open_reason(0))

        return UnwrapResponse(
            funding_transaction=funding_tx.to_hex(),
            psbt=psbt.to_base64(),
            fee_loss=builder.operation.fee_loss,
            next_utxos=next_utxos,
        )

    def create_funding(self, request: FundingRequest) -> FundingResponse:
        """Plain payment of amount to a script, split over equal outputs if asked."""
        builder = TransactionBuilder(
            signer=request.signer,
            utxos=request.utxos,
            operation=FundingOperation(request.to_script, request.amount, request.split_inputs_into),
            fee_rate=request.fee_rate,
            network=request.network,
            consensus=request.consensus,
            refund_script=request.refund_script,
        )
        tx = builder.sign_transaction()
        return FundingResponse(
            tx_hex=tx.to_hex(),
            original_amount=request.amount,
            fee=builder.fee,
            next_utxos=refund_utxos(tx, builder),
        )

    def cancel(self, params: CancelParameters) -> CancelResponse:
        """
        Spend stuck envelope outputs through their lock leaf back to the wallet.

        Raises:
            ConstructionError: If nothing would be left for the refund output
        """
        builder = self._builder(params, CancelOperation(params.compiled_target_script), params.utxos,
                                params.random_bytes, params.optional_inputs)
        builder.build()
        if builder.refund_output is None:
            raise ConstructionError("Must add extra UTXOs to cancel this transaction")

        tx = builder.sign_transaction()
        self.logger.info(f"Signed cancel transaction {tx.txid} refunding {builder.refund_amount} sat")
        return CancelResponse(
            transaction=tx.to_hex(),
            estimated_fees=builder.fee,
            next_utxos=refund_utxos(tx, builder),
        )
