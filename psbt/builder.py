"""
tapforge - Transaction builder

A ``TransactionBuilder`` owns inputs, outputs, fees and the sign/finalize
lifecycle. What makes each transaction kind different (its leaf script, its
witness, the outputs it pays) lives in an ``OperationStrategy`` held by the
builder.

Lifecycle::

    UNBUILT --build()--> BUILT --sign()--> SIGNED --finalize()--> FINALIZED
"""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from crypto.signer import Signer
from scripts.address import ScriptType, script_to_address
from scripts.taproot import TapLeaf, TaprootTree
from .consensus import ConsensusConfig, DEFAULT_CONSENSUS
from .exceptions import ConstructionError, FinalizationError, InsufficientFundsError, SignatureError
from .fees import InputShape, estimate_vsize, fee_for, key_path_input, script_path_input
from .psbt import PSBT, PSBTInput
from .transaction import Transaction, TxInput, TxOutput
from .tweaked import TweakedTransaction
from .utils import create_op_return_script
from .utxo import UTXO

RANDOM_BYTES_LENGTH = 32


class BuildState(Enum):
    """Builder lifecycle states."""
    UNBUILT = "unbuilt"
    BUILT = "built"
    SIGNED = "signed"
    FINALIZED = "finalized"


@dataclass
class ExtraInput:
    """
    A script-path input contributed by an operation, such as a vault output.

    The builder never signs it; the PSBT carries it open to its co-signers.
    """
    utxo: UTXO
    leaf: TapLeaf
    control_block: bytes
    internal_key: bytes
    shape: InputShape


@dataclass
class FundingParameters:
    """What a funding transaction must pay so the operation can be built."""
    signer: Signer
    utxos: List[UTXO]
    to_script: bytes
    amount: int
    fee_rate: float
    network: str
    consensus: ConsensusConfig
    refund_script: Optional[bytes] = None
    optional_outputs: List[TxOutput] = field(default_factory=list)


class OperationStrategy(ABC):
    """
    The part of a transaction that depends on the operation being performed.

    ``prepare`` runs inside the builder constructor, so every parameter check
    and script compilation happens before any input is assembled.
    """

    builder: 'TransactionBuilder'

    def prepare(self, builder: 'TransactionBuilder'):
        self.builder = builder

    def build_script(self) -> Optional[bytes]:
        """Target leaf script, or None when the operation spends no script."""
        return None

    def script_tree(self) -> Optional[TaprootTree]:
        return None

    def internal_key(self) -> bytes:
        return self.builder.signer.x_only_public_key

    def script_signers(self) -> List[Signer]:
        """Signers, besides the wallet signer, required on the script-path input."""
        return []

    def build_witness(self, psbt_input: PSBTInput) -> List[bytes]:
        """Witness elements preceding the leaf script and control block."""
        raise SignatureError("Operation has no script-path witness")

    def witness_shape(self) -> Tuple[int, ...]:
        """Byte lengths of the elements build_witness will return."""
        return ()

    @abstractmethod
    def estimated_extra_outputs(self) -> List[TxOutput]:
        """Outputs the operation pays, in order."""

    def add_outputs(self, builder: 'TransactionBuilder'):
        for output in self.estimated_extra_outputs():
            builder.add_output(output)

    def extra_inputs(self) -> List[ExtraInput]:
        return []


class TransactionBuilder(TweakedTransaction):
    """
    Generic builder driving an operation strategy.

    Args:
        signer: Wallet signer; owns the UTXOs and receives the refund
        utxos: Spendable outputs, validated here
        operation: Operation strategy
        fee_rate: sat/vB
        priority_fee: Priority fee paid to the protocol, in satoshis
        gas_sat_fee: Gas prepaid to the protocol, in satoshis
        network: Network name
        consensus: Consensus parameters
        refund_script: Change destination; defaults to the signer's P2TR key path
        note: Optional OP_RETURN payload (at most 80 bytes)
        optional_outputs: Extra outputs appended after the operation's outputs
        optional_inputs: Extra wallet UTXOs spent alongside utxos
        random_bytes: 32 bytes seeding the script signer and secrets
    """

    def __init__(self, signer: Signer, utxos: Sequence[UTXO], operation: OperationStrategy,
                 fee_rate: float, priority_fee: int = 0, gas_sat_fee: int = 0,
                 network: str = 'bitcoin', consensus: ConsensusConfig = DEFAULT_CONSENSUS,
                 refund_script: Optional[bytes] = None, note: Optional[bytes] = None,
                 optional_outputs: Sequence[TxOutput] = (), optional_inputs: Sequence[UTXO] = (),
                 random_bytes: Optional[bytes] = None):
        super().__init__(signer, network, consensus)
        self.logger = logging.getLogger(__name__)

        if not utxos:
            raise ConstructionError("No UTXOs specified")
        for utxo in list(utxos) + list(optional_inputs):
            utxo.validate()
        if fee_rate <= 0:
            raise ConstructionError(f"Fee rate must be positive, got {fee_rate}")
        if priority_fee < 0 or gas_sat_fee < 0:
            raise ConstructionError("Priority and gas fees cannot be negative")
        if note is not None:
            create_op_return_script(note)

        self.utxos = list(utxos)
        self.optional_inputs = list(optional_inputs)
        self.optional_outputs = list(optional_outputs)
        self.fee_rate = fee_rate
        self.priority_fee = priority_fee
        self.gas_sat_fee = gas_sat_fee
        self.note = note
        self.refund_script = refund_script or self.key_path_script(signer)

        self.random_bytes = random_bytes if random_bytes is not None else secrets.token_bytes(RANDOM_BYTES_LENGTH)
        if len(self.random_bytes) != RANDOM_BYTES_LENGTH:
            raise ConstructionError(f"Random bytes must be {RANDOM_BYTES_LENGTH} bytes")

        self.state = BuildState.UNBUILT
        self.psbt: Optional[PSBT] = None
        self.input_shapes: List[InputShape] = []
        self.total_input_amount = 0
        self.amount_spent = 0
        self.fee = 0
        self.overflow_fees = 0
        self.refund_output: Optional[int] = None
        self._script_inputs: List[int] = []
        self._foreign_inputs: List[int] = []
        self._open_reasons: Dict[int, str] = {}

        self.operation = operation
        self.operation.prepare(self)

    # Script address

    @property
    def target_leaf(self) -> Optional[TapLeaf]:
        script = self.operation.build_script()
        return TapLeaf(script) if script is not None else None

    def script_pubkey(self) -> Optional[bytes]:
        """Output script of the operation's script address, if it has one."""
        tree = self.operation.script_tree()
        if tree is None:
            return None
        return tree.script_pubkey(self.operation.internal_key())

    def script_address(self) -> Optional[str]:
        script = self.script_pubkey()
        return script_to_address(script, self.network) if script else None

    def script_input_shape(self) -> InputShape:
        tree = self.operation.script_tree()
        leaf = self.target_leaf
        control_block = tree.control_block(leaf, self.operation.internal_key())
        return script_path_input(self.operation.witness_shape() + (len(leaf.script), len(control_block)))

    # Amounts

    def get_opnet_fee(self) -> int:
        """Protocol fee output value, never below dust."""
        return max(self.priority_fee + self.gas_sat_fee, self.consensus.minimum_dust)

    def add_output(self, output: TxOutput) -> int:
        """
        Add an output to the transaction being built.

        Raises:
            ConstructionError: If the value is below dust (OP_RETURN excepted)
        """
        if self.psbt is None:
            raise ConstructionError("Outputs can only be added while building")
        is_op_return = output.script_pubkey[:1] == b'\x6a'
        if not is_op_return and output.value < self.consensus.minimum_dust:
            raise ConstructionError(
                f"Output value is less than the minimum dust {output.value} < {self.consensus.minimum_dust}"
            )
        self.amount_spent += output.value
        return self.psbt.add_output(output)

    # Inputs

    def _wallet_shape(self, utxo: UTXO) -> InputShape:
        if utxo.script_type == ScriptType.P2TR:
            return key_path_input()
        return InputShape(utxo.script_type)

    def _add_inputs(self):
        script_pubkey = self.script_pubkey()
        tree = self.operation.script_tree()
        leaf = self.target_leaf

        for utxo in self.utxos + self.optional_inputs:
            if script_pubkey is not None and utxo.script_pubkey == script_pubkey:
                internal_key = self.operation.internal_key()
                control_block = tree.control_block(leaf, internal_key)
                txin, psbt_input = self.generate_psbt_input(utxo, leaf, control_block, internal_key)
                shape = self.script_input_shape()
                self._script_inputs.append(len(self.psbt.inputs))
            else:
                txin, psbt_input = self.generate_psbt_input(utxo)
                shape = self._wallet_shape(utxo)
            self._append_input(utxo, txin, psbt_input, shape)

        for extra in self.operation.extra_inputs():
            extra.utxo.validate()
            self._foreign_inputs.append(len(self.psbt.inputs))
            txin, psbt_input = self.generate_psbt_input(
                extra.utxo, extra.leaf, extra.control_block, extra.internal_key
            )
            self._append_input(extra.utxo, txin, psbt_input, extra.shape)

    def _append_input(self, utxo: UTXO, txin: TxInput, psbt_input: PSBTInput, shape: InputShape):
        self.psbt.add_input(txin, psbt_input)
        self.input_shapes.append(shape)
        self.total_input_amount += utxo.value

    # Lifecycle

    def _require(self, state: BuildState, action: str):
        if self.state != state:
            raise ConstructionError(f"Cannot {action} in state {self.state.value}")

    def build(self) -> PSBT:
        """
        Assemble inputs, operation outputs, optional outputs, note and refund.

        Returns:
            The unsigned PSBT
        """
        self._require(BuildState.UNBUILT, "build")

        self.psbt = PSBT(Transaction())
        self._add_inputs()
        self.operation.add_outputs(self)
        for output in self.optional_outputs:
            self.add_output(output)
        if self.note is not None:
            self.add_output(TxOutput(0, create_op_return_script(self.note)))
        self._add_refund_output()

        self.state = BuildState.BUILT
        self.logger.info(
            f"Built transaction: {len(self.psbt.inputs)} inputs, {len(self.psbt.tx.outputs)} outputs, "
            f"fee {self.fee} sat"
        )
        return self.psbt

    def _estimate_fee(self, extra_scripts: Sequence[bytes] = ()) -> int:
        scripts = [output.script_pubkey for output in self.psbt.tx.outputs] + list(extra_scripts)
        return fee_for(estimate_vsize(self.input_shapes, scripts), self.fee_rate)

    def _add_refund_output(self):
        """
        Return what is left to refund_script, or donate it to the fee when
        a change output would be dust.
        """
        send_back = self.total_input_amount - self.amount_spent
        if send_back < 0:
            raise InsufficientFundsError(self.amount_spent, self.total_input_amount)

        fee_without_change = self._estimate_fee()
        fee_with_change = self._estimate_fee([self.refund_script])
        dust = self.consensus.minimum_dust

        if send_back - fee_with_change >= dust:
            self.fee = fee_with_change
            self.refund_output = self.psbt.add_output(TxOutput(send_back - fee_with_change, self.refund_script))
            self.logger.debug(f"Refund output of {send_back - fee_with_change} sat")
            return

        if send_back < fee_without_change:
            raise InsufficientFundsError(
                self.amount_spent + fee_without_change,
                self.total_input_amount,
                f"Insufficient funds to pay the fees: {fee_without_change} sat needed, "
                f"{send_back} sat left after outputs",
            )

        self.fee = send_back
        self.overflow_fees = send_back - fee_without_change
        if self.overflow_fees:
            self.logger.warning(
                f"Amount to send back ({send_back - fee_with_change} sat) is below dust ({dust} sat), "
                f"{self.overflow_fees} sat will be consumed in fees instead"
            )

    @property
    def refund_amount(self) -> int:
        if self.refund_output is None:
            return 0
        return self.psbt.tx.outputs[self.refund_output].value

    def _signers_for(self, index: int) -> List[Signer]:
        if index in self._script_inputs:
            return self.operation.script_signers() + [self.signer]
        return [self.signer]

    def sign(self) -> PSBT:
        """Sign every input this builder holds keys for."""
        self._require(BuildState.BUILT, "sign")

        for index in range(len(self.psbt.inputs)):
            if index in self._foreign_inputs:
                continue
            for signer in self._signers_for(index):
                try:
                    self.sign_input(self.psbt, index, signer)
                except SignatureError as e:
                    if not self.suppress_signature_errors:
                        raise
                    self._open_reasons.setdefault(index, f"could not be signed: {e}")
                    self.logger.error(f"Ignoring signature error on input {index}: {e}")

        self.state = BuildState.SIGNED
        return self.psbt

    def finalize(self) -> PSBT:
        """
        Build the final witness of every signed input.

        Inputs left open on purpose (signature errors suppressed) stay in the
        PSBT for another party to complete.
        """
        self._require(BuildState.SIGNED, "finalize")

        for index in range(len(self.psbt.inputs)):
            if index in self._foreign_inputs:
                self._open_reasons[index] = "is left open for its co-signers"
                self.logger.debug(f"Input {index} left for its co-signers")
                continue
            solution = self.operation.build_witness if index in self._script_inputs else None
            try:
                self.finalize_input(self.psbt, index, solution)
            except SignatureError as e:
                if not self.suppress_signature_errors:
                    raise
                self._open_reasons.setdefault(index, f"could not be finalized: {e}")
                self.logger.warning(f"Input {index} left open: {e}")

        self.state = BuildState.FINALIZED
        return self.psbt

    @property
    def open_inputs(self) -> List[int]:
        if self.psbt is None:
            return []
        return [i for i, psbt_input in enumerate(self.psbt.inputs) if not psbt_input.is_finalized]

    def open_reason(self, index: int) -> str:
        """Why input index was left open, as recorded while signing and finalizing."""
        return self._open_reasons.get(index, "is not finalized")

    def sign_psbt(self) -> PSBT:
        """Run the whole lifecycle and return the PSBT, open inputs included."""
        if self.state == BuildState.UNBUILT:
            self.build()
        if self.state == BuildState.BUILT:
            self.sign()
        if self.state == BuildState.SIGNED:
            self.finalize()
        return self.psbt

    def sign_transaction(self) -> Transaction:
        """
        Build, sign and finalize.

        Raises:
            FinalizationError: If an input could not be finalized
        """
        self.sign_psbt()
        open_inputs = self.open_inputs
        if open_inputs:
            raise FinalizationError(open_inputs[0], reason=self.open_reason(open_inputs[0]))
        return self.psbt.extract_transaction()

    # Funding

    def get_funding_parameters(self) -> FundingParameters:
        """
        Parameters of the transaction that funds this one's script address.

        The amount covers every output of this transaction plus its fee,
        less what the other inputs already bring in.
        """
        script_pubkey = self.script_pubkey()
        if script_pubkey is None:
            raise ConstructionError("Operation has no script address to fund")

        shapes = [self.script_input_shape()]
        shapes += [self._wallet_shape(utxo) for utxo in self.optional_inputs]
        extras = self.operation.extra_inputs()
        shapes += [extra.shape for extra in extras]

        outputs = self.operation.estimated_extra_outputs() + self.optional_outputs
        scripts = [output.script_pubkey for output in outputs]
        if self.note is not None:
            scripts.append(create_op_return_script(self.note))

        fee = fee_for(estimate_vsize(shapes, scripts), self.fee_rate)
        brought_in = sum(utxo.value for utxo in self.optional_inputs)
        brought_in += sum(extra.utxo.value for extra in extras)
        amount = sum(output.value for output in outputs) + fee - brought_in

        return FundingParameters(
            signer=self.signer,
            utxos=list(self.utxos),
            to_script=script_pubkey,
            amount=max(amount, self.consensus.minimum_dust),
            fee_rate=self.fee_rate,
            network=self.network,
            consensus=self.consensus,
            refund_script=self.refund_script,
        )
