"""
Wrap and unwrap: move BTC in and out of a threshold vault while minting or
burning its wrapped counterpart.

Both are contract interactions; they delegate the envelope to an
``InteractionOperation`` and add the vault side on top.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from crypto.keys import NUMS_INTERNAL_KEY
from crypto.signer import Signer
from scripts.address import address_to_script
from scripts.challenge import ChallengeSolution
from scripts.features import Feature
from scripts.taproot import TaprootTree
from ..builder import ExtraInput, OperationStrategy, TransactionBuilder
from ..exceptions import ConstructionError, InsufficientFundsError
from ..fees import pre_estimate_taproot_fees
from ..multisig import VaultParameters
from ..psbt import PSBTInput
from ..transaction import TxOutput
from ..utxo import UTXO
from .interaction import InteractionOperation
from .selectors import encode_burn_calldata, encode_mint_calldata

logger = logging.getLogger(__name__)


def check_vault_address(vault: VaultParameters, address: str, network: str):
    """Regenerate the vault address and compare it with the one provided."""
    expected = vault.address(network)
    if expected != address:
        raise ConstructionError(f"Vault address mismatch: expected {expected}, got {address}")


class _DelegatingOperation(OperationStrategy):
    interaction: InteractionOperation

    def build_script(self) -> bytes:
        return self.interaction.build_script()

    def script_tree(self) -> TaprootTree:
        return self.interaction.script_tree()

    def script_signers(self) -> List[Signer]:
        return self.interaction.script_signers()

    def build_witness(self, psbt_input: PSBTInput) -> List[bytes]:
        return self.interaction.build_witness(psbt_input)

    def witness_shape(self):
        return self.interaction.witness_shape()


class WrapOperation(_DelegatingOperation):
    """
    Deposit ``amount`` into a vault and mint it to ``receiver``.

    The vault output also carries the prepaid fee of the future consolidation.
    """

    def __init__(self, to: str, contract_secret: bytes, amount: int, receiver: bytes,
                 vault: VaultParameters, vault_address: str, challenge: ChallengeSolution,
                 features: Sequence[Feature] = ()):
        self.amount = amount
        self.vault = vault
        self.vault_address = vault_address
        self.interaction = InteractionOperation(
            to, contract_secret, encode_mint_calldata(receiver, amount), challenge, features
        )

    def prepare(self, builder: TransactionBuilder):
        super().prepare(builder)
        minimum = builder.consensus.vault_minimum_amount
        if self.amount < minimum:
            raise ConstructionError(f"Amount is below the minimum required of {minimum} sat")
        check_vault_address(self.vault, self.vault_address, builder.network)
        self.interaction.prepare(builder)

    def estimated_extra_outputs(self) -> List[TxOutput]:
        prepaid = self.builder.consensus.unwrap_consolidation_prepaid_fees_sat
        return self.interaction.estimated_extra_outputs() + [
            TxOutput(self.amount + prepaid, address_to_script(self.vault_address, self.builder.network))
        ]


@dataclass
class VaultUTXOs:
    """Outputs held by one vault."""
    vault: str
    public_keys: List[bytes]
    minimum: int
    utxos: List[UTXO] = field(default_factory=list)

    @property
    def parameters(self) -> VaultParameters:
        return VaultParameters(tuple(self.public_keys), self.minimum)


class UnwrapOperation(_DelegatingOperation):
    """
    Burn ``amount`` of wrapped BTC and withdraw it from the vaults.

    Vault UTXOs are merged as extra script-path inputs the vault signers
    complete later. Outputs after the contract fee: the first vault gets
    back ``Σvault − amount``, the sender gets ``amount − fee_loss``. A vault
    rest below dust goes to the sender instead.
    """

    def __init__(self, to: str, contract_secret: bytes, amount: int,
                 vault_utxos: Sequence[VaultUTXOs], challenge: ChallengeSolution,
                 features: Sequence[Feature] = ()):
        if not vault_utxos or not any(group.utxos for group in vault_utxos):
            raise ConstructionError("No vault UTXOs to unwrap from")
        if amount <= 0:
            raise ConstructionError(f"Unwrap amount must be positive, got {amount}")
        self.amount = amount
        self.vault_utxos = list(vault_utxos)
        self.interaction = InteractionOperation(
            to, contract_secret, encode_burn_calldata(amount), challenge, features
        )
        self.fee_loss = 0

    def prepare(self, builder: TransactionBuilder):
        super().prepare(builder)
        for group in self.vault_utxos:
            parameters = group.parameters
            check_vault_address(parameters, group.vault, builder.network)
            for utxo in group.utxos:
                if utxo.script_pubkey != parameters.script_pubkey:
                    raise ConstructionError(f"UTXO {utxo.outpoint} does not belong to vault {group.vault}")

        total = self.vault_total
        if self.amount > total:
            raise InsufficientFundsError(self.amount, total, f"Vaults hold {total} sat, {self.amount} requested")

        self.fee_loss = self.estimate_fee_loss(builder.fee_rate)
        logger.debug(f"Vault fee loss estimated at {self.fee_loss} sat")
        if self.amount - self.fee_loss < builder.consensus.minimum_dust:
            raise ConstructionError(
                f"Unwrap amount {self.amount} does not cover the vault fee loss of {self.fee_loss} sat"
            )
        self.interaction.prepare(builder)

    @property
    def vault_total(self) -> int:
        return sum(utxo.value for group in self.vault_utxos for utxo in group.utxos)

    def estimate_fee_loss(self, fee_rate: float) -> int:
        """Fee share of the vault inputs and the two outputs they pay."""
        script_size = max(len(group.parameters.script) for group in self.vault_utxos)
        return pre_estimate_taproot_fees(
            fee_rate,
            num_inputs=sum(len(group.utxos) for group in self.vault_utxos),
            num_outputs=2,
            num_signatures=sum(group.minimum * len(group.utxos) for group in self.vault_utxos),
            num_empty_witnesses=sum(
                (len(group.parameters.public_keys) - group.minimum) * len(group.utxos)
                for group in self.vault_utxos
            ),
            script_size=script_size,
        )

    def extra_inputs(self) -> List[ExtraInput]:
        extras = []
        for group in self.vault_utxos:
            parameters = group.parameters
            for utxo in group.utxos:
                extras.append(ExtraInput(
                    utxo=utxo,
                    leaf=parameters.leaf,
                    control_block=parameters.control_block,
                    internal_key=NUMS_INTERNAL_KEY,
                    shape=parameters.input_shape(),
                ))
        return extras

    def estimated_extra_outputs(self) -> List[TxOutput]:
        network = self.builder.network
        rest = self.vault_total - self.amount
        withdrawn = self.amount - self.fee_loss

        outputs = self.interaction.estimated_extra_outputs()
        if rest >= self.builder.consensus.minimum_dust:
            first_vault = address_to_script(self.vault_utxos[0].vault, network)
            outputs.append(TxOutput(rest, first_vault))
        else:
            withdrawn += rest
        outputs.append(TxOutput(withdrawn, self.builder.refund_script))
        return outputs

