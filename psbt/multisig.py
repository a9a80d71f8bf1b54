"""
tapforge - Threshold multisig vault transactions

Withdraws from an M-of-N vault. Each co-signer imports the PSBT, adds the
signatures for the inputs its key belongs to and passes the base64 on;
whoever brings the count to M finalizes.

The witness of a vault input lists one element per vault key in reverse
canonical order, since ``OP_CHECKSIGADD`` consumes the stack from the top:
a signature where the key signed, an empty element otherwise.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from crypto.keys import NUMS_INTERNAL_KEY, to_x_only
from crypto.signatures import verify_schnorr
from crypto.signer import Signer
from scripts.address import address_to_script, script_to_address
from scripts.multisig import MultiSignGenerator, validate_threshold, vault_tree
from scripts.taproot import TapLeaf, TaprootTree
from .consensus import ConsensusConfig, DEFAULT_CONSENSUS
from .exceptions import ConstructionError, FinalizationError, InsufficientFundsError, SignatureError
from .fees import InputShape, SCHNORR_SIGNATURE_SIZE, estimate_vsize, fee_for, script_path_input
from .psbt import PSBT, PSBTInput
from .transaction import SIGHASH_DEFAULT, Transaction, TxOutput
from .tweaked import TweakedTransaction
from .utxo import UTXO

logger = logging.getLogger(__name__)

SignatureMap = Dict[Tuple[bytes, bytes], bytes]


class InputState(Enum):
    UNSIGNED = "unsigned"
    PARTIALLY_SIGNED = "partially_signed"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class VaultParameters:
    """
    An M-of-N vault. Keys are stored canonically (x-only, unique, ascending),
    so two parameter sets listing the same keys in any order are equal.
    """
    public_keys: Tuple[bytes, ...]
    minimum: int

    def __post_init__(self):
        keys = MultiSignGenerator.canonical_keys(self.public_keys)
        validate_threshold(len(keys), self.minimum)
        object.__setattr__(self, 'public_keys', tuple(keys))

    @property
    def script(self) -> bytes:
        return MultiSignGenerator.compile(self.public_keys, self.minimum)

    @property
    def leaf(self) -> TapLeaf:
        return TapLeaf(self.script)

    @property
    def tree(self) -> TaprootTree:
        return vault_tree(self.public_keys, self.minimum)

    @property
    def control_block(self) -> bytes:
        return self.tree.control_block(self.leaf, NUMS_INTERNAL_KEY)

    @property
    def script_pubkey(self) -> bytes:
        return self.tree.script_pubkey(NUMS_INTERNAL_KEY)

    def address(self, network: str = 'bitcoin') -> str:
        return script_to_address(self.script_pubkey, network)

    def input_shape(self) -> InputShape:
        """Witness shape of a finalized vault input."""
        empty_slots = len(self.public_keys) - self.minimum
        elements = [SCHNORR_SIGNATURE_SIZE] * self.minimum + [0] * empty_slots
        return script_path_input(elements + [len(self.script), len(self.control_block)])

    def owns(self, x_only: bytes) -> bool:
        return x_only in self.public_keys

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VaultParameters':
        return cls(
            public_keys=tuple(bytes.fromhex(key) for key in data['public_keys']),
            minimum=int(data['minimum']),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'public_keys': [key.hex() for key in self.public_keys], 'minimum': self.minimum}


@dataclass
class SigningResult:
    """Outcome of a partial signing pass."""
    signed: bool
    finalizable: List[bool] = field(default_factory=list)


def dedupe_signatures(existing: SignatureMap, new: SignatureMap) -> SignatureMap:
    """
    Merge two signature maps keyed by (x-only key, leaf hash).

    A key signing again replaces its earlier signature, so merging is
    idempotent and never lowers the signature count.
    """
    merged = dict(existing)
    merged.update(new)
    return merged


def _is_vault_input(psbt_input: PSBTInput, vault: VaultParameters) -> bool:
    return any(script == vault.script for script, _ in psbt_input.tap_leaf_scripts.values())


def _vault_signatures(psbt_input: PSBTInput, vault: VaultParameters) -> Dict[bytes, bytes]:
    leaf_hash = vault.leaf.leaf_hash()
    return {
        key: sig for (key, sig_leaf), sig in psbt_input.tap_script_sigs.items()
        if sig_leaf == leaf_hash and vault.owns(key)
    }


def _signature_verifies(psbt: PSBT, index: int, vault: VaultParameters,
                        key: bytes, signature: bytes) -> bool:
    hash_type = SIGHASH_DEFAULT
    if len(signature) == 65:
        hash_type = signature[64]
        if hash_type == SIGHASH_DEFAULT:
            return False
    scripts, amounts = psbt.prevouts()
    try:
        sighash = psbt.tx.taproot_sighash(index, scripts, amounts, hash_type, leaf_script=vault.script)
    except ConstructionError:
        return False
    return verify_schnorr(key, signature, sighash)


def _verified_vault_signatures(psbt: PSBT, index: int, vault: VaultParameters) -> Dict[bytes, bytes]:
    """Vault signatures on input index that verify against its script-path sighash."""
    verified = {}
    for key, signature in _vault_signatures(psbt.inputs[index], vault).items():
        if not _signature_verifies(psbt, index, vault, key, signature):
            logger.warning(f"Dropping invalid signature from {key.hex()} on input {index}")
            continue
        verified[key] = signature
    return verified


def sign_partial(psbt: PSBT, signer: Signer, vault: VaultParameters,
                 start_index: int = 0) -> SigningResult:
    """
    Sign every open vault input from start_index on.

    Inputs that are already finalized or spend another leaf are skipped.

    Raises:
        SignatureError: If the signer's key is not part of the vault
    """
    x_only = to_x_only(signer.public_key)
    if not vault.owns(x_only):
        raise SignatureError(f"Key {x_only.hex()} is not part of the vault")

    tweaked = TweakedTransaction(signer)
    signed = False
    finalizable = []

    for index in range(len(psbt.inputs)):
        psbt_input = psbt.inputs[index]
        if index < start_index or psbt_input.is_finalized or not _is_vault_input(psbt_input, vault):
            finalizable.append(psbt_input.is_finalized)
            continue

        existing = dict(psbt_input.tap_script_sigs)
        psbt_input.tap_script_sigs = {}
        try:
            tweaked.sign_input(psbt, index, signer)
        finally:
            psbt_input.tap_script_sigs = dedupe_signatures(existing, psbt_input.tap_script_sigs)
        signed = True

        count = len(_vault_signatures(psbt_input, vault))
        finalizable.append(count >= vault.minimum)
        logger.info(f"Input {index}: {count}/{vault.minimum} signatures")

    return SigningResult(signed=signed, finalizable=finalizable)


def combine_signatures(psbt: PSBT, other: PSBT) -> PSBT:
    """Fold the script signatures of other into psbt, input by input."""
    if psbt.tx.txid != other.tx.txid:
        raise SignatureError("Cannot combine PSBTs of different transactions")
    for mine, theirs in zip(psbt.inputs, other.inputs):
        mine.tap_script_sigs = dedupe_signatures(mine.tap_script_sigs, theirs.tap_script_sigs)
    return psbt


def attempt_finalize_inputs(psbt: PSBT, vault: VaultParameters, start_index: int = 0) -> bool:
    """
    Finalize every vault input that reached the threshold.

    Only signatures that verify against the input's sighash count; a
    corrupted or foreign one is dropped before the witness is built.
    Exactly ``minimum`` signatures go into the witness, the first ones in
    canonical key order, since surplus valid signatures would push the
    ``OP_CHECKSIGADD`` sum past the threshold.

    Returns:
        True when no vault input is left open
    """
    complete = True
    keys = vault.public_keys

    for index in range(start_index, len(psbt.inputs)):
        psbt_input = psbt.inputs[index]
        if psbt_input.is_finalized or not _is_vault_input(psbt_input, vault):
            continue

        signatures = _verified_vault_signatures(psbt, index, vault)
        if len(signatures) < vault.minimum:
            error = FinalizationError(index, len(signatures), vault.minimum)
            logger.warning(f"{error}")
            complete = False
            continue

        chosen = [key for key in keys if key in signatures][:vault.minimum]
        slots = [signatures[key] if key in chosen else b'' for key in reversed(keys)]
        psbt_input.finalize(witness=slots + [vault.script, vault.control_block])
        logger.debug(f"Finalized vault input {index}")

    return complete


class MultiSignTransaction(TweakedTransaction):
    """
    Vault withdrawal builder and co-signing session.

    Args:
        vault: Vault the inputs belong to
        utxos: Vault outputs to spend
        receiver: Address receiving the requested amount, less the fee
        requested_amount: Satoshis taken out of the vault
        refund_vault: Address receiving what stays in the vault
        fee_rate: sat/vB
        network: Network name
        consensus: Consensus parameters
        psbt: An existing session to resume instead of building
    """

    def __init__(self, vault: VaultParameters, utxos: Sequence[UTXO] = (),
                 receiver: Optional[str] = None, requested_amount: int = 0,
                 refund_vault: Optional[str] = None, fee_rate: float = 1.0,
                 network: str = 'bitcoin', consensus: ConsensusConfig = DEFAULT_CONSENSUS,
                 psbt: Optional[PSBT] = None):
        super().__init__(None, network, consensus)
        self.logger = logging.getLogger(__name__)
        self.vault = vault
        self.utxos = list(utxos)
        self.receiver = receiver
        self.requested_amount = requested_amount
        self.refund_vault = refund_vault
        self.fee_rate = fee_rate
        self.psbt = psbt
        self.fee = 0

    def build_psbt(self) -> PSBT:
        """
        Build the unsigned withdrawal.

        Output 0 returns the rest to refund_vault, output 1 pays the receiver.
        A rest below dust is left to the fee.
        """
        if not self.utxos:
            raise ConstructionError("No vault UTXOs specified")
        if not self.receiver or not self.refund_vault:
            raise ConstructionError("Receiver and refund vault are required")
        if self.requested_amount <= 0:
            raise ConstructionError(f"Requested amount must be positive, got {self.requested_amount}")

        vault_script = self.vault.script_pubkey
        for utxo in self.utxos:
            utxo.validate()
            if utxo.script_pubkey != vault_script:
                raise ConstructionError(f"UTXO {utxo.outpoint} does not belong to the vault")

        total = sum(utxo.value for utxo in self.utxos)
        if self.requested_amount > total:
            raise InsufficientFundsError(self.requested_amount, total)

        receiver_script = address_to_script(self.receiver, self.network)
        refund_script = address_to_script(self.refund_vault, self.network)
        refund = total - self.requested_amount
        dust = self.consensus.minimum_dust

        outputs = [TxOutput(refund, refund_script)] if refund >= dust else []
        shapes = [self.vault.input_shape()] * len(self.utxos)
        scripts = [output.script_pubkey for output in outputs] + [receiver_script]
        self.fee = fee_for(estimate_vsize(shapes, scripts), self.fee_rate)

        receive = self.requested_amount - self.fee
        if receive < dust:
            raise InsufficientFundsError(
                self.fee + dust, self.requested_amount,
                f"Requested amount {self.requested_amount} does not cover the fee of {self.fee} sat",
            )
        outputs.append(TxOutput(receive, receiver_script))
        if refund < dust:
            self.fee += refund
            self.logger.warning(f"Vault change of {refund} sat is below dust, it goes to the fee")

        psbt = PSBT(Transaction())
        leaf = self.vault.leaf
        control_block = self.vault.control_block
        for utxo in self.utxos:
            psbt.add_input(*self.generate_psbt_input(utxo, leaf, control_block, NUMS_INTERNAL_KEY))
        for output in outputs:
            psbt.add_output(output)

        self.psbt = psbt
        self.logger.info(f"Built vault withdrawal of {self.requested_amount} sat, fee {self.fee} sat")
        return psbt

    def _require_psbt(self) -> PSBT:
        if self.psbt is None:
            raise ConstructionError("No PSBT: call build_psbt() or from_base64() first")
        return self.psbt

    def sign(self, signer: Signer, start_index: int = 0) -> SigningResult:
        return sign_partial(self._require_psbt(), signer, self.vault, start_index)

    def finalize(self, start_index: int = 0) -> bool:
        return attempt_finalize_inputs(self._require_psbt(), self.vault, start_index)

    def input_states(self) -> List[InputState]:
        states = []
        for psbt_input in self._require_psbt().inputs:
            if psbt_input.is_finalized:
                states.append(InputState.FINALIZED)
            elif _vault_signatures(psbt_input, self.vault):
                states.append(InputState.PARTIALLY_SIGNED)
            else:
                states.append(InputState.UNSIGNED)
        return states

    def signature_counts(self) -> List[int]:
        return [len(_vault_signatures(i, self.vault)) for i in self._require_psbt().inputs]

    def extract_transaction(self) -> Transaction:
        return self._require_psbt().extract_transaction()

    def to_base64(self) -> str:
        return self._require_psbt().to_base64()

    @classmethod
    def from_base64(cls, psbt_b64: str, vault: VaultParameters, network: str = 'bitcoin',
                    consensus: ConsensusConfig = DEFAULT_CONSENSUS) -> 'MultiSignTransaction':
        """Resume a co-signing session; canonical order comes from vault."""
        return cls(vault, network=network, consensus=consensus, psbt=PSBT.from_base64(psbt_b64))
