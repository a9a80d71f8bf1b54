"""
tapforge - Tweaked transaction base

Turns UTXOs into PSBT inputs for every output type the builders spend and
signs them: Taproot key path with the BIP341-tweaked key, Taproot script
path with the untweaked key against a leaf, P2WPKH and legacy P2PKH.
"""

import logging
from typing import Callable, List, Optional, Tuple

from crypto.exceptions import CryptoError
from crypto.keys import hash160, to_x_only, taproot_output_script, taproot_tweak_public_key
from crypto.signer import Signer, tweak_signer
from scripts.address import ScriptType
from scripts.script import compile_script
from scripts.taproot import TapLeaf
from .consensus import ConsensusConfig, DEFAULT_CONSENSUS
from .exceptions import ConstructionError, SignatureError
from .psbt import PSBT, PSBTInput
from .transaction import (
    SEQUENCE_FINAL,
    SEQUENCE_RBF,
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    TxInput,
    TxOutput,
)
from .utxo import UTXO


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    return b'\x76\xa9\x14' + pubkey_hash + b'\x88\xac'


def leaf_script_of(psbt_input: PSBTInput, index: int) -> Tuple[bytes, bytes, int]:
    """Return (control block, script, leaf version) of a single-leaf script-path input."""
    if len(psbt_input.tap_leaf_scripts) != 1:
        raise SignatureError(f"Input {index} must reveal exactly one tap leaf", index)
    control_block, (script, leaf_version) = next(iter(psbt_input.tap_leaf_scripts.items()))
    return control_block, script, leaf_version


class TweakedTransaction:
    """
    Input generation and signing shared by every builder.

    Args:
        signer: Wallet signer owning the spent outputs
        network: Network name used for addresses
        consensus: Consensus parameters
    """

    def __init__(self, signer: Signer, network: str = 'bitcoin',
                 consensus: ConsensusConfig = DEFAULT_CONSENSUS):
        self.signer = signer
        self.network = network
        self.consensus = consensus
        self.sequence = SEQUENCE_RBF
        self.suppress_signature_errors = False
        self.logger = logging.getLogger(__name__)

    def disable_rbf(self):
        """Use final sequence numbers so the transaction cannot be replaced."""
        self.sequence = SEQUENCE_FINAL

    def ignore_signature_errors(self):
        """Leave inputs that cannot be signed open instead of raising."""
        self.suppress_signature_errors = True

    def generate_psbt_input(self, utxo: UTXO, leaf: Optional[TapLeaf] = None,
                            control_block: Optional[bytes] = None,
                            internal_key: Optional[bytes] = None) -> Tuple[TxInput, PSBTInput]:
        """
        Build the PSBT input that spends utxo.

        Args:
            utxo: Output being spent
            leaf: Tap leaf for a script-path spend; None for a key-path spend
            control_block: Control block proving leaf
            internal_key: Internal key; defaults to the signer's x-only key

        Returns:
            Tuple of (unsigned TxInput, PSBTInput)
        """
        txin = TxInput(utxo.transaction_id, utxo.output_index, sequence=self.sequence)
        script_type = utxo.script_type

        if script_type == ScriptType.P2TR:
            psbt_input = PSBTInput(witness_utxo=TxOutput(utxo.value, utxo.script_pubkey))
            psbt_input.tap_internal_key = internal_key or self.signer.x_only_public_key
            if leaf is not None:
                if control_block is None:
                    raise ConstructionError("Script-path input needs a control block")
                psbt_input.tap_leaf_scripts[control_block] = (leaf.script, leaf.leaf_version)
            return txin, psbt_input

        if leaf is not None:
            raise ConstructionError(f"Script-path spends need a taproot output, got {script_type.value}")

        if script_type == ScriptType.P2WPKH:
            return txin, PSBTInput(witness_utxo=TxOutput(utxo.value, utxo.script_pubkey))

        if script_type == ScriptType.P2PKH:
            return txin, PSBTInput(non_witness_utxo=utxo.non_witness_utxo)

        raise ConstructionError(f"Unsupported UTXO script type {script_type.value} for {utxo.outpoint}")

    def sign_input(self, psbt: PSBT, index: int, signer: Signer,
                   merkle_root: Optional[bytes] = None):
        """
        Sign one input with signer, storing the signature in the PSBT.

        Raises:
            SignatureError: If signer does not own the input
        """
        psbt_input = psbt.inputs[index]
        spent = psbt.spent_output(index)

        try:
            if psbt_input.tap_leaf_scripts:
                self._sign_script_path(psbt, index, signer)
            elif spent.script_pubkey[:2] == b'\x51\x20':
                self._sign_key_path(psbt, index, signer, merkle_root)
            elif spent.script_pubkey[:2] == b'\x00\x14':
                self._sign_p2wpkh(psbt, index, signer, spent)
            elif spent.script_pubkey[:3] == b'\x76\xa9\x14':
                self._sign_p2pkh(psbt, index, signer, spent)
            else:
                raise SignatureError(f"Cannot sign input {index}: unsupported script", index)
        except CryptoError as e:
            raise SignatureError(f"Signing input {index} failed: {e}", index)

        self.logger.debug(f"Signed input {index} with {signer.x_only_public_key.hex()}")

    def _sign_script_path(self, psbt: PSBT, index: int, signer: Signer):
        psbt_input = psbt.inputs[index]
        _, script, leaf_version = leaf_script_of(psbt_input, index)

        x_only = signer.x_only_public_key
        if x_only not in script:
            raise SignatureError(f"Key {x_only.hex()} does not appear in the leaf of input {index}", index)

        scripts, amounts = psbt.prevouts()
        sighash = psbt.tx.taproot_sighash(index, scripts, amounts, SIGHASH_DEFAULT,
                                          leaf_script=script, leaf_version=leaf_version)
        leaf_hash = TapLeaf(script, leaf_version).leaf_hash()
        psbt_input.tap_script_sigs[(x_only, leaf_hash)] = signer.sign_schnorr(sighash)

    def _sign_key_path(self, psbt: PSBT, index: int, signer: Signer, merkle_root: Optional[bytes]):
        psbt_input = psbt.inputs[index]
        spent = psbt.spent_output(index)

        output_key, _ = taproot_tweak_public_key(signer.x_only_public_key, merkle_root)
        if taproot_output_script(output_key) != spent.script_pubkey:
            raise SignatureError(f"Signer does not control taproot input {index}", index)

        scripts, amounts = psbt.prevouts()
        sighash = psbt.tx.taproot_sighash(index, scripts, amounts, SIGHASH_DEFAULT)
        psbt_input.tap_key_sig = tweak_signer(signer, merkle_root).sign_schnorr(sighash)
        if merkle_root is not None:
            psbt_input.tap_merkle_root = merkle_root

    def _sign_p2wpkh(self, psbt: PSBT, index: int, signer: Signer, spent: TxOutput):
        pubkey_hash = hash160(signer.public_key)
        if spent.script_pubkey[2:] != pubkey_hash:
            raise SignatureError(f"Signer does not control P2WPKH input {index}", index)

        sighash = psbt.tx.segwit_v0_sighash(index, p2pkh_script(pubkey_hash), spent.value, SIGHASH_ALL)
        psbt.inputs[index].partial_sigs[signer.public_key] = signer.sign(sighash) + bytes([SIGHASH_ALL])

    def _sign_p2pkh(self, psbt: PSBT, index: int, signer: Signer, spent: TxOutput):
        if spent.script_pubkey[3:23] != hash160(signer.public_key):
            raise SignatureError(f"Signer does not control P2PKH input {index}", index)

        sighash = psbt.tx.legacy_sighash(index, spent.script_pubkey, SIGHASH_ALL)
        psbt.inputs[index].partial_sigs[signer.public_key] = signer.sign(sighash) + bytes([SIGHASH_ALL])

    def finalize_input(self, psbt: PSBT, index: int,
                       script_solution: Optional[Callable[[PSBTInput], List[bytes]]] = None):
        """
        Move the signatures of an input into its final witness or scriptSig.

        Args:
            psbt: PSBT being finalized
            index: Input index
            script_solution: For script-path inputs, returns the witness
                elements that precede the leaf script and control block

        Raises:
            SignatureError: If the input carries no usable signature
        """
        psbt_input = psbt.inputs[index]
        if psbt_input.is_finalized:
            return

        if psbt_input.tap_leaf_scripts:
            if script_solution is None:
                raise SignatureError(f"No script solution for script-path input {index}", index)
            control_block, script, _ = leaf_script_of(psbt_input, index)
            witness = list(script_solution(psbt_input)) + [script, control_block]
            psbt_input.finalize(witness=witness)
            return

        if psbt_input.tap_key_sig:
            psbt_input.finalize(witness=[psbt_input.tap_key_sig])
            return

        if psbt_input.partial_sigs:
            (pubkey, sig), = psbt_input.partial_sigs.items()
            if psbt_input.witness_utxo is not None:
                psbt_input.finalize(witness=[sig, pubkey])
            else:
                psbt_input.finalize(script_sig=compile_script([sig, pubkey]))
            return

        raise SignatureError(f"Input {index} has no signatures to finalize", index)

    @staticmethod
    def key_path_script(signer: Signer) -> bytes:
        """P2TR output script paying to a signer's key with no script tree."""
        output_key, _ = taproot_tweak_public_key(to_x_only(signer.public_key))
        return taproot_output_script(output_key)
