"""
Threshold vault commands: derive a vault address and pass a withdrawal PSBT
between co-signers.
"""

from typing import Tuple

import click

from crypto.signer import KeyPairSigner
from psbt.multisig import MultiSignTransaction, VaultParameters, combine_signatures
from psbt.psbt import PSBT
from scripts.script import script_to_asm
from ..context import CLIContext, handle_cli_error, load_structured_file, pass_context


def _load_vault(path: str) -> VaultParameters:
    data = load_structured_file(path)
    if not isinstance(data, dict) or 'public_keys' not in data or 'minimum' not in data:
        raise click.BadParameter(f"{path} must define public_keys and minimum", param_hint='--vault')
    return VaultParameters.from_dict(data)


def _session_status(session: MultiSignTransaction):
    counts = session.signature_counts()
    return [
        f"input {index}: {state.value} ({count}/{session.vault.minimum})"
        for index, (state, count) in enumerate(zip(session.input_states(), counts))
    ]


@click.group()
@pass_context
def vault(ctx: CLIContext):
    """
    Threshold (M-of-N) vault commands.
    """
    ctx.logger.debug("Vault command group invoked")


@vault.command('address')
@click.argument('public_keys', nargs=-1, required=True)
@click.option('--minimum', '-m', type=int, required=True, help='Signatures required')
@pass_context
@handle_cli_error
def vault_address(ctx: CLIContext, public_keys: Tuple[str, ...], minimum: int):
    """
    Show the canonical keys, leaf script and address of a vault.

    Examples:
        tapforge vault address 02ab.. 03cd.. 02ef.. -m 2
    """
    parameters = VaultParameters(tuple(bytes.fromhex(key) for key in public_keys), minimum)
    ctx.output({
        'address': parameters.address(ctx.network),
        'minimum': parameters.minimum,
        'public_keys': [key.hex() for key in parameters.public_keys],
        'script': script_to_asm(parameters.script),
    })


@vault.command('sign')
@click.argument('psbt_b64')
@click.option('--vault', 'vault_file', required=True, type=click.Path(exists=True),
              help='YAML/JSON file with public_keys and minimum')
@click.option('--key', 'key_hex', required=True, help='Private key (hex) of one vault signer')
@click.option('--start-index', type=int, default=0, help='First input to sign')
@pass_context
@handle_cli_error
def vault_sign(ctx: CLIContext, psbt_b64: str, vault_file: str, key_hex: str, start_index: int):
    """
    Add one co-signer's signatures and print the updated PSBT.
    """
    session = MultiSignTransaction.from_base64(psbt_b64, _load_vault(vault_file), ctx.network, ctx.consensus)
    result = session.sign(KeyPairSigner.from_hex(key_hex), start_index)
    ctx.output({
        'psbt': session.to_base64(),
        'signed': result.signed,
        'finalizable': all(result.finalizable),
        'inputs': _session_status(session),
    })


@vault.command('combine')
@click.argument('psbts', nargs=-1, required=True)
@pass_context
@handle_cli_error
def vault_combine(ctx: CLIContext, psbts: Tuple[str, ...]):
    """
    Merge the signatures of several copies of the same PSBT.
    """
    merged = PSBT.from_base64(psbts[0])
    for other in psbts[1:]:
        combine_signatures(merged, PSBT.from_base64(other))
    ctx.output({'psbt': merged.to_base64()})


@vault.command('finalize')
@click.argument('psbt_b64')
@click.option('--vault', 'vault_file', required=True, type=click.Path(exists=True),
              help='YAML/JSON file with public_keys and minimum')
@pass_context
@handle_cli_error
def vault_finalize(ctx: CLIContext, psbt_b64: str, vault_file: str):
    """
    Finalize the inputs that reached the threshold; print the raw
    transaction when every input is final.
    """
    session = MultiSignTransaction.from_base64(psbt_b64, _load_vault(vault_file), ctx.network, ctx.consensus)
    complete = session.finalize()
    output = {
        'psbt': session.to_base64(),
        'complete': complete,
        'inputs': _session_status(session),
    }
    if complete and session.psbt.is_finalized:
        output['raw_transaction'] = session.extract_transaction().to_hex()
    ctx.output(output)
