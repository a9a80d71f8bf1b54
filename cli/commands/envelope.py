"""
Envelope commands.
"""

from typing import Optional

import click

from crypto.signer import KeyPairSigner
from scripts.challenge import ChallengeSolution
from scripts.compressor import compress
from scripts.envelope import CalldataGenerator, envelope_tree
from scripts.script import script_to_asm
from ..context import CLIContext, handle_cli_error, pass_context


def _hex(value: str, name: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise click.BadParameter(f"{name} must be hex", param_hint=name)


@click.group()
@pass_context
def envelope(ctx: CLIContext):
    """
    Envelope script commands.
    """
    ctx.logger.debug("Envelope command group invoked")


@envelope.command('compile')
@click.option('--sender-key', required=True, help='Sender public key (33-byte hex)')
@click.option('--calldata', required=True, help='Calldata (hex, uncompressed)')
@click.option('--contract-secret', required=True, help='32-byte contract secret (hex)')
@click.option('--challenge-key', required=True, help='Challenge solver public key (hex)')
@click.option('--challenge-solution', required=True, help='32-byte challenge solution (hex)')
@click.option('--priority-fee', type=int, default=None, help='Maximum priority fee in satoshis')
@click.option('--random-bytes', default=None, help='32-byte seed of the script signer (hex)')
@pass_context
@handle_cli_error
def compile_envelope(ctx: CLIContext, sender_key: str, calldata: str, contract_secret: str,
                     challenge_key: str, challenge_solution: str, priority_fee: Optional[int],
                     random_bytes: Optional[str]):
    """
    Compile an interaction envelope and show its script address.

    Without --random-bytes a fresh script signer is generated, so the
    address changes on every run.
    """
    if priority_fee is None:
        priority_fee = ctx.get_config('fees.priority_fee', 0)

    sender = _hex(sender_key, '--sender-key')
    script_signer = (
        KeyPairSigner.from_seed(_hex(random_bytes, '--random-bytes')) if random_bytes
        else KeyPairSigner.random()
    )
    challenge = ChallengeSolution(
        public_key=_hex(challenge_key, '--challenge-key'),
        solution=_hex(challenge_solution, '--challenge-solution'),
    )

    generator = CalldataGenerator(sender, script_signer.public_key, ctx.consensus.chunk_size)
    script = generator.compile(compress(_hex(calldata, '--calldata')),
                               _hex(contract_secret, '--contract-secret'), challenge, priority_fee)
    tree = envelope_tree(script, sender)

    ctx.output({
        'address': tree.address(generator.x_sender_pubkey, ctx.network),
        'script_signer': script_signer.public_key.hex(),
        'size': len(script),
        'script': script.hex(),
        'asm': script_to_asm(script),
    })
