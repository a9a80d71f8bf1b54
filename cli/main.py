#!/usr/bin/env python3
"""
tapforge - Command Line Interface

Compile envelopes, inspect and co-sign threshold vault withdrawals, and
broadcast transactions.
"""

from typing import Optional

import click

from cli import __version__
from .commands.broadcast import broadcast
from .commands.config import config
from .commands.envelope import envelope
from .commands.vault import vault
from .context import CLIContext, pass_context


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--config-file', '-c', help='Path to configuration file')
@click.option('--profile', '-p', help='Configuration profile (mainnet, testnet, signet, development)')
@click.option('--output-format', '-o',
              type=click.Choice(['table', 'json', 'yaml']),
              default='table',
              help='Output format')
@click.option('--verbose', '-v', count=True,
              help='Increase verbosity (-v for INFO, -vv for DEBUG)')
@click.version_option(__version__, prog_name='tapforge')
@pass_context
def cli(ctx: CLIContext, config_file: Optional[str], profile: Optional[str],
        output_format: str, verbose: int):
    """
    tapforge: Taproot envelope and threshold vault transaction tooling.

    Examples:
        tapforge vault address KEY1 KEY2 KEY3 -m 2
        tapforge vault sign PSBT --vault vault.yml --key HEX
        tapforge envelope compile --sender-key HEX --calldata HEX ...
        tapforge broadcast RAW_HEX
    """
    ctx.config_file = config_file
    ctx.profile = profile
    ctx.output_format = output_format
    ctx.verbose = verbose

    ctx.setup_logging()
    ctx.logger.debug("CLI initialized with context")


cli.add_command(vault)
cli.add_command(envelope)
cli.add_command(broadcast)
cli.add_command(config)


def main():
    cli()


if __name__ == '__main__':
    main()
