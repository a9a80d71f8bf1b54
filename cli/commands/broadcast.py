"""
Broadcast command.
"""

import sys

import click

from network.rpc import BitcoinRPCClient, RPCConfig
from psbt.transaction import Transaction
from ..context import CLIContext, handle_cli_error, pass_context


@click.command('broadcast')
@click.argument('raw_hex')
@pass_context
@handle_cli_error
def broadcast(ctx: CLIContext, raw_hex: str):
    """
    Send a signed transaction through the configured Bitcoin Core node.
    """
    tx = Transaction.from_hex(raw_hex)
    ctx.logger.info(f"Broadcasting {tx.txid} ({tx.vsize} vB)")

    rpc_config = RPCConfig.from_dict(ctx.get_config('network.bitcoin_rpc', {}), ctx.network)
    client = BitcoinRPCClient(rpc_config)
    try:
        result = client.send(raw_hex)
    finally:
        client.close()

    ctx.output(result.to_dict())
    if not result.success:
        sys.exit(1)
