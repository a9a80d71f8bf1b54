"""
tapforge network providers: UTXO discovery and broadcast behind small
interfaces, with a Bitcoin Core JSON-RPC implementation.
"""

from .providers import Broadcaster, BroadcastResult, UTXOConstraints, UTXOProvider
from .rpc import BitcoinRPCClient, RPCAuthError, RPCConfig, RPCConnectionError, RPCError, RPCTimeoutError

__all__ = [
    'BitcoinRPCClient',
    'BroadcastResult',
    'Broadcaster',
    'RPCAuthError',
    'RPCConfig',
    'RPCConnectionError',
    'RPCError',
    'RPCTimeoutError',
    'UTXOConstraints',
    'UTXOProvider',
]
