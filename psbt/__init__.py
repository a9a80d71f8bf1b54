"""
tapforge - Transaction Construction

This package builds, signs and finalizes the transactions of the protocol:
the transaction model and sighash, the PSBT codec, fee estimation, the
builder base with its operation strategies, the threshold multisig builder
and the factory that links funding and spend transactions.

Only the exception taxonomy is re-exported here; import builders from their
modules.
"""

from .exceptions import (
    ConstructionError,
    FinalizationError,
    InsufficientFundsError,
    PSBTParseError,
    ScriptIntegrityError,
    SignatureError,
    TransactionError,
)

__all__ = [
    'ConstructionError',
    'FinalizationError',
    'InsufficientFundsError',
    'PSBTParseError',
    'ScriptIntegrityError',
    'SignatureError',
    'TransactionError',
]

__version__ = '0.1.0'
