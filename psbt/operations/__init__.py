"""
Operation strategies plugged into ``TransactionBuilder``.
"""

from .cancel import CancelOperation
from .deployment import DeploymentOperation
from .funding import FundingOperation
from .interaction import InteractionOperation
from .wrap import UnwrapOperation, VaultUTXOs, WrapOperation

__all__ = [
    'CancelOperation',
    'DeploymentOperation',
    'FundingOperation',
    'InteractionOperation',
    'UnwrapOperation',
    'VaultUTXOs',
    'WrapOperation',
]
