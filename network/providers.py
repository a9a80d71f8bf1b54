"""
tapforge - Provider interfaces

Builders never talk to the network. Callers hand them UTXOs fetched from a
``UTXOProvider`` and give the signed hex to a ``Broadcaster``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from psbt.utxo import UTXO


@dataclass
class UTXOConstraints:
    """Filters applied when fetching UTXOs."""
    minimum_amount: int = 0
    required_amount: Optional[int] = None
    max_utxos: Optional[int] = None

    def apply(self, utxos: List[UTXO]) -> List[UTXO]:
        """
        Keep outputs worth at least minimum_amount, largest first, stopping
        once required_amount is reached or max_utxos are selected.
        """
        selected = []
        total = 0
        for utxo in sorted(utxos, key=lambda u: u.value, reverse=True):
            if utxo.value < self.minimum_amount:
                continue
            if self.max_utxos is not None and len(selected) >= self.max_utxos:
                break
            selected.append(utxo)
            total += utxo.value
            if self.required_amount is not None and total >= self.required_amount:
                break
        return selected


@dataclass
class BroadcastResult:
    success: bool
    txid: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'txid': self.txid, 'error': self.error}


class UTXOProvider(ABC):

    @abstractmethod
    def fetch(self, address: str, constraints: Optional[UTXOConstraints] = None) -> List[UTXO]:
        """Spendable outputs of address."""


class Broadcaster(ABC):

    @abstractmethod
    def send(self, raw_hex: str) -> BroadcastResult:
        """Submit a signed transaction."""
