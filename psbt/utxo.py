"""
tapforge - Spendable outputs
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from scripts.address import ScriptType, classify_script
from .exceptions import ConstructionError


@dataclass(frozen=True)
class UTXO:
    """An unspent output. Each instance is consumed by at most one input."""
    transaction_id: str
    output_index: int
    value: int
    script_pubkey: bytes
    non_witness_utxo: Optional[bytes] = None

    @property
    def script_type(self) -> ScriptType:
        return classify_script(self.script_pubkey)

    def validate(self):
        """
        Fail fast on outputs that can never be signed.

        Raises:
            ConstructionError: On zero value, bad txid or empty script
        """
        if self.value <= 0:
            raise ConstructionError(f"UTXO {self.outpoint} has no value")
        try:
            txid = bytes.fromhex(self.transaction_id)
        except ValueError:
            raise ConstructionError(f"UTXO transaction id is not hex: {self.transaction_id}")
        if len(txid) != 32:
            raise ConstructionError(f"UTXO transaction id must be 32 bytes: {self.transaction_id}")
        if self.output_index < 0:
            raise ConstructionError(f"UTXO {self.outpoint} has a negative output index")
        if not self.script_pubkey:
            raise ConstructionError(f"UTXO {self.outpoint} has an empty script")
        if self.script_type == ScriptType.P2PKH and not self.non_witness_utxo:
            raise ConstructionError(f"Legacy UTXO {self.outpoint} needs its previous transaction")

    @property
    def outpoint(self) -> str:
        return f"{self.transaction_id}:{self.output_index}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UTXO':
        """Build from the JSON shape used by providers (hex strings)."""
        raw = data.get('non_witness_utxo') or data.get('raw')
        return cls(
            transaction_id=data['transaction_id'],
            output_index=int(data['output_index']),
            value=int(data['value']),
            script_pubkey=bytes.fromhex(data['script_pubkey']),
            non_witness_utxo=bytes.fromhex(raw) if raw else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'transaction_id': self.transaction_id,
            'output_index': self.output_index,
            'value': self.value,
            'script_pubkey': self.script_pubkey.hex(),
        }
        if self.non_witness_utxo:
            result['non_witness_utxo'] = self.non_witness_utxo.hex()
        return result
