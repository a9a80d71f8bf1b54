"""
tapforge - Consensus parameters

The values the builders need from the active consensus rules. A config
object is passed to every builder so tests and alternative networks can
override any of them.
"""

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

from .exceptions import ConstructionError


@dataclass(frozen=True)
class ConsensusConfig:
    """Protocol constants, in satoshis and bytes."""
    minimum_dust: int = 330
    minimum_amount_reward: int = 540
    vault_minimum_amount: int = 200_000
    vault_network_consolidation_acceptance: int = 400_000
    unwrap_consolidation_prepaid_fees_sat: int = 56_500
    max_contract_size: int = 128 * 1024
    max_calldata_size: int = 1024 * 1024
    chunk_size: int = 512

    def __post_init__(self):
        for item in fields(self):
            value = getattr(self, item.name)
            if not isinstance(value, int) or value < 0:
                raise ConstructionError(f"Consensus value {item.name} must be a non-negative integer")
        if self.chunk_size == 0 or self.chunk_size > 520:
            raise ConstructionError(f"Chunk size must be between 1 and 520 bytes, got {self.chunk_size}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ConsensusConfig':
        """Build from a configuration section, ignoring unknown keys."""
        known = {item.name for item in fields(cls)}
        return cls(**{k: int(v) for k, v in (data or {}).items() if k in known})

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


DEFAULT_CONSENSUS = ConsensusConfig()
