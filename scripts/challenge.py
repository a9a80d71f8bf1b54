"""
tapforge - Epoch challenge solution

The challenge subsystem validates proofs of work elsewhere. The builders only
embed the solver's public key and the solution hash into the envelope, so
the only check made here is on the sizes they need.
"""

from dataclasses import dataclass
from typing import Optional

from crypto.exceptions import InvalidKeyError
from crypto.keys import to_x_only
from psbt.exceptions import ConstructionError
from scripts.features import EpochSubmissionFeature

SOLUTION_LENGTH = 32


@dataclass(frozen=True)
class ChallengeSolution:
    """Pre-validated epoch challenge solution."""
    public_key: bytes
    solution: bytes
    difficulty: int = 0
    verification: Optional[dict] = None
    graffiti: Optional[bytes] = None

    def __post_init__(self):
        if len(self.solution) != SOLUTION_LENGTH:
            raise ConstructionError(
                f"Challenge solution must be {SOLUTION_LENGTH} bytes, got {len(self.solution)}"
            )
        try:
            to_x_only(self.public_key)
        except InvalidKeyError as e:
            raise ConstructionError(f"Invalid challenge public key: {e}")

    @property
    def x_only_public_key(self) -> bytes:
        return to_x_only(self.public_key)

    def to_submission(self) -> EpochSubmissionFeature:
        return EpochSubmissionFeature(
            public_key=self.public_key,
            solution=self.solution,
            graffiti=self.graffiti,
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'ChallengeSolution':
        """Build from the JSON shape returned by challenge providers (hex fields)."""
        graffiti = data.get('graffiti')
        return cls(
            public_key=bytes.fromhex(data['public_key']),
            solution=bytes.fromhex(data['solution']),
            difficulty=int(data.get('difficulty', 0)),
            verification=data.get('verification'),
            graffiti=bytes.fromhex(graffiti) if graffiti else None,
        )
