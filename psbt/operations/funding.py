"""
Funding operation: pay a script address from wallet UTXOs.
"""

from typing import List

from ..builder import OperationStrategy
from ..exceptions import ConstructionError
from ..transaction import TxOutput


class FundingOperation(OperationStrategy):
    """
    Pay ``amount`` to ``to_script``, optionally spread over several equal
    outputs. The last output takes the remainder of an uneven split.
    """

    def __init__(self, to_script: bytes, amount: int, split_inputs_into: int = 1):
        if amount <= 0:
            raise ConstructionError(f"Funding amount must be positive, got {amount}")
        if split_inputs_into < 1:
            raise ConstructionError(f"Cannot split funding into {split_inputs_into} outputs")
        self.to_script = to_script
        self.amount = amount
        self.split_inputs_into = split_inputs_into

    def estimated_extra_outputs(self) -> List[TxOutput]:
        share, remainder = divmod(self.amount, self.split_inputs_into)
        values = [share] * self.split_inputs_into
        values[-1] += remainder
        return [TxOutput(value, self.to_script) for value in values]
