"""
tapforge - Transaction Construction Exceptions

This module defines the error taxonomy shared by the script compilers and the
transaction builders.
"""


class TransactionError(Exception):
    """Base exception for transaction construction errors."""
    pass


class ConstructionError(TransactionError):
    """Malformed build parameters, raised before any script is compiled."""
    pass


class InsufficientFundsError(ConstructionError):
    """Exception raised when transaction inputs are insufficient to cover outputs and fees."""

    def __init__(self, required: int, available: int, message: str = None):
        self.required = required
        self.available = available
        if message is None:
            message = f"Insufficient funds: required {required} satoshis, available {available} satoshis"
        super().__init__(message)


class ScriptIntegrityError(TransactionError):
    """A compiled script failed its decompile self-check."""
    pass


class SignatureError(TransactionError):
    """A signer could not produce a valid signature for an input."""

    def __init__(self, message: str, input_index: int = None):
        self.input_index = input_index
        super().__init__(message)


class FinalizationError(TransactionError):
    """
    An input could not be finalized.

    Threshold inputs report how many valid signatures they hold (have, need);
    other inputs carry the reason they were left open.
    """

    def __init__(self, input_index: int, have: int = None, need: int = None, reason: str = None):
        self.input_index = input_index
        self.have = have
        self.need = need
        if reason is None:
            reason = f"has {have} of {need} required signatures"
        self.reason = reason
        super().__init__(f"Input {input_index} {reason}")


class PSBTParseError(TransactionError):
    """Exception raised during PSBT parsing."""
    pass
