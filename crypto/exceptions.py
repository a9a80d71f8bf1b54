"""
Cryptographic Exceptions for tapforge

This module defines custom exceptions for key and signature operations.
"""


class CryptoError(Exception):
    """Base exception for all cryptographic errors."""
    pass


class InvalidKeyError(CryptoError):
    """Raised when a key is invalid or malformed."""
    pass


class InvalidSignatureError(CryptoError):
    """Raised when a signature is invalid or verification fails."""
    pass
