"""
Contract call encoding for the wrapped BTC contract.
"""

from crypto.keys import sha256
from scripts.binary_writer import BinaryWriter


def selector(name: str) -> int:
    """First four bytes of sha256(name), as a big-endian integer."""
    return int.from_bytes(sha256(name.encode('utf-8'))[:4], 'big')


MINT_SELECTOR = selector('mint')
BURN_SELECTOR = selector('burn')


def encode_mint_calldata(receiver: bytes, amount: int) -> bytes:
    """``selector("mint") ‖ receiver (32) ‖ u256 amount``"""
    writer = BinaryWriter()
    writer.write_selector(MINT_SELECTOR)
    writer.write_address(receiver)
    writer.write_u256(amount)
    return writer.get_buffer()


def encode_burn_calldata(amount: int) -> bytes:
    writer = BinaryWriter()
    writer.write_selector(BURN_SELECTOR)
    writer.write_u256(amount)
    return writer.get_buffer()
