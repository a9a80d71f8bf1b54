"""
tapforge - Serialization utilities

Compact-size integers, length-prefixed byte strings and witness stacks,
shared by the transaction parser, the PSBT codec and the fee estimator.
"""

import struct
from io import BytesIO
from typing import BinaryIO, List

from psbt.exceptions import ConstructionError, PSBTParseError

MAX_OP_RETURN_DATA = 80


def serialize_compact_size(n: int) -> bytes:
    """
    Serialize integer as Bitcoin compact size.

    Args:
        n: Integer to serialize

    Returns:
        Compact size encoded bytes
    """
    if n < 0xfd:
        return struct.pack('<B', n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack('<H', n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack('<I', n)
    else:
        return b'\xff' + struct.pack('<Q', n)


def compact_size_len(n: int) -> int:
    if n < 0xfd:
        return 1
    if n <= 0xffff:
        return 3
    if n <= 0xffffffff:
        return 5
    return 9


def read_compact_size(stream: BinaryIO) -> int:
    first = stream.read(1)
    if not first:
        raise PSBTParseError("Unexpected end of data reading compact size")
    if first[0] < 0xfd:
        return first[0]
    fmt, width = {0xfd: ('<H', 2), 0xfe: ('<I', 4), 0xff: ('<Q', 8)}[first[0]]
    raw = stream.read(width)
    if len(raw) != width:
        raise PSBTParseError("Unexpected end of data reading compact size")
    return struct.unpack(fmt, raw)[0]


def read_exact(stream: BinaryIO, length: int) -> bytes:
    data = stream.read(length)
    if len(data) != length:
        raise PSBTParseError(f"Expected {length} bytes, got {len(data)}")
    return data


def varstr(data: bytes) -> bytes:
    """Prefix data with its compact-size length."""
    return serialize_compact_size(len(data)) + data


def read_varstr(stream: BinaryIO) -> bytes:
    return read_exact(stream, read_compact_size(stream))


def serialize_witness(stack: List[bytes]) -> bytes:
    """
    Serialize a witness stack: element count, then each element with its
    compact-size length.
    """
    return serialize_compact_size(len(stack)) + b''.join(varstr(item) for item in stack)


def parse_witness(data: bytes) -> List[bytes]:
    """Inverse of serialize_witness."""
    stream = BytesIO(data)
    stack = [read_varstr(stream) for _ in range(read_compact_size(stream))]
    if stream.read(1):
        raise PSBTParseError("Trailing bytes after witness stack")
    return stack


def witness_size(elements: List[int]) -> int:
    """Serialized size in bytes of a witness with elements of the given lengths."""
    return compact_size_len(len(elements)) + sum(compact_size_len(n) + n for n in elements)


def create_op_return_script(data: bytes) -> bytes:
    """
    Create OP_RETURN output script.

    Raises:
        ConstructionError: If data exceeds the standard 80-byte limit
    """
    if len(data) > MAX_OP_RETURN_DATA:
        raise ConstructionError(f"OP_RETURN data too large: {len(data)} > {MAX_OP_RETURN_DATA}")

    if len(data) <= 75:
        return b'\x6a' + bytes([len(data)]) + data
    return b'\x6a\x4c' + bytes([len(data)]) + data
