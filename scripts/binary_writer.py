"""
tapforge - Fixed-layout binary writer for envelope payloads
"""

import struct

from psbt.exceptions import ConstructionError

ADDRESS_BYTE_LENGTH = 32
U256_MAX = (1 << 256) - 1


class BinaryWriter:
    """
    Append-only byte writer with fixed-width integer encodings.

    Integers are big-endian unless ``le=True`` is passed.
    """

    def __init__(self):
        self._buffer = bytearray()

    def _check_range(self, value: int, bits: int, name: str):
        if not isinstance(value, int) or value < 0 or value >= (1 << bits):
            raise ConstructionError(f"{name} value out of range: {value}")

    def write_u8(self, value: int) -> 'BinaryWriter':
        self._check_range(value, 8, "u8")
        self._buffer.append(value)
        return self

    def write_u16(self, value: int, le: bool = False) -> 'BinaryWriter':
        self._check_range(value, 16, "u16")
        self._buffer += struct.pack('<H' if le else '>H', value)
        return self

    def write_u24(self, value: int) -> 'BinaryWriter':
        self._check_range(value, 24, "u24")
        self._buffer += value.to_bytes(3, 'big')
        return self

    def write_u32(self, value: int, le: bool = False) -> 'BinaryWriter':
        self._check_range(value, 32, "u32")
        self._buffer += struct.pack('<I' if le else '>I', value)
        return self

    def write_u64(self, value: int, le: bool = False) -> 'BinaryWriter':
        self._check_range(value, 64, "u64")
        self._buffer += struct.pack('<Q' if le else '>Q', value)
        return self

    def write_u256(self, value: int) -> 'BinaryWriter':
        self._check_range(value, 256, "u256")
        self._buffer += value.to_bytes(32, 'big')
        return self

    def write_selector(self, selector: int) -> 'BinaryWriter':
        return self.write_u32(selector)

    def write_address(self, address: bytes) -> 'BinaryWriter':
        if len(address) != ADDRESS_BYTE_LENGTH:
            raise ConstructionError(
                f"Address must be {ADDRESS_BYTE_LENGTH} bytes, got {len(address)}"
            )
        self._buffer += address
        return self

    def write_bytes(self, data: bytes) -> 'BinaryWriter':
        self._buffer += data
        return self

    def write_bytes_with_length(self, data: bytes) -> 'BinaryWriter':
        self.write_u32(len(data))
        self._buffer += data
        return self

    def write_string_with_length(self, value: str) -> 'BinaryWriter':
        encoded = value.encode('utf-8')
        self.write_u16(len(encoded))
        self._buffer += encoded
        return self

    def get_buffer(self) -> bytes:
        return bytes(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)
