"""
tapforge - Script compilation and decompilation

Scripts are handled as lists of chunks: an ``int`` is an opcode, ``bytes`` is
pushed data. Pushes are always emitted in their minimal form, which tapscript
requires, so ``compile_script(decompile_script(s)) == s`` for any script this
module produced.
"""

import struct
from typing import Iterable, List, Optional, Union

from bitcoinutils.script import Script

from psbt.exceptions import ConstructionError
from scripts.opcodes import Opcode, OPCODE_NAMES

ScriptChunk = Union[int, bytes]


def encode_push(data: bytes) -> bytes:
    """Encode a data push using the smallest valid form."""
    length = len(data)
    if length == 0:
        return bytes([Opcode.OP_0])
    if length == 1 and 1 <= data[0] <= 16:
        return bytes([Opcode.OP_1 + data[0] - 1])
    if length == 1 and data[0] == 0x81:
        return bytes([Opcode.OP_1NEGATE])
    if length <= 75:
        return bytes([length]) + data
    if length <= 0xff:
        return bytes([Opcode.OP_PUSHDATA1, length]) + data
    if length <= 0xffff:
        return bytes([Opcode.OP_PUSHDATA2]) + struct.pack('<H', length) + data
    return bytes([Opcode.OP_PUSHDATA4]) + struct.pack('<I', length) + data


def encode_script_number(number: int) -> bytes:
    """Encode number in Bitcoin script format (little-endian sign-magnitude)."""
    if number == 0:
        return b''

    negative = number < 0
    if negative:
        number = -number

    result = []
    while number > 0:
        result.append(number & 0xff)
        number >>= 8

    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80

    return bytes(result)


def compile_script(chunks: Iterable[ScriptChunk]) -> bytes:
    """
    Serialize a list of chunks into raw script bytes.

    Args:
        chunks: Opcodes (int) and data pushes (bytes)

    Returns:
        Raw script
    """
    out = bytearray()
    for chunk in chunks:
        if isinstance(chunk, int):
            if not 0 <= chunk <= 0xff:
                raise ConstructionError(f"Invalid opcode {chunk}")
            out.append(chunk)
        elif isinstance(chunk, (bytes, bytearray)):
            out += encode_push(bytes(chunk))
        else:
            raise ConstructionError(f"Unsupported script chunk type {type(chunk).__name__}")
    return bytes(out)


def decompile_script(script: bytes) -> Optional[List[ScriptChunk]]:
    """
    Split raw script bytes into chunks.

    Returns:
        List of chunks, or None if a push runs past the end of the script
    """
    chunks: List[ScriptChunk] = []
    pc = 0

    while pc < len(script):
        opcode = script[pc]
        pc += 1

        if 1 <= opcode <= 75:
            data_len = opcode
        elif opcode == Opcode.OP_PUSHDATA1:
            if pc + 1 > len(script):
                return None
            data_len = script[pc]
            pc += 1
        elif opcode == Opcode.OP_PUSHDATA2:
            if pc + 2 > len(script):
                return None
            data_len = struct.unpack('<H', script[pc:pc + 2])[0]
            pc += 2
        elif opcode == Opcode.OP_PUSHDATA4:
            if pc + 4 > len(script):
                return None
            data_len = struct.unpack('<I', script[pc:pc + 4])[0]
            pc += 4
        else:
            chunks.append(opcode)
            continue

        if pc + data_len > len(script):
            return None

        chunks.append(script[pc:pc + data_len])
        pc += data_len

    return chunks


def script_to_asm(script: bytes) -> str:
    """Convert script to assembly string representation."""
    chunks = decompile_script(script)
    if chunks is None:
        return f"[error] {script.hex()}"

    parts = []
    for chunk in chunks:
        if isinstance(chunk, int):
            parts.append(OPCODE_NAMES.get(chunk, f"OP_UNKNOWN_{chunk:02x}"))
        else:
            parts.append(chunk.hex())
    return ' '.join(parts)


class ScriptBuilder:
    """
    Fluent builder for scripts.
    """

    def __init__(self):
        self.chunks: List[ScriptChunk] = []

    def push_data(self, data: bytes) -> 'ScriptBuilder':
        """Push data onto the script stack."""
        self.chunks.append(bytes(data))
        return self

    def push_opcode(self, opcode: int) -> 'ScriptBuilder':
        self.chunks.append(opcode)
        return self

    def push_number(self, number: int) -> 'ScriptBuilder':
        """Push a number using minimal encoding."""
        if number == 0:
            return self.push_opcode(Opcode.OP_0)
        if number == -1:
            return self.push_opcode(Opcode.OP_1NEGATE)
        if 1 <= number <= 16:
            return self.push_opcode(Opcode.OP_1 + number - 1)
        return self.push_data(encode_script_number(number))

    def extend(self, chunks: Iterable[ScriptChunk]) -> 'ScriptBuilder':
        self.chunks.extend(chunks)
        return self

    def build(self) -> bytes:
        """Build the final script."""
        return compile_script(self.chunks)


class CompiledScript(Script):
    """A ``bitcoinutils`` Script that serializes to the exact bytes it wraps."""

    def __init__(self, raw: bytes):
        super().__init__([raw.hex()])
        self.raw = bytes(raw)

    @classmethod
    def copy(cls, script: 'CompiledScript') -> 'CompiledScript':
        return cls(script.to_bytes())

    def to_bytes(self) -> bytes:
        return self.raw

    def to_hex(self) -> str:
        return self.raw.hex()
