"""
tapforge - Bitcoin Script opcodes used by the envelope and vault scripts.
"""

from typing import Dict


class Opcode:
    """Bitcoin Script opcodes."""

    # Constants
    OP_0 = 0x00
    OP_FALSE = OP_0
    OP_PUSHDATA1 = 0x4c
    OP_PUSHDATA2 = 0x4d
    OP_PUSHDATA4 = 0x4e
    OP_1NEGATE = 0x4f
    OP_1 = 0x51
    OP_TRUE = OP_1
    OP_2 = 0x52
    OP_3 = 0x53
    OP_4 = 0x54
    OP_5 = 0x55
    OP_6 = 0x56
    OP_7 = 0x57
    OP_8 = 0x58
    OP_9 = 0x59
    OP_10 = 0x5a
    OP_11 = 0x5b
    OP_12 = 0x5c
    OP_13 = 0x5d
    OP_14 = 0x5e
    OP_15 = 0x5f
    OP_16 = 0x60

    # Flow control
    OP_NOP = 0x61
    OP_IF = 0x63
    OP_NOTIF = 0x64
    OP_ELSE = 0x67
    OP_ENDIF = 0x68
    OP_VERIFY = 0x69
    OP_RETURN = 0x6a

    # Stack operations
    OP_TOALTSTACK = 0x6b
    OP_FROMALTSTACK = 0x6c
    OP_DEPTH = 0x74
    OP_DROP = 0x75
    OP_DUP = 0x76
    OP_SWAP = 0x7c

    # Bitwise logic
    OP_XOR = 0x86
    OP_EQUAL = 0x87
    OP_EQUALVERIFY = 0x88

    # Arithmetic
    OP_NUMEQUAL = 0x9c
    OP_NUMEQUALVERIFY = 0x9d

    # Crypto
    OP_RIPEMD160 = 0xa6
    OP_SHA256 = 0xa8
    OP_HASH160 = 0xa9
    OP_HASH256 = 0xaa
    OP_CODESEPARATOR = 0xab
    OP_CHECKSIG = 0xac
    OP_CHECKSIGVERIFY = 0xad
    OP_CHECKMULTISIG = 0xae

    # Locktime
    OP_CHECKLOCKTIMEVERIFY = 0xb1
    OP_CHECKSEQUENCEVERIFY = 0xb2

    # Tapscript
    OP_CHECKSIGADD = 0xba


def _build_opcode_names() -> Dict[int, str]:
    """Build mapping of opcodes to names, preferring the canonical alias."""
    names = {}
    for attr in dir(Opcode):
        if attr.startswith('OP_') and attr not in ('OP_FALSE', 'OP_TRUE'):
            names[getattr(Opcode, attr)] = attr
    return names


OPCODE_NAMES = _build_opcode_names()
