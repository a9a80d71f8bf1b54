"""
tapforge - Address encoding and output script classification

Segwit addresses use BIP173 bech32 (v0) and BIP350 bech32m (v1+) through
``bitcoinutils.bech32``; legacy addresses are base58check through the
``base58`` package. Network prefixes come from ``bitcoinutils.constants``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import base58
from bitcoinutils import bech32
from bitcoinutils.constants import (
    NETWORK_P2PKH_PREFIXES,
    NETWORK_P2SH_PREFIXES,
    NETWORK_SEGWIT_PREFIXES,
)

from psbt.exceptions import ConstructionError
from scripts.opcodes import Opcode


@dataclass(frozen=True)
class NetworkParams:
    name: str
    hrp: str
    p2pkh_prefix: int
    p2sh_prefix: int


def _params(name: str, library_name: str) -> NetworkParams:
    return NetworkParams(
        name,
        NETWORK_SEGWIT_PREFIXES[library_name],
        NETWORK_P2PKH_PREFIXES[library_name][0],
        NETWORK_P2SH_PREFIXES[library_name][0],
    )


NETWORKS = {
    'bitcoin': _params('bitcoin', 'mainnet'),
    'testnet': _params('testnet', 'testnet'),
    'signet': _params('signet', 'signet'),
    'regtest': _params('regtest', 'regtest'),
}


def get_network(name: str) -> NetworkParams:
    try:
        return NETWORKS[name]
    except KeyError:
        raise ConstructionError(f"Unknown network: {name}")


class ScriptType(Enum):
    """Output script types the builders know how to spend."""
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"
    OP_RETURN = "op_return"
    UNKNOWN = "unknown"


def classify_script(script: bytes) -> ScriptType:
    """Detect the standard type of an output script."""
    if len(script) == 25 and script[:3] == b'\x76\xa9\x14' and script[23:] == b'\x88\xac':
        return ScriptType.P2PKH
    if len(script) == 23 and script[:2] == b'\xa9\x14' and script[22] == Opcode.OP_EQUAL:
        return ScriptType.P2SH
    if len(script) == 22 and script[:2] == b'\x00\x14':
        return ScriptType.P2WPKH
    if len(script) == 34 and script[:2] == b'\x00\x20':
        return ScriptType.P2WSH
    if len(script) == 34 and script[:2] == b'\x51\x20':
        return ScriptType.P2TR
    if script[:1] == bytes([Opcode.OP_RETURN]):
        return ScriptType.OP_RETURN
    return ScriptType.UNKNOWN


def encode_segwit_address(hrp: str, witness_version: int, program: bytes) -> str:
    """Encode a witness program as a bech32 (v0) or bech32m (v1+) address."""
    address = bech32.encode(hrp, witness_version, program)
    if address is None:
        raise ConstructionError(
            f"Invalid v{witness_version} witness program of {len(program)} bytes"
        )
    return address


def decode_segwit_address(hrp: str, address: str) -> Tuple[int, bytes]:
    """
    Decode a segwit address.

    Mixed case, a foreign prefix, a bad checksum or the wrong checksum
    constant for the witness version all fail.

    Returns:
        Tuple of (witness version, witness program)
    """
    version, program = bech32.decode(hrp, address)
    if version is None:
        raise ConstructionError(f"Invalid {hrp} segwit address: {address}")
    return version, bytes(program)


def address_to_script(address: str, network: str = 'bitcoin') -> bytes:
    """Convert an address into the output script that pays it."""
    params = get_network(network)

    if address.lower().startswith(params.hrp + '1'):
        version, program = decode_segwit_address(params.hrp, address)
        version_opcode = Opcode.OP_0 if version == 0 else Opcode.OP_1 + version - 1
        return bytes([version_opcode, len(program)]) + program

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ConstructionError(f"Invalid address {address}: {e}")
    if len(decoded) != 21:
        raise ConstructionError(f"Invalid base58 payload length in {address}")

    prefix, payload = decoded[0], decoded[1:]
    if prefix == params.p2pkh_prefix:
        return b'\x76\xa9\x14' + payload + b'\x88\xac'
    if prefix == params.p2sh_prefix:
        return b'\xa9\x14' + payload + bytes([Opcode.OP_EQUAL])
    raise ConstructionError(f"Address {address} does not belong to {network}")


def script_to_address(script: bytes, network: str = 'bitcoin') -> str:
    """Render the address for a standard output script."""
    params = get_network(network)
    script_type = classify_script(script)

    if script_type == ScriptType.P2TR:
        return encode_segwit_address(params.hrp, 1, script[2:])
    if script_type in (ScriptType.P2WPKH, ScriptType.P2WSH):
        return encode_segwit_address(params.hrp, 0, script[2:])
    if script_type == ScriptType.P2PKH:
        return base58.b58encode_check(bytes([params.p2pkh_prefix]) + script[3:23]).decode()
    if script_type == ScriptType.P2SH:
        return base58.b58encode_check(bytes([params.p2sh_prefix]) + script[2:22]).decode()
    raise ConstructionError(f"No address form for {script_type.value} script")


def p2tr_address(output_key: bytes, network: str = 'bitcoin') -> str:
    if len(output_key) != 32:
        raise ConstructionError("Taproot output key must be 32 bytes")
    return encode_segwit_address(get_network(network).hrp, 1, output_key)
