"""
tapforge - Envelope feature records

Features are optional protocol extensions carried inside the reveal branch of
an envelope. The set is closed: ``Feature`` is a union of the dataclasses in
this module and anything else is rejected at encoding time.
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar, Dict, Iterable, List, Optional, Union

from psbt.exceptions import ConstructionError
from scripts.binary_writer import BinaryWriter
from scripts.compressor import compress

MAX_GRAFFITI_LENGTH = 16


class FeatureOpcode(IntEnum):
    """Feature identifiers. Each value is also its bit in the header flags."""
    ACCESS_LIST = 1
    EPOCH_SUBMISSION = 2


# Lower value is emitted first
FEATURE_PRIORITY = {
    FeatureOpcode.ACCESS_LIST: 1,
    FeatureOpcode.EPOCH_SUBMISSION: 2,
}


@dataclass(frozen=True)
class AccessListFeature:
    """Storage pointers a contract call is expected to touch, per contract."""
    entries: Dict[bytes, List[bytes]] = field(default_factory=dict)

    opcode: ClassVar[FeatureOpcode] = FeatureOpcode.ACCESS_LIST

    def __post_init__(self):
        if len(self.entries) > 0xffff:
            raise ConstructionError("Access list has too many contracts")
        for contract, pointers in self.entries.items():
            if len(contract) != 32:
                raise ConstructionError(f"Invalid contract address length: {len(contract)}")
            for pointer in pointers:
                if len(pointer) != 32:
                    raise ConstructionError(f"Invalid pointer length: {len(pointer)}")

    def encode(self) -> bytes:
        writer = BinaryWriter()
        writer.write_u16(len(self.entries))
        for contract, pointers in self.entries.items():
            writer.write_address(contract)
            writer.write_u32(len(pointers))
            for pointer in pointers:
                writer.write_bytes(pointer)
        return compress(writer.get_buffer())


@dataclass(frozen=True)
class EpochSubmissionFeature:
    """Submission of an epoch challenge solution."""
    public_key: bytes
    solution: bytes
    graffiti: Optional[bytes] = None

    opcode: ClassVar[FeatureOpcode] = FeatureOpcode.EPOCH_SUBMISSION

    def __post_init__(self):
        if len(self.public_key) not in (32, 33):
            raise ConstructionError(f"Invalid submission public key length: {len(self.public_key)}")
        if len(self.solution) != 32:
            raise ConstructionError(f"Invalid solution length: {len(self.solution)}")
        if self.graffiti is not None and len(self.graffiti) > MAX_GRAFFITI_LENGTH:
            raise ConstructionError(f"Graffiti exceeds {MAX_GRAFFITI_LENGTH} bytes")

    def encode(self) -> bytes:
        writer = BinaryWriter()
        writer.write_bytes(self.public_key)
        writer.write_bytes(self.solution)
        if self.graffiti:
            writer.write_bytes_with_length(self.graffiti)
        return writer.get_buffer()


Feature = Union[AccessListFeature, EpochSubmissionFeature]
FEATURE_TYPES = (AccessListFeature, EpochSubmissionFeature)


def _check_feature(feature) -> Feature:
    if not isinstance(feature, FEATURE_TYPES):
        raise ConstructionError(f"Unrecognized feature: {feature!r}")
    return feature


def sort_features(features: Iterable[Feature]) -> List[Feature]:
    """Order features by emission priority, keeping caller order within a kind."""
    checked = [_check_feature(feature) for feature in features]
    return sorted(checked, key=lambda feature: FEATURE_PRIORITY[feature.opcode])


def feature_flags(features: Iterable[Feature]) -> int:
    """OR the opcode bits of every feature into the 24-bit header flags."""
    flags = 0
    for feature in features:
        flags |= int(_check_feature(feature).opcode)
    return flags


def encode_feature(feature: Feature) -> bytes:
    """
    Encode a single record as ``[opcode:1][length:4 LE][payload]``.
    """
    payload = _check_feature(feature).encode()
    return struct.pack('<BI', int(feature.opcode), len(payload)) + payload


def encode_features(features: Iterable[Feature]) -> bytes:
    return b''.join(encode_feature(feature) for feature in sort_features(features))
