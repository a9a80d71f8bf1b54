"""
tapforge - Payload compression

Bytecode, calldata and feature payloads are gzip-compressed at the highest
level before being chunked into an envelope. ``mtime`` is pinned so the same
input always yields the same bytes, and therefore the same script.
"""

import gzip


def compress(data: bytes) -> bytes:
    return gzip.compress(data, compresslevel=9, mtime=0)


def decompress(data: bytes) -> bytes:
    return gzip.decompress(data)
