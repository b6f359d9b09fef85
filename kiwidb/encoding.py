"""Varints, fixed-width integers and byte-key comparison helpers."""

from __future__ import annotations

import enum
import struct

_UINT32_LIMIT = 1 << 32
_UINT64_LIMIT = 1 << 64


class Opt(enum.IntEnum):
    """Kind of a stored record: a value or a deletion mark."""

    ADD = 0
    DEL = 1


def varint_length(value: int) -> int:
    """Number of bytes the varint encoding of ``value`` takes."""
    if value < 0:
        raise ValueError("varint values must not be negative")
    length = 1
    while value >= 128:
        value >>= 7
        length += 1
    return length


def _encode_varint(value: int, limit: int) -> bytes:
    if not 0 <= value < limit:
        raise ValueError(f"value {value} out of range for varint encoding")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def encode_varint32(value: int) -> bytes:
    """Encode an unsigned 32-bit integer as a varint."""
    return _encode_varint(value, _UINT32_LIMIT)


def encode_varint64(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as a varint."""
    return _encode_varint(value, _UINT64_LIMIT)


def _decode_varint(data, pos: int, max_shift: int, mask: int) -> tuple[int, int]:
    result = 0
    shift = 0
    end = len(data)
    while shift <= max_shift and pos < end:
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & mask, pos
        shift += 7
    raise ValueError("truncated or malformed varint")


def decode_varint32(data, pos: int = 0) -> tuple[int, int]:
    """Decode a 32-bit varint at ``pos``; return ``(value, next_pos)``."""
    return _decode_varint(data, pos, 28, _UINT32_LIMIT - 1)


def decode_varint64(data, pos: int = 0) -> tuple[int, int]:
    """Decode a 64-bit varint at ``pos``; return ``(value, next_pos)``."""
    return _decode_varint(data, pos, 63, _UINT64_LIMIT - 1)


def get_int32(data, pos: int = 0) -> int:
    """Read a little-endian unsigned 32-bit integer."""
    try:
        return struct.unpack_from("<I", data, pos)[0]
    except struct.error as exc:
        raise ValueError(f"cannot read 32-bit integer at {pos}") from exc


def get_int64(data, pos: int = 0) -> int:
    """Read a little-endian unsigned 64-bit integer."""
    try:
        return struct.unpack_from("<Q", data, pos)[0]
    except struct.error as exc:
        raise ValueError(f"cannot read 64-bit integer at {pos}") from exc


def put_int32(value: int) -> bytes:
    """Little-endian bytes of an unsigned 32-bit integer."""
    if not 0 <= value < _UINT32_LIMIT:
        raise ValueError(f"value {value} out of range for 32 bits")
    return struct.pack("<I", value)


def put_int64(value: int) -> bytes:
    """Little-endian bytes of an unsigned 64-bit integer."""
    if not 0 <= value < _UINT64_LIMIT:
        raise ValueError(f"value {value} out of range for 64 bits")
    return struct.pack("<Q", value)


def compare_keys(a: bytes, b: bytes) -> int:
    """Bytewise comparison, shorter key first on a common prefix: -1, 0 or 1."""
    a = bytes(a)
    b = bytes(b)
    if a == b:
        return 0
    return -1 if a < b else 1


def range_intersects(astart: bytes, bstart: bytes, astop: bytes, bstop: bytes) -> bool:
    """Whether ``[astart, astop]`` and ``[bstart, bstop]`` overlap."""
    return not (compare_keys(bstop, astart) < 0 or compare_keys(bstart, astop) > 0)