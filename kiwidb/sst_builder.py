"""Writer of sorted string table files.

File layout::

    [data block] ... [data block]
    [filter section]
    [meta block: nine little-endian 64-bit counters]
    [index block]
    [footer: index offset, index size, meta offset, meta size (64-bit each)]
    [magic: 8 bytes]

Every block is followed by a 32-bit block type and a 32-bit CRC of the
stored block bytes. Each index entry maps a key that is not less than every
key of a data block to the varint64 offset and size of that block. This
writer emits an empty filter section.
"""

from __future__ import annotations

import enum
import zlib
from typing import BinaryIO

from .block_builder import BlockBuilder, BlockFlags
from .config import BLOCK_SIZE, MAGIC_STR, RESTART_INTERVAL
from .encoding import (
    Opt,
    decode_varint32,
    encode_varint32,
    encode_varint64,
    put_int32,
    put_int64,
)

_MAX_COMPRESSION_RATIO = 0.8
_MAX_COPY_OFFSET = 0xFFFF


class BlockType(enum.IntEnum):
    """How the bytes of a stored block are encoded."""

    NO_COMPRESSION = 0
    SNAPPY_COMPRESSION = 1


def _checksum(data: bytes) -> int:
    """CRC stored after every block."""
    return zlib.crc32(data) & 0xFFFFFFFF


def _emit_literal(out: bytearray, literal: bytes) -> None:
    if not literal:
        return
    n = len(literal) - 1
    if n < 60:
        out.append(n << 2)
    else:
        width = (n.bit_length() + 7) // 8
        out.append((59 + width) << 2)
        out += n.to_bytes(width, "little")
    out += literal


def _emit_copy_piece(out: bytearray, offset: int, length: int) -> None:
    if 4 <= length <= 11 and offset < 2048:
        out.append(1 | ((length - 4) << 2) | ((offset >> 8) << 5))
        out.append(offset & 0xFF)
    else:
        out.append(2 | ((length - 1) << 2))
        out += offset.to_bytes(2, "little")


def _emit_copy(out: bytearray, offset: int, length: int) -> None:
    while length >= 68:
        _emit_copy_piece(out, offset, 64)
        length -= 64
    if length > 64:
        _emit_copy_piece(out, offset, 60)
        length -= 60
    _emit_copy_piece(out, offset, length)


def _snappy_compress(data: bytes) -> bytes:
    """Compress ``data`` into the snappy raw format."""
    data = bytes(data)
    out = bytearray(encode_varint32(len(data)))
    size = len(data)
    table: dict[bytes, int] = {}
    pos = 0
    literal_start = 0
    while pos + 4 <= size:
        seq = data[pos:pos + 4]
        candidate = table.get(seq)
        table[seq] = pos
        if candidate is None or pos - candidate > _MAX_COPY_OFFSET:
            pos += 1
            continue
        length = 4
        while pos + length < size and data[candidate + length] == data[pos + length]:
            length += 1
        _emit_literal(out, data[literal_start:pos])
        _emit_copy(out, pos - candidate, length)
        pos += length
        literal_start = pos
    _emit_literal(out, data[literal_start:])
    return bytes(out)


def _snappy_decompress(data: bytes) -> bytes:
    """Expand snappy raw-format bytes; raise ValueError on malformed input."""
    data = bytes(data)
    expected, pos = decode_varint32(data, 0)
    out = bytearray()
    end = len(data)
    while pos < end:
        tag = data[pos]
        pos += 1
        kind = tag & 3
        if kind == 0:
            n = tag >> 2
            if n >= 60:
                width = n - 59
                if pos + width > end:
                    raise ValueError("truncated literal length")
                n = int.from_bytes(data[pos:pos + width], "little")
                pos += width
            n += 1
            if pos + n > end:
                raise ValueError("truncated literal")
            out += data[pos:pos + n]
            pos += n
            continue
        if kind == 1:
            if pos + 1 > end:
                raise ValueError("truncated copy")
            count = 4 + ((tag >> 2) & 7)
            offset = ((tag >> 5) << 8) | data[pos]
            pos += 1
        else:
            width = 2 if kind == 2 else 4
            if pos + width > end:
                raise ValueError("truncated copy")
            count = 1 + (tag >> 2)
            offset = int.from_bytes(data[pos:pos + width], "little")
            pos += width
        if offset == 0 or offset > len(out):
            raise ValueError("copy offset out of range")
        start = len(out) - offset
        if offset >= count:
            out += out[start:start + count]
        else:
            for i in range(count):
                out.append(out[start + i])
    if len(out) != expected:
        raise ValueError("decompressed length does not match header")
    return bytes(out)


def shortest_separator(last_key: bytes, new_key: bytes) -> bytes:
    """A short key ``k`` with ``last_key <= k < new_key`` when possible.

    If one key is a prefix of the other, ``last_key`` comes back unchanged.
    """
    last_key = bytes(last_key)
    new_key = bytes(new_key)
    min_length = min(len(last_key), len(new_key))
    diff = 0
    while diff < min_length and last_key[diff] == new_key[diff]:
        diff += 1
    while diff < min_length:
        byte = last_key[diff]
        if byte < 0xFF and byte + 1 < new_key[diff]:
            return last_key[:diff] + bytes([byte + 1])
        diff += 1
    return last_key


class SSTBuilder:
    """Writes records, in ascending key order, as one table to a binary stream."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.offset = 0
        self.finished = False

        self._pending_index = False
        self._needs_reset = False
        self._block_written = False

        self.num_entries = 0
        self.num_blocks = 0
        self.index_size = 0
        self.data_size = 0
        self.key_size = 0
        self.value_size = 0
        self.filter_size = 0

        self._last_key = b""
        self._last_block_handle = b""
        self.index_block = BlockBuilder(BlockFlags.NOCOMPRESS | BlockFlags.INDEX, 1)
        self.data_block = BlockBuilder(BlockFlags.COMPRESS, RESTART_INTERVAL)

    def _write(self, chunk: bytes) -> None:
        self.stream.write(chunk)
        self.offset += len(chunk)

    def _write_block(self, block: BlockBuilder, skip_compression: bool) -> int:
        raw = block.flush()
        block_type = BlockType.NO_COMPRESSION
        output = raw
        if not skip_compression and raw:
            compressed = _snappy_compress(raw)
            if len(compressed) / len(raw) <= _MAX_COMPRESSION_RATIO:
                block_type = BlockType.SNAPPY_COMPRESSION
                output = compressed

        stored = output + put_int32(block_type) + put_int32(_checksum(output))
        block_offset = self.offset
        self._write(stored)
        self._last_block_handle = encode_varint64(block_offset) + encode_varint64(len(stored))
        return len(stored)

    def _flush_data_block(self) -> None:
        if not self._block_written:
            self._write_block(self.data_block, False)
            self.num_blocks += 1
        self._block_written = True
        self._pending_index = True
        self._needs_reset = True

    def _write_footer(self) -> None:
        self.data_size = self.offset

        bloom_off = self.offset
        bloom_size = 0
        self.filter_size = bloom_size

        self.index_block.add(self.data_block.last_key, self._last_block_handle, Opt.ADD)

        meta = b"".join(
            put_int64(value)
            for value in (
                self.data_size,
                self.index_size,
                self.key_size,
                self.num_blocks,
                self.num_entries,
                self.value_size,
                self.filter_size,
                bloom_off,
                bloom_size,
            )
        )
        meta_off = self.offset
        self._write(meta)

        index_off = self.offset
        self.index_size = self._write_block(self.index_block, True)

        self._write(
            put_int64(index_off)
            + put_int64(self.index_size)
            + put_int64(meta_off)
            + put_int64(len(meta))
        )

    def add(self, key: bytes, value: bytes = b"", opt: Opt = Opt.ADD) -> None:
        """Append a record; keys must be added in ascending order."""
        if self.finished:
            raise RuntimeError("cannot add to a finished table")
        key = bytes(key)
        value = bytes(value)
        self._block_written = False

        if self._needs_reset:
            self.data_block.reset()
            self._needs_reset = False

        if self._pending_index:
            self._last_key = shortest_separator(self._last_key, key)
            self.index_block.add(self._last_key, self._last_block_handle, Opt.ADD)
            self._pending_index = False

        self.data_block.add(key, value, opt)

        self.num_entries += 1
        self.key_size += len(key)
        self.value_size += len(value)

        if self.data_block.current_size() >= BLOCK_SIZE:
            self._last_key = key
            self._flush_data_block()

    def finish(self) -> int:
        """Write the pending block, the index and the footer; return the file size."""
        if self.finished:
            raise RuntimeError("table already finished")
        self._flush_data_block()
        self._write_footer()
        self._write(MAGIC_STR)
        self.finished = True
        flush = getattr(self.stream, "flush", None)
        if flush is not None:
            flush()
        return self.offset

    def __enter__(self) -> "SSTBuilder":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None and not self.finished:
            self.finish()
        return False