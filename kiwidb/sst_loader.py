"""Reader of sorted string table files: point lookups and ordered iteration.

Files written by :class:`~kiwidb.sst_builder.SSTBuilder` are accepted. Lookups
go to the data block named by the index and do not consult the filter
section; the answer is the same with or without it.
"""

from __future__ import annotations

import bisect
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, MutableMapping, NamedTuple

from .config import FOOTER_SIZE, MAGIC_STR
from .encoding import Opt, compare_keys, decode_varint32, decode_varint64, get_int32, get_int64
from .sst_builder import BlockType, _snappy_decompress

_BLOCK_TRAILER = 8
_META_FIELDS = 9


class CorruptSSTError(ValueError):
    """The bytes do not form a valid table."""


@dataclass(frozen=True, slots=True)
class IndexEntry:
    """Where one data block lives; ``key`` is not less than any key in it."""

    key: bytes
    offset: int
    size: int


class _Record(NamedTuple):
    key: bytes
    value: bytes
    opt: Opt
    end: int


def _decode_record(content: bytes, pos: int, prev_key: bytes) -> _Record:
    try:
        shared, pos = decode_varint32(content, pos)
        non_shared, pos = decode_varint32(content, pos)
        vlen, pos = decode_varint32(content, pos)
    except ValueError as exc:
        raise CorruptSSTError("malformed record header") from exc
    if shared > len(prev_key):
        raise CorruptSSTError("record shares more bytes than the previous key holds")
    key = prev_key[:shared] + content[pos:pos + non_shared]
    pos += non_shared
    value = content[pos:pos + vlen - 1] if vlen > 1 else b""
    pos += max(0, vlen - 1)
    if pos > len(content):
        raise CorruptSSTError("record runs past the end of its block")
    return _Record(key, value, Opt.DEL if vlen == 0 else Opt.ADD, pos)


def _layout(content: bytes) -> tuple[int, list[int]]:
    """End of the record area and the restart offsets of a data block."""
    if len(content) < 4:
        raise CorruptSSTError("data block too short")
    count = get_int32(content, len(content) - 4)
    end = len(content) - 4 * (count + 1)
    if end < 0:
        raise CorruptSSTError("restart array larger than its block")
    return end, [get_int32(content, end + 4 * i) for i in range(count)]


def _scan(content: bytes, end: int, restarts: list[int], key: bytes) -> _Record | None:
    """First record of the block whose key is not less than ``key``."""
    if not restarts:
        return None
    left, right = 0, len(restarts) - 1
    while left < right:
        mid = (left + right + 1) // 2
        if _decode_record(content, restarts[mid], b"").key <= key:
            left = mid
        else:
            right = mid - 1
    pos = restarts[left]
    prev = b""
    while pos < end:
        record = _decode_record(content, pos, prev)
        if record.key >= key:
            return record
        prev = record.key
        pos = record.end
    return None


class SSTLoader:
    """One table held in memory, with its index and statistics."""

    def __init__(self, data: bytes, level: int = 0, filenum: int = 0,
                 cache: MutableMapping | None = None):
        self.data = bytes(data)
        self.level = level
        self.filenum = filenum
        self.cache = cache
        self.path: Path | None = None
        self.index: list[IndexEntry] = []
        self._read_footer()
        self._index_keys = [entry.key for entry in self.index]

    @classmethod
    def from_path(cls, path, level: int = 0, filenum: int = 0,
                  cache: MutableMapping | None = None) -> "SSTLoader":
        """Load the table stored at ``path``."""
        path = Path(path)
        loader = cls(path.read_bytes(), level, filenum, cache)
        loader.path = path
        return loader

    def _read_footer(self) -> None:
        data = self.data
        if len(data) < FOOTER_SIZE:
            raise CorruptSSTError("file too short to hold a footer")
        if data[-len(MAGIC_STR):] != MAGIC_STR:
            raise CorruptSSTError("missing table magic")
        base = len(data) - FOOTER_SIZE
        index_off, index_sz, meta_off, meta_sz = (get_int64(data, base + 8 * i) for i in range(4))
        if meta_sz < 8 * _META_FIELDS or meta_off + meta_sz > base:
            raise CorruptSSTError("meta block out of range")
        (self.data_size, self.index_size, self.key_size, self.num_blocks,
         self.num_entries, self.value_size, self.filter_size,
         self.bloom_off, self.bloom_size) = (
            get_int64(data, meta_off + 8 * i) for i in range(_META_FIELDS)
        )
        self._load_index(index_off, index_sz)

    def _load_index(self, offset: int, size: int) -> None:
        data = self.data
        if size <= _BLOCK_TRAILER or offset + size > len(data):
            raise CorruptSSTError("index block out of range")
        stop = offset + size - _BLOCK_TRAILER
        block_type = get_int32(data, stop)
        block_crc = get_int32(data, stop + 4)
        if block_type != BlockType.NO_COMPRESSION:
            raise CorruptSSTError(f"unexpected index block type {block_type}")
        actual_crc = zlib.crc32(data[offset:stop]) & 0xFFFFFFFF
        if actual_crc != block_crc:
            raise CorruptSSTError(
                f"index block corrupted: data CRC {actual_crc:X}, block CRC {block_crc:X}"
            )
        pos = offset
        try:
            while pos < stop:
                _shared, pos = decode_varint32(data, pos)
                klen, pos = decode_varint32(data, pos)
                _vlen, pos = decode_varint32(data, pos)
                key = data[pos:pos + klen]
                pos += klen
                block_offset, pos = decode_varint64(data, pos)
                block_size, pos = decode_varint64(data, pos)
                self.index.append(IndexEntry(key, block_offset, block_size))
        except ValueError as exc:
            raise CorruptSSTError("malformed index entry") from exc

    def _locate(self, key: bytes) -> int | None:
        """Position in the index of the only block that may hold ``key``."""
        if not self.index:
            return None
        pos = bisect.bisect_left(self._index_keys, key)
        return min(pos, len(self.index) - 1)

    def _read_block(self, entry: IndexEntry, cache: bool) -> bytes:
        """Block contents without the type and CRC trailer, expanded if needed."""
        cache_key = (self.filenum, entry.offset)
        if cache and self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached
        if entry.size < _BLOCK_TRAILER or entry.offset + entry.size > len(self.data):
            raise CorruptSSTError("data block out of range")
        stop = entry.offset + entry.size - _BLOCK_TRAILER
        block_type = get_int32(self.data, stop)
        raw = self.data[entry.offset:stop]
        if block_type == BlockType.NO_COMPRESSION:
            return raw
        if block_type != BlockType.SNAPPY_COMPRESSION:
            raise CorruptSSTError(f"unknown block type {block_type}")
        try:
            content = _snappy_decompress(raw)
        except ValueError as exc:
            raise CorruptSSTError("cannot decompress data block") from exc
        if cache and self.cache is not None:
            self.cache[cache_key] = content
        return content

    def get(self, key: bytes) -> tuple[bytes, Opt] | None:
        """``(value, opt)`` stored for ``key``, or None when absent."""
        key = bytes(key)
        pos = self._locate(key)
        if pos is None:
            return None
        content = self._read_block(self.index[pos], cache=True)
        end, restarts = _layout(content)
        record = _scan(content, end, restarts, key)
        if record is None or record.key != key:
            return None
        return record.value, record.opt

    def iterator(self, key: bytes | None = None) -> "SSTLoaderIterator":
        """Cursor at the first record, or at the first key not less than ``key``."""
        return SSTLoaderIterator(self, key)

    def __iter__(self) -> Iterator[tuple[bytes, bytes, Opt]]:
        cursor = self.iterator()
        while cursor.valid:
            yield cursor.key, cursor.value, cursor.opt
            cursor.advance()


class SSTLoaderIterator:
    """Forward cursor over the records of one table."""

    def __init__(self, loader: SSTLoader, key: bytes | None = None):
        self.loader = loader
        self.block = -1
        self.valid = False
        self.key = b""
        self.value = b""
        self.opt = Opt.ADD
        self._content = b""
        self._restarts: list[int] = []
        self._pos = 0
        self._end = 0
        if key is None:
            self._next_block()
        else:
            self._seek(bytes(key))

    def _load(self, block: int) -> None:
        self.block = block
        self._content = self.loader._read_block(self.loader.index[block], cache=False)
        self._end, self._restarts = _layout(self._content)
        self._pos = 0

    def _set(self, record: _Record) -> None:
        self.key, self.value, self.opt, self._pos = record
        self.valid = True

    def _next_block(self) -> None:
        while True:
            following = self.block + 1
            if following >= len(self.loader.index):
                self.block = -1
                self.valid = False
                self._content = b""
                self._pos = self._end = 0
                return
            self._load(following)
            if self._pos < self._end:
                self._set(_decode_record(self._content, self._pos, self.key))
                return

    def _seek(self, key: bytes) -> None:
        block = self.loader._locate(key)
        if block is None:
            return
        self._load(block)
        record = _scan(self._content, self._end, self._restarts, key)
        if record is None:
            self._next_block()
        else:
            self._set(record)

    def advance(self) -> None:
        """Move to the next record; the cursor turns invalid past the last one."""
        if not self.valid:
            return
        if self._pos >= self._end:
            self._next_block()
        else:
            self._set(_decode_record(self._content, self._pos, self.key))

    def compare(self, other: "SSTLoaderIterator") -> int:
        """Order two cursors by current key; an exhausted cursor sorts first."""
        if self.valid and other.valid:
            return compare_keys(self.key, other.key)
        if not self.valid and not other.valid:
            return 0
        return -1 if not self.valid else 1