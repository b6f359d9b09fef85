"""File metadata, the manifest format and the per-level table layout."""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from typing import Any, Iterator, Sequence

from .config import GRANDPARENT_OVERLAP, MAX_FILES_LEVEL0, MAX_LEVELS, MAX_MEM_COMPACT_LEVEL
from .encoding import compare_keys, decode_varint32, encode_varint32, range_intersects

_DEFAULT_ALLOWED_SEEKS = 100
_UINT32_MASK = 0xFFFFFFFF
_SIZE_UNITS = ("bytes", "KiB  ", "MiB  ", "GiB  ", "TiB  ")


@dataclass(eq=False)
class SSTMetadata:
    """What the engine knows about one table file."""

    level: int
    filenum: int
    filesize: int = 0
    allowed_seeks: int = _DEFAULT_ALLOWED_SEEKS
    smallest_key: bytes = b""
    largest_key: bytes = b""
    loader: Any = field(default=None, repr=False)


def max_size_for_level(level: int) -> float:
    """Byte budget of a level above level 0: 10 MiB, times ten per level past 1."""
    result = 10 * 1048576.0
    while level > 1:
        result *= 10
        level -= 1
    return result


def _check_level(level: int) -> None:
    if not 0 <= level < MAX_LEVELS:
        raise ValueError(f"level {level} out of range 0..{MAX_LEVELS - 1}")


def encode_manifest(last_id: int, levels: Sequence[Sequence[SSTMetadata]]) -> bytes:
    """Serialise the next file number and the files of every level."""
    if len(levels) > MAX_LEVELS:
        raise ValueError(f"at most {MAX_LEVELS} levels can be stored")
    out = bytearray(encode_varint32(last_id))
    for level in range(MAX_LEVELS):
        metas = levels[level] if level < len(levels) else ()
        out += encode_varint32(len(metas))
        for meta in metas:
            out += encode_varint32(meta.filenum)
            out += encode_varint32(len(meta.smallest_key))
            out += meta.smallest_key
            out += encode_varint32(len(meta.largest_key))
            out += meta.largest_key
            out += encode_varint32(meta.allowed_seeks & _UINT32_MASK)
    return bytes(out)


def _read_key(data: bytes, pos: int) -> tuple[bytes, int]:
    length, pos = decode_varint32(data, pos)
    if pos + length > len(data):
        raise ValueError("manifest key runs past the end of the data")
    return data[pos:pos + length], pos + length


def decode_manifest(data: bytes) -> tuple[int, list[list[SSTMetadata]]]:
    """Parse a manifest into ``(last_id, files per level)``.

    Levels missing at the end of the data come back empty. Allowed seeks are
    returned signed; a negative count means it has to be derived from the size.
    """
    data = bytes(data)
    if not data:
        raise ValueError("empty manifest")
    last_id, pos = decode_varint32(data, 0)
    levels: list[list[SSTMetadata]] = [[] for _ in range(MAX_LEVELS)]
    level = 0
    while level < MAX_LEVELS and pos < len(data):
        count, pos = decode_varint32(data, pos)
        for _ in range(count):
            if pos >= len(data):
                raise ValueError("manifest ends before all files of a level are listed")
            filenum, pos = decode_varint32(data, pos)
            smallest, pos = _read_key(data, pos)
            largest, pos = _read_key(data, pos)
            seeks, pos = decode_varint32(data, pos)
            if seeks & 0x80000000:
                seeks -= 1 << 32
            levels[level].append(
                SSTMetadata(
                    level=level,
                    filenum=filenum,
                    allowed_seeks=seeks,
                    smallest_key=smallest,
                    largest_key=largest,
                )
            )
        level += 1
    return last_id, levels


class LevelSet:
    """Table files of every level, each level kept sorted by smallest key.

    Files in level 0 may overlap one another; in higher levels they do not.
    """

    def __init__(self):
        self.levels: list[list[SSTMetadata]] = [[] for _ in range(MAX_LEVELS)]
        self.comp_level = -1
        self.comp_score = -1.0

    @property
    def file_count(self) -> int:
        return sum(len(files) for files in self.levels)

    def __iter__(self) -> Iterator[SSTMetadata]:
        for files in self.levels:
            yield from files

    def add(self, meta: SSTMetadata) -> None:
        """Register a file in its level."""
        _check_level(meta.level)
        files = self.levels[meta.level]
        files.append(meta)
        files.sort(key=lambda m: m.smallest_key)

    def remove(self, level: int, metas: Sequence[SSTMetadata]) -> None:
        """Drop the given files from ``level``, keeping the others in order."""
        _check_level(level)
        files = self.levels[level]
        targets = {id(meta) for meta in metas}
        present = {id(meta) for meta in files}
        missing = targets - present
        if missing:
            raise ValueError(f"{len(missing)} file(s) not found in level {level}")
        self.levels[level] = [meta for meta in files if id(meta) not in targets]

    def files(self, level: int) -> list[SSTMetadata]:
        """The files of ``level``, sorted by smallest key."""
        _check_level(level)
        return list(self.levels[level])

    def size_for_level(self, level: int) -> int:
        """Total bytes of the files in ``level``."""
        _check_level(level)
        return sum(meta.filesize for meta in self.levels[level])

    def find_file(self, level: int, key: bytes) -> int:
        """Index of the first file of ``level`` whose largest key is not below ``key``."""
        _check_level(level)
        largest = [meta.largest_key for meta in self.levels[level]]
        return bisect.bisect_left(largest, bytes(key))

    def get_overlapping_inputs(self, level: int, begin: bytes,
                               end: bytes) -> tuple[list[SSTMetadata], bytes, bytes]:
        """Files of ``level`` touching ``[begin, end]``, widening the range to cover them.

        Returns the files and the widened range.
        """
        _check_level(level)
        begin = bytes(begin)
        end = bytes(end)
        files = self.levels[level]
        inputs: list[SSTMetadata] = []
        i = 0
        while i < len(files):
            target = files[i]
            i += 1
            if not range_intersects(begin, target.smallest_key, end, target.largest_key):
                continue
            inputs.append(target)
            widened = False
            if compare_keys(target.smallest_key, begin) < 0:
                begin = target.smallest_key
                widened = True
            if compare_keys(target.largest_key, end) > 0:
                end = target.largest_key
                widened = True
            if widened:
                inputs.clear()
                i = 0
        return inputs, begin, end

    def range_overlaps(self, level: int, start: bytes, stop: bytes) -> bool:
        """Whether any file of ``level`` intersects ``[start, stop]``."""
        _check_level(level)
        start = bytes(start)
        stop = bytes(stop)
        files = self.levels[level]
        if level == 0:
            return any(
                range_intersects(start, meta.smallest_key, stop, meta.largest_key)
                for meta in files
            )
        pos = self.find_file(level, start)
        if pos >= len(files):
            return False
        meta = files[pos]
        return range_intersects(start, meta.smallest_key, stop, meta.largest_key)

    def pick_level_for_compaction(self, start: bytes, stop: bytes) -> int:
        """Level a flushed memtable spanning ``[start, stop]`` should land in."""
        level = 0
        if not self.range_overlaps(0, start, stop):
            size = 0
            while level < MAX_MEM_COMPACT_LEVEL:
                if self.range_overlaps(level + 1, start, stop):
                    break
                inputs, _, _ = self.get_overlapping_inputs(level + 2, start, stop)
                size += sum(meta.filesize for meta in inputs)
                if size > GRANDPARENT_OVERLAP:
                    break
                level += 1
        return level

    def evaluate_compaction(self) -> tuple[float, int]:
        """Score every level and remember the neediest; return ``(score, level)``.

        A score of 1 or more means the level should be compacted.
        """
        comp_level = -1
        comp_score = -1.0
        for level in range(MAX_LEVELS):
            if level == 0:
                score = len(self.levels[0]) / MAX_FILES_LEVEL0
            else:
                score = self.size_for_level(level) / max_size_for_level(level)
            if score > comp_score:
                comp_score = score
                comp_level = level
        self.comp_score = comp_score
        self.comp_level = comp_level
        return comp_score, comp_level

    def candidates(self, key: bytes) -> list[SSTMetadata]:
        """Files that may hold ``key``, in the order they must be searched."""
        key = bytes(key)
        targets = sorted(
            (
                meta
                for meta in self.levels[0]
                if compare_keys(key, meta.smallest_key) >= 0
                and compare_keys(key, meta.largest_key) <= 0
            ),
            key=lambda meta: meta.filenum,
            reverse=True,
        )
        for level in range(1, MAX_LEVELS):
            files = self.levels[level]
            if not files:
                continue
            pos = self.find_file(level, key)
            if pos >= len(files) or compare_keys(key, files[pos].smallest_key) < 0:
                continue
            targets.append(files[pos])
        return targets

    def summary(self) -> str:
        """Human-readable listing of every level with its size and files."""
        lines = []
        for level in range(MAX_LEVELS):
            size = self.size_for_level(level)
            unit = 0
            while size > 1024 and unit < len(_SIZE_UNITS) - 1:
                size //= 1024
                unit += 1
            files = self.levels[level]
            lines.append(
                f"--- Level {level} [{len(files):3d} files, {size:3d} {_SIZE_UNITS[unit]}]---"
            )
            for meta in files:
                smallest = meta.smallest_key.decode("utf-8", "replace")
                largest = meta.largest_key.decode("utf-8", "replace")
                lines.append(
                    f"Metadata filenum:{meta.filenum} smallest: {smallest} largest: {largest}"
                )
        return "\n".join(lines)