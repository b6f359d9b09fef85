"""Merging of table files into one ordered stream for compaction."""

from __future__ import annotations

import heapq
import itertools
from typing import Callable, Iterator, Sequence

from .config import MAX_LEVELS
from .encoding import Opt, compare_keys
from .metadata import SSTMetadata
from .sst_loader import SSTLoaderIterator

NO_OVERLAP = 0xFFFFFFFF
"""Value of ``overlaps_from`` meaning that no file needs overlap checks."""


class FileRange:
    """Files of one level taking part in a compaction, with their key span."""

    def __init__(self, level: int = 0):
        if not 0 <= level < MAX_LEVELS:
            raise ValueError(f"level {level} out of range 0..{MAX_LEVELS - 1}")
        self.level = level
        self.files: list[SSTMetadata] = []
        self.smallest_key = b""
        self.largest_key = b""
        self.overlaps_from = NO_OVERLAP

    def size(self) -> int:
        """Total bytes of the files in the range."""
        return sum(meta.filesize for meta in self.files)

    def __repr__(self) -> str:
        return (
            f"FileRange(level={self.level}, files={[m.filenum for m in self.files]}, "
            f"smallest={self.smallest_key!r}, largest={self.largest_key!r})"
        )


class ChainedIterator:
    """Iterates over several non-overlapping files one after another."""

    def __init__(self, files: Sequence[SSTMetadata], overlaps_from: int = NO_OVERLAP,
                 key: bytes | None = None):
        self.files = list(files)
        if not self.files:
            raise ValueError("a chained iterator needs at least one file")
        self.overlaps_from = overlaps_from
        self.skip = False
        self.pos = 0
        self.current: SSTLoaderIterator = self._open(key)
        while not self.current.valid and self.pos < len(self.files):
            self.current = self._open(None)

    def _open(self, key: bytes | None) -> SSTLoaderIterator:
        meta = self.files[self.pos]
        self.pos += 1
        return meta.loader.iterator(key)

    @property
    def valid(self) -> bool:
        return self.current.valid

    def _require_valid(self) -> None:
        if not self.current.valid:
            raise RuntimeError("iterator is exhausted")

    @property
    def key(self) -> bytes:
        self._require_valid()
        return self.current.key

    @property
    def value(self) -> bytes:
        self._require_valid()
        return self.current.value

    @property
    def opt(self) -> Opt:
        self._require_valid()
        return self.current.opt

    @property
    def level(self) -> int:
        return self.current.loader.level

    @property
    def filenum(self) -> int:
        return self.current.loader.filenum

    def advance(self) -> bool:
        """Move to the next record, crossing into later files as needed.

        Returns True if a file at or past ``overlaps_from`` was entered.
        """
        self.current.advance()
        crossed = False
        while not self.current.valid and self.pos < len(self.files):
            self.current = self._open(None)
            if self.pos >= self.overlaps_from:
                crossed = True
        return crossed

    def compare(self, other: "ChainedIterator") -> int:
        """Order by key, then level, then newest file; mark the loser of a tie.

        On equal keys the record from the lower level, or from the newer file
        in the same level, sorts first and the other iterator gets ``skip`` set.
        """
        if not (self.valid and other.valid):
            raise ValueError("both iterators must be valid to compare")
        ret = compare_keys(self.key, other.key)
        if ret == 0:
            ret = self.level - other.level
            if ret == 0:
                ret = other.filenum - self.filenum
            if ret < 0:
                other.skip = True
            else:
                self.skip = True
        return ret


class MergeIterator:
    """Ordered merge of a compaction's inputs, keeping the newest record per key."""

    def __init__(self, current_range: FileRange, parent_range: FileRange | None = None,
                 exceeds_overlap: Callable[[bytes], bool] | None = None):
        self.current_range = current_range
        self.parent_range = parent_range
        self._exceeds = exceeds_overlap
        self.overlap_check = False
        self.current: ChainedIterator | None = None
        self.valid = False

        iterators: list[ChainedIterator] = []
        if parent_range is not None and parent_range.files:
            iterators.append(ChainedIterator(parent_range.files, parent_range.overlaps_from))

        if current_range.level == 0:
            for i, meta in enumerate(current_range.files):
                overlaps_from = 0 if i >= current_range.overlaps_from else NO_OVERLAP
                iterators.append(ChainedIterator([meta], overlaps_from))
        else:
            iterators.append(ChainedIterator(current_range.files, current_range.overlaps_from))

        if not iterators:
            raise ValueError("nothing to merge")

        self.iterators = iterators
        self._heap: list = []
        self._seq = itertools.count()
        for iterator in iterators:
            if iterator.valid:
                self._push(iterator)
        self.advance()

    def _push(self, iterator: ChainedIterator) -> None:
        entry = (iterator.key, iterator.level, -iterator.filenum, next(self._seq), iterator)
        heapq.heappush(self._heap, entry)

    def _step(self, iterator: ChainedIterator) -> None:
        if iterator.advance():
            self.overlap_check = True
        if iterator.valid:
            iterator.skip = False
            self._push(iterator)

    def advance(self) -> None:
        """Move to the next distinct key."""
        if self.current is not None:
            self._step(self.current)
        if not self._heap:
            self.current = None
            self.valid = False
            return
        winner = heapq.heappop(self._heap)[-1]
        winner.skip = False
        while self._heap and self._heap[0][0] == winner.key:
            shadowed = heapq.heappop(self._heap)[-1]
            shadowed.skip = True
            self._step(shadowed)
        self.current = winner
        self.valid = True

    def _require_current(self) -> ChainedIterator:
        if self.current is None:
            raise RuntimeError("merge iterator has no current record")
        return self.current

    @property
    def key(self) -> bytes:
        return self._require_current().key

    @property
    def value(self) -> bytes:
        return self._require_current().value

    @property
    def opt(self) -> Opt:
        return self._require_current().opt

    def exceeds_overlap(self, key: bytes) -> bool:
        """Whether output should be cut before ``key`` to limit grandparent overlap."""
        self._require_current()
        if not self.overlap_check or self._exceeds is None:
            return False
        return bool(self._exceeds(bytes(key)))

    def __iter__(self) -> Iterator[tuple[bytes, bytes, Opt]]:
        while self.valid:
            yield self.key, self.value, self.opt
            self.advance()