"""Ordered in-memory skip list holding the live memtable."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from typing import Iterator

from .encoding import Opt, varint_length

SKIPLIST_MAXLEVEL = 15


@dataclass(eq=False, slots=True)
class SkipNode:
    """One key with its value and operation."""

    key: bytes
    value: bytes
    opt: Opt
    forward: list = field(default_factory=list, repr=False)

    @property
    def encoded_size(self) -> int:
        """Bytes this record takes in its encoded form."""
        vlen = 0 if self.opt == Opt.DEL else len(self.value) + 1
        size = varint_length(len(self.key)) + len(self.key) + varint_length(vlen)
        if vlen > 1:
            size += vlen - 1
        return size


class SkipList:
    """Sorted map of byte keys with reference counting for shared readers."""

    def __init__(self, max_count: int = 0, rng: random.Random | None = None):
        self.max_count = max_count
        self.count = 0
        self.allocated = 0
        self.level = 0
        self.refcount = 0
        self._rng = rng if rng is not None else random.Random()
        self._lock = threading.Lock()
        self._head = SkipNode(b"", b"", Opt.ADD, [None] * SKIPLIST_MAXLEVEL)

    def _descend(self, key: bytes) -> tuple[SkipNode, list[SkipNode]]:
        update = [self._head] * SKIPLIST_MAXLEVEL
        x = self._head
        for i in range(self.level, -1, -1):
            while (nxt := x.forward[i]) is not None and nxt.key < key:
                x = nxt
            update[i] = x
        return x, update

    def insert(self, key: bytes, value: bytes, opt: Opt = Opt.ADD) -> None:
        """Insert a record, replacing any record with the same key."""
        key = bytes(key)
        value = bytes(value)
        opt = Opt(opt)
        x, update = self._descend(key)
        x = x.forward[0]

        if x is not None and x.key == key:
            self.allocated -= x.encoded_size
            x.value = value
            x.opt = opt
            self.allocated += x.encoded_size
            return

        self.count += 1

        new_level = 0
        while self._rng.random() < 0.5 and new_level < SKIPLIST_MAXLEVEL - 1:
            new_level += 1
        if new_level > self.level:
            self.level = new_level

        node = SkipNode(key, value, opt, [None] * (new_level + 1))
        self.allocated += node.encoded_size
        for i in range(new_level + 1):
            node.forward[i] = update[i].forward[i]
            update[i].forward[i] = node

    def lookup(self, key: bytes) -> SkipNode | None:
        """The node holding exactly ``key``, or None."""
        node = self.lookup_prev(key)
        if node is not None and node.key == bytes(key):
            return node
        return None

    def lookup_prev(self, key: bytes) -> SkipNode | None:
        """The first node whose key is not less than ``key``, or None."""
        x, _ = self._descend(bytes(key))
        return x.forward[0]

    def first(self) -> SkipNode | None:
        """The node with the smallest key, or None when empty."""
        return self._head.forward[0]

    def last(self) -> SkipNode | None:
        """The node with the largest key, or None when empty."""
        x = self._head
        for i in range(self.level, -1, -1):
            while x.forward[i] is not None:
                x = x.forward[i]
        return None if x is self._head else x

    def acquire(self) -> None:
        """Take a reference on the list."""
        with self._lock:
            self.refcount += 1

    def release(self) -> bool:
        """Drop a reference; the contents are discarded when none remain.

        Returns True if this call discarded the contents.
        """
        with self._lock:
            if self.refcount <= 0:
                raise RuntimeError("release without a matching acquire")
            self.refcount -= 1
            if self.refcount:
                return False
            self._head.forward = [None] * SKIPLIST_MAXLEVEL
            self.level = 0
            self.count = 0
            self.allocated = 0
            return True

    def __iter__(self) -> Iterator[SkipNode]:
        node = self._head.forward[0]
        while node is not None:
            yield node
            node = node.forward[0]

    def __len__(self) -> int:
        return self.count