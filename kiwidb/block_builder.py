"""Builder of prefix-compressed key/value blocks with restart points."""

from __future__ import annotations

import enum

from .config import RESTART_INTERVAL
from .encoding import Opt, encode_varint32, put_int32


class BlockFlags(enum.IntFlag):
    """Options of a block builder."""

    NOCOMPRESS = 0
    COMPRESS = 1
    INDEX = 2
    FINISHED = 4


class BlockBuilder:
    """Accumulates sorted records into one block.

    Each record is ``<shared><non-shared><value-length><key-suffix><value>``
    where the stored value length is one more than the real one for added
    records and zero for deletions. Data blocks end with the restart offsets
    and their count; index blocks carry no restart array.
    """

    def __init__(self, flags: BlockFlags = BlockFlags.NOCOMPRESS,
                 restart_interval: int = RESTART_INTERVAL):
        self.flags = BlockFlags(flags)
        self.restart_interval = restart_interval
        self.counter = 0
        self.entries = 0
        self.last_key = b""
        self.restarts: list[int] = []
        self.buffer = bytearray()

    @property
    def is_index(self) -> bool:
        return bool(self.flags & BlockFlags.INDEX)

    def add(self, key: bytes, value: bytes, opt: Opt = Opt.ADD) -> None:
        """Append a record; keys must arrive in ascending order."""
        key = bytes(key)
        value = bytes(value)
        opt = Opt(opt)
        if opt == Opt.DEL and value:
            raise ValueError("a deletion record cannot carry a value")

        shared = 0
        if self.counter < self.restart_interval:
            for a, b in zip(self.last_key, key):
                if a != b:
                    break
                shared += 1
        else:
            self.counter = 0

        if shared == 0 and not self.is_index:
            self.restarts.append(len(self.buffer))

        non_shared = len(key) - shared
        vlen = len(value) + (1 if opt == Opt.ADD else 0)

        self.buffer += encode_varint32(shared)
        self.buffer += encode_varint32(non_shared)
        self.buffer += encode_varint32(vlen)
        self.buffer += key[shared:]
        self.buffer += value

        self.last_key = key
        self.counter += 1
        self.entries += 1

    def current_size(self) -> int:
        """Size of the block once flushed, counting a restart array."""
        return len(self.buffer) + 4 * len(self.restarts) + 4

    def flush(self) -> bytes:
        """Finish the block and return its bytes."""
        if not self.is_index:
            for offset in self.restarts:
                self.buffer += put_int32(offset)
            self.buffer += put_int32(len(self.restarts))
        self.flags |= BlockFlags.FINISHED
        return bytes(self.buffer)

    def reset(self) -> None:
        """Empty the block so it can be filled again."""
        self.buffer.clear()
        self.last_key = b""
        self.restarts.clear()
        self.counter = 0
        self.entries = 0