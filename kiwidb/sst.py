"""The on-disk side of the engine: levels of table files and their manifest.

Tables live under ``<basedir>/si/<level>/<filenum>.sst``. The manifest at
``<basedir>/si/manifest`` records the next file number and every file of every
level. Flushing a memtable to disk runs on a background thread. Until it is
done, lookups are answered from the memtable that is being flushed.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from pathlib import Path

from .config import LRU_CACHE_SIZE
from .encoding import Opt
from .metadata import LevelSet, SSTMetadata, decode_manifest, encode_manifest
from .skiplist import SkipList
from .sst_builder import SSTBuilder
from .sst_loader import CorruptSSTError, SSTLoader

log = logging.getLogger(__name__)

_MERGE_EXIT = 1
_MERGE_INPUT = 2

_BYTES_PER_SEEK = 16384
_MIN_ALLOWED_SEEKS = 100


class _BlockCache:
    """Least-recently-used cache of decompressed blocks, bounded in bytes."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.used = 0
        self._entries: OrderedDict = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key, default=None):
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                return default
            self._entries.move_to_end(key)
            return value

    def __setitem__(self, key, value: bytes) -> None:
        with self._lock:
            old = self._entries.pop(key, None)
            if old is not None:
                self.used -= len(old)
            if len(value) > self.capacity:
                return
            self._entries[key] = value
            self.used += len(value)
            while self.used > self.capacity:
                _, evicted = self._entries.popitem(last=False)
                self.used -= len(evicted)

    def __len__(self) -> int:
        return len(self._entries)


class SST:
    """All table files of one database directory, with a background flusher."""

    def __init__(self, basedir, cache_size: int = LRU_CACHE_SIZE):
        self.root = Path(basedir) / "si"
        self.root.mkdir(parents=True, exist_ok=True)
        self.manifest_path = self.root / "manifest"
        self.last_id = 0
        self.levels = LevelSet()
        self.cache = _BlockCache(cache_size)

        self._lock = threading.RLock()
        self._cv = threading.Condition()
        self._state = 0
        self._immutable: SkipList | None = None
        self._error: BaseException | None = None
        self._closed = False

        self._read_manifest()

        self._thread = threading.Thread(target=self._run, name="sst-merge", daemon=True)
        self._thread.start()

    @property
    def file_count(self) -> int:
        return self.levels.file_count

    @property
    def comp_score(self) -> float:
        return self.levels.comp_score

    @property
    def comp_level(self) -> int:
        return self.levels.comp_level

    def _path(self, level: int, filenum: int) -> Path:
        return self.root / str(level) / f"{filenum}.sst"

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("the table set is closed")

    def _raise_pending(self) -> None:
        if self._error is not None:
            error, self._error = self._error, None
            raise RuntimeError("background merge failed") from error

    def _schedule_compaction(self) -> None:
        score, level = self.levels.evaluate_compaction()
        if score >= 1:
            log.info("Level %d needs compaction (score %.3f)", level, score)

    def _read_manifest(self) -> None:
        if not self.manifest_path.exists():
            log.info("Manifest file not present")
            return
        last_id, levels = decode_manifest(self.manifest_path.read_bytes())
        self.last_id = last_id
        for level_files in levels:
            for meta in level_files:
                path = self._path(meta.level, meta.filenum)
                try:
                    loader = SSTLoader.from_path(path, meta.level, meta.filenum, self.cache)
                except (OSError, CorruptSSTError) as exc:
                    log.warning("Skipping table %s: %s", path, exc)
                    continue
                meta.loader = loader
                meta.filesize = len(loader.data)
                if meta.allowed_seeks < 0:
                    meta.allowed_seeks = meta.filesize // _BYTES_PER_SEEK
                self.levels.add(meta)
        log.debug("%s", self.levels.summary())
        self._schedule_compaction()

    def _write_manifest(self) -> None:
        data = encode_manifest(self.last_id, self.levels.levels)
        tmp = self.manifest_path.with_name(self.manifest_path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, self.manifest_path)

    def filename_for(self, level: int, filenum: int) -> Path:
        """Path of table ``filenum`` in ``level``; its directory is created."""
        path = self._path(level, filenum)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def new_file(self, level: int) -> tuple[SSTMetadata, Path]:
        """Reserve the next file number in ``level``; return its metadata and path."""
        with self._lock:
            filenum = self.last_id
            self.last_id += 1
        return SSTMetadata(level=level, filenum=filenum), self.filename_for(level, filenum)

    def add_file(self, meta: SSTMetadata) -> None:
        """Register a written table and record it in the manifest."""
        with self._lock:
            self.levels.add(meta)
            self._write_manifest()
            log.debug("%s", self.levels.summary())

    def delete_files(self, level: int, metas) -> None:
        """Drop tables from ``level`` and remove them from disk."""
        metas = list(metas)
        with self._lock:
            self.levels.remove(level, metas)
            for meta in metas:
                loader = meta.loader
                path = loader.path if loader is not None and loader.path else \
                    self._path(meta.level, meta.filenum)
                log.info("Deleting %s", path)
                path.unlink(missing_ok=True)
                meta.loader = None

    def _merge_into_level(self, skiplist: SkipList) -> None:
        first = skiplist.first()
        last = skiplist.last()
        if first is None or last is None:
            return
        with self._lock:
            level = self.levels.pick_level_for_compaction(first.key, last.key)
            meta, path = self.new_file(level)
        log.info("Writing %d memtable records to %s", len(skiplist), path)
        with path.open("wb") as stream:
            builder = SSTBuilder(stream)
            for node in skiplist:
                value = b"" if node.opt == Opt.DEL else node.value
                builder.add(node.key, value, node.opt)
            builder.finish()
        meta.smallest_key = first.key
        meta.largest_key = last.key
        meta.filesize = path.stat().st_size
        meta.loader = SSTLoader.from_path(path, level, meta.filenum, self.cache)
        meta.allowed_seeks = max(meta.filesize // _BYTES_PER_SEEK, _MIN_ALLOWED_SEEKS)
        self.add_file(meta)

    def _run(self) -> None:
        while True:
            with self._cv:
                while not self._state:
                    self._cv.wait()
                if self._state & _MERGE_INPUT and self._immutable is not None:
                    try:
                        self._merge_into_level(self._immutable)
                    except Exception as exc:  # reported to the caller on close or merge
                        log.exception("Background merge failed")
                        self._error = exc
                    finally:
                        self._immutable.release()
                self._immutable = None
                if self._state & _MERGE_EXIT:
                    self._cv.notify_all()
                    return
                self._state = 0
                self._cv.notify_all()

    def merge(self, skiplist: SkipList) -> None:
        """Hand a full memtable to the background thread to be written out."""
        if len(skiplist) == 0:
            raise ValueError("cannot merge an empty memtable")
        with self._cv:
            self._ensure_open()
            while self._state:
                self._cv.wait()
            self._raise_pending()
            skiplist.acquire()
            self._immutable = skiplist
            self._state |= _MERGE_INPUT
            self._cv.notify_all()

    def get(self, key: bytes) -> bytes | None:
        """Value stored for ``key``, or None if it is absent or deleted."""
        self._ensure_open()
        key = bytes(key)
        with self._cv:
            pending = self._immutable
            if pending is not None:
                node = pending.lookup(key)
                if node is not None:
                    return node.value if node.opt == Opt.ADD else None
        with self._lock:
            for target in self.levels.candidates(key):
                target.allowed_seeks -= 1
                if target.allowed_seeks <= 0:
                    self._schedule_compaction()
                    target.allowed_seeks = target.filesize // _BYTES_PER_SEEK
                found = target.loader.get(key)
                if found is not None:
                    value, opt = found
                    return value if opt == Opt.ADD else None
        return None

    def close(self) -> None:
        """Finish any pending flush, stop the thread and write the manifest."""
        if self._closed:
            return
        with self._cv:
            self._state |= _MERGE_EXIT
            self._cv.notify_all()
        self._thread.join()
        self._closed = True
        with self._lock:
            self._write_manifest()
        self._raise_pending()

    def __enter__(self) -> "SST":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False