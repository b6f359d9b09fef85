# kiwidb

kiwidb provides the pieces of a storage engine built on a log-structured
merge tree. Writes collect in an in-memory skip list. A full skip list is
written out as an immutable *sorted string table* (SST) file. Table files
are kept in levels and described by a manifest. The package is pure Python
and has no runtime dependencies.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

| Module                 | What it provides                                                   |
|------------------------|--------------------------------------------------------------------|
| `kiwidb.config`        | Engine constants: block size, restart interval, level limits        |
| `kiwidb.encoding`      | Varints, little-endian fixed-width integers, `compare_keys`, `range_intersects`, and `Opt` (`ADD` / `DEL`) |
| `kiwidb.skiplist`      | `SkipList` and `SkipNode`, the sorted in-memory table               |
| `kiwidb.block_builder` | `BlockBuilder` and `BlockFlags`, for prefix-compressed data and index blocks |
| `kiwidb.sst_builder`   | `SSTBuilder`, which writes a complete table file, and `shortest_separator` |
| `kiwidb.sst_loader`    | `SSTLoader`, `SSTLoaderIterator` and `CorruptSSTError`, for point lookups and ordered scans |
| `kiwidb.metadata`      | `SSTMetadata`, `LevelSet`, `encode_manifest` and `decode_manifest`  |
| `kiwidb.merger`        | `FileRange`, `ChainedIterator` and `MergeIterator`, which merge several tables into one ordered stream |
| `kiwidb.sst`           | `SST`, which manages the table files of one directory               |

## Usage

### An in-memory table

```python
from kiwidb.encoding import Opt
from kiwidb.skiplist import SkipList

memtable = SkipList(1_000_000)
memtable.insert(b"apple", b"red", Opt.ADD)
memtable.insert(b"banana", b"yellow", Opt.ADD)
memtable.insert(b"apple", b"green", Opt.ADD)   # replaces the earlier value

node = memtable.lookup(b"apple")
print(node.value, len(memtable))                # b'green' 2
```

Inserting a key that is already present replaces its value and operation;
no node is added. Iterating over a `SkipList` yields its nodes in key
order. `lookup_prev` returns the first node whose key is not less than the
one given. `acquire` and `release` count references; the last `release`
empties the list.

### Writing and reading a table file

```python
from kiwidb.encoding import Opt
from kiwidb.sst_builder import SSTBuilder
from kiwidb.sst_loader import SSTLoader

with open("0.sst", "wb") as stream, SSTBuilder(stream) as builder:
    builder.add(b"a", b"1", Opt.ADD)
    builder.add(b"b", b"2", Opt.ADD)
    builder.add(b"c", b"", Opt.DEL)

loader = SSTLoader.from_path("0.sst", 0, 0, None)
print(loader.get(b"b"))      # (b'2', <Opt.ADD: 0>)
print(loader.get(b"z"))      # None

for key, value, opt in loader:
    print(key, value, opt)
```

Keys must be added to the builder in ascending order. The builder:

- splits records into data blocks of about 4 KiB;
- stores each key as a suffix of the previous one, starting afresh every
  16 records;
- compresses a data block in the snappy raw format when that saves at least
  a fifth of its size;
- follows every block with its type and a CRC-32;
- ends the file with a metadata block, an index block, a 40-byte footer and
  an 8-byte magic string.

The filter section of a table is written empty, and lookups do not use it.

`SSTLoader` takes the bytes of a table (or a path through `from_path`) and
an optional mapping used as a cache of decompressed blocks. It checks the
magic string, the layout of the footer and the CRC of the index block,
and raises `CorruptSSTError` when the file is damaged. `loader.iterator(key)`
returns a cursor placed at the first record whose key is not less than
`key`; `advance()` moves it on, and `valid` turns false at the end.

### Merging tables

```python
from kiwidb.merger import FileRange, MergeIterator
from kiwidb.metadata import SSTMetadata
from kiwidb.sst_loader import SSTLoader

inputs = FileRange(0)
for filenum, path in enumerate(["0.sst", "1.sst"]):
    meta = SSTMetadata(level=0, filenum=filenum)
    meta.loader = SSTLoader.from_path(path, 0, filenum, None)
    inputs.files.append(meta)

for key, value, opt in MergeIterator(inputs):
    print(key, value, opt)
```

`MergeIterator` yields each key once, in order. When several inputs hold
the same key, the record from the lower level wins, and within a level the
one from the file with the higher number. Deletion records are yielded
like any other. A second `FileRange` can be passed as the parent level,
and a callable that tells when an output file should be cut
(`exceeds_overlap`).

### Table files on disk

```python
from kiwidb.sst import SST

with SST("/var/lib/mydb", 64 * 1048576) as tables:
    tables.merge(memtable)       # write the memtable out as a new table
    print(tables.get(b"apple"))  # b'green'
```

`SST` keeps its files under `<basedir>/si/<level>/<filenum>.sst` and the
layout in `<basedir>/si/manifest`. The manifest is read when the directory
is opened and written after every new table and on `close`. Tables listed
in the manifest that cannot be read are skipped with a warning.

`merge` hands a non-empty skip list to a background thread, which writes it
out as one table. The table goes to level 0, 1 or 2, depending on which
tables its key range overlaps (`LevelSet.pick_level_for_compaction`). When
the thread is done it releases the skip list, which empties it if no other
reference is held. While a table is being written, `get` answers from the
skip list itself. `get` returns the stored value, or `None` when the key is
absent or its newest record is a deletion. An error in the background
thread is raised as `RuntimeError` by the next `merge` or by `close`.

Level 0 tables may overlap one another; tables in higher levels are meant
to cover disjoint key ranges. `LevelSet.evaluate_compaction` scores every
level. Level 0 is scored by its file count against a limit of four. The
other levels are scored by their size against a budget of 10 MiB for
level 1, ten times more for each level after that. A score of 1 or more
means the level is due.

## What the package does not do

- It does not run compactions. `SST` scores the levels and logs when one is
  due. No job merges tables into the next level or drops deletion records.
  `MergeIterator` and `LevelSet.get_overlapping_inputs` are the parts such a
  job would use.
- It keeps no write-ahead log. A skip list that has not been written out is
  lost when the process ends.
- It offers no database front end: no put/delete API over a memtable and
  the tables together, no server and no command-line tool.