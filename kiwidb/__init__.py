"""Skip-list memtable, sorted string table files, level manifest and merging iterator of an LSM-tree storage engine."""

__version__ = "0.1.0"