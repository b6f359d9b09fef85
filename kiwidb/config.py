"""Tunable constants shared by the storage engine."""

INDEXER_MAX_LOG_MSG = 1024
MAX_FILENAME = 255

LEVEL_INFO = 0
LEVEL_DEBUG = 1
LEVEL_WARNING = 2
LEVEL_ERROR = 3

RESTART_INTERVAL = 16

SKIPLIST_SIZE = 1_000_000
MAX_SKIPLIST_ALLOCATION = 4 * 1048576

POOL_SIZE = 1024 * 8
BLOCK_SIZE = 4096
START_MAP_SIZE = 1024

START_DIRECTORY = "/tmp"

MAGIC_STR = b"pedobear"
IS_LITTLE_ENDIAN = True
FOOTER_SIZE = 40

MAX_LEVELS = 7
MAX_FILES_LEVEL0 = 4
MAX_FILES = 100

EXPANSION_LIMIT = 25 * 2 * 1048576
GRANDPARENT_OVERLAP = 10 * 2 * 1048576
MAX_MEM_COMPACT_LEVEL = 2

WITH_BLOOM_FILTER = True
BITS_PER_KEY = 10
NUM_PROBES = 7

LRU_CACHE_SIZE = 92 * 1048576
LOG_MAXSIZE = 4 * 1048576

BACKGROUND_MERGE = True
WITH_SNAPPY = True