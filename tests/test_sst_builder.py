import io
import random

import pytest
from hypothesis import given, strategies as st

from kiwidb.config import BLOCK_SIZE, FOOTER_SIZE, MAGIC_STR
from kiwidb.encoding import (
    Opt,
    decode_varint32,
    decode_varint64,
    get_int32,
    get_int64,
)
from kiwidb.sst_builder import (
    BlockType,
    SSTBuilder,
    _snappy_compress,
    _snappy_decompress,
    shortest_separator,
)


def _split_block(data, offset, size):
    raw = data[offset:offset + size]
    payload = raw[:-8]
    return payload, get_int32(raw, len(raw) - 8), get_int32(raw, len(raw) - 4)


def _parse(data):
    assert data[-8:] == MAGIC_STR
    base = len(data) - FOOTER_SIZE
    index_off, index_size, meta_off, meta_size = (get_int64(data, base + 8 * i) for i in range(4))
    meta = [get_int64(data, meta_off + 8 * i) for i in range(meta_size // 8)]
    payload, block_type, crc = _split_block(data, index_off, index_size)
    entries = []
    pos = 0
    while pos < len(payload):
        assert payload[pos] == 0
        pos += 1
        klen, pos = decode_varint32(payload, pos)
        _vlen, pos = decode_varint32(payload, pos)
        key = payload[pos:pos + klen]
        pos += klen
        off, pos = decode_varint64(payload, pos)
        size, pos = decode_varint64(payload, pos)
        entries.append((key, off, size))
    return {
        "index_off": index_off,
        "index_size": index_size,
        "meta_off": meta_off,
        "meta": meta,
        "index_type": block_type,
        "index": entries,
    }


def _read_records(data, offset, size):
    payload, block_type, _ = _split_block(data, offset, size)
    if block_type == BlockType.SNAPPY_COMPRESSION:
        payload = _snappy_decompress(payload)
    restarts = get_int32(payload, len(payload) - 4)
    body = payload[:len(payload) - 4 - 4 * restarts]
    records = []
    pos = 0
    prev = b""
    while pos < len(body):
        shared, pos = decode_varint32(body, pos)
        non_shared, pos = decode_varint32(body, pos)
        vlen, pos = decode_varint32(body, pos)
        key = prev[:shared] + body[pos:pos + non_shared]
        pos += non_shared
        value = body[pos:pos + max(vlen - 1, 0)]
        pos += max(vlen - 1, 0)
        records.append((key, value, Opt.DEL if vlen == 0 else Opt.ADD))
        prev = key
    return records


def _all_records(data):
    layout = _parse(data)
    out = []
    for _key, off, size in layout["index"]:
        out.extend(_read_records(data, off, size))
    return out


def _build(records):
    stream = io.BytesIO()
    builder = SSTBuilder(stream)
    for key, value, opt in records:
        builder.add(key, value, opt)
    size = builder.finish()
    return builder, stream.getvalue(), size


def test_small_table_round_trip_and_metadata():
    records = [(b"apple", b"red", Opt.ADD), (b"banana", b"yellow", Opt.ADD),
               (b"cherry", b"", Opt.DEL)]
    builder, data, size = _build(records)
    assert size == len(data)
    assert _all_records(data) == records
    layout = _parse(data)
    data_size, index_size, key_size, num_blocks, num_entries, value_size, filter_size, bloom_off, bloom_size = layout["meta"]
    assert num_entries == 3
    assert num_blocks == 1
    assert key_size == len(b"applebananacherry")
    assert value_size == len(b"redyellow")
    assert filter_size == 0 and bloom_size == 0
    assert bloom_off == data_size == layout["meta_off"]
    assert index_size == 0
    assert builder.index_size == layout["index_size"]
    assert layout["index_type"] == BlockType.NO_COMPRESSION
    assert layout["index"][-1][0] == b"cherry"


def test_multiple_blocks_layout():
    rng = random.Random(7)
    records = [(f"key{i:06d}".encode(), rng.randbytes(40), Opt.ADD) for i in range(2000)]
    builder, data, _ = _build(records)
    layout = _parse(data)
    index = layout["index"]
    assert builder.num_blocks == len(index) > 1
    assert layout["meta"][3] == len(index)

    expected_off = 0
    seen = []
    for (sep, off, size), nxt in zip(index, index[1:] + [None]):
        assert off == expected_off
        expected_off += size
        block = _read_records(data, off, size)
        assert block
        assert block[-1][0] <= sep
        if nxt is not None:
            assert sep < _read_records(data, nxt[1], nxt[2])[0][0]
        seen.extend(block)
    assert expected_off == layout["meta"][0] == builder.data_size
    assert seen == records
    assert index[-1][0] == records[-1][0]


def test_block_checksums_and_random_data_stays_uncompressed():
    rng = random.Random(3)
    records = [(f"k{i:05d}".encode(), rng.randbytes(64), Opt.ADD) for i in range(300)]
    _, data, _ = _build(records)
    layout = _parse(data)
    import zlib

    for _sep, off, size in layout["index"]:
        payload, block_type, crc = _split_block(data, off, size)
        assert block_type == BlockType.NO_COMPRESSION
        assert crc == zlib.crc32(payload)
    payload, _, crc = _split_block(data, layout["index_off"], layout["index_size"])
    assert crc == zlib.crc32(payload)


def test_repetitive_values_are_compressed():
    records = [(f"key{i:04d}".encode(), b"x" * 200, Opt.ADD) for i in range(100)]
    _, data, _ = _build(records)
    layout = _parse(data)
    types = {_split_block(data, off, size)[1] for _s, off, size in layout["index"]}
    assert types == {BlockType.SNAPPY_COMPRESSION}
    assert _all_records(data) == records
    assert len(data) < sum(len(k) + len(v) for k, v, _ in records)


def test_blocks_close_near_block_size():
    records = [(f"key{i:05d}".encode(), bytes([i % 251]) * 30, Opt.ADD) for i in range(1000)]
    rng = random.Random(11)
    records = [(k, rng.randbytes(30), o) for k, _v, o in records]
    _, data, _ = _build(records)
    for _s, off, size in _parse(data)["index"][:-1]:
        assert size >= BLOCK_SIZE


def test_finish_twice_and_add_after_finish_raise():
    builder = SSTBuilder(io.BytesIO())
    builder.add(b"a", b"1")
    builder.finish()
    with pytest.raises(RuntimeError):
        builder.finish()
    with pytest.raises(RuntimeError):
        builder.add(b"b", b"2")


def test_deletion_with_value_rejected():
    builder = SSTBuilder(io.BytesIO())
    with pytest.raises(ValueError):
        builder.add(b"a", b"value", Opt.DEL)


def test_context_manager_finishes_table():
    stream = io.BytesIO()
    with SSTBuilder(stream) as builder:
        builder.add(b"k", b"v")
    data = stream.getvalue()
    assert data.endswith(MAGIC_STR)
    assert _all_records(data) == [(b"k", b"v", Opt.ADD)]


def test_context_manager_does_not_finish_on_error():
    stream = io.BytesIO()
    with pytest.raises(KeyError):
        with SSTBuilder(stream) as builder:
            builder.add(b"k", b"v")
            raise KeyError("boom")
    assert stream.getvalue() == b""
    assert builder.finished is False


def test_shortest_separator_examples():
    assert shortest_separator(b"abc", b"abcd") == b"abc"
    assert shortest_separator(b"ab", b"az") == b"ac"
    assert shortest_separator(b"abc", b"abd") == b"abc"


@given(st.binary(max_size=12), st.binary(max_size=12))
def test_shortest_separator_bounds(a, b):
    low, high = sorted((a, b))
    if low == high:
        return_value = shortest_separator(low, high)
        assert return_value == low
    else:
        sep = shortest_separator(low, high)
        assert low <= sep < high
        assert len(sep) <= len(low)


@given(st.binary(max_size=3000))
def test_snappy_round_trip(data):
    assert _snappy_decompress(_snappy_compress(data)) == data


@given(st.lists(st.sampled_from([b"abcd", b"xyz", b"a", b"0123456789"]), max_size=400))
def test_snappy_round_trip_repetitive(parts):
    data = b"".join(parts)
    assert _snappy_decompress(_snappy_compress(data)) == data


def test_snappy_decompress_rejects_bad_offset():
    with pytest.raises(ValueError):
        _snappy_decompress(bytes([4, 0x02 | (3 << 2), 5, 0]))