import random

import pytest

from kiwidb.config import MAX_MEM_COMPACT_LEVEL
from kiwidb.encoding import Opt
from kiwidb.metadata import decode_manifest
from kiwidb.skiplist import SkipList
from kiwidb.sst import SST


def _skiplist(records):
    sl = SkipList(0, random.Random(0))
    for key, value, opt in records:
        sl.insert(key, value, opt)
    return sl


def _flush(basedir, records):
    sl = _skiplist(records)
    with SST(basedir) as sst:
        sst.merge(sl)
    return sl


def test_filename_follows_directory_layout(tmp_path):
    with SST(tmp_path) as sst:
        path = sst.filename_for(0, 5)
        assert path == tmp_path / "si" / "0" / "5.sst"
        assert path.parent.is_dir()


def test_new_file_hands_out_increasing_numbers(tmp_path):
    with SST(tmp_path) as sst:
        first, _ = sst.new_file(1)
        second, path = sst.new_file(1)
        assert second.filenum == first.filenum + 1
        assert second.level == 1
        assert path == sst.filename_for(1, second.filenum)


def test_get_after_merge_before_close(tmp_path):
    sl = _skiplist([(b"alpha", b"1", Opt.ADD), (b"beta", b"2", Opt.ADD)])
    with SST(tmp_path) as sst:
        sst.merge(sl)
        assert sst.get(b"alpha") == b"1"
        assert sst.get(b"beta") == b"2"
        assert sst.get(b"gamma") is None


def test_merged_data_survives_reopen(tmp_path):
    _flush(tmp_path, [(b"k1", b"v1", Opt.ADD), (b"k2", b"v2", Opt.ADD)])
    with SST(tmp_path) as sst:
        assert sst.file_count == 1
        assert sst.get(b"k1") == b"v1"
        assert sst.get(b"k2") == b"v2"
        assert sst.get(b"k0") is None


def test_first_flush_lands_in_deepest_memtable_level(tmp_path):
    _flush(tmp_path, [(b"a", b"1", Opt.ADD), (b"m", b"2", Opt.ADD)])
    with SST(tmp_path) as sst:
        files = sst.levels.files(MAX_MEM_COMPACT_LEVEL)
        assert len(files) == 1
        assert files[0].smallest_key == b"a"
        assert files[0].largest_key == b"m"
        assert files[0].loader.path.exists()


def test_newer_flush_shadows_older_one(tmp_path):
    _flush(tmp_path, [(b"a", b"old", Opt.ADD), (b"z", b"old", Opt.ADD)])
    _flush(tmp_path, [(b"a", b"new", Opt.ADD), (b"b", b"", Opt.DEL)])
    with SST(tmp_path) as sst:
        assert sst.file_count == 2
        assert sst.get(b"a") == b"new"
        assert sst.get(b"z") == b"old"
        assert sst.get(b"b") is None


def test_deleted_key_is_absent(tmp_path):
    _flush(tmp_path, [(b"gone", b"", Opt.DEL), (b"kept", b"yes", Opt.ADD)])
    with SST(tmp_path) as sst:
        assert sst.get(b"gone") is None
        assert sst.get(b"kept") == b"yes"


def test_merge_releases_skiplist(tmp_path):
    sl = _flush(tmp_path, [(b"x", b"1", Opt.ADD)])
    assert sl.refcount == 0
    assert len(sl) == 0


def test_merge_empty_skiplist_raises(tmp_path):
    with SST(tmp_path) as sst:
        with pytest.raises(ValueError):
            sst.merge(SkipList(0, random.Random(0)))


def test_closed_sst_refuses_work(tmp_path):
    sst = SST(tmp_path)
    sst.close()
    sst.close()
    with pytest.raises(RuntimeError):
        sst.get(b"a")
    with pytest.raises(RuntimeError):
        sst.merge(_skiplist([(b"a", b"1", Opt.ADD)]))


def test_manifest_records_files_and_next_id(tmp_path):
    _flush(tmp_path, [(b"a", b"1", Opt.ADD)])
    last_id, levels = decode_manifest((tmp_path / "si" / "manifest").read_bytes())
    assert last_id == 1
    assert [m.filenum for m in levels[MAX_MEM_COMPACT_LEVEL]] == [0]
    assert levels[MAX_MEM_COMPACT_LEVEL][0].smallest_key == b"a"


def test_missing_table_is_skipped_on_reopen(tmp_path):
    _flush(tmp_path, [(b"a", b"1", Opt.ADD)])
    (tmp_path / "si" / str(MAX_MEM_COMPACT_LEVEL) / "0.sst").unlink()
    with SST(tmp_path) as sst:
        assert sst.file_count == 0
        assert sst.get(b"a") is None
        assert sst.last_id == 1


def test_delete_files_removes_from_disk_and_levels(tmp_path):
    _flush(tmp_path, [(b"a", b"1", Opt.ADD)])
    with SST(tmp_path) as sst:
        meta = sst.levels.files(MAX_MEM_COMPACT_LEVEL)[0]
        path = meta.loader.path
        sst.delete_files(MAX_MEM_COMPACT_LEVEL, [meta])
        assert not path.exists()
        assert sst.file_count == 0
        assert sst.get(b"a") is None
        with pytest.raises(ValueError):
            sst.delete_files(MAX_MEM_COMPACT_LEVEL, [meta])


def test_empty_directory_scores_no_compaction(tmp_path):
    with SST(tmp_path) as sst:
        assert sst.file_count == 0
        assert sst.comp_score < 1
        assert sst.get(b"anything") is None