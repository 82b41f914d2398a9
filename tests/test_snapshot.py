"""
Tests for brainvault.snapshot — verified create, restore, rotation.
"""

import json
import os

import pytest

import brainvault.snapshot as snapshot_mod
from brainvault.errors import IntegrityError, NotFoundError, UserAbort, ValidationError
from brainvault.snapshot import SnapshotManager
from brainvault.store import RecordStore
from brainvault.types import Record
from brainvault.wal import WriteAheadLog


@pytest.fixture
def store(tmp_path):
    wal = WriteAheadLog(tmp_path / "wal" / "records.wal", fsync=False)
    s = RecordStore(
        tmp_path / "storage" / "records.jsonl",
        replica_path=tmp_path / "storage" / "records_replica.jsonl",
        wal=wal,
        fsync=False,
    )
    for text in ("first note", "second note", "third note"):
        s.add(Record(content=text))
    return s


@pytest.fixture
def snaps(store, tmp_path):
    return SnapshotManager(store, tmp_path / "backups" / "snapshots", keep=3, fsync=False)


class TestCreate:
    def test_files_and_meta(self, snaps, store):
        meta = snaps.create("s1")
        assert snaps.data_path("s1").read_bytes() == store.db_path.read_bytes()
        on_disk = json.loads(snaps.meta_path("s1").read_text(encoding="utf-8"))
        assert on_disk["entries"] == 3
        assert on_disk["hash"] == store.file_hash()
        assert on_disk["file"] == str(snaps.data_path("s1"))
        assert meta.entry_count == 3

    def test_default_name(self, snaps):
        meta = snaps.create()
        assert snaps.data_path(meta.name).exists()

    def test_duplicate_name(self, snaps):
        snaps.create("dup")
        with pytest.raises(FileExistsError):
            snaps.create("dup")

    @pytest.mark.parametrize("name", ["../escape", "a b", "x/y"])
    def test_bad_name(self, snaps, name):
        with pytest.raises(ValidationError):
            snaps.create(name)

    def test_no_temp_files_left(self, snaps):
        snaps.create("clean")
        leftovers = [p for p in snaps.snapshot_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_hash_mismatch_leaves_nothing(self, snaps, store, monkeypatch):
        real = snapshot_mod.file_sha256
        calls = {"n": 0}

        def flaky(path):
            calls["n"] += 1
            # third hash is the store re-read after the copy
            if calls["n"] == 3:
                return "0" * 64
            return real(path)

        monkeypatch.setattr(snapshot_mod, "file_sha256", flaky)
        with pytest.raises(IntegrityError):
            snaps.create("torn")
        assert not snaps.data_path("torn").exists()
        assert not snaps.meta_path("torn").exists()
        assert list(snaps.snapshot_dir.iterdir()) == []

    def test_missing_store(self, snaps, store):
        store.db_path.unlink()
        with pytest.raises(NotFoundError):
            snaps.create("none")


class TestListGet:
    def test_list_sorted(self, snaps):
        for name in ("b", "a", "c"):
            snaps.create(name)
        assert [m.name for m in snaps.list()] == ["a", "b", "c"]

    def test_get_unknown(self, snaps):
        with pytest.raises(NotFoundError):
            snaps.get("ghost")

    def test_list_skips_corrupt_meta(self, snaps):
        snaps.create("good")
        snaps.meta_path("bad").write_text("{", encoding="utf-8")
        assert [m.name for m in snaps.list()] == ["good"]


class TestRestore:
    def test_byte_identity(self, snaps, store):
        snaps.create("before")
        snapshot_bytes = store.db_path.read_bytes()
        store.add(Record(content="after the snapshot"))
        snaps.restore("before", force=True)
        assert store.db_path.read_bytes() == snapshot_bytes
        assert store.replica_path.read_bytes() == snapshot_bytes

    def test_defensive_snapshot_taken(self, snaps, store):
        snaps.create("base")
        store.add(Record(content="extra"))
        current = store.db_path.read_bytes()
        snaps.restore("base", force=True)
        pre = [m for m in snaps.list() if m.name.startswith("pre_restore_")]
        assert len(pre) == 1
        assert snaps.data_path(pre[0].name).read_bytes() == current

    def test_wal_records_restore(self, snaps, store):
        snaps.create("w")
        snaps.restore("w", force=True)
        assert store.wal.entries()[-1].operation == "RESTORE"

    def test_requires_confirmation(self, snaps, store):
        snaps.create("c")
        store.add(Record(content="keep me"))
        before = store.db_path.read_bytes()
        with pytest.raises(UserAbort):
            snaps.restore("c")
        with pytest.raises(UserAbort):
            snaps.restore("c", confirm=lambda prompt: False)
        assert store.db_path.read_bytes() == before

    def test_confirmed(self, snaps, store):
        snaps.create("ok")
        expected = store.db_path.read_bytes()
        store.add(Record(content="gone soon"))
        snaps.restore("ok", confirm=lambda prompt: True)
        assert store.db_path.read_bytes() == expected

    def test_unknown(self, snaps):
        with pytest.raises(NotFoundError):
            snaps.restore("nope", force=True)

    def test_corrupted_snapshot(self, snaps, store):
        snaps.create("rot")
        with open(snaps.data_path("rot"), "a", encoding="utf-8") as f:
            f.write("tampered\n")
        before = store.db_path.read_bytes()
        with pytest.raises(IntegrityError):
            snaps.restore("rot", force=True)
        assert store.db_path.read_bytes() == before


class TestRotate:
    def _make(self, snaps, names):
        for i, name in enumerate(names):
            snaps.create(name)
            t = 1_700_000_000 + i * 60
            os.utime(snaps.meta_path(name), (t, t))

    def test_keeps_newest(self, snaps):
        self._make(snaps, ["s0", "s1", "s2", "s3", "s4"])
        removed = snaps.rotate(2)
        assert sorted(removed) == ["s0", "s1", "s2"]
        assert [m.name for m in snaps.list()] == ["s3", "s4"]
        assert not snaps.data_path("s0").exists()

    def test_default_keep(self, snaps):
        self._make(snaps, ["a", "b", "c", "d"])
        assert snaps.rotate() == ["a"]

    def test_noop_under_limit(self, snaps):
        self._make(snaps, ["only"])
        assert snaps.rotate(5) == []

    def test_negative_keep(self, snaps):
        with pytest.raises(ValidationError):
            snaps.rotate(-1)
