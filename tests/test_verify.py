"""
Tests for brainvault.verify — structural scan and error counting.
"""

import json

import pytest

from brainvault.errors import NotFoundError
from brainvault.store import RecordStore
from brainvault.types import Record
from brainvault.verify import IntegrityVerifier


@pytest.fixture
def store(tmp_path):
    s = RecordStore(tmp_path / "records.jsonl", fsync=False)
    for text in ("one", "two"):
        s.add(Record(content=text))
    return s


def _append_raw(store, text):
    with open(store.db_path, "a", encoding="utf-8") as f:
        f.write(text + "\n")


class TestVerify:
    def test_clean_store(self, store):
        report = IntegrityVerifier(store).verify()
        assert report.total == 2
        assert report.errors == 0
        assert report.ok

    def test_empty_store(self, tmp_path):
        s = RecordStore(tmp_path / "empty.jsonl", fsync=False)
        report = IntegrityVerifier(s).verify()
        assert report.total == 0 and report.ok

    def test_invalid_json_counts_twice(self, store):
        _append_raw(store, "{oops")
        report = IntegrityVerifier(store).verify()
        assert report.total == 3
        assert report.errors == 2
        assert [line for line, _ in report.problems] == [3, 3]

    def test_missing_fields_counts_once(self, store):
        _append_raw(store, json.dumps({"id": "x", "timestamp": "t"}))
        report = IntegrityVerifier(store).verify()
        assert report.errors == 1
        assert report.problems == [(3, "missing required fields")]

    def test_falsy_field_is_missing(self, store):
        _append_raw(store, json.dumps({"id": "x", "timestamp": "t", "content": False}))
        assert IntegrityVerifier(store).verify().errors == 1

    def test_scans_everything(self, store):
        _append_raw(store, "bad 1")
        store.add(Record(content="three"))
        _append_raw(store, "[]")
        report = IntegrityVerifier(store).verify()
        assert report.total == 5
        assert report.errors == 3
        assert not report.ok

    def test_idempotent(self, store):
        _append_raw(store, "{")
        before = store.db_path.read_bytes()
        first = IntegrityVerifier(store).verify()
        second = IntegrityVerifier(store).verify()
        assert first == second
        assert store.db_path.read_bytes() == before

    def test_missing_store(self, store):
        store.db_path.unlink()
        with pytest.raises(NotFoundError):
            IntegrityVerifier(store).verify()

    def test_to_dict(self, store):
        _append_raw(store, "{")
        d = IntegrityVerifier(store).verify().to_dict()
        assert d["ok"] is False
        assert d["problems"][0] == {"line": 3, "error": "invalid JSON"}
