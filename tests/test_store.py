"""
Tests for brainvault.store — append, queries, touch, replica, WAL coupling.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from brainvault.errors import NotFoundError, ValidationError
from brainvault.store import RecordStore, atomic_write_bytes
from brainvault.types import Classification, Record, content_hash
from brainvault.wal import WriteAheadLog


@pytest.fixture
def store(tmp_path):
    wal = WriteAheadLog(tmp_path / "wal" / "records.wal", fsync=False)
    return RecordStore(
        tmp_path / "storage" / "records.jsonl",
        replica_path=tmp_path / "storage" / "records_replica.jsonl",
        wal=wal,
        fsync=False,
    )


def _rec(text, confidence=0.8, **kw):
    cls_kw = {k: kw.pop(k) for k in ("type", "category") if k in kw}
    return Record(
        content=text,
        classification=Classification(confidence=confidence, **cls_kw),
        **kw,
    )


# ---------------------------------------------------------------------------
# Append / get
# ---------------------------------------------------------------------------


class TestAppend:
    def test_creates_empty_store(self, store):
        assert store.db_path.is_file()
        assert store.line_count() == 0

    def test_get_roundtrip(self, store):
        r = _rec("Quarterly review moved to Tuesday", tags=["calendar"])
        store.add(r)
        got = store.get(r.id)
        assert got == r

    def test_one_line_per_record(self, store):
        for i in range(3):
            store.add(_rec(f"note {i}"))
        lines = store.db_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 3
        assert all(json.loads(line)["id"] for line in lines)

    def test_wal_written_with_line_hash(self, store):
        r = _rec("walled")
        store.add(r)
        entries = store.wal.entries()
        assert [e.operation for e in entries] == ["ADD"]
        assert entries[0].content_hash == content_hash(r.to_line())

    def test_rejects_non_record(self, store):
        with pytest.raises(ValidationError):
            store.append({"id": "x"})

    def test_repairs_missing_trailing_newline(self, store):
        store.add(_rec("first"))
        data = store.db_path.read_bytes().rstrip(b"\n")
        store.db_path.write_bytes(data)
        r = _rec("second")
        store.add(r)
        assert store.line_count() == 2
        assert store.get(r.id).raw == "second"

    def test_get_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.get("rec_missing")

    def test_get_returns_first_match(self, store):
        r = _rec("original")
        store.append(r)
        dup = Record.from_dict({**r.to_dict(), "source": "later"})
        store.append(dup)
        assert store.get(r.id).source == "command"


# ---------------------------------------------------------------------------
# Replica
# ---------------------------------------------------------------------------


class TestReplica:
    def test_add_refreshes_replica(self, store):
        store.add(_rec("mirrored"))
        assert store.replica_path.read_bytes() == store.db_path.read_bytes()

    def test_append_alone_does_not_refresh(self, store):
        store.add(_rec("one"))
        store.append(_rec("two"))
        assert store.replica_path.read_bytes() != store.db_path.read_bytes()
        store.refresh_replica()
        assert store.replica_path.read_bytes() == store.db_path.read_bytes()

    def test_no_replica_path(self, tmp_path):
        s = RecordStore(tmp_path / "r.jsonl", fsync=False)
        s.add(_rec("solo"))
        assert s.line_count() == 1


# ---------------------------------------------------------------------------
# Search / list / recent
# ---------------------------------------------------------------------------


class TestSearch:
    def test_case_insensitive(self, store):
        r = _rec("Kubernetes migration plan")
        store.add(r)
        store.add(_rec("grocery list"))
        for q in ("kubernetes", "KUBERNETES", "KuBeRnEtEs"):
            hits = store.search(q)
            assert [h.id for h in hits] == [r.id]

    def test_matches_other_fields(self, store):
        r = _rec("plain", tags=["infrastructure"])
        store.add(r)
        assert store.search("INFRA")[0].id == r.id

    def test_limit_and_order(self, store):
        ids = [store.add(_rec(f"alpha {i}")) for i in range(5)]
        hits = store.search("alpha", limit=3)
        assert [h.id for h in hits] == ids[:3]

    def test_tier_filter(self, store):
        store.add(_rec("topic cold", confidence=0.5))
        hot = _rec("topic hot", confidence=0.95)
        store.add(hot)
        assert [h.id for h in store.search("topic", tier="hot")] == [hot.id]

    def test_empty_query_rejected(self, store):
        with pytest.raises(ValidationError):
            store.search("")

    def test_skips_malformed_lines(self, store):
        r = _rec("needle")
        store.add(r)
        with open(store.db_path, "a", encoding="utf-8") as f:
            f.write("{needle but broken\n")
        assert [h.id for h in store.search("needle")] == [r.id]


class TestList:
    def test_filters_combine(self, store):
        store.add(_rec("a", type="decision", category="decision", confidence=0.95))
        b = _rec("b", type="decision", category="decision", confidence=0.8)
        store.add(b)
        store.add(_rec("c", type="note", confidence=0.8))
        got = store.list(tier="warm", category="decision")
        assert [r.id for r in got] == [b.id]
        assert len(store.list(type="decision")) == 2

    def test_limit(self, store):
        for i in range(4):
            store.add(_rec(f"x{i}"))
        assert len(store.list(limit=2)) == 2


class TestRecent:
    def test_newest_first(self, store):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        ids = []
        for i in range(3):
            r = _rec(f"day {i}", timestamp=(base + timedelta(days=i)).isoformat())
            ids.append(store.add(r))
        got = store.recent(limit=2)
        assert [r.id for r in got] == [ids[2], ids[1]]

    def test_days_cutoff(self, store):
        old = _rec("ancient", timestamp="2001-01-01T00:00:00+00:00")
        new = _rec("fresh")
        store.add(old)
        store.add(new)
        assert [r.id for r in store.recent(days=7)] == [new.id]

    def test_query(self, store):
        store.add(_rec("budget meeting"))
        store.add(_rec("lunch"))
        assert [r.raw for r in store.recent(query="BUDGET")] == ["budget meeting"]


# ---------------------------------------------------------------------------
# Touch
# ---------------------------------------------------------------------------


class TestTouch:
    def test_increments_and_stamps(self, store):
        r = _rec("touch me", timestamp="2020-01-01T00:00:00+00:00")
        store.add(r)
        t1 = store.touch(r.id)
        assert t1.access_count == 1
        assert t1.last_accessed != "2020-01-01T00:00:00+00:00"
        t2 = store.touch(r.id)
        assert t2.access_count == 2
        assert store.get(r.id).access_count == 2

    def test_other_lines_byte_identical(self, store):
        a, b, c = _rec("a"), _rec("b"), _rec("c")
        for r in (a, b, c):
            store.add(r)
        before = store.db_path.read_bytes().splitlines()
        store.touch(b.id)
        after = store.db_path.read_bytes().splitlines()
        assert before[0] == after[0]
        assert before[2] == after[2]
        assert before[1] != after[1]

    def test_unknown_id_leaves_store(self, store):
        store.add(_rec("x"))
        before = store.db_path.read_bytes()
        with pytest.raises(NotFoundError):
            store.touch("rec_nope")
        assert store.db_path.read_bytes() == before

    def test_touch_logs_wal_and_refreshes_replica(self, store):
        r = _rec("y")
        store.add(r)
        store.touch(r.id)
        assert store.wal.entries()[-1].operation == "TOUCH"
        assert store.replica_path.read_bytes() == store.db_path.read_bytes()


# ---------------------------------------------------------------------------
# Stats / helpers
# ---------------------------------------------------------------------------


class TestStats:
    def test_counts(self, store):
        store.add(_rec("h", confidence=0.95))
        store.add(_rec("w", confidence=0.8))
        store.add(_rec("c", confidence=0.2))
        store.add(_rec("c2", confidence=0.3))
        s = store.stats()
        assert s["total"] == 4
        assert s["tiers"] == {"hot": 1, "warm": 1, "cold": 2}
        assert s["size"] == store.db_path.stat().st_size
        assert s["schema_version"] == 1

    def test_add_increments_total(self, store):
        n = store.stats()["total"]
        store.add(_rec("one more"))
        assert store.stats()["total"] == n + 1


class TestAtomicWrite:
    def test_replaces_content(self, tmp_path):
        p = tmp_path / "f.txt"
        p.write_bytes(b"old")
        atomic_write_bytes(p, b"new", fsync=False)
        assert p.read_bytes() == b"new"
        assert [x.name for x in tmp_path.iterdir()] == ["f.txt"]
