"""
Record Store — append-only JSONL backend

Layout:
    records.jsonl          - authoritative log, one record per line
    records_replica.jsonl  - derived full mirror, refreshed per command
    records.wal            - intent log written before each mutation (wal.py)

Every read is a linear scan.  ``touch`` rewrites the whole file (O(n)) through
a temporary file and ``os.replace``; all other lines keep their exact bytes.
Single-writer: callers must not run two mutating operations against the same
store path at once.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from brainvault import __version__
from brainvault.errors import NotFoundError, ValidationError
from brainvault.types import (
    SCHEMA_VERSION,
    VALID_TIERS,
    Record,
    content_hash,
    file_sha256,
    now_iso,
)
from brainvault.wal import WriteAheadLog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Atomic file helpers
# ---------------------------------------------------------------------------


def atomic_write_bytes(path: Union[str, Path], data: bytes, *, fsync: bool = True) -> None:
    """Write ``data`` to a sibling temp file, then rename it over ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            if fsync:
                os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def atomic_copy(src: Union[str, Path], dst: Union[str, Path], *, fsync: bool = True) -> None:
    """Copy ``src`` over ``dst`` so readers never observe a partial file."""
    dst = Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(dst.parent), prefix=f".{dst.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as out, open(src, "rb") as inp:
            shutil.copyfileobj(inp, out)
            out.flush()
            if fsync:
                os.fsync(out.fileno())
        os.replace(tmp, dst)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        ts = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ---------------------------------------------------------------------------
# RecordStore
# ---------------------------------------------------------------------------


class RecordStore:
    """Append-only record log with a replica mirror and a write-ahead log."""

    def __init__(
        self,
        db_path: Union[str, Path],
        *,
        replica_path: Optional[Union[str, Path]] = None,
        wal: Optional[WriteAheadLog] = None,
        fsync: bool = True,
    ):
        self.db_path = Path(db_path)
        self.replica_path = Path(replica_path) if replica_path else None
        self.wal = wal
        self._fsync = fsync
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path.touch(exist_ok=True)

    # -- raw access ---------------------------------------------------------

    def iter_lines(self) -> Iterator[Tuple[int, str]]:
        """Yield ``(line_number, text)`` for every physical line (1-based)."""
        with open(self.db_path, "r", encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, 1):
                yield lineno, line.rstrip("\n")

    def _iter_records(self) -> Iterator[Tuple[str, Record]]:
        """Yield ``(line, record)`` for every parseable line."""
        for lineno, line in self.iter_lines():
            if not line.strip():
                continue
            try:
                yield line, Record.from_line(line)
            except ValidationError as e:
                logger.debug("Skipping line %d of %s: %s", lineno, self.db_path, e)

    def file_hash(self) -> str:
        """SHA-256 of the store file."""
        return file_sha256(str(self.db_path))

    def line_count(self) -> int:
        """Number of non-empty lines in the store."""
        return sum(1 for _, line in self.iter_lines() if line.strip())

    # -- mutation -----------------------------------------------------------

    def append(self, record: Record) -> str:
        """Append one record: WAL intent first, then the store line.

        Does not refresh the replica; batch callers refresh once at the end.

        Returns:
            The record id.
        """
        if not isinstance(record, Record):
            raise ValidationError(f"expected Record, got {type(record).__name__}")
        line = record.to_line()
        if self.wal is not None:
            self.wal.append("ADD", content_hash(line))

        prefix = ""
        size = self.db_path.stat().st_size
        if size:
            with open(self.db_path, "rb") as f:
                f.seek(size - 1)
                if f.read(1) != b"\n":
                    prefix = "\n"

        with open(self.db_path, "a", encoding="utf-8") as f:
            f.write(prefix + line + "\n")
            f.flush()
            if self._fsync:
                os.fsync(f.fileno())
        logger.debug("Appended %s (%s)", record.id, record.tier)
        return record.id

    def add(self, record: Record) -> str:
        """Append a single record and refresh the replica (one full command)."""
        rid = self.append(record)
        self.refresh_replica()
        logger.info("Added record %s [%s/%s]", rid, record.tier, record.category)
        return rid

    def touch(self, record_id: str) -> Record:
        """Increment access_count and set last_accessed for one record.

        Rewrites the entire store line by line (O(n)); every other line is
        copied byte-for-byte.  The rewrite lands via ``os.replace`` so a failure
        leaves the previous file in place.

        Raises:
            NotFoundError: No line carries ``record_id`` (store unchanged).
        """
        ts = now_iso()
        with open(self.db_path, "rb") as f:
            lines = f.readlines()

        updated: Optional[Dict[str, Any]] = None
        out: List[bytes] = []
        for raw in lines:
            if updated is None:
                data = self._match_line(raw, record_id)
                if data is not None:
                    data["access_count"] = int(data.get("access_count", 0) or 0) + 1
                    data["last_accessed"] = ts
                    updated = data
                    new_line = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
                    ending = b"\n" if raw.endswith(b"\n") else b""
                    out.append(new_line.encode("utf-8") + ending)
                    continue
            out.append(raw)

        if updated is None:
            raise NotFoundError(f"Record not found: {record_id}")
        record = Record.from_dict(updated)

        if self.wal is not None:
            self.wal.append("TOUCH", content_hash(record.to_line()))
        atomic_write_bytes(self.db_path, b"".join(out), fsync=self._fsync)
        self.refresh_replica()
        return record

    @staticmethod
    def _match_line(raw: bytes, record_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if isinstance(data, dict) and data.get("id") == record_id:
            return data
        return None

    def replace_with(self, src: Union[str, Path], *, operation: str, digest: str) -> None:
        """Overwrite the store with ``src`` (restore / rollback) and refresh the replica."""
        if self.wal is not None:
            self.wal.append(operation, digest)
        atomic_copy(src, self.db_path, fsync=self._fsync)
        self.refresh_replica()

    def refresh_replica(self) -> None:
        """Overwrite the replica with the current store bytes."""
        if self.replica_path is None:
            return
        atomic_copy(self.db_path, self.replica_path, fsync=self._fsync)
        logger.debug("Replica refreshed: %s", self.replica_path)

    # -- queries ------------------------------------------------------------

    def get(self, record_id: str) -> Record:
        """Return the first record whose id matches.

        Raises:
            NotFoundError: Unknown id.
        """
        for _line, rec in self._iter_records():
            if rec.id == record_id:
                return rec
        raise NotFoundError(f"Record not found: {record_id}")

    def search(self, query: str, limit: int = 10, *, tier: Optional[str] = None) -> List[Record]:
        """Case-insensitive substring match against the full serialized line.

        Results come back in insertion order, truncated to ``limit``.  The
        optional ``tier`` filter applies before truncation.
        """
        if not query:
            raise ValidationError("query required")
        needle = query.lower()
        results: List[Record] = []
        for lineno, line in self.iter_lines():
            if len(results) >= limit:
                break
            if needle not in line.lower():
                continue
            try:
                rec = Record.from_line(line)
            except ValidationError as e:
                logger.debug("Skipping line %d of %s: %s", lineno, self.db_path, e)
                continue
            if tier is None or rec.tier == tier:
                results.append(rec)
        return results

    def list(
        self,
        *,
        tier: Optional[str] = None,
        category: Optional[str] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Exact-equality filters combined with AND; ``limit`` applies after filtering."""
        results: List[Record] = []
        for _line, rec in self._iter_records():
            if limit is not None and len(results) >= limit:
                break
            if tier is not None and rec.tier != tier:
                continue
            if category is not None and rec.category != category:
                continue
            if type is not None and rec.type != type:
                continue
            results.append(rec)
        return results

    def recent(
        self,
        *,
        days: Optional[int] = None,
        query: Optional[str] = None,
        limit: int = 10,
    ) -> List[Record]:
        """Newest-first records, optionally within ``days`` and matching ``query``."""
        cutoff = None
        if days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        needle = query.lower() if query else None
        hits: List[Tuple[datetime, int, Record]] = []
        for idx, (line, rec) in enumerate(self._iter_records()):
            if needle and needle not in line.lower():
                continue
            ts = _parse_ts(rec.timestamp)
            if ts is None:
                continue
            if cutoff is not None and ts < cutoff:
                continue
            hits.append((ts, idx, rec))
        hits.sort(key=lambda h: (h[0], h[1]), reverse=True)
        return [rec for _, _, rec in hits[:limit]]

    def stats(self) -> Dict[str, Any]:
        """Aggregate counts from a full scan."""
        tiers = {t: 0 for t in VALID_TIERS}
        total = 0
        for _line, rec in self._iter_records():
            total += 1
            if rec.tier in tiers:
                tiers[rec.tier] += 1
        return {
            "total": total,
            "tiers": tiers,
            "size": self.db_path.stat().st_size,
            "path": str(self.db_path),
            "wal_path": str(self.wal.path) if self.wal is not None else None,
            "version": __version__,
            "schema_version": SCHEMA_VERSION,
        }
