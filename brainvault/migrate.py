"""
Migration Engine — legacy sources to records, with rollback

Adapters:
    index-log      JSONL lines {id, timestamp, content, type, tags, source}
    document-tree  text documents under a root; category from parent directory

Protocol:
    dry run   full adapter pass, counts only; nothing written, no rollback point
    real run  confirmation (unless forced), then exactly one rollback point and
              one pre_migration_* snapshot BEFORE any adapter runs; malformed
              entries are skipped and counted; a missing source path aborts
              only that adapter; the replica is refreshed once at the end
    all       every adapter in registration order; success iff the cumulative
              error count is zero
    rollback  copy the latest rollback file back over the store (fails closed
              when the pointer or its file is missing)

Each run also writes ``migration_<ts>.log`` in the migration directory.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from brainvault.config import MigrationConfig
from brainvault.errors import IntegrityError, NotFoundError, UserAbort, ValidationError
from brainvault.extract import OFFICE_EXTS, read_document
from brainvault.snapshot import SnapshotManager, default_snapshot_name
from brainvault.store import RecordStore, atomic_copy, atomic_write_bytes
from brainvault.types import (
    Classification,
    Content,
    Record,
    RecordContext,
    RollbackPoint,
    default_metadata,
    file_sha256,
    now_iso,
)

logger = logging.getLogger(__name__)

POINTER_FILE = "latest_rollback.json"

INDEX_LOG_CONFIDENCE = 0.7
INDEX_LOG_HOT_CONFIDENCE = 0.95
DOCUMENT_CONFIDENCE = 0.75

_HEADING_RE = re.compile(r"^\s*#+\s*")
_TAG_RE = re.compile(r"(?<![\w&/])#([A-Za-z0-9_-]+)")

_CATEGORY_DIRS = {
    "decisions": "decision",
    "projects": "project",
    "insights": "insight",
    "entities": "entity",
}


def _migration_context() -> RecordContext:
    return RecordContext(session_id="migrated", agent="migration", channel="import")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class MigrationResult:
    """Counts for one adapter run."""

    source: str
    path: str = ""
    total: int = 0
    migrated: int = 0
    errors: int = 0
    aborted: Optional[str] = None
    record_ids: List[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        """Per-entry errors plus one for an aborted run."""
        return self.errors + (1 if self.aborted else 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "path": self.path,
            "total": self.total,
            "migrated": self.migrated,
            "errors": self.errors,
            "aborted": self.aborted,
        }


@dataclass
class MigrationReport:
    """Outcome of one migrate() call."""

    source: str
    dry_run: bool = False
    results: List[MigrationResult] = field(default_factory=list)
    rollback: Optional[RollbackPoint] = None
    snapshot: Optional[str] = None
    log_file: Optional[str] = None

    @property
    def errors(self) -> int:
        return sum(r.error_count for r in self.results)

    @property
    def migrated(self) -> int:
        return sum(r.migrated for r in self.results)

    @property
    def total(self) -> int:
        return sum(r.total for r in self.results)

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "dry_run": self.dry_run,
            "ok": self.ok,
            "total": self.total,
            "migrated": self.migrated,
            "errors": self.errors,
            "results": [r.to_dict() for r in self.results],
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "snapshot": self.snapshot,
            "log_file": self.log_file,
        }


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class MigrationAdapter:
    """Base adapter: ``discover`` yields raw entries, ``translate`` builds a Record.

    ``discover`` raises NotFoundError when the source path is missing;
    ``translate`` raises ValidationError for a malformed entry.
    """

    name = ""

    def discover(self, path: Path) -> Iterator[Tuple[str, Any]]:
        raise NotImplementedError

    def translate(self, locator: str, raw: Any) -> Record:
        raise NotImplementedError


class IndexLogAdapter(MigrationAdapter):
    """One JSON object per line: id, timestamp, content, type, tags, source."""

    name = "index-log"

    def discover(self, path: Path) -> Iterator[Tuple[str, str]]:
        if not path.is_file():
            raise NotFoundError(f"index log not found: {path}")
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                yield f"{path}:{lineno}", line

    @staticmethod
    def classify(entry_type: str) -> Classification:
        """Map a legacy type to a classification."""
        if entry_type in ("critical", "hot"):
            return Classification(
                type=entry_type, category="general",
                confidence=INDEX_LOG_HOT_CONFIDENCE,
            )
        category = {
            "decision": "decision",
            "action": "decision",
            "entity": "entity",
            "insight": "insight",
        }.get(entry_type, "general")
        return Classification(
            type=entry_type, category=category, confidence=INDEX_LOG_CONFIDENCE,
        )

    def translate(self, locator: str, raw: str) -> Record:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"invalid JSON at {locator}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"entry at {locator} is not an object")

        original_id = data.get("id")
        content = data.get("content")
        if not original_id or not content:
            raise ValidationError(f"entry at {locator} lacks id or content")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)

        tags = data.get("tags") or []
        if isinstance(tags, str):
            tags = [t for t in (s.strip() for s in tags.split(",")) if t]
        elif not isinstance(tags, list):
            raise ValidationError(f"entry at {locator} has malformed tags")

        entry_type = str(data.get("type") or "note")
        path = locator.rsplit(":", 1)[0]
        return Record(
            source=str(data.get("source") or self.name),
            content=Content.from_text(content),
            classification=self.classify(entry_type),
            context=_migration_context(),
            metadata=default_metadata(
                extracted_from=path,
                original_id=str(original_id),
                original_timestamp=str(data.get("timestamp") or ""),
            ),
            tags=tags,
        )


class DocumentTreeAdapter(MigrationAdapter):
    """Text documents under a root directory, one record per file."""

    name = "document-tree"

    def __init__(self, exts: Optional[List[str]] = None, include_office: bool = False):
        self.exts = {e.lower() for e in (exts or [".md", ".txt"])}
        if include_office:
            self.exts |= OFFICE_EXTS

    def discover(self, path: Path) -> Iterator[Tuple[str, Path]]:
        if not path.is_dir():
            raise NotFoundError(f"document tree not found: {path}")
        for root, dirs, files in os.walk(path):
            dirs.sort()
            for fname in sorted(files):
                fp = Path(root) / fname
                if fp.suffix.lower() in self.exts:
                    yield str(fp), fp

    @staticmethod
    def title_of(text: str, fallback: str) -> str:
        """First line with leading heading markers removed, else ``fallback``."""
        first = text.split("\n", 1)[0]
        title = _HEADING_RE.sub("", first).strip()
        return title or fallback

    @staticmethod
    def tags_of(text: str) -> List[str]:
        return _TAG_RE.findall(text)

    @staticmethod
    def category_of(path: Path) -> str:
        return _CATEGORY_DIRS.get(path.parent.name.lower(), "general")

    def translate(self, locator: str, raw: Path) -> Record:
        try:
            text = read_document(raw)
        except ImportError as e:
            raise ValidationError(f"cannot read {locator}: {e}") from e
        except Exception as e:
            # corrupt office files raise parser-specific errors (BadZipFile,
            # PackageNotFoundError, ...)
            raise ValidationError(
                f"cannot read {locator}: {type(e).__name__}: {e}"
            ) from e
        if not text.strip():
            raise ValidationError(f"empty file {locator}")

        title = self.title_of(text, raw.stem)
        return Record(
            source=self.name,
            content=Content.from_text(text),
            classification=Classification(
                type="note", category=self.category_of(raw),
                confidence=DOCUMENT_CONFIDENCE,
            ),
            context=_migration_context(),
            metadata=default_metadata(
                extracted_from=str(raw),
                original_filename=raw.stem,
                title=title,
            ),
            tags=self.tags_of(text),
        )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MigrationEngine:
    """Runs adapters against a store behind a rollback point and a snapshot."""

    def __init__(
        self,
        store: RecordStore,
        snapshots: SnapshotManager,
        migration_dir: Union[str, Path],
        config: Optional[MigrationConfig] = None,
    ):
        self.store = store
        self.snapshots = snapshots
        self.migration_dir = Path(migration_dir)
        self.config = config or MigrationConfig()
        self.migration_dir.mkdir(parents=True, exist_ok=True)
        self._adapters: "OrderedDict[str, MigrationAdapter]" = OrderedDict()
        self.register_adapter(IndexLogAdapter())
        self.register_adapter(DocumentTreeAdapter(
            self.config.document_exts, self.config.include_office,
        ))

    # -- registry -----------------------------------------------------------

    def register_adapter(self, adapter: MigrationAdapter) -> None:
        if not adapter.name or adapter.name == "all":
            raise ValidationError(f"Invalid adapter name: {adapter.name!r}")
        self._adapters[adapter.name] = adapter

    def sources(self) -> List[str]:
        return list(self._adapters)

    def _default_path(self, name: str) -> str:
        if name == IndexLogAdapter.name:
            return self.config.index_log_path
        if name == DocumentTreeAdapter.name:
            return self.config.document_tree_path
        return ""

    # -- run log ------------------------------------------------------------

    @contextmanager
    def _run_log(self):
        log_file = self.migration_dir / f"migration_{datetime.now():%Y%m%d_%H%M%S_%f}.log"
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s"))
        handler.setLevel(logging.INFO)
        previous = logger.level
        logger.addHandler(handler)
        if logger.getEffectiveLevel() > logging.INFO:
            logger.setLevel(logging.INFO)
        try:
            yield str(log_file)
        finally:
            logger.removeHandler(handler)
            logger.setLevel(previous)
            handler.close()

    # -- rollback points ----------------------------------------------------

    @property
    def pointer_path(self) -> Path:
        return self.migration_dir / POINTER_FILE

    def create_rollback_point(self) -> RollbackPoint:
        """Copy the store verbatim and make it the latest rollback point.

        Raises:
            IntegrityError: The store changed while it was being copied.
        """
        rollback_file = self.migration_dir / f"rollback_{datetime.now():%Y%m%d_%H%M%S_%f}.jsonl"
        before = self.store.file_hash()
        atomic_copy(self.store.db_path, rollback_file)
        copied = file_sha256(str(rollback_file))
        if copied != before or self.store.file_hash() != before:
            rollback_file.unlink(missing_ok=True)
            raise IntegrityError("Store changed while creating rollback point")

        point = RollbackPoint(created=now_iso(), rollback_file=str(rollback_file), db_hash=before)
        atomic_write_bytes(
            self.pointer_path,
            json.dumps(point.to_dict(), indent=2).encode("utf-8"),
        )
        logger.info("Rollback point created: %s", rollback_file)
        return point

    def latest_rollback(self) -> RollbackPoint:
        """The single addressable rollback point.

        Raises:
            NotFoundError: No pointer, or the pointer is unreadable.
        """
        try:
            with open(self.pointer_path, "r", encoding="utf-8") as f:
                return RollbackPoint.from_dict(json.load(f))
        except FileNotFoundError:
            raise NotFoundError("No rollback point found") from None
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise NotFoundError(f"Rollback pointer unreadable: {e}") from e

    def rollback(self) -> RollbackPoint:
        """Restore the store from the latest rollback point.

        Fails closed: nothing is touched unless the pointer, its file, and the
        file's recorded hash all check out.

        Raises:
            NotFoundError: No pointer or rollback file missing.
            IntegrityError: Rollback file does not match the recorded hash.
        """
        point = self.latest_rollback()
        rollback_file = Path(point.rollback_file)
        if not rollback_file.exists():
            raise NotFoundError(f"Rollback file not found: {rollback_file}")
        actual = file_sha256(str(rollback_file))
        if actual != point.db_hash:
            raise IntegrityError(f"Rollback file {rollback_file.name} does not match recorded hash")

        with self._run_log():
            logger.info(
                "Rolling back: %d current entries -> %d entries from %s",
                self.store.line_count(), _count_lines(rollback_file), rollback_file,
            )
            self.store.replace_with(rollback_file, operation="ROLLBACK", digest=point.db_hash)
            logger.info("ROLLBACK performed to %s", rollback_file)
        return point

    # -- migrate ------------------------------------------------------------

    def migrate(
        self,
        source: str,
        path: Optional[Union[str, Path]] = None,
        *,
        dry_run: bool = False,
        force: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> MigrationReport:
        """Run one adapter (or ``all``) against the store.

        Raises:
            ValidationError: Unknown source, or a path given together with ``all``.
            UserAbort: Real run without ``force`` and confirmation declined.
            IntegrityError: The rollback point or snapshot could not be made.
        """
        if source == "all":
            if path is not None:
                raise ValidationError("a source path cannot be combined with 'all'")
            names = self.sources()
        elif source in self._adapters:
            names = [source]
        else:
            raise ValidationError(
                f"Unknown migration source: {source!r} (expected one of "
                f"{', '.join(self.sources() + ['all'])})"
            )

        if not dry_run and not force:
            prompt = f"This will migrate data from {source} into {self.store.db_path}. Continue?"
            if confirm is None or not confirm(prompt):
                raise UserAbort("Migration cancelled")

        report = MigrationReport(source=source, dry_run=dry_run)
        with self._run_log() as log_file:
            report.log_file = log_file
            if not dry_run:
                report.rollback = self.create_rollback_point()
                report.snapshot = self.snapshots.create(
                    default_snapshot_name("pre_migration_")
                ).name

            try:
                for name in names:
                    src = str(path) if path is not None else self._default_path(name)
                    report.results.append(
                        self._run_adapter(self._adapters[name], src, dry_run)
                    )
            finally:
                if not dry_run:
                    self.store.refresh_replica()

            label = " (dry run)" if dry_run else ""
            logger.info(
                "Migration %s%s finished: %d/%d migrated, %d error(s)",
                source, label, report.migrated, report.total, report.errors,
            )
        return report

    def _run_adapter(self, adapter: MigrationAdapter, src: str, dry_run: bool) -> MigrationResult:
        result = MigrationResult(source=adapter.name, path=src)
        if not src:
            result.aborted = "no source path configured"
            logger.error("%s: %s", adapter.name, result.aborted)
            return result

        logger.info("Starting %s migration from: %s", adapter.name, src)
        try:
            for locator, raw in adapter.discover(Path(src)):
                result.total += 1
                try:
                    record = adapter.translate(locator, raw)
                except ValidationError as e:
                    result.errors += 1
                    logger.warning("SKIP: %s", e)
                    continue
                if dry_run:
                    logger.info("[DRY-RUN] Would migrate: %s", locator)
                else:
                    self.store.append(record)
                    result.record_ids.append(record.id)
                    logger.info("MIGRATED: %s -> %s", locator, record.id)
                result.migrated += 1
        except NotFoundError as e:
            result.aborted = str(e)
            logger.error("%s aborted: %s", adapter.name, e)

        logger.info(
            "%s migration completed: %d/%d entries, %d error(s)",
            adapter.name, result.migrated, result.total, result.errors,
        )
        return result


def _count_lines(path: Path) -> int:
    with open(path, "rb") as f:
        return sum(1 for line in f if line.strip())
