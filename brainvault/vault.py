"""
Vault — explicit handle over one workspace

Wires the record store, WAL, snapshot manager, archive manager, migration
engine and integrity verifier for a single workspace root.  Every operation
receives its paths from this handle; nothing reads a process-wide store path.

Also hosts the two commands that sit above the store:
    recall             recent records (optionally filtered), each one touched
    ingest_candidates  already-scored auto-extracted candidates, thresholded
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from brainvault.archive import ArchiveManager
from brainvault.config import VaultConfig, VaultLayout, apply_env, load_config
from brainvault.errors import ValidationError
from brainvault.migrate import MigrationEngine
from brainvault.snapshot import SnapshotManager
from brainvault.store import RecordStore
from brainvault.types import (
    Classification,
    Content,
    Record,
    RecordContext,
    default_metadata,
)
from brainvault.verify import IntegrityVerifier
from brainvault.wal import WriteAheadLog

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """An auto-extracted decision/action/entity with its confidence score."""

    content: str
    type: str = "note"
    confidence: float = 0.5
    extracted_from: str = ""


@dataclass
class IngestSummary:
    """Counts from ingest_candidates()."""

    accepted: int = 0
    below_threshold: int = 0
    invalid: int = 0
    record_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "below_threshold": self.below_threshold,
            "invalid": self.invalid,
            "record_ids": list(self.record_ids),
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_candidate(cand: Candidate) -> None:
    """Reject candidates the extractor produced with the wrong shapes."""
    if not isinstance(cand.content, str) or not cand.content.strip():
        raise ValidationError(f"candidate content must be non-empty text, got {cand.content!r}")
    if not isinstance(cand.type, str) or not cand.type:
        raise ValidationError(f"candidate type must be non-empty text, got {cand.type!r}")
    if not _is_number(cand.confidence):
        raise ValidationError(f"candidate confidence must be a number, got {cand.confidence!r}")


class Vault:
    """All durability components of one workspace."""

    def __init__(self, root: Union[str, Path], config: Optional[VaultConfig] = None):
        self.layout = VaultLayout(Path(root))
        self.layout.ensure()
        self.config = config if config is not None else load_config(str(self.layout.config_path))
        for problem in self.config.validate():
            logger.warning("Config %s: %s", self.layout.config_path, problem)
        fsync = self.config.store.fsync

        self.wal = WriteAheadLog(self.layout.wal_path, fsync=fsync)
        self.store = RecordStore(
            self.layout.db_path,
            replica_path=self.layout.replica_path,
            wal=self.wal,
            fsync=fsync,
        )
        if not self.layout.replica_path.exists():
            self.store.refresh_replica()
        self.snapshots = SnapshotManager(
            self.store, self.layout.snapshot_dir,
            keep=self.config.snapshots.keep, fsync=fsync,
        )
        self.archives = ArchiveManager(self.store, self.layout)
        self.migrations = MigrationEngine(
            self.store, self.snapshots, self.layout.migration_dir, self.config.migration,
        )
        self.verifier = IntegrityVerifier(self.store)

    @classmethod
    def open(
        cls,
        root: Union[str, Path],
        *,
        config_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Vault:
        """Open a workspace: config file (default ``<root>/config/config.json``) + env."""
        layout = VaultLayout(Path(root))
        cfg = load_config(config_path or str(layout.config_path))
        return cls(root, apply_env(cfg, environ))

    def _context(self) -> RecordContext:
        s = self.config.session
        return RecordContext(session_id=s.session_id, agent=s.agent, channel=s.channel)

    # -- commands -----------------------------------------------------------

    def add_note(
        self,
        type: str,
        content: str,
        *,
        confidence: float = 0.8,
        category: str = "general",
        tags: Sequence[str] = (),
        tier: Optional[str] = None,
        source: str = "command",
        entities: Optional[List[Any]] = None,
    ) -> Record:
        """Build a record and append it as one complete command.

        Raises:
            ValidationError: Empty content, or ``tier`` disagreeing with ``confidence``.
        """
        if not content or not content.strip():
            raise ValidationError("content required")
        record = Record(
            source=source,
            content=Content.from_text(content),
            classification=Classification(
                type=type, tier=tier, category=category, confidence=confidence,
            ),
            entities=list(entities or []),
            context=self._context(),
            metadata=default_metadata(),
            tags=list(tags),
        )
        self.store.add(record)
        return record

    def recall(
        self,
        query: Optional[str] = None,
        *,
        days: Optional[int] = None,
        limit: int = 5,
    ) -> List[Record]:
        """Most recent matching records; each returned record is touched."""
        recalled: List[Record] = []
        for rec in self.store.recent(days=days, query=query, limit=limit):
            recalled.append(self.store.touch(rec.id))
        return recalled

    def ingest_candidates(
        self,
        candidates: Iterable[Candidate],
        *,
        threshold: Optional[float] = None,
        dry_run: bool = False,
    ) -> IngestSummary:
        """Append candidates whose confidence reaches ``threshold``.

        Invalid candidates are counted, never raised.  The replica is refreshed
        once after the batch.

        Raises:
            ValidationError: ``threshold`` (or the configured one) is not a number.
        """
        threshold = self.config.learn.confidence_threshold if threshold is None else threshold
        if not _is_number(threshold):
            raise ValidationError(f"confidence threshold must be a number, got {threshold!r}")
        summary = IngestSummary()
        context = RecordContext(session_id="learned", agent="auto-learn", channel="extraction")
        for cand in candidates:
            try:
                _check_candidate(cand)
            except ValidationError as e:
                summary.invalid += 1
                logger.warning("Skipping candidate: %s", e)
                continue
            if cand.confidence < threshold:
                summary.below_threshold += 1
                continue
            try:
                record = Record(
                    source="auto-learn",
                    content=Content.from_text(cand.content),
                    classification=Classification(
                        type=cand.type, category=cand.type, confidence=cand.confidence,
                    ),
                    context=context,
                    metadata=default_metadata(
                        extracted_from=cand.extracted_from, auto_learned=True,
                    ),
                )
            except ValidationError as e:
                summary.invalid += 1
                logger.warning("Skipping candidate: %s", e)
                continue
            if not dry_run:
                self.store.append(record)
                summary.record_ids.append(record.id)
            summary.accepted += 1

        if summary.record_ids:
            self.store.refresh_replica()
        logger.info(
            "Ingested %d candidate(s), %d below threshold %.2f, %d invalid",
            summary.accepted, summary.below_threshold, threshold, summary.invalid,
        )
        return summary
