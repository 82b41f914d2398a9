"""
Vault Configuration

Configuration dataclasses for brainvault: store, snapshots, migration, candidate
learning, and session provenance.  ``VaultLayout`` derives every persisted path
from a single workspace root, so no component reads a process-wide path.
Includes load_config() for reading a JSON config file with silent fallback to
compiled defaults, and apply_env() for BRAINVAULT_* overrides.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from brainvault.errors import ValidationError

CONFIG_FILENAME = "config.json"


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


# ---------------------------------------------------------------------------
# Persisted layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VaultLayout:
    """All on-disk locations of one workspace."""

    root: Path

    @property
    def storage_dir(self) -> Path:
        return self.root / "storage"

    @property
    def db_path(self) -> Path:
        return self.storage_dir / "records.jsonl"

    @property
    def replica_path(self) -> Path:
        return self.storage_dir / "records_replica.jsonl"

    @property
    def wal_dir(self) -> Path:
        return self.root / "wal"

    @property
    def wal_path(self) -> Path:
        return self.wal_dir / "records.wal"

    @property
    def backups_dir(self) -> Path:
        return self.root / "backups"

    @property
    def snapshot_dir(self) -> Path:
        return self.backups_dir / "snapshots"

    @property
    def export_dir(self) -> Path:
        return self.backups_dir / "exports"

    @property
    def archive_dir(self) -> Path:
        return self.backups_dir / "archives"

    @property
    def migration_dir(self) -> Path:
        return self.backups_dir / "migrations"

    @property
    def config_dir(self) -> Path:
        return self.root / "config"

    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    def directories(self) -> List[Path]:
        return [
            self.storage_dir, self.wal_dir, self.snapshot_dir,
            self.export_dir, self.archive_dir, self.migration_dir,
            self.config_dir,
        ]

    def ensure(self) -> None:
        """Create every directory plus empty store and WAL files."""
        for d in self.directories():
            d.mkdir(parents=True, exist_ok=True)
        self.db_path.touch(exist_ok=True)
        self.wal_path.touch(exist_ok=True)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class StoreConfig:
    """Record store configuration."""
    fsync: bool = True
    search_limit: int = 10

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "store.search_limit", self.search_limit, 1, 100000, int)
        return errors


@dataclass
class SnapshotConfig:
    """Snapshot retention."""
    keep: int = 28

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "snapshots.keep", self.keep, 1, 10000, int)
        return errors


@dataclass
class MigrationConfig:
    """Default legacy source locations and document-tree discovery."""
    index_log_path: str = ""
    document_tree_path: str = ""
    document_exts: List[str] = field(default_factory=lambda: [".md", ".txt"])
    include_office: bool = False

    def validate(self) -> List[str]:
        errors: List[str] = []
        for ext in self.document_exts:
            if not ext.startswith("."):
                errors.append(f"migration.document_exts: {ext!r} must start with '.'")
        return errors


@dataclass
class LearnConfig:
    """Acceptance threshold for auto-extracted candidates."""
    confidence_threshold: float = 0.85

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "learn.confidence_threshold",
                     self.confidence_threshold, 0.0, 1.0, float)
        return errors


@dataclass
class SessionConfig:
    """Provenance stamped on records created through the vault."""
    session_id: str = "default"
    agent: str = "main"
    channel: str = "cli"

    def validate(self) -> List[str]:
        return []


@dataclass
class VaultConfig:
    """Top-level brainvault configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    learn: LearnConfig = field(default_factory=LearnConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> VaultConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "snapshots" in d:
            kwargs["snapshots"] = SnapshotConfig(**d["snapshots"])
        if "migration" in d:
            kwargs["migration"] = MigrationConfig(**d["migration"])
        if "learn" in d:
            kwargs["learn"] = LearnConfig(**d["learn"])
        if "session" in d:
            kwargs["session"] = SessionConfig(**d["session"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.snapshots.validate())
        errors.extend(self.migration.validate())
        errors.extend(self.learn.validate())
        errors.extend(self.session.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> VaultConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = VaultConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = VaultConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = VaultConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg


def apply_env(
    cfg: VaultConfig, environ: Optional[Mapping[str, str]] = None,
) -> VaultConfig:
    """Override session provenance and thresholds from BRAINVAULT_* variables.

    Bad numeric values are ignored (the file/default value stays).
    """
    env = os.environ if environ is None else environ
    if env.get("BRAINVAULT_SESSION_ID"):
        cfg.session.session_id = env["BRAINVAULT_SESSION_ID"]
    if env.get("BRAINVAULT_AGENT"):
        cfg.session.agent = env["BRAINVAULT_AGENT"]
    if env.get("BRAINVAULT_CHANNEL"):
        cfg.session.channel = env["BRAINVAULT_CHANNEL"]
    raw = env.get("BRAINVAULT_CONFIDENCE_THRESHOLD")
    if raw:
        try:
            cfg.learn.confidence_threshold = float(raw)
        except ValueError:
            pass
    return cfg
