"""
Record Data Model — First-Class Objects

Defines the canonical record schema plus the metadata objects written next to
the store: WAL entries, snapshot sidecars, export manifests, rollback pointers.

Records serialize deterministically (dataclass field order, compact JSON, one
line per record).  ``Record.from_dict`` is the single validation boundary:
missing required fields and unknown top-level fields are rejected there.
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from brainvault.errors import ValidationError

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

Tier = Literal["hot", "warm", "cold"]

VALID_TIERS = ("hot", "warm", "cold")

HOT_ABOVE = 0.9
COLD_BELOW = 0.7

REQUIRED_FIELDS = ("id", "timestamp", "content")

_WS_RE = re.compile(r"\s+")


def now_iso() -> str:
    """Current UTC time as ISO-8601 string (second precision)."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def generate_id(prefix: str = "rec") -> str:
    """Time-derived prefix plus random suffix, e.g. rec_20260214_10302201_3FA9C01B."""
    now = datetime.now(timezone.utc)
    date_part = now.strftime("%Y%m%d")
    time_part = now.strftime("%H%M%S%f")[:8]
    rand = uuid.uuid4().hex[:8].upper()
    return f"{prefix}_{date_part}_{time_part}_{rand}"


def sha256_hex(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of a UTF-8 string."""
    return sha256_hex(text.encode("utf-8"))


def file_sha256(path: str) -> str:
    """Compute SHA-256 hex digest of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            h.update(block)
    return h.hexdigest()


def tier_for_confidence(confidence: float) -> Tier:
    """Map confidence to tier: > 0.9 hot, < 0.7 cold, otherwise warm."""
    if confidence > HOT_ABOVE:
        return "hot"
    if confidence < COLD_BELOW:
        return "cold"
    return "warm"


def normalize_text(raw: str) -> str:
    """Collapse whitespace runs to single spaces."""
    return _WS_RE.sub(" ", raw).strip()


def _unique(values) -> List[str]:
    seen: set = set()
    out: List[str] = []
    for v in values:
        s = str(v).strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


# ---------------------------------------------------------------------------
# Record parts
# ---------------------------------------------------------------------------

@dataclass
class Content:
    """Original text, its normalized copy, and an optional summary."""

    raw: str = ""
    processed: str = ""
    summary: str = ""

    @classmethod
    def from_text(cls, raw: str, summary: str = "") -> Content:
        return cls(raw=raw, processed=normalize_text(raw), summary=summary)

    @classmethod
    def from_dict(cls, d: Any) -> Content:
        if not isinstance(d, dict):
            raise ValidationError(f"content must be an object, got {type(d).__name__}")
        raw = d.get("raw")
        if not isinstance(raw, str):
            raise ValidationError("content.raw is required")
        return cls(
            raw=raw,
            processed=d.get("processed", normalize_text(raw)) or "",
            summary=d.get("summary", "") or "",
        )


@dataclass
class Classification:
    """
    Type, tier, category and confidence of a record.

    The tier is a function of confidence.  Leaving ``tier`` empty derives it;
    passing a tier that disagrees with the confidence is a ValidationError.
    """

    type: str = "note"
    tier: Optional[str] = None
    category: str = "general"
    confidence: float = 0.5

    def __post_init__(self):
        c = self.confidence
        if isinstance(c, bool) or not isinstance(c, (int, float)):
            raise ValidationError(f"confidence must be a number, got {c!r}")
        if not 0.0 <= c <= 1.0:
            raise ValidationError(f"confidence {c} not in [0, 1]")
        expected = tier_for_confidence(c)
        if self.tier is None:
            self.tier = expected
        elif self.tier not in VALID_TIERS:
            raise ValidationError(f"Invalid tier: {self.tier!r}")
        elif self.tier != expected:
            raise ValidationError(
                f"tier {self.tier!r} inconsistent with confidence {c} "
                f"(expected {expected!r})"
            )

    @classmethod
    def from_dict(cls, d: Any) -> Classification:
        if not isinstance(d, dict):
            raise ValidationError("classification must be an object")
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class RecordContext:
    """Provenance of the call that created a record."""

    session_id: str = "default"
    agent: str = "main"
    channel: str = "cli"

    @classmethod
    def from_dict(cls, d: Any) -> RecordContext:
        if not isinstance(d, dict):
            raise ValidationError("context must be an object")
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: str(v) for k, v in d.items() if k in known})


def default_metadata(**extra: Any) -> Dict[str, Any]:
    """Base metadata block; adapter-specific fields go in ``extra``."""
    meta: Dict[str, Any] = {
        "extracted_from": "",
        "auto_learned": False,
        "verified": False,
    }
    meta.update(extra)
    return meta


# ---------------------------------------------------------------------------
# Record (canonical)
# ---------------------------------------------------------------------------

@dataclass
class Record:
    """
    Canonical knowledge record — one line in the store.

    Rules:
    - id, timestamp and content.raw never change after append.
    - access_count / last_accessed change only through RecordStore.touch().
    - tags behave as a set (duplicates dropped, first-seen order kept).
    """

    id: str = field(default_factory=generate_id)
    timestamp: str = field(default_factory=now_iso)
    source: str = "command"
    content: Content = field(default_factory=Content)
    classification: Classification = field(default_factory=Classification)
    entities: List[Any] = field(default_factory=list)
    relations: List[Any] = field(default_factory=list)
    context: RecordContext = field(default_factory=RecordContext)
    metadata: Dict[str, Any] = field(default_factory=default_metadata)
    tags: List[str] = field(default_factory=list)
    access_count: int = 0
    last_accessed: Optional[str] = None
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self):
        if isinstance(self.content, str):
            self.content = Content.from_text(self.content)
        elif isinstance(self.content, dict):
            self.content = Content.from_dict(self.content)
        if isinstance(self.classification, dict):
            self.classification = Classification.from_dict(self.classification)
        if isinstance(self.context, dict):
            self.context = RecordContext.from_dict(self.context)
        if not self.id:
            raise ValidationError("id must not be empty")
        if not isinstance(self.access_count, int) or self.access_count < 0:
            raise ValidationError(f"access_count must be >= 0, got {self.access_count!r}")
        self.tags = _unique(self.tags)
        if self.last_accessed is None:
            self.last_accessed = self.timestamp

    # -- convenience accessors ---------------------------------------------

    @property
    def tier(self) -> str:
        return self.classification.tier

    @property
    def category(self) -> str:
        return self.classification.category

    @property
    def type(self) -> str:
        return self.classification.type

    @property
    def confidence(self) -> float:
        return self.classification.confidence

    @property
    def raw(self) -> str:
        return self.content.raw

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    def to_line(self) -> str:
        """Serialize as one compact JSON line (no trailing newline)."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, d: Any) -> Record:
        """Deserialize from dict, rejecting missing or unknown fields."""
        if not isinstance(d, dict):
            raise ValidationError(f"record must be an object, got {type(d).__name__}")
        missing = [k for k in REQUIRED_FIELDS if k not in d or d[k] in (None, "")]
        if missing:
            raise ValidationError(f"missing required field(s): {', '.join(missing)}")
        known = set(cls.__dataclass_fields__.keys())
        unknown = sorted(set(d) - known)
        if unknown:
            raise ValidationError(f"unknown field(s): {', '.join(unknown)}")
        data = dict(d)
        data["content"] = Content.from_dict(data["content"])
        if "classification" in data:
            data["classification"] = Classification.from_dict(data["classification"])
        if "context" in data:
            data["context"] = RecordContext.from_dict(data["context"])
        if "metadata" in data and not isinstance(data["metadata"], dict):
            raise ValidationError("metadata must be an object")
        try:
            return cls(**data)
        except TypeError as e:
            raise ValidationError(str(e)) from e

    @classmethod
    def from_line(cls, line: str) -> Record:
        """Parse one store line."""
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValidationError(f"malformed JSON: {e}") from e
        return cls.from_dict(data)


# ---------------------------------------------------------------------------
# Sidecar / metadata objects
# ---------------------------------------------------------------------------

@dataclass
class WalEntry:
    """One write-intent line: advisory, the record may not be durable yet."""

    timestamp: str
    operation: str
    content_hash: str

    def to_line(self) -> str:
        return f"[{self.timestamp}] [{self.operation}] [{self.content_hash}]"


@dataclass
class SnapshotMeta:
    """Metadata sidecar of a verified snapshot."""

    name: str
    created: str
    entry_count: int
    content_hash: str
    file_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created": self.created,
            "entries": self.entry_count,
            "hash": self.content_hash,
            "file": self.file_path,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SnapshotMeta:
        return cls(
            name=d["name"],
            created=d["created"],
            entry_count=int(d["entries"]),
            content_hash=d["hash"],
            file_path=d["file"],
        )


@dataclass
class ExportManifest:
    """Manifest of one versioned export (immutable once written)."""

    version: str
    exported_at: str
    schema_version: int
    entry_count: int
    files: List[str] = field(default_factory=list)
    archive: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "exported_at": self.exported_at,
            "schema_version": self.schema_version,
            "entries": self.entry_count,
            "files": list(self.files),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ExportManifest:
        return cls(
            version=d["version"],
            exported_at=d["exported_at"],
            schema_version=int(d["schema_version"]),
            entry_count=int(d["entries"]),
            files=list(d.get("files", [])),
        )


@dataclass
class RollbackPoint:
    """Pointer to a verbatim pre-migration copy of the store."""

    created: str
    rollback_file: str
    db_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> RollbackPoint:
        return cls(
            created=d["created"],
            rollback_file=d["rollback_file"],
            db_hash=d["db_hash"],
        )


@dataclass
class ArchiveInfo:
    """A compressed bundle in the archive directory."""

    name: str
    path: str
    kind: str  # "export" | "full" | "other"
    size: int
    modified: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
