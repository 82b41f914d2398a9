"""
brainvault — A durable, tiered personal-knowledge record store.

One JSONL file is the truth.  A write-ahead log records intent before every
mutation, a replica mirrors the store after every command, and snapshots,
versioned exports, full backups and migration rollback points make any state
reconstructible after the fact.
"""

__version__ = "1.0.0"

from brainvault.errors import (
    VaultError,
    ValidationError,
    NotFoundError,
    IntegrityError,
    UserAbort,
)
from brainvault.types import (
    SCHEMA_VERSION,
    Record,
    Content,
    Classification,
    RecordContext,
    tier_for_confidence,
)
from brainvault.config import VaultConfig, VaultLayout, load_config
from brainvault.store import RecordStore
from brainvault.vault import Vault

__all__ = [
    "__version__",
    "SCHEMA_VERSION",
    "VaultError",
    "ValidationError",
    "NotFoundError",
    "IntegrityError",
    "UserAbort",
    "Record",
    "Content",
    "Classification",
    "RecordContext",
    "tier_for_confidence",
    "VaultConfig",
    "VaultLayout",
    "load_config",
    "RecordStore",
    "Vault",
]
