"""
Snapshot Manager — verified point-in-time copies of the store

Each snapshot is a pair in the snapshot directory:
    snapshot_<name>.jsonl   - byte copy of the store
    <name>.meta.json        - {name, created, entries, hash, file}

Atomicity: the store is hashed, copied to a temporary file, then hashed again
together with the copy.  Only when all three digests agree is the copy renamed
into place and its sidecar written; otherwise the temporary file is removed
and IntegrityError is raised.  A snapshot is therefore either complete and
verified or absent.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Union

from brainvault.errors import IntegrityError, NotFoundError, UserAbort, ValidationError
from brainvault.store import RecordStore, atomic_write_bytes
from brainvault.types import SnapshotMeta, file_sha256, now_iso

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")
META_SUFFIX = ".meta.json"


def default_snapshot_name(prefix: str = "") -> str:
    """Timestamp name that sorts chronologically."""
    return f"{prefix}{datetime.now():%Y%m%d_%H%M%S_%f}"


def _count_lines(path: Path) -> int:
    with open(path, "rb") as f:
        return sum(1 for line in f if line.strip())


class SnapshotManager:
    """Create, list, restore and rotate snapshots of one record store."""

    def __init__(
        self,
        store: RecordStore,
        snapshot_dir: Union[str, Path],
        *,
        keep: int = 28,
        fsync: bool = True,
    ):
        self.store = store
        self.snapshot_dir = Path(snapshot_dir)
        self.keep = keep
        self._fsync = fsync
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)

    # -- paths --------------------------------------------------------------

    def data_path(self, name: str) -> Path:
        return self.snapshot_dir / f"snapshot_{name}.jsonl"

    def meta_path(self, name: str) -> Path:
        return self.snapshot_dir / f"{name}{META_SUFFIX}"

    # -- create -------------------------------------------------------------

    def create(self, name: Optional[str] = None) -> SnapshotMeta:
        """Copy the store into a new verified snapshot.

        Raises:
            ValidationError: Bad snapshot name.
            NotFoundError: The store file does not exist.
            FileExistsError: A snapshot with this name already exists.
            IntegrityError: The store changed during the copy.
        """
        name = name or default_snapshot_name()
        if not _NAME_RE.match(name):
            raise ValidationError(f"Invalid snapshot name: {name!r}")
        db_path = self.store.db_path
        if not db_path.exists():
            raise NotFoundError(f"No store to snapshot: {db_path}")

        data_path = self.data_path(name)
        meta_path = self.meta_path(name)
        if data_path.exists() or meta_path.exists():
            raise FileExistsError(f"Snapshot already exists: {name}")

        created = now_iso()
        before = file_sha256(str(db_path))
        fd, tmp = tempfile.mkstemp(dir=str(self.snapshot_dir), prefix=".snapshot.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as out, open(db_path, "rb") as inp:
                shutil.copyfileobj(inp, out)
                out.flush()
                if self._fsync:
                    os.fsync(out.fileno())
            copied = file_sha256(tmp)
            after = file_sha256(str(db_path))
            if not (before == copied == after):
                raise IntegrityError(
                    f"Snapshot hash mismatch for {name}: store changed during copy"
                )
            entries = _count_lines(Path(tmp))
            os.replace(tmp, data_path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

        meta = SnapshotMeta(
            name=name,
            created=created,
            entry_count=entries,
            content_hash=before,
            file_path=str(data_path),
        )
        try:
            atomic_write_bytes(
                meta_path,
                json.dumps(meta.to_dict(), indent=2).encode("utf-8"),
                fsync=self._fsync,
            )
        except BaseException:
            data_path.unlink(missing_ok=True)
            raise

        logger.info("Snapshot created: %s (%d entries)", name, entries)
        return meta

    # -- read ---------------------------------------------------------------

    def get(self, name: str) -> SnapshotMeta:
        """Load one snapshot's metadata.

        Raises:
            NotFoundError: Metadata sidecar missing or unreadable.
        """
        path = self.meta_path(name)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return SnapshotMeta.from_dict(json.load(f))
        except FileNotFoundError:
            raise NotFoundError(f"Snapshot metadata not found: {name}") from None
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise NotFoundError(f"Snapshot metadata unreadable: {name} ({e})") from e

    def list(self) -> List[SnapshotMeta]:
        """All snapshots in filename order (chronological for default names)."""
        out: List[SnapshotMeta] = []
        for meta_file in sorted(self.snapshot_dir.glob(f"*{META_SUFFIX}")):
            name = meta_file.name[: -len(META_SUFFIX)]
            try:
                out.append(self.get(name))
            except NotFoundError as e:
                logger.warning("Skipping snapshot %s: %s", name, e)
        return out

    # -- restore ------------------------------------------------------------

    def restore(
        self,
        name: str,
        *,
        force: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> SnapshotMeta:
        """Replace the store with a snapshot.

        A defensive ``pre_restore_*`` snapshot of the current store is always
        taken first.  Without ``force``, ``confirm(prompt)`` must return True.

        Raises:
            NotFoundError: Snapshot data or metadata missing.
            IntegrityError: Snapshot file no longer matches its recorded hash.
            UserAbort: Confirmation declined or unavailable.
        """
        data_path = self.data_path(name)
        if not data_path.exists():
            raise NotFoundError(f"Snapshot not found: {name}")
        meta = self.get(name)

        actual = file_sha256(str(data_path))
        if actual != meta.content_hash:
            raise IntegrityError(
                f"Snapshot {name} is corrupted (hash {actual[:16]} != {meta.content_hash[:16]})"
            )

        if not force:
            prompt = f"This will replace the current store with snapshot {name!r}. Continue?"
            if confirm is None or not confirm(prompt):
                raise UserAbort(f"Restore of snapshot {name} cancelled")

        self.create(default_snapshot_name("pre_restore_"))
        self.store.replace_with(data_path, operation="RESTORE", digest=meta.content_hash)
        logger.info("Restored from snapshot: %s", name)
        return meta

    # -- rotate -------------------------------------------------------------

    def rotate(self, keep: Optional[int] = None) -> List[str]:
        """Keep the ``keep`` newest snapshots (by sidecar mtime), delete the rest.

        Returns:
            Names of the removed snapshots.
        """
        keep = self.keep if keep is None else keep
        if keep < 0:
            raise ValidationError(f"keep must be >= 0, got {keep}")
        metas = list(self.snapshot_dir.glob(f"*{META_SUFFIX}"))
        if len(metas) <= keep:
            return []

        metas.sort(key=lambda p: (p.stat().st_mtime_ns, p.name), reverse=True)
        removed: List[str] = []
        for meta_file in metas[keep:]:
            name = meta_file.name[: -len(META_SUFFIX)]
            meta_file.unlink(missing_ok=True)
            self.data_path(name).unlink(missing_ok=True)
            removed.append(name)
            logger.info("Rotated out snapshot: %s", name)
        return removed
