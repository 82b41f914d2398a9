"""
Export / Archive Manager — versioned exports and full backups

Versioned export:
    exports/<version>/records.jsonl, records.wal, config/, manifest.json
    archives/export_<version>.tar.gz

Full backup (disaster-recovery artifact):
    archives/full_<ts>.tar.gz         store + WAL + replica + snapshots + config
    archives/full_<ts>.tar.gz.sha256  "<hex>  full_<ts>.tar.gz"

Archives are built in-process with :mod:`tarfile` and always land through a
temporary file plus ``os.replace``.  Exports are immutable: an existing version
is never overwritten.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import sys
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, List, Union

from brainvault.config import VaultLayout
from brainvault.errors import IntegrityError, NotFoundError, ValidationError
from brainvault.store import RecordStore, atomic_write_bytes
from brainvault.types import (
    SCHEMA_VERSION,
    ArchiveInfo,
    ExportManifest,
    file_sha256,
    now_iso,
)

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")

STORE_FILE = "records.jsonl"
WAL_FILE = "records.wal"
REPLICA_FILE = "records_replica.jsonl"
CONFIG_DIR = "config"
MANIFEST_FILE = "manifest.json"
ARCHIVE_EXT = ".tar.gz"


@dataclass
class FullBackup:
    """Result of create_full_backup()."""

    name: str
    archive: str
    checksum: str
    checksum_file: str


def _tar_directory(src_dir: Path, arcname: str, archive: Path) -> None:
    """Compress ``src_dir`` into ``archive`` atomically."""
    archive.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(archive.parent), prefix=".archive.", suffix=".tmp")
    os.close(fd)
    try:
        with tarfile.open(tmp, "w:gz") as tar:
            tar.add(str(src_dir), arcname=arcname)
        os.replace(tmp, archive)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _copy_tree(src: Path, dst: Path) -> None:
    if src.is_dir():
        shutil.copytree(src, dst)
    else:
        dst.mkdir(parents=True, exist_ok=True)


def _count_lines(path: Path) -> int:
    with open(path, "rb") as f:
        return sum(1 for line in f if line.strip())


class ArchiveManager:
    """Versioned exports, full backups and the archive listing."""

    def __init__(self, store: RecordStore, layout: VaultLayout):
        self.store = store
        self.layout = layout

    # -- exports ------------------------------------------------------------

    def create_export(self, version: str = "") -> ExportManifest:
        """Copy store + WAL + config into a version directory and archive it.

        Raises:
            ValidationError: Bad version name.
            FileExistsError: The version already exists.
        """
        version = version or f"v{datetime.now():%Y%m%d_%H%M%S}"
        if not _NAME_RE.match(version):
            raise ValidationError(f"Invalid export version: {version!r}")

        export_dir = self.layout.export_dir / version
        archive = self.layout.archive_dir / f"export_{version}{ARCHIVE_EXT}"
        if export_dir.exists() or archive.exists():
            raise FileExistsError(f"Export version already exists: {version}")

        export_dir.mkdir(parents=True)
        try:
            shutil.copyfile(self.store.db_path, export_dir / STORE_FILE)
            wal_src = self.layout.wal_path
            if wal_src.exists():
                shutil.copyfile(wal_src, export_dir / WAL_FILE)
            else:
                (export_dir / WAL_FILE).touch()
            _copy_tree(self.layout.config_dir, export_dir / CONFIG_DIR)

            manifest = ExportManifest(
                version=version,
                exported_at=now_iso(),
                schema_version=SCHEMA_VERSION,
                entry_count=_count_lines(export_dir / STORE_FILE),
                files=[STORE_FILE, WAL_FILE, f"{CONFIG_DIR}/"],
                archive=str(archive),
            )
            atomic_write_bytes(
                export_dir / MANIFEST_FILE,
                json.dumps(manifest.to_dict(), indent=2).encode("utf-8"),
            )
            _tar_directory(export_dir, version, archive)
        except BaseException:
            shutil.rmtree(export_dir, ignore_errors=True)
            raise

        logger.info("Export created: %s (%d entries) -> %s",
                    version, manifest.entry_count, archive)
        return manifest

    def read_manifest(self, version: str) -> ExportManifest:
        """Load the manifest of an existing export.

        Raises:
            NotFoundError: Unknown version.
        """
        path = self.layout.export_dir / version / MANIFEST_FILE
        try:
            with open(path, "r", encoding="utf-8") as f:
                manifest = ExportManifest.from_dict(json.load(f))
        except FileNotFoundError:
            raise NotFoundError(f"Export not found: {version}") from None
        manifest.archive = str(self.layout.archive_dir / f"export_{version}{ARCHIVE_EXT}")
        return manifest

    def export_jsonl(self, output: IO[str] = sys.stdout) -> int:
        """Stream every store line to ``output`` (JSONL). Returns the line count."""
        count = 0
        for _lineno, line in self.store.iter_lines():
            if not line.strip():
                continue
            output.write(line + "\n")
            count += 1
        return count

    # -- full backup --------------------------------------------------------

    def create_full_backup(self) -> FullBackup:
        """Archive store, WAL, replica, snapshots and config with a detached checksum.

        Raises:
            FileExistsError: A backup with the same timestamp name exists.
        """
        name = f"full_{datetime.now():%Y%m%d_%H%M%S}"
        archive = self.layout.archive_dir / f"{name}{ARCHIVE_EXT}"
        if archive.exists():
            raise FileExistsError(f"Backup already exists: {archive}")

        self.layout.backups_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=str(self.layout.backups_dir)) as staging:
            stage = Path(staging) / name
            stage.mkdir()
            shutil.copyfile(self.store.db_path, stage / STORE_FILE)
            if self.layout.wal_path.exists():
                shutil.copyfile(self.layout.wal_path, stage / WAL_FILE)
            if self.layout.replica_path.exists():
                shutil.copyfile(self.layout.replica_path, stage / REPLICA_FILE)
            _copy_tree(self.layout.snapshot_dir, stage / "snapshots")
            _copy_tree(self.layout.config_dir, stage / CONFIG_DIR)
            _tar_directory(stage, name, archive)

        digest = file_sha256(str(archive))
        checksum_file = Path(f"{archive}.sha256")
        atomic_write_bytes(
            checksum_file,
            f"{digest}  {archive.name}\n".encode("utf-8"),
        )
        logger.info("Full backup created: %s (sha256 %s)", archive, digest)
        return FullBackup(
            name=name,
            archive=str(archive),
            checksum=digest,
            checksum_file=str(checksum_file),
        )

    def verify_archive(self, archive: Union[str, Path]) -> str:
        """Check an archive against its detached ``.sha256`` file.

        Returns:
            The verified digest.

        Raises:
            NotFoundError: Archive or checksum file missing.
            IntegrityError: Digest mismatch.
        """
        archive = Path(archive)
        checksum_file = Path(f"{archive}.sha256")
        if not archive.exists():
            raise NotFoundError(f"Archive not found: {archive}")
        if not checksum_file.exists():
            raise NotFoundError(f"Checksum file not found: {checksum_file}")
        expected = checksum_file.read_text(encoding="utf-8").split()[0]
        actual = file_sha256(str(archive))
        if actual != expected:
            raise IntegrityError(f"Checksum mismatch for {archive.name}")
        return actual

    # -- listing ------------------------------------------------------------

    def list_exports(self) -> List[ArchiveInfo]:
        """Every archive in the archive directory, by name."""
        out: List[ArchiveInfo] = []
        if not self.layout.archive_dir.exists():
            return out
        for path in sorted(self.layout.archive_dir.glob(f"*{ARCHIVE_EXT}")):
            st = path.stat()
            stem = path.name[: -len(ARCHIVE_EXT)]
            if stem.startswith("export_"):
                kind = "export"
            elif stem.startswith("full_"):
                kind = "full"
            else:
                kind = "other"
            out.append(ArchiveInfo(
                name=stem,
                path=str(path),
                kind=kind,
                size=st.st_size,
                modified=datetime.fromtimestamp(st.st_mtime).strftime("%Y-%m-%d"),
            ))
        return out
