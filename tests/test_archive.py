"""
Tests for brainvault.archive — versioned exports, full backups, listing.
"""

import io
import json
import tarfile

import pytest

from brainvault.archive import ArchiveManager
from brainvault.errors import IntegrityError, NotFoundError, ValidationError
from brainvault.types import Record
from brainvault.vault import Vault


@pytest.fixture
def vault(tmp_path):
    v = Vault(tmp_path / "ws")
    for text in ("alpha", "beta"):
        v.add_note("note", text)
    return v


@pytest.fixture
def archives(vault):
    return vault.archives


class TestExport:
    def test_layout(self, archives, vault):
        manifest = archives.create_export("v1")
        export_dir = vault.layout.export_dir / "v1"
        assert (export_dir / "records.jsonl").read_bytes() == vault.store.db_path.read_bytes()
        assert (export_dir / "records.wal").is_file()
        assert (export_dir / "config").is_dir()
        on_disk = json.loads((export_dir / "manifest.json").read_text(encoding="utf-8"))
        assert on_disk["version"] == "v1"
        assert on_disk["entries"] == 2
        assert on_disk["schema_version"] == 1
        assert manifest.entry_count == 2

    def test_archive_contents(self, archives, vault):
        manifest = archives.create_export("v2")
        with tarfile.open(manifest.archive, "r:gz") as tar:
            names = set(tar.getnames())
        assert "v2/records.jsonl" in names
        assert "v2/manifest.json" in names

    def test_immutable(self, archives):
        archives.create_export("fixed")
        with pytest.raises(FileExistsError):
            archives.create_export("fixed")

    def test_default_version(self, archives):
        manifest = archives.create_export()
        assert manifest.version.startswith("v")

    def test_bad_version(self, archives):
        with pytest.raises(ValidationError):
            archives.create_export("../up")

    def test_read_manifest(self, archives):
        archives.create_export("v3")
        m = archives.read_manifest("v3")
        assert m.entry_count == 2
        assert m.archive.endswith("export_v3.tar.gz")

    def test_read_manifest_unknown(self, archives):
        with pytest.raises(NotFoundError):
            archives.read_manifest("never")


class TestExportJsonl:
    def test_streams_lines(self, archives, vault):
        buf = io.StringIO()
        assert archives.export_jsonl(buf) == 2
        lines = buf.getvalue().splitlines()
        assert [Record.from_line(line).raw for line in lines] == ["alpha", "beta"]


class TestFullBackup:
    def test_backup_and_checksum(self, archives, vault):
        vault.snapshots.create("snap")
        backup = archives.create_full_backup()
        assert backup.name.startswith("full_")
        text = open(backup.checksum_file, encoding="utf-8").read()
        assert text == f"{backup.checksum}  {backup.name}.tar.gz\n"
        with tarfile.open(backup.archive, "r:gz") as tar:
            names = set(tar.getnames())
        assert f"{backup.name}/records.jsonl" in names
        assert f"{backup.name}/records.wal" in names
        assert f"{backup.name}/records_replica.jsonl" in names
        assert f"{backup.name}/snapshots/snapshot_snap.jsonl" in names

    def test_verify_archive(self, archives):
        backup = archives.create_full_backup()
        assert archives.verify_archive(backup.archive) == backup.checksum

    def test_verify_detects_tamper(self, archives):
        backup = archives.create_full_backup()
        with open(backup.archive, "ab") as f:
            f.write(b"junk")
        with pytest.raises(IntegrityError):
            archives.verify_archive(backup.archive)

    def test_verify_missing(self, archives, tmp_path):
        with pytest.raises(NotFoundError):
            archives.verify_archive(tmp_path / "nothing.tar.gz")

    def test_staging_cleaned(self, archives, vault):
        archives.create_full_backup()
        extras = {p.name for p in vault.layout.backups_dir.iterdir()}
        assert extras == {"snapshots", "exports", "archives", "migrations"}


class TestListing:
    def test_kinds(self, archives, vault):
        archives.create_export("v1")
        archives.create_full_backup()
        (vault.layout.archive_dir / "handmade.tar.gz").write_bytes(b"")
        infos = archives.list_exports()
        kinds = {i.name: i.kind for i in infos}
        assert kinds["export_v1"] == "export"
        assert kinds["handmade"] == "other"
        assert any(k == "full" for k in kinds.values())
        assert all(len(i.modified) == 10 for i in infos)

    def test_empty(self, tmp_path):
        v = Vault(tmp_path / "empty")
        assert ArchiveManager(v.store, v.layout).list_exports() == []
