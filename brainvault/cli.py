"""
brainvault CLI — record store, backups and migration from the shell

Commands:
    brainvault init                                   — create the workspace layout
    brainvault add <type> <content> [--tags T] ...   — append one record
    brainvault show <id>                              — display one record
    brainvault search <query> [--limit N] [--tier T]  — substring search → stdout
    brainvault recall [context] [--limit N] [--days D]— recent records (touched)
    brainvault list [--tier T] [--category C] ...     — filtered listing
    brainvault touch <id>                             — bump access stats
    brainvault stats                                  — store metrics
    brainvault verify                                 — integrity scan
    brainvault export [--version V] [--format F]      — versioned export / JSONL dump
    brainvault backup                                 — full backup + checksum
    brainvault archives                               — list archives
    brainvault snapshot create|list|restore|rotate    — snapshot management
    brainvault migrate <source|all> [--dry-run|--rollback|--force]

Environment variables:
    BRAINVAULT_HOME                  Workspace root (default: .brainvault)
    BRAINVAULT_SESSION_ID            Session id stamped on new records
    BRAINVAULT_AGENT                 Agent stamped on new records
    BRAINVAULT_CHANNEL               Channel stamped on new records
    BRAINVAULT_CONFIDENCE_THRESHOLD  Acceptance threshold for auto-learned candidates

Precedence (invariant):
    CLI --flag  >  BRAINVAULT_* env var  >  config/config.json  >  compiled default

Exit codes:
    0  Success
    1  Any failure (bad args, missing file, validation error, user abort,
       integrity failure)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from brainvault.errors import UserAbort, ValidationError, VaultError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_root(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve workspace root: CLI --root > BRAINVAULT_HOME > .brainvault."""
    if args and getattr(args, "root", None):
        return args.root
    return os.environ.get("BRAINVAULT_HOME", ".brainvault")


def _open_vault(args: argparse.Namespace):
    """Open the Vault handle for the resolved root."""
    from brainvault.vault import Vault
    return Vault.open(_resolve_root(args))


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _json_out(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "json", False))


def _emit(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _confirm(prompt: str) -> bool:
    """Ask on stderr, read a line from stdin; only 'yes' confirms."""
    print(f"{prompt} (yes/no): ", end="", file=sys.stderr, flush=True)
    answer = sys.stdin.readline()
    return answer.strip().lower() == "yes"


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "K", "M", "G"):
        if value < 1024 or unit == "G":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


def _print_record_line(rec) -> None:
    preview = rec.content.processed[:80]
    print(f"  [{rec.tier.upper()}] {rec.id}  {rec.type:10s}  {preview}")
    if rec.tags:
        print(f"    tags: {', '.join(rec.tags)}")


def _print_records(args: argparse.Namespace, records, empty: str) -> None:
    if _json_out(args):
        _emit([r.to_dict() for r in records])
        return
    if not records:
        _info(empty)
        return
    print(f"Found {len(records)} record(s):\n")
    for rec in records:
        _print_record_line(rec)


# ===========================================================================
# Commands
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create (or confirm) the workspace layout and a default config file."""
    from brainvault.config import VaultConfig, VaultLayout

    root = Path(_resolve_root(args)).resolve()
    layout = VaultLayout(root)
    existed = layout.db_path.exists()
    layout.ensure()
    if not layout.config_path.exists():
        layout.config_path.write_text(
            json.dumps(VaultConfig().to_dict(), indent=2) + "\n", encoding="utf-8",
        )
    gitignore = root / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("backups/\n*.tmp\n", encoding="utf-8")
    vault = _open_vault(argparse.Namespace(root=str(root)))
    _info(f"Workspace {'exists' if existed else 'initialized'}: {root}")
    _info(f"  Store:   {vault.layout.db_path}")
    _info(f"  WAL:     {vault.layout.wal_path}")
    _info(f"  Config:  {vault.layout.config_path}")
    print(f'export BRAINVAULT_HOME="{root}"')


def cmd_add(args: argparse.Namespace) -> None:
    """Append one record."""
    vault = _open_vault(args)
    tags = [t.strip() for t in args.tags.split(",") if t.strip()] if args.tags else []
    entities = None
    if args.entities:
        try:
            entities = json.loads(args.entities)
        except json.JSONDecodeError as e:
            raise ValidationError(f"--entities is not valid JSON: {e}") from e
        if not isinstance(entities, list):
            raise ValidationError("--entities must be a JSON list")
    session = vault.config.session
    if args.session:
        session.session_id = args.session
    if args.agent:
        session.agent = args.agent
    if args.channel:
        session.channel = args.channel
    record = vault.add_note(
        args.type, args.content,
        confidence=args.confidence,
        category=args.category,
        tags=tags,
        tier=args.tier,
        source=args.source,
        entities=entities,
    )
    if _json_out(args):
        _emit(record.to_dict())
    else:
        print(record.id)
    _info(f"[add] {record.type} [{record.tier}/{record.category}] stored")


def cmd_show(args: argparse.Namespace) -> None:
    """Show one record by id."""
    rec = _open_vault(args).store.get(args.id)
    if _json_out(args):
        _emit(rec.to_dict())
        return
    print(f"ID:         {rec.id}")
    print(f"Timestamp:  {rec.timestamp}")
    print(f"Source:     {rec.source}")
    print(f"Type:       {rec.type}")
    print(f"Tier:       {rec.tier.upper()}")
    print(f"Category:   {rec.category}")
    print(f"Confidence: {rec.confidence:.2f}")
    print(f"Tags:       {', '.join(rec.tags) if rec.tags else '(none)'}")
    print(f"Access:     {rec.access_count} (last {rec.last_accessed})")
    print(f"\n--- Content ---\n{rec.content.raw}")


def cmd_search(args: argparse.Namespace) -> None:
    """Substring search over the store."""
    vault = _open_vault(args)
    limit = args.limit if args.limit is not None else vault.config.store.search_limit
    records = vault.store.search(args.query, limit=limit, tier=args.tier)
    _print_records(args, records, "No results found.")


def cmd_recall(args: argparse.Namespace) -> None:
    """Recent records, optionally filtered by context text; each is touched."""
    records = _open_vault(args).recall(args.context, days=args.days, limit=args.limit)
    _print_records(args, records, "Nothing to recall.")


def cmd_list(args: argparse.Namespace) -> None:
    """List records with exact-match filters."""
    records = _open_vault(args).store.list(
        tier=args.tier, category=args.category, type=args.type, limit=args.limit,
    )
    _print_records(args, records, "No records.")


def cmd_touch(args: argparse.Namespace) -> None:
    """Increment a record's access count."""
    rec = _open_vault(args).store.touch(args.id)
    _info(f"[touch] {rec.id} access_count={rec.access_count}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show store statistics."""
    vault = _open_vault(args)
    stats = vault.store.stats()
    stats["snapshots"] = len(vault.snapshots.list())
    stats["wal_entries"] = len(vault.wal)
    if _json_out(args):
        stats["status"] = "ok"
        _emit(stats)
        return
    print("Record Store Statistics")
    print("=" * 40)
    print(f"  Total entries: {stats['total']}")
    print(f"  By tier:")
    for tier, count in stats["tiers"].items():
        print(f"    {tier.upper():4s}: {count}")
    print(f"  Size:          {_human_size(stats['size'])}")
    print(f"  WAL entries:   {stats['wal_entries']}")
    print(f"  Snapshots:     {stats['snapshots']}")
    print(f"  Version:       {stats['version']} (schema {stats['schema_version']})")


def cmd_verify(args: argparse.Namespace) -> None:
    """Run the integrity verifier; exit 1 on any error."""
    report = _open_vault(args).verifier.verify()
    if _json_out(args):
        _emit(report.to_dict())
    else:
        for lineno, problem in report.problems:
            _warn(f"Error: {problem} at line {lineno}")
        print("Verification complete:")
        print(f"  Total entries: {report.total}")
        print(f"  Errors: {report.errors}")
        print(f"  Status: {'OK' if report.ok else 'FAILED'}")
    if not report.ok:
        sys.exit(1)


def cmd_export(args: argparse.Namespace) -> None:
    """Create a versioned export archive, or dump JSONL to stdout."""
    vault = _open_vault(args)
    if args.format == "jsonl":
        count = vault.archives.export_jsonl(sys.stdout)
        _info(f"[export] {count} record(s) exported")
        return
    manifest = vault.archives.create_export(args.version or "")
    if _json_out(args):
        data = manifest.to_dict()
        data["archive"] = manifest.archive
        _emit(data)
    else:
        print(f"Export created: {manifest.version} ({manifest.entry_count} entries)")
        print(f"Archive: {manifest.archive}")


def cmd_backup(args: argparse.Namespace) -> None:
    """Create a full backup archive with detached checksum."""
    backup = _open_vault(args).archives.create_full_backup()
    if _json_out(args):
        _emit(backup.__dict__)
    else:
        print(f"Full backup created: {backup.archive}")
        print(f"SHA256: {backup.checksum}")


def cmd_archives(args: argparse.Namespace) -> None:
    """List archives with size and date."""
    infos = _open_vault(args).archives.list_exports()
    if _json_out(args):
        _emit([i.to_dict() for i in infos])
        return
    if not infos:
        _info("No archives.")
        return
    for info in infos:
        print(f"  {info.name}  [{info.kind}]  {_human_size(info.size)}  {info.modified}")


def cmd_snapshot(args: argparse.Namespace) -> None:
    """Snapshot subcommands: create, list, restore, rotate."""
    vault = _open_vault(args)
    snapshots = vault.snapshots

    if args.action == "create":
        meta = snapshots.create(args.name)
        if _json_out(args):
            _emit(meta.to_dict())
        else:
            print(f"Snapshot created: {meta.name} ({meta.entry_count} entries)")
        return

    if args.action == "list":
        metas = snapshots.list()
        if _json_out(args):
            _emit([m.to_dict() for m in metas])
            return
        if not metas:
            _info("No snapshots available")
            return
        for i, m in enumerate(metas):
            size = os.path.getsize(m.file_path) if os.path.exists(m.file_path) else 0
            print(f"[{i}] {m.name}")
            print(f"    Created: {m.created}")
            print(f"    Entries: {m.entry_count}")
            print(f"    Size: {_human_size(size)}")
        return

    if args.action == "restore":
        if not args.name:
            _warn("Error: snapshot name required")
            sys.exit(1)
        snapshots.restore(args.name, force=args.force, confirm=_confirm)
        print(f"Restored from snapshot: {args.name}")
        return

    if args.action == "rotate":
        removed = snapshots.rotate(args.keep)
        for name in removed:
            _info(f"Removed: {name}")
        if _json_out(args):
            _emit({"removed": removed})
        return


def cmd_migrate(args: argparse.Namespace) -> None:
    """Migrate legacy data, or roll back the last migration."""
    vault = _open_vault(args)
    engine = vault.migrations

    if args.rollback:
        point = engine.rollback()
        print("Rollback completed successfully")
        print(f"  Rollback file: {point.rollback_file}")
        return

    if not args.source:
        _warn("Error: source required (" + ", ".join(engine.sources() + ["all"]) + ")")
        sys.exit(1)

    report = engine.migrate(
        args.source, args.path,
        dry_run=args.dry_run, force=args.force, confirm=_confirm,
    )
    if _json_out(args):
        _emit(report.to_dict())
    else:
        for r in report.results:
            print(f"{r.source} migration:")
            print(f"  Total entries: {r.total}")
            print(f"  Migrated: {r.migrated}")
            print(f"  Errors: {r.errors}")
            if r.aborted:
                print(f"  Aborted: {r.aborted}")
        if report.dry_run:
            print("Dry-run completed (no changes made)")
        elif report.ok:
            print("Migration completed successfully")
        else:
            print("Migration completed with errors")
        if report.log_file:
            _info(f"  Log file: {report.log_file}")
    if not report.ok:
        sys.exit(1)


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    # SUPPRESS defaults keep subparser defaults from overriding values parsed
    # at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--root", default=argparse.SUPPRESS,
        help="Workspace root (default: BRAINVAULT_HOME or .brainvault)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="brainvault",
        description="brainvault — durable, tiered personal-knowledge record store",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("init", parents=[_common], help="Initialize a workspace")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("add", parents=[_common], help="Add a record")
    p.add_argument("type", help="Record type (note, decision, action, entity, ...)")
    p.add_argument("content", help="Record text")
    p.add_argument("--category", default="general", help="Category (default: general)")
    p.add_argument("--tags", default=None, help="Comma-separated tags")
    p.add_argument("--tier", default=None, choices=["hot", "warm", "cold"],
                   help="Expected tier (must agree with --confidence)")
    p.add_argument("--confidence", type=float, default=0.8,
                   help="Confidence in [0, 1] (default: 0.8)")
    p.add_argument("--source", default="command", help="Origin tag (default: command)")
    p.add_argument("--entities", default=None,
                   help='JSON list of entities, e.g. ["Alice", "billing"]')
    p.add_argument("--session", default=None, help="Session id (default: BRAINVAULT_SESSION_ID)")
    p.add_argument("--agent", default=None, help="Agent name (default: BRAINVAULT_AGENT)")
    p.add_argument("--channel", default=None, help="Channel (default: BRAINVAULT_CHANNEL)")
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("show", parents=[_common], help="Show a record")
    p.add_argument("id", help="Record id")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("search", parents=[_common], help="Substring search")
    p.add_argument("query", help="Search text (case-insensitive)")
    p.add_argument("--limit", type=int, default=None,
                   help="Max results (default: store.search_limit, 10)")
    p.add_argument("--tier", default=None, choices=["hot", "warm", "cold"])
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("recall", parents=[_common], help="Recall recent records")
    p.add_argument("context", nargs="?", default=None, help="Optional context text")
    p.add_argument("--limit", type=int, default=5, help="Max results (default: 5)")
    p.add_argument("--days", type=int, default=None, help="Only the last N days")
    p.set_defaults(func=cmd_recall)

    p = sub.add_parser("list", parents=[_common], help="List records")
    p.add_argument("--tier", default=None)
    p.add_argument("--category", default=None)
    p.add_argument("--type", default=None)
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("touch", parents=[_common], help="Bump a record's access count")
    p.add_argument("id", help="Record id")
    p.set_defaults(func=cmd_touch)

    p = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("verify", parents=[_common], help="Verify store integrity")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("export", parents=[_common], help="Versioned export")
    p.add_argument("--version", default=None, help="Version name (default: vYYYYMMDD_HHMMSS)")
    p.add_argument("--format", default="tar.gz", choices=["tar.gz", "jsonl"],
                   help="tar.gz archive (default) or JSONL on stdout")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("backup", parents=[_common], help="Full backup archive")
    p.set_defaults(func=cmd_backup)

    p = sub.add_parser("archives", parents=[_common], help="List archives")
    p.set_defaults(func=cmd_archives)

    p = sub.add_parser("snapshot", parents=[_common], help="Snapshot management")
    p.add_argument("action", choices=["create", "list", "restore", "rotate"])
    p.add_argument("name", nargs="?", default=None, help="Snapshot name")
    p.add_argument("--force", action="store_true", help="Skip confirmation on restore")
    p.add_argument("--keep", type=int, default=None, help="Snapshots to keep on rotate")
    p.set_defaults(func=cmd_snapshot)

    p = sub.add_parser("migrate", parents=[_common], help="Migrate legacy data")
    p.add_argument("source", nargs="?", default=None,
                   help="index-log | document-tree | all")
    p.add_argument("--path", default=None, help="Source file or directory")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Simulate without changes")
    mode.add_argument("--rollback", action="store_true", help="Roll back the last migration")
    p.add_argument("--force", action="store_true", help="Skip confirmation prompts")
    p.set_defaults(func=cmd_migrate)

    return parser


def main(argv=None) -> None:
    """CLI entry point: brainvault <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(1)
    except UserAbort as e:
        _warn(f"Aborted: {e}")
        sys.exit(1)
    except (VaultError, OSError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
