"""CLI entry point for feedsync.

Commands:
    feedsync import [--file PATH] [--dry-run]   Import one export or all pending
    feedsync watch                              Start file watcher daemon
    feedsync status                             Ledger record counts
    feedsync check FILE                         Show verdicts without writing
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on FEEDSYNC_LOG_LEVEL env var."""
    level = os.environ.get("FEEDSYNC_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from feedsync.config import Config

    config_dir = os.environ.get("FEEDSYNC_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database."""
    from feedsync.database.repository import Repository

    db_path = os.environ.get("FEEDSYNC_DB_PATH", "ledger.db")
    return Repository(db_path=db_path)


def _get_watch_dir() -> Path:
    """Get the watch directory from env or default."""
    return Path(os.environ.get("FEEDSYNC_WATCH_DIR", "import"))


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("FEEDSYNC_MIGRATIONS_DIR", default))


def _get_pipeline(repo):
    from feedsync.watcher.observer import ImportPipeline

    return ImportPipeline(repo=repo, config=_get_config())


def _print_skipped(result) -> None:
    for s in result.skipped:
        print(f"    skipped {s.source.id or '(pending)'} [{s.reason}]: {s.message}")


# ── Command handlers ─────────────────────────────────────


def cmd_import(args: argparse.Namespace) -> int:
    """Import feed export(s) via the ImportPipeline."""
    from feedsync.watcher.observer import SUPPORTED_EXTENSIONS

    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    pipeline = _get_pipeline(repo)

    try:
        if args.file:
            filepath = args.file.resolve()
            if not filepath.exists():
                print(f"Error: File not found: {filepath}")
                return 1
            if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
                print(f"Error: Unsupported file type: {filepath.suffix}")
                return 1

            result = pipeline.process_file(filepath, dry_run=args.dry_run)
            print(
                f"{result.file_name}: {result.status}"
                f" (new={result.new_count}, dup={result.duplicate_count},"
                f" replaced={result.replaced_count}, skipped={result.skipped_count})"
            )
            _print_skipped(result)
            if result.error_message:
                print(f"  error: {result.error_message}")
            return 0 if result.status != "error" else 1

        watch_dir = _get_watch_dir()
        if not watch_dir.exists():
            print(f"Watch directory not found: {watch_dir}")
            return 1

        files = [
            f for f in sorted(watch_dir.iterdir())
            if f.is_file() and f.suffix.lower() in SUPPORTED_EXTENSIONS
        ]
        if not files:
            print("No pending files found.")
            return 0

        total_new = 0
        total_dup = 0
        total_replaced = 0
        errors = 0
        for filepath in files:
            result = pipeline.process_file(filepath, dry_run=args.dry_run)
            print(
                f"  {result.file_name}: {result.status}"
                f" (new={result.new_count}, dup={result.duplicate_count},"
                f" replaced={result.replaced_count})"
            )
            total_new += result.new_count
            total_dup += result.duplicate_count
            total_replaced += result.replaced_count
            if result.status == "error":
                errors += 1

        print(
            f"\nProcessed {len(files)} files: {total_new} new, {total_dup} duplicates,"
            f" {total_replaced} settled, {errors} errors"
        )
        return 1 if errors else 0
    finally:
        repo.close()


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the file watcher daemon."""
    from feedsync.watcher.observer import FileWatcher

    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    watcher = FileWatcher(watch_dir=_get_watch_dir(), pipeline=_get_pipeline(repo))

    print(f"Watching {watcher.watch_dir} for feed exports... (Ctrl+C to stop)")
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        watcher.stop()
        repo.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display ledger record counts."""
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())

    total = repo.count_records()
    cleared = repo.count_records(cleared=True)

    print("feedsync Status")
    print("=" * 40)
    print(f"  Ledger records:      {total:,}")
    print(f"  Cleared:             {cleared:,}")
    print(f"  Pending:             {total - cleared:,}")

    repo.close()
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Classify a feed export against the ledger and print each verdict."""
    filepath = args.file.resolve()
    if not filepath.exists():
        print(f"Error: File not found: {filepath}")
        return 1

    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    try:
        result = _get_pipeline(repo).process_file(filepath, dry_run=True)
    finally:
        repo.close()

    if result.status == "error":
        print(f"Error: {result.error_message}")
        return 1

    for r in result.records:
        if r.should_replace:
            verdict = f"settles {r.duplicate_of_id}"
        elif r.is_duplicate:
            verdict = f"duplicate of {r.duplicate_of_id}"
        else:
            verdict = "new"
        print(
            f"  {r.date}  {r.amount / 100:>10.2f}  {(r.payee_name or '')[:30]:<30}"
            f"  {verdict}"
        )
    _print_skipped(result)
    print(
        f"\n{len(result.records)} records: {result.new_count} new,"
        f" {result.duplicate_count} duplicates, {result.replaced_count} settled,"
        f" {result.skipped_count} skipped"
    )
    return 0


_COMMANDS = {
    "import": cmd_import,
    "watch": cmd_watch,
    "status": cmd_status,
    "check": cmd_check,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="feedsync",
        description="Reconcile transaction feed exports into a ledger",
    )
    subparsers = parser.add_subparsers(dest="command")

    # import
    import_p = subparsers.add_parser("import", help="Import feed export(s)")
    import_p.add_argument("--file", type=Path, help="Specific file to import")
    import_p.add_argument(
        "--dry-run", action="store_true", help="Classify only, do not write",
    )

    # watch
    subparsers.add_parser("watch", help="Start file watcher daemon")

    # status
    subparsers.add_parser("status", help="Show ledger record counts")

    # check
    check_p = subparsers.add_parser("check", help="Show verdicts for a feed export")
    check_p.add_argument("file", type=Path, help="Feed export (.json or .csv)")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
