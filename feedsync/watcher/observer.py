"""File watcher: PollingObserver + ImportPipeline orchestration.

Watches a drop folder for new feed exports (.json, .csv), waits for file
stability (size+mtime stable for 10s), validates file completeness,
auto-detects the parser, then runs the import pipeline:
  detect → stable → parse → map → reconcile → apply

Uses PollingObserver as primary (not fallback) due to NAS/Docker volume
unreliability with inotify. 30-second polling interval.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEventHandler

from feedsync.config import Config
from feedsync.database.dedup import ReconciliationEngine
from feedsync.database.models import LedgerRecord
from feedsync.mapping.mapper import RecordMapper, SkippedRecord
from feedsync.parsers.base import BaseParser
from feedsync.parsers.feed_csv import FeedCsvParser
from feedsync.parsers.feed_json import FeedJsonParser

if TYPE_CHECKING:
    from feedsync.database.repository import Repository

logger = logging.getLogger(__name__)

# File extensions we accept
SUPPORTED_EXTENSIONS = {".json", ".csv"}

# Default stability check parameters
DEFAULT_STABILITY_SECONDS = 10
DEFAULT_CHECK_INTERVAL = 2.0

# Default polling interval for PollingObserver
DEFAULT_POLL_INTERVAL = 30


@dataclass
class ImportResult:
    """Result of importing a single file."""
    file_name: str
    status: str  # "success", "error"
    new_count: int = 0
    duplicate_count: int = 0
    replaced_count: int = 0
    skipped_count: int = 0  # Parser rows and mapper drops
    error_message: str | None = None
    skipped: list[SkippedRecord] = field(default_factory=list)
    records: list[LedgerRecord] = field(default_factory=list)


class FileStabilityError(Exception):
    """Raised when a file fails post-stability validation."""


# ── File stability & validation ──────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: int = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = 300.0,
) -> None:
    """Wait until file size and mtime are stable for stability_seconds.

    Raises:
        TimeoutError: If file doesn't stabilize within max_wait.
    """
    prev_size = -1
    prev_mtime = -1.0
    stable_since: float | None = None
    start = time.monotonic()

    while True:
        if time.monotonic() - start > max_wait:
            raise TimeoutError(
                f"File did not stabilize within {max_wait}s: {filepath}"
            )

        stat = filepath.stat()
        if stat.st_size == prev_size and stat.st_mtime == prev_mtime:
            if stable_since is None:
                stable_since = time.monotonic()
            elif time.monotonic() - stable_since >= stability_seconds:
                return
        else:
            stable_since = None

        prev_size = stat.st_size
        prev_mtime = stat.st_mtime
        time.sleep(check_interval)


def validate_file_completeness(filepath: Path) -> None:
    """Post-stability validation: ensure file content is complete.

    - CSV files: must end with a newline
    - JSON files: must parse

    Raises:
        FileStabilityError: If file appears incomplete.
    """
    suffix = filepath.suffix.lower()

    if suffix == ".csv":
        with open(filepath, "rb") as f:
            f.seek(0, 2)
            size = f.tell()
            if size == 0:
                raise FileStabilityError(f"Empty CSV file: {filepath}")
            f.seek(size - 1)
            last_byte = f.read(1)
            if last_byte not in (b"\n", b"\r"):
                raise FileStabilityError(
                    f"CSV file does not end with newline: {filepath}"
                )

    elif suffix == ".json":
        try:
            with open(filepath, "r", encoding="utf-8-sig") as f:
                json.load(f)
        except ValueError as e:
            raise FileStabilityError(f"Incomplete JSON file: {filepath}") from e


# ── Parser auto-detection ─────────────────────────────────


def detect_parser(filepath: Path) -> BaseParser:
    """Pick the parser for a feed export.

    Raises:
        ValueError: If no parser can handle the file.
    """
    suffix = filepath.suffix.lower()

    if suffix == ".json":
        parser = FeedJsonParser()
        if parser.detect(filepath):
            return parser

    if suffix == ".csv":
        parser = FeedCsvParser()
        if parser.detect(filepath):
            return parser

    raise ValueError(f"No parser found for file: {filepath}")


# ── Import pipeline ──────────────────────────────────────


class ImportPipeline:
    """Orchestrate: parse → map → reconcile → apply.

    Args:
        repo: Ledger repository.
        config: Application config (account mappings, matching mode).
    """

    def __init__(self, repo: Repository, config: Config):
        self.repo = repo
        self.config = config
        self.mapper = RecordMapper(config.account_mappings)

    def process_file(self, filepath: Path, dry_run: bool = False) -> ImportResult:
        """Run the import pipeline on a single file.

        Steps:
        1. Check file extension
        2. Auto-detect parser and parse
        3. Map feed transactions (unmappable ones are dropped and reported)
        4. Classify against a fresh ledger snapshot
        5. Apply to the ledger (skipped on dry_run)
        """
        file_name = filepath.name

        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return ImportResult(
                file_name=file_name,
                status="error",
                error_message=f"Unsupported file extension: {filepath.suffix}",
            )

        try:
            parser = detect_parser(filepath)
            sources = parser.parse(filepath)
            if parser.skipped_count > 0:
                logger.warning(
                    "Parser skipped %d row(s) in %s",
                    parser.skipped_count, file_name,
                )

            mapped = self.mapper.map_all(sources)
            skipped_count = parser.skipped_count + len(mapped.skipped)

            # Snapshot taken per file; callers serialize runs against one ledger
            engine = ReconciliationEngine(
                self.repo.get_all_records(), legacy_mode=self.config.legacy_mode,
            )
            classified = engine.classify_all(mapped.records)
            duplicates = engine.filter_duplicates(classified)
            replacing = [r for r in duplicates if r.should_replace]

            result = ImportResult(
                file_name=file_name,
                status="success",
                new_count=len(engine.filter_unique(classified)),
                duplicate_count=len(duplicates) - len(replacing),
                replaced_count=len(replacing),
                skipped_count=skipped_count,
                skipped=mapped.skipped,
                records=classified,
            )
            if dry_run:
                return result

            applied = self.repo.apply_batch(classified)
            result.new_count = applied.inserted
            result.duplicate_count = applied.skipped
            result.replaced_count = applied.replaced
            return result

        except Exception as e:
            logger.exception("Import failed for %s", file_name)
            return ImportResult(
                file_name=file_name,
                status="error",
                error_message=str(e),
            )


# ── File watcher ─────────────────────────────────────────


class FileWatcher(FileSystemEventHandler):
    """Watch a drop folder for new feed exports using PollingObserver.

    Processes files sequentially so two imports never classify against
    the same ledger snapshot.

    Args:
        watch_dir: Directory to watch for new files.
        pipeline: ImportPipeline to process files.
        stability_seconds: Seconds of stability before processing.
        check_interval: Seconds between stability checks.
    """

    def __init__(
        self,
        watch_dir: Path,
        pipeline: ImportPipeline,
        stability_seconds: int = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.pipeline = pipeline
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self._observer = None

    def start(self) -> None:
        """Start watching the drop folder."""
        from watchdog.observers.polling import PollingObserver

        if not self.watch_dir.exists():
            self.watch_dir.mkdir(parents=True, exist_ok=True)

        self._observer = PollingObserver(timeout=DEFAULT_POLL_INTERVAL)
        self._observer.schedule(self, str(self.watch_dir), recursive=False)
        self._observer.start()
        logger.info("Watching %s for feed exports", self.watch_dir)

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("File watcher stopped")

    def on_created(self, event) -> None:
        """Handle new file creation events."""
        if event.is_directory:
            return

        filepath = Path(event.src_path)
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return

        logger.info("New file detected: %s", filepath.name)
        self._process_file(filepath)

    def _process_file(self, filepath: Path) -> ImportResult:
        """Wait for stability, validate, then import."""
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)

            result = self.pipeline.process_file(filepath)
            logger.info(
                "Import result for %s: %s (new=%d, dup=%d, replaced=%d, skipped=%d)",
                filepath.name, result.status, result.new_count,
                result.duplicate_count, result.replaced_count, result.skipped_count,
            )
            return result

        except (FileStabilityError, TimeoutError) as e:
            logger.error("File not imported: %s", e)
            return ImportResult(
                file_name=filepath.name,
                status="error",
                error_message=str(e),
            )
        except Exception as e:
            logger.exception("Unexpected error processing %s", filepath.name)
            return ImportResult(
                file_name=filepath.name,
                status="error",
                error_message=str(e),
            )
