"""Repository: ledger persistence against SQLite using raw SQL.

All methods take/return LedgerRecord instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from .models import LedgerRecord, _now

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "id, date, amount, account, payee_name, imported_payee, cleared,"
    " notes, imported_id, created_at, updated_at"
)


class DuplicateRecordError(Exception):
    """Raised when inserting a record whose imported_id is already stored."""

    def __init__(self, imported_id: str | None):
        self.imported_id = imported_id
        super().__init__(f"Record with imported_id '{imported_id}' already exists")


@dataclass
class ApplyResult:
    """Counts from writing one classified batch."""
    inserted: int = 0
    skipped: int = 0
    replaced: int = 0


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = _strip_sql_comments(statement)
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Ledger records ──────────────────────────────────────

    def insert_record(self, record: LedgerRecord) -> LedgerRecord:
        """Insert one record.

        Raises:
            DuplicateRecordError: imported_id is already stored.
        """
        try:
            self.conn.execute(
                f"INSERT INTO ledger_records ({_RECORD_COLUMNS})"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                _record_params(record),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if "imported_id" in str(e):
                raise DuplicateRecordError(record.imported_id) from e
            raise
        return record

    def insert_records_batch(self, records: list[LedgerRecord]):
        """Insert multiple records atomically.

        Uses a transaction wrapper so either all inserts succeed or none do.
        """
        try:
            self.conn.execute("BEGIN")
            self.conn.executemany(
                f"INSERT INTO ledger_records ({_RECORD_COLUMNS})"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                [_record_params(r) for r in records],
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_record(self, record_id: str) -> LedgerRecord | None:
        row = self.conn.execute(
            "SELECT * FROM ledger_records WHERE id = ?", (record_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def get_record_by_imported_id(self, imported_id: str) -> LedgerRecord | None:
        row = self.conn.execute(
            "SELECT * FROM ledger_records WHERE imported_id = ?", (imported_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def get_all_records(self) -> list[LedgerRecord]:
        """Full ledger snapshot, oldest first."""
        rows = self.conn.execute(
            "SELECT * FROM ledger_records ORDER BY date, rowid"
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count_records(self, cleared: bool | None = None) -> int:
        if cleared is None:
            row = self.conn.execute("SELECT COUNT(*) FROM ledger_records").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM ledger_records WHERE cleared = ?",
                (int(cleared),),
            ).fetchone()
        return row[0]

    def replace_record(self, target_id: str, record: LedgerRecord) -> bool:
        """Overwrite a provisional record with its settled version.

        The stored row keeps its id and created_at; every other column
        takes the settled values and the row is marked cleared.
        Returns False if target_id no longer exists.
        """
        cur = self._update_record(target_id, record)
        self.conn.commit()
        return cur.rowcount > 0

    def _update_record(self, target_id: str, record: LedgerRecord) -> sqlite3.Cursor:
        return self.conn.execute(
            "UPDATE ledger_records SET date = ?, amount = ?, account = ?,"
            " payee_name = ?, imported_payee = ?, cleared = 1, notes = ?,"
            " imported_id = ?, updated_at = ?"
            " WHERE id = ?",
            (record.date, record.amount, record.account, record.payee_name,
             record.imported_payee, record.notes, record.imported_id,
             _now(), target_id),
        )

    # ── Classified batches ─────────────────────────────────

    def apply_batch(self, classified: list[LedgerRecord]) -> ApplyResult:
        """Write a batch classified by ReconciliationEngine.classify_all.

        - new: inserted
        - duplicate: skipped
        - duplicate with should_replace: the provisional record it points
          to is overwritten and cleared

        Runs in one transaction. Records repeating an imported_id seen
        earlier in the same batch are skipped.
        """
        result = ApplyResult()
        seen: set[str] = set()
        current: LedgerRecord | None = None
        try:
            self.conn.execute("BEGIN")
            for record in classified:
                current = record
                if record.imported_id and record.imported_id in seen:
                    result.skipped += 1
                    continue
                if record.is_duplicate and record.should_replace and record.duplicate_of_id:
                    cur = self._update_record(record.duplicate_of_id, record)
                    if cur.rowcount > 0:
                        result.replaced += 1
                    else:
                        logger.warning(
                            "Provisional record %s vanished; inserting %s as new",
                            record.duplicate_of_id, record.imported_id,
                        )
                        self._insert_uncommitted(record)
                        result.inserted += 1
                elif record.is_duplicate:
                    result.skipped += 1
                else:
                    self._insert_uncommitted(record)
                    result.inserted += 1
                if record.imported_id:
                    seen.add(record.imported_id)
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise DuplicateRecordError(current.imported_id if current else None) from e
        except Exception:
            self.conn.rollback()
            raise
        return result

    def _insert_uncommitted(self, record: LedgerRecord) -> None:
        self.conn.execute(
            f"INSERT INTO ledger_records ({_RECORD_COLUMNS})"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            _record_params(record),
        )

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> LedgerRecord:
        return LedgerRecord(
            id=row["id"], date=row["date"], amount=row["amount"],
            account=row["account"], payee_name=row["payee_name"],
            imported_payee=row["imported_payee"],
            cleared=bool(row["cleared"]), notes=row["notes"],
            imported_id=row["imported_id"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )


def _record_params(r: LedgerRecord) -> tuple:
    return (
        r.id, r.date, r.amount, r.account, r.payee_name, r.imported_payee,
        int(r.cleared), r.notes, r.imported_id, r.created_at, r.updated_at,
    )


def _strip_sql_comments(statement: str) -> str:
    lines = [
        line for line in statement.splitlines()
        if not line.strip().startswith("--")
    ]
    return "\n".join(lines).strip()
