"""Feed CSV export parser.

The feed's CSV download has one row per transaction with columns:
ID, Account ID, Date, Amount, Merchant, Description, Pending

Pending rows usually have an empty ID. Amounts keep their text form
("1,234.56", "-19.99") until the mapper converts them.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from .base import BaseParser, SourceTransaction, normalize_date, parse_bool

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("Account ID", "Date", "Amount", "Merchant")


class FeedCsvParser(BaseParser):
    def detect(self, file_path: Path) -> bool:
        """Feed CSVs carry 'Account ID' and 'Merchant' columns."""
        try:
            with open(file_path, "r", encoding="utf-8-sig", errors="replace") as f:
                header = f.readline()
            return all(col in header for col in REQUIRED_COLUMNS)
        except (OSError, UnicodeDecodeError):
            return False

    def parse(self, file_path: Path) -> list[SourceTransaction]:
        transactions: list[SourceTransaction] = []
        self.skipped_count = 0  # Reset for each parse

        with open(file_path, "r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f)
            for row in reader:
                txn = self._parse_row(row)
                if txn is not None:
                    transactions.append(txn)
                else:
                    self.skipped_count += 1

        return transactions

    def _parse_row(self, row: dict) -> SourceTransaction | None:
        account_id = (row.get("Account ID") or "").strip()
        date_str = (row.get("Date") or "").strip()
        if not account_id or not date_str:
            return None

        date = normalize_date(date_str)
        if date is None:
            logger.debug("Unreadable date %r for account %s", date_str, account_id)
            return None

        return SourceTransaction(
            id=(row.get("ID") or "").strip() or None,
            account_id=account_id,
            date=date,
            amount=(row.get("Amount") or "").strip(),
            merchant=(row.get("Merchant") or "").strip(),
            description=(row.get("Description") or "").strip(),
            is_pending=parse_bool(row.get("Pending")),
        )
