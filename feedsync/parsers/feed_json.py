"""Feed JSON export parser.

Accepts the feed API's transaction payload saved to disk, either
``{"transactions": [...]}`` or a bare list. Each entry carries
``id, accountId, date, amount, merchant, description, isPending``.

Amounts are read as Decimal so no float rounding happens before the mapper
converts them to cents. Pending entries often have no id; that is expected.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from pathlib import Path

from .base import BaseParser, SourceTransaction, normalize_date, parse_bool

logger = logging.getLogger(__name__)


class FeedJsonParser(BaseParser):
    def detect(self, file_path: Path) -> bool:
        """Feed exports are JSON with a transactions list or a bare list."""
        if Path(file_path).suffix.lower() != ".json":
            return False
        try:
            data = self._load(file_path)
        except (OSError, ValueError):
            return False
        return isinstance(data, list) or (
            isinstance(data, dict) and isinstance(data.get("transactions"), list)
        )

    def parse(self, file_path: Path) -> list[SourceTransaction]:
        transactions: list[SourceTransaction] = []
        self.skipped_count = 0  # Reset for each parse

        data = self._load(file_path)
        entries = data.get("transactions", []) if isinstance(data, dict) else data
        for entry in entries:
            txn = self._parse_entry(entry) if isinstance(entry, dict) else None
            if txn is not None:
                transactions.append(txn)
            else:
                self.skipped_count += 1

        return transactions

    @staticmethod
    def _load(file_path: Path):
        with open(file_path, "r", encoding="utf-8-sig") as f:
            return json.load(f, parse_float=Decimal)

    def _parse_entry(self, entry: dict) -> SourceTransaction | None:
        account_id = str(entry.get("accountId", "") or "").strip()
        if not account_id:
            logger.debug("Skipping feed entry without accountId: %s", entry.get("id"))
            return None

        raw_date = entry.get("date")
        date = normalize_date(str(raw_date)) if raw_date else None
        if date is None:
            return None

        feed_id = entry.get("id")
        return SourceTransaction(
            id=str(feed_id) if feed_id not in (None, "") else None,
            account_id=account_id,
            date=date,
            # Left as-is; the mapper rejects malformed amounts
            amount=entry.get("amount"),
            merchant=(entry.get("merchant") or "").strip(),
            description=(entry.get("description") or "").strip(),
            is_pending=parse_bool(entry.get("isPending")),
        )
