"""Base parser: shared interface, feed transaction shape, and helpers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path


@dataclass
class SourceTransaction:
    """One transaction as reported by the feed, before mapping."""
    account_id: str
    date: str | None       # YYYY-MM-DD (normalized by parser)
    amount: Decimal | str | float | None  # signed currency units, unconverted
    merchant: str = ""
    description: str = ""
    is_pending: bool = False
    id: str | None = None  # feed id; stable once settled


class BaseParser(ABC):
    """Abstract base for feed export parsers.

    Attributes:
        skipped_count: Number of rows skipped during parsing (e.g., missing
            account id or an unreadable date). Check this after parse()
            to detect silent data loss.
    """

    def __init__(self):
        self.skipped_count: int = 0

    @abstractmethod
    def parse(self, file_path: Path) -> list[SourceTransaction]:
        """Parse a feed export and return its transactions."""

    @abstractmethod
    def detect(self, file_path: Path) -> bool:
        """Return True if this parser can handle the given file."""


def normalize_date(value: str) -> str | None:
    """Normalize a feed date to YYYY-MM-DD.

    Accepts YYYY-MM-DD (optionally followed by a time part, which is
    dropped) and MM/DD/YYYY. Returns None when the value is unreadable.
    """
    value = value.strip()
    if not value:
        return None
    if "T" in value:
        value = value.split("T", 1)[0]
    parts = value.split("-")
    if len(parts) == 3 and len(parts[0]) == 4:
        if all(p.isdigit() for p in parts):
            yyyy, mm, dd = parts
            return f"{yyyy}-{mm.zfill(2)}-{dd.zfill(2)}"
        return None
    parts = value.split("/")
    if len(parts) == 3:
        mm, dd, yyyy = parts
        if mm.isdigit() and dd.isdigit() and yyyy.isdigit() and len(yyyy) == 4:
            return f"{yyyy}-{mm.zfill(2)}-{dd.zfill(2)}"
    return None


def parse_bool(value) -> bool:
    """Interpret feed flags such as true/"true"/"yes"/"1"."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"true", "yes", "y", "1", "pending"}
