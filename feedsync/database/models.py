"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly,
except the reconciliation fields on LedgerRecord, which are attached per run
and never stored.
All primary keys are TEXT (UUID strings generated via uuid4()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LedgerRecord:
    date: str | None
    amount: int | None          # minor units (cents), signed
    account: str
    payee_name: str | None = None
    imported_payee: str | None = None
    cleared: bool = True
    notes: str | None = None
    imported_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    # Set by ReconciliationEngine.classify_all
    is_duplicate: bool = False
    duplicate_of_id: str | None = None
    should_replace: bool | None = None

    @property
    def is_pending(self) -> bool:
        return not self.cleared
