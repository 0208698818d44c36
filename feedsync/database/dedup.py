"""Reconciliation engine: classify mapped feed records against the ledger.

Tiers (evaluated in order, first match wins):
1. No imported id — always new
2. Imported id — exact match against an existing record (re-import)
3. Settlement — a candidate whose imported id lacks the pending_ prefix
   and whose content key (account, date, amount, payee) equals that of an
   existing provisional record
4. Legacy — optional date+amount scan for ledgers that predate synthetic ids
5. Otherwise new

Tier 3 exists because the feed id changes when a transaction settles. The
settled id bears no relation to the provisional one, so the link is made
on content, recomputed from the raw fields on both sides. Payee equality
is exact and case-sensitive. A tier 3 match tells the persistence layer to
overwrite the provisional record (should_replace) instead of inserting.

Tier 4 is off unless configured. It is a linear scan and its permissive
mode accepts a date+amount match when either side has no payee, which is a
known source of false positives. Use it to migrate historical data only.

The indexes are built once from the snapshot passed to the constructor and
are never mutated; the snapshot itself is left untouched.
"""

from __future__ import annotations

import enum
from collections import defaultdict
from dataclasses import dataclass

from feedsync.database.models import LedgerRecord
from feedsync.mapping.keys import (
    PROVISIONAL_PREFIX,
    ContentKey,
    ProvisionalId,
    content_key,
    has_pending_marker,
    parse_imported_id,
    strip_pending_marker,
)


class LegacyMode(str, enum.Enum):
    OFF = "off"
    STRICT = "strict"
    PERMISSIVE = "permissive"


@dataclass
class Verdict:
    """Outcome of reconciliation for a single candidate."""
    status: str  # "new", "duplicate"
    tier: str | None = None  # "imported_id", "settlement", "legacy"
    duplicate_of_id: str | None = None
    should_replace: bool | None = None

    @classmethod
    def new(cls) -> Verdict:
        return cls(status="new")

    @classmethod
    def duplicate(
        cls, duplicate_of_id: str, tier: str, should_replace: bool = False
    ) -> Verdict:
        return cls(
            status="duplicate",
            tier=tier,
            duplicate_of_id=duplicate_of_id,
            should_replace=should_replace,
        )

    @property
    def is_duplicate(self) -> bool:
        return self.status == "duplicate"


def record_content_key(record: LedgerRecord) -> ContentKey | None:
    return content_key(record.account, record.date, record.amount, record.payee_name)


class ReconciliationEngine:
    """Classify candidates against one ledger snapshot.

    Args:
        existing: Every record currently in the ledger.
        legacy_mode: Strictness of the tier 4 fallback.
    """

    def __init__(
        self,
        existing: list[LedgerRecord],
        legacy_mode: LegacyMode = LegacyMode.OFF,
    ):
        self.legacy_mode = LegacyMode(legacy_mode)
        self._existing: tuple[LedgerRecord, ...] = tuple(existing)
        self.by_imported_id: dict[str, LedgerRecord] = {}
        self.pending_by_content_key: dict[ContentKey, list[LedgerRecord]] = defaultdict(list)

        for record in self._existing:
            if not record.imported_id:
                continue
            self.by_imported_id.setdefault(record.imported_id, record)
            if isinstance(parse_imported_id(record.imported_id), ProvisionalId):
                key = record_content_key(record)
                if key is not None:
                    self.pending_by_content_key[key].append(record)

    # ── Tier 2: Imported id ───────────────────────────────

    def check_imported_id(self, candidate: LedgerRecord) -> LedgerRecord | None:
        if not candidate.imported_id:
            return None
        return self.by_imported_id.get(candidate.imported_id)

    # ── Tier 3: Settlement ────────────────────────────────

    def check_settlement(
        self,
        candidate: LedgerRecord,
        claimed: set[str] | None = None,
    ) -> LedgerRecord | None:
        """Return the provisional record this settled candidate supersedes.

        Any imported id without the pending_ prefix counts as settled,
        including foreign ids and a bare src_.

        Provisional records whose id is in `claimed` are passed over so two
        settled candidates never replace the same record.
        """
        if not candidate.imported_id or candidate.imported_id.startswith(PROVISIONAL_PREFIX):
            return None
        key = record_content_key(candidate)
        if key is None:
            return None
        for match in self.pending_by_content_key.get(key, ()):
            if claimed is None or match.id not in claimed:
                return match
        return None

    # ── Tier 4: Legacy date+amount ────────────────────────

    def check_legacy(
        self,
        candidate: LedgerRecord,
        claimed: set[str] | None = None,
    ) -> LedgerRecord | None:
        """Linear scan on date+amount, disambiguated by payee."""
        if self.legacy_mode is LegacyMode.OFF:
            return None
        if not candidate.date or candidate.amount is None:
            return None

        permissive = self.legacy_mode is LegacyMode.PERMISSIVE
        new_pending = _carries_marker(candidate)
        new_payee = (candidate.payee_name or "").strip()

        for existing in self._existing:
            if claimed is not None and existing.id in claimed:
                continue
            if existing.date != candidate.date or existing.amount != candidate.amount:
                continue

            if _carries_marker(existing) and not new_pending:
                stripped = strip_pending_marker(existing.payee_name)
                if stripped and new_payee:
                    if stripped == new_payee:
                        return existing
                elif permissive:
                    return existing

            existing_payee = (existing.payee_name or "").strip()
            if existing_payee and new_payee:
                if existing_payee == new_payee:
                    return existing
            elif permissive:
                return existing
        return None

    # ── Full pipeline ─────────────────────────────────────

    def classify(
        self,
        candidate: LedgerRecord,
        claimed: set[str] | None = None,
    ) -> Verdict:
        if not candidate.imported_id:
            return Verdict.new()

        existing = self.check_imported_id(candidate)
        if existing is not None:
            return Verdict.duplicate(existing.id, tier="imported_id")

        provisional = self.check_settlement(candidate, claimed)
        if provisional is not None:
            return Verdict.duplicate(
                provisional.id, tier="settlement", should_replace=True
            )

        legacy = self.check_legacy(candidate, claimed)
        if legacy is not None:
            replace = candidate.cleared and (
                not legacy.cleared or _carries_marker(legacy)
            )
            return Verdict.duplicate(
                legacy.id, tier="legacy", should_replace=replace
            )

        return Verdict.new()

    # ── Batch processing ──────────────────────────────────

    def classify_all(self, candidates: list[LedgerRecord]) -> list[LedgerRecord]:
        """Attach a verdict to every candidate and return them.

        Sets is_duplicate, duplicate_of_id and should_replace in place.
        Within one call each existing record is replaced at most once;
        the claim set is local to the call, so repeated calls agree.
        """
        claimed: set[str] = set()
        for candidate in candidates:
            verdict = self.classify(candidate, claimed)
            if verdict.should_replace and verdict.duplicate_of_id:
                claimed.add(verdict.duplicate_of_id)
            candidate.is_duplicate = verdict.is_duplicate
            candidate.duplicate_of_id = verdict.duplicate_of_id
            candidate.should_replace = verdict.should_replace
        return candidates

    @staticmethod
    def count_duplicates(records: list[LedgerRecord]) -> int:
        return sum(1 for r in records if r.is_duplicate)

    @staticmethod
    def filter_unique(records: list[LedgerRecord]) -> list[LedgerRecord]:
        return [r for r in records if not r.is_duplicate]

    @staticmethod
    def filter_duplicates(records: list[LedgerRecord]) -> list[LedgerRecord]:
        return [r for r in records if r.is_duplicate]


def _carries_marker(record: LedgerRecord) -> bool:
    return has_pending_marker(record.payee_name) or has_pending_marker(record.notes)
