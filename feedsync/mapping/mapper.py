"""Feed transaction → ledger record mapping.

Each SourceTransaction is routed to its ledger account through the
configured AccountMapping, its amount is converted to integer cents, and it
receives an imported id:

- pending:  synthetic ``pending_…`` id derived from its content
- settled:  ``src_{feed id}``

Records that cannot be mapped are dropped from the batch. Each drop is
returned in MapResult.skipped and logged once; the rest of the batch is
still mapped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from feedsync.database.models import LedgerRecord
from feedsync.mapping.keys import (
    PENDING_MARKER,
    ProvisionalId,
    SettledId,
    merchant_slug,
    to_minor_units,
)
from feedsync.parsers.base import SourceTransaction

if TYPE_CHECKING:
    from feedsync.config import AccountMapping

logger = logging.getLogger(__name__)


class MappingError(Exception):
    """A single feed transaction could not be mapped to a ledger record."""

    reason = "mapping_error"

    def __init__(self, message: str, source: SourceTransaction | None = None):
        self.source = source
        super().__init__(message)


class UnmappedAccount(MappingError):
    reason = "unmapped_account"


class MalformedAmount(MappingError):
    reason = "malformed_amount"


class MissingFeedId(MappingError):
    reason = "missing_feed_id"


class MissingDate(MappingError):
    reason = "missing_date"


@dataclass
class SkippedRecord:
    """Diagnostic for one feed transaction dropped by map_all()."""
    source: SourceTransaction
    reason: str
    message: str


@dataclass
class MapResult:
    records: list[LedgerRecord] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)


class RecordMapper:
    """Map feed transactions into ledger records.

    Args:
        mappings: One AccountMapping per feed account.
    """

    def __init__(self, mappings: list[AccountMapping]):
        self._ledger_accounts: dict[str, str] = {
            m.source_account_id: m.ledger_account_id for m in mappings
        }

    def ledger_account_for(self, source_account_id: str) -> str | None:
        return self._ledger_accounts.get(source_account_id)

    def map(self, source: SourceTransaction) -> LedgerRecord:
        """Map one feed transaction.

        Raises:
            UnmappedAccount: no AccountMapping for source.account_id.
            MalformedAmount: amount missing, non-numeric, NaN or infinite.
            MissingFeedId: settled transaction without a feed id.
            MissingDate: pending transaction without a date.
        """
        account = self.ledger_account_for(source.account_id)
        if account is None:
            raise UnmappedAccount(
                f"No mapping found for feed account {source.account_id}", source,
            )

        try:
            amount = to_minor_units(source.amount)
        except ValueError as e:
            raise MalformedAmount(str(e), source) from e

        if source.is_pending:
            imported_id = synthetic_id(source, amount)
            notes = f"{PENDING_MARKER}{source.description or ''}"
        else:
            if not source.id:
                raise MissingFeedId(
                    f"Settled transaction on {source.account_id} has no feed id",
                    source,
                )
            imported_id = SettledId(source.id).render()
            notes = source.description

        return LedgerRecord(
            date=source.date,
            amount=amount,
            account=account,
            payee_name=source.merchant,
            imported_payee=source.merchant,
            cleared=not source.is_pending,
            notes=notes,
            imported_id=imported_id,
        )

    def map_all(self, sources: list[SourceTransaction]) -> MapResult:
        """Map a batch, dropping (and reporting) records that fail."""
        result = MapResult()
        for source in sources:
            try:
                result.records.append(self.map(source))
            except MappingError as e:
                logger.warning("Skipping feed transaction %s: %s", source.id or "?", e)
                result.skipped.append(
                    SkippedRecord(source=source, reason=e.reason, message=str(e))
                )
        return result


def synthetic_id(source: SourceTransaction, amount: int | None = None) -> str:
    """Render the provisional id for a pending feed transaction.

    Uses the feed account id (not the ledger account) so ids already stored
    by earlier runs keep matching.

    Raises:
        MissingDate: the transaction has no date to put in the id.
    """
    if not source.date:
        raise MissingDate(
            f"Pending transaction on {source.account_id} has no date", source,
        )
    if amount is None:
        amount = to_minor_units(source.amount)
    return ProvisionalId(
        account_id=source.account_id,
        date=source.date,
        amount=amount,
        merchant_slug=merchant_slug(source.merchant),
    ).render()
