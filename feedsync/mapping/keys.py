"""Imported-id formats and content keys.

A feed transaction changes identity when it settles:

- Provisional: no stable feed id yet. The ledger record carries a synthetic
  id built from its content:
  ``pending_{account_id}_{YYYY-MM-DD}_{amount_minor_units}_{merchant_slug}``
- Settled: ``src_{feed_id}``. The feed id has no lexical relation to the
  synthetic id it supersedes.

ContentKey links the two states. It is always recomputed from a record's
raw fields (account, date, amount, payee), never parsed out of an id.

The merchant slug keeps only [a-z0-9] and is cut at 20 characters, so two
long merchant names sharing a 20-character prefix produce the same slug.
Existing ledgers already store ids in this format, so the collision stays.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

PROVISIONAL_PREFIX = "pending_"
SETTLED_PREFIX = "src_"
PENDING_MARKER = "[PENDING] "

MERCHANT_SLUG_LENGTH = 20

_SLUG_STRIP = re.compile(r"[^a-z0-9]")
_CENT = Decimal("100")


@dataclass(frozen=True)
class ContentKey:
    """The four fields a settled record shares with its provisional one."""
    account: str
    date: str
    amount: int
    payee: str


@dataclass(frozen=True)
class ProvisionalId:
    account_id: str
    date: str
    amount: int
    merchant_slug: str

    def render(self) -> str:
        return (
            f"{PROVISIONAL_PREFIX}{self.account_id}_{self.date}"
            f"_{self.amount}_{self.merchant_slug}"
        )


@dataclass(frozen=True)
class SettledId:
    feed_id: str

    def render(self) -> str:
        return f"{SETTLED_PREFIX}{self.feed_id}"


def merchant_slug(merchant: str | None) -> str:
    """Lower-case, strip everything outside [a-z0-9], cut to 20 chars."""
    if not merchant:
        return ""
    return _SLUG_STRIP.sub("", merchant.lower())[:MERCHANT_SLUG_LENGTH]


def to_minor_units(amount) -> int:
    """Convert signed currency units to integer minor units (cents).

    Goes through Decimal(str(amount)) so binary float error never leaks in:
    19.99 becomes 1999, not 1998. Half-cent values round away from zero.

    Raises:
        ValueError: amount is missing, non-numeric, NaN or infinite.
    """
    if amount is None or isinstance(amount, bool):
        raise ValueError(f"Invalid amount: {amount!r}")
    if isinstance(amount, str):
        amount = amount.replace(",", "").replace("$", "").strip()
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    try:
        cents = (value * _CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    return int(cents)


def parse_imported_id(imported_id: str | None) -> ProvisionalId | SettledId | None:
    """Classify an imported id into its provisional or settled variant.

    Ids with neither prefix (hand-entered or from older importers) and
    provisional ids whose content part cannot be read return None.
    Account ids may themselves contain underscores, so the provisional
    form is split from the right.
    """
    if not imported_id:
        return None
    if imported_id.startswith(SETTLED_PREFIX):
        feed_id = imported_id[len(SETTLED_PREFIX):]
        return SettledId(feed_id) if feed_id else None
    if imported_id.startswith(PROVISIONAL_PREFIX):
        body = imported_id[len(PROVISIONAL_PREFIX):]
        parts = body.rsplit("_", 3)
        if len(parts) != 4:
            return None
        account_id, date, amount, slug = parts
        try:
            amount_int = int(amount)
        except ValueError:
            return None
        if not account_id or not date:
            return None
        return ProvisionalId(account_id, date, amount_int, slug)
    return None


def content_key(
    account: str | None,
    date: str | None,
    amount: int | None,
    payee: str | None,
) -> ContentKey | None:
    """Build a ContentKey, or None when any of the four fields is missing."""
    if not account or not date or amount is None or not payee:
        return None
    return ContentKey(account, date, amount, payee)


def has_pending_marker(text: str | None) -> bool:
    return bool(text) and PENDING_MARKER in text


def strip_pending_marker(text: str | None) -> str:
    """Remove the "[PENDING] " marker (trailing space included), then trim."""
    if not text:
        return ""
    return text.replace(PENDING_MARKER, "", 1).strip()
