"""Tests for the reconciliation engine."""

import copy

import pytest

from feedsync.config import AccountMapping
from feedsync.database.dedup import (
    LegacyMode,
    ReconciliationEngine,
    Verdict,
    record_content_key,
)
from feedsync.database.models import LedgerRecord
from feedsync.mapping.keys import ContentKey
from feedsync.mapping.mapper import RecordMapper
from feedsync.parsers.base import SourceTransaction


def _rec(**kw) -> LedgerRecord:
    defaults = dict(
        date="2024-01-05", amount=1999, account="ledger-checking",
        payee_name="Starbucks", imported_id="src_100",
    )
    defaults.update(kw)
    return LedgerRecord(**defaults)


def _provisional(**kw) -> LedgerRecord:
    defaults = dict(
        id="prov-1",
        imported_id="pending_A1_2024-01-05_1999_starbucks",
        cleared=False,
        notes="[PENDING] Coffee",
    )
    defaults.update(kw)
    return _rec(**defaults)


def _settled(**kw) -> LedgerRecord:
    defaults = dict(imported_id="src_999", notes="Coffee")
    defaults.update(kw)
    return _rec(**defaults)


def _legacy(existing: LedgerRecord, mode: LegacyMode) -> ReconciliationEngine:
    return ReconciliationEngine([existing], legacy_mode=mode)


# ── Index construction ────────────────────────────────────


class TestIndexes:
    def test_by_imported_id(self):
        a = _rec(imported_id="src_1")
        b = _rec(imported_id="src_2")
        engine = ReconciliationEngine([a, b])
        assert engine.by_imported_id == {"src_1": a, "src_2": b}

    def test_records_without_imported_id_not_indexed(self):
        engine = ReconciliationEngine([_rec(imported_id=None)])
        assert engine.by_imported_id == {}

    def test_pending_index_only_holds_provisional(self):
        prov = _provisional()
        engine = ReconciliationEngine([prov, _rec(imported_id="src_5")])
        key = ContentKey("ledger-checking", "2024-01-05", 1999, "Starbucks")
        assert dict(engine.pending_by_content_key) == {key: [prov]}

    def test_provisional_missing_fields_not_indexed(self):
        engine = ReconciliationEngine([_provisional(date=None)])
        assert dict(engine.pending_by_content_key) == {}

    def test_snapshot_not_mutated(self):
        existing = [_provisional(), _rec(imported_id="src_1", id="e1")]
        before = copy.deepcopy(existing)
        engine = ReconciliationEngine(existing)
        engine.classify_all([_settled(), _rec(imported_id="src_1")])
        assert existing == before


# ── Priority rules ────────────────────────────────────────


class TestClassify:
    def test_no_imported_id_is_new(self):
        engine = ReconciliationEngine([_rec(imported_id=None)])
        assert engine.classify(_rec(imported_id=None)) == Verdict.new()

    def test_exact_imported_id_duplicate(self):
        existing = _rec(id="e1", imported_id="src_1")
        engine = ReconciliationEngine([existing])
        verdict = engine.classify(_rec(imported_id="src_1"))
        assert verdict.is_duplicate
        assert verdict.duplicate_of_id == "e1"
        assert verdict.should_replace is False
        assert verdict.tier == "imported_id"

    def test_exact_id_wins_over_content_differences(self):
        existing = _rec(id="e1", imported_id="src_1")
        engine = ReconciliationEngine([existing])
        verdict = engine.classify(
            _rec(imported_id="src_1", amount=5, payee_name="Other", date="2020-01-01")
        )
        assert verdict == Verdict.duplicate("e1", tier="imported_id")

    def test_exact_id_wins_over_settlement(self):
        prov = _provisional()
        same_id = _rec(id="e2", imported_id="src_999")
        engine = ReconciliationEngine([prov, same_id])
        verdict = engine.classify(_settled())
        assert verdict.duplicate_of_id == "e2"
        assert verdict.should_replace is False

    def test_pending_seen_again_is_exact_duplicate(self):
        prov = _provisional()
        engine = ReconciliationEngine([prov])
        verdict = engine.classify(_provisional(id="other"))
        assert verdict == Verdict.duplicate("prov-1", tier="imported_id")

    def test_unrelated_is_new(self):
        engine = ReconciliationEngine([_rec(imported_id="src_1")])
        assert engine.classify(_rec(imported_id="src_2", amount=500)) == Verdict.new()


# ── Settlement linkage ────────────────────────────────────


class TestSettlement:
    def test_settled_replaces_provisional(self):
        engine = ReconciliationEngine([_provisional()])
        verdict = engine.classify(_settled())
        assert verdict.is_duplicate
        assert verdict.duplicate_of_id == "prov-1"
        assert verdict.should_replace is True
        assert verdict.tier == "settlement"

    def test_different_account_is_new(self):
        engine = ReconciliationEngine([_provisional()])
        assert engine.classify(_settled(account="ledger-credit")) == Verdict.new()

    @pytest.mark.parametrize("field,value", [
        ("date", "2024-01-06"),
        ("amount", 2000),
        ("payee_name", "STARBUCKS"),
        ("payee_name", "Starbucks Coffee"),
    ])
    def test_any_content_difference_is_new(self, field, value):
        engine = ReconciliationEngine([_provisional()])
        assert engine.classify(_settled(**{field: value})) == Verdict.new()

    def test_pending_candidate_never_settles(self):
        engine = ReconciliationEngine([_provisional()])
        candidate = _provisional(
            id="x", imported_id="pending_A1_2024-01-05_1999_starbucksx",
        )
        assert engine.classify(candidate) == Verdict.new()

    @pytest.mark.parametrize("imported_id", ["manual-7", "src_", "bank_999"])
    def test_any_non_pending_id_settles(self, imported_id):
        engine = ReconciliationEngine([_provisional()])
        verdict = engine.classify(_settled(imported_id=imported_id))
        assert verdict.is_duplicate
        assert verdict.duplicate_of_id == "prov-1"
        assert verdict.should_replace is True
        assert verdict.tier == "settlement"

    @pytest.mark.parametrize("field", ["date", "amount", "payee_name"])
    def test_missing_candidate_field_skips_rule(self, field):
        engine = ReconciliationEngine([_provisional()])
        assert engine.classify(_settled(**{field: None})) == Verdict.new()

    def test_settled_existing_is_not_a_settlement_target(self):
        engine = ReconciliationEngine([_rec(id="e1", imported_id="src_1")])
        assert engine.classify(_settled()) == Verdict.new()

    def test_end_to_end_from_feed(self):
        mapper = RecordMapper([AccountMapping("A1", "ledger-checking")])
        pending = mapper.map(SourceTransaction(
            account_id="A1", date="2024-01-05", amount="19.99",
            merchant="Starbucks", description="Coffee", is_pending=True,
        ))
        assert pending.imported_id == "pending_A1_2024-01-05_1999_starbucks"

        posted = mapper.map(SourceTransaction(
            id="999", account_id="A1", date="2024-01-05", amount="19.99",
            merchant="Starbucks", description="Coffee", is_pending=False,
        ))
        engine = ReconciliationEngine([pending])
        [result] = engine.classify_all([posted])
        assert result.is_duplicate is True
        assert result.duplicate_of_id == pending.id
        assert result.should_replace is True


# ── Batch ─────────────────────────────────────────────────


class TestClassifyAll:
    def test_attaches_fields(self):
        engine = ReconciliationEngine([_provisional(), _rec(id="e1", imported_id="src_1")])
        batch = [_settled(), _rec(imported_id="src_1"), _rec(imported_id="src_2", amount=1)]
        out = engine.classify_all(batch)
        assert out is batch
        assert [(r.is_duplicate, r.duplicate_of_id, r.should_replace) for r in out] == [
            (True, "prov-1", True),
            (True, "e1", False),
            (False, None, None),
        ]

    def test_idempotent(self):
        engine = ReconciliationEngine([_provisional(), _rec(id="e1", imported_id="src_1")])
        batch = [_settled(), _rec(imported_id="src_1"), _rec(imported_id="src_2", amount=1)]
        first = [(r.is_duplicate, r.duplicate_of_id, r.should_replace)
                 for r in engine.classify_all(batch)]
        second = [(r.is_duplicate, r.duplicate_of_id, r.should_replace)
                  for r in engine.classify_all(batch)]
        assert first == second

    def test_provisional_claimed_once_per_batch(self):
        first = _provisional(id="p1")
        second = _provisional(id="p2", imported_id="pending_A1_2024-01-05_1999_starbucks2")
        engine = ReconciliationEngine([first, second])
        out = engine.classify_all([
            _settled(imported_id="src_a"),
            _settled(imported_id="src_b"),
            _settled(imported_id="src_c"),
        ])
        assert [r.duplicate_of_id for r in out] == ["p1", "p2", None]
        assert out[2].is_duplicate is False

    def test_views(self):
        engine = ReconciliationEngine([_rec(id="e1", imported_id="src_1")])
        out = engine.classify_all([_rec(imported_id="src_1"), _rec(imported_id="src_2")])
        assert engine.count_duplicates(out) == 1
        assert [r.imported_id for r in engine.filter_duplicates(out)] == ["src_1"]
        assert [r.imported_id for r in engine.filter_unique(out)] == ["src_2"]

    def test_empty_snapshot(self):
        engine = ReconciliationEngine([])
        out = engine.classify_all([_settled(), _provisional()])
        assert engine.count_duplicates(out) == 0


# ── Legacy fallback ───────────────────────────────────────


class TestLegacyFallback:
    def test_off_by_default(self):
        existing = _rec(id="old", imported_id=None, payee_name="[PENDING] Starbucks", cleared=False)
        engine = ReconciliationEngine([existing])
        assert engine.legacy_mode is LegacyMode.OFF
        assert engine.classify(_settled()) == Verdict.new()

    @pytest.mark.parametrize("mode", [LegacyMode.STRICT, LegacyMode.PERMISSIVE])
    def test_marker_stripped_payee_match(self, mode):
        existing = _rec(id="old", imported_id="lf_pending_x", payee_name="[PENDING] Starbucks",
                        cleared=False)
        verdict = _legacy(existing, mode).classify(_settled())
        assert verdict == Verdict.duplicate("old", tier="legacy", should_replace=True)

    @pytest.mark.parametrize("mode", [LegacyMode.STRICT, LegacyMode.PERMISSIVE])
    def test_marker_without_trailing_space_not_stripped(self, mode):
        existing = _rec(id="old", imported_id="manual-1", payee_name="[PENDING]Starbucks",
                        cleared=False)
        assert _legacy(existing, mode).classify(_settled()) == Verdict.new()

    @pytest.mark.parametrize("mode", [LegacyMode.STRICT, LegacyMode.PERMISSIVE])
    def test_marker_in_notes(self, mode):
        existing = _rec(id="old", imported_id=None, notes="[PENDING] Coffee", cleared=False)
        verdict = _legacy(existing, mode).classify(_settled())
        assert verdict.duplicate_of_id == "old"
        assert verdict.should_replace is True

    @pytest.mark.parametrize("mode", [LegacyMode.STRICT, LegacyMode.PERMISSIVE])
    def test_equal_payee_match(self, mode):
        existing = _rec(id="old", imported_id="manual-1")
        verdict = _legacy(existing, mode).classify(_settled())
        assert verdict == Verdict.duplicate("old", tier="legacy", should_replace=False)

    @pytest.mark.parametrize("mode", [LegacyMode.STRICT, LegacyMode.PERMISSIVE])
    def test_different_payee_no_match(self, mode):
        existing = _rec(id="old", imported_id="manual-1", payee_name="Peets")
        assert _legacy(existing, mode).classify(_settled()) == Verdict.new()

    @pytest.mark.parametrize("mode", [LegacyMode.STRICT, LegacyMode.PERMISSIVE])
    def test_requires_date_and_amount(self, mode):
        existing = _rec(id="old", imported_id="manual-1", amount=2000)
        assert _legacy(existing, mode).classify(_settled()) == Verdict.new()

    def test_missing_payee_strict_no_match(self):
        existing = _rec(id="old", imported_id="manual-1", payee_name=None)
        assert _legacy(existing, LegacyMode.STRICT).classify(_settled()) == Verdict.new()

    def test_missing_payee_permissive_matches_on_date_amount(self):
        existing = _rec(id="old", imported_id="manual-1", payee_name=None)
        verdict = _legacy(existing, LegacyMode.PERMISSIVE).classify(_settled())
        assert verdict.duplicate_of_id == "old"
        assert verdict.should_replace is False

    def test_marker_with_missing_candidate_payee(self):
        existing = _rec(id="old", imported_id=None, payee_name="[PENDING] Starbucks",
                        cleared=False)
        candidate = _settled(payee_name=None)
        assert _legacy(existing, LegacyMode.STRICT).classify(candidate) == Verdict.new()
        verdict = _legacy(existing, LegacyMode.PERMISSIVE).classify(candidate)
        assert verdict.duplicate_of_id == "old"
        assert verdict.should_replace is True

    def test_candidate_without_date_skips_rule(self):
        existing = _rec(id="old", imported_id="manual-1")
        candidate = _settled(date=None)
        assert _legacy(existing, LegacyMode.PERMISSIVE).classify(candidate) == Verdict.new()

    def test_settlement_tier_preferred_over_legacy(self):
        prov = _provisional()
        other = _rec(id="old", imported_id="manual-1")
        engine = ReconciliationEngine([other, prov], legacy_mode=LegacyMode.PERMISSIVE)
        verdict = engine.classify(_settled())
        assert verdict.tier == "settlement"
        assert verdict.duplicate_of_id == "prov-1"

    def test_mode_accepts_string(self):
        engine = ReconciliationEngine([], legacy_mode="strict")
        assert engine.legacy_mode is LegacyMode.STRICT


def test_record_content_key():
    assert record_content_key(_rec()) == ContentKey(
        "ledger-checking", "2024-01-05", 1999, "Starbucks"
    )
