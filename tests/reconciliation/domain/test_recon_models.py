"""Tests for reconciliation entities, enums and value objects."""

from datetime import datetime
from decimal import Decimal

import pytest

from hotspotrecon.exceptions import HotspotReconError, InvalidPhoneFormat
from hotspotrecon.reconciliation.domain.enums import (
    CommissionKind,
    Confidence,
    MatchSignal,
    MatchState,
    MatchStatus,
    PayoutStatus,
    PlanType,
    TransactionSource,
)
from hotspotrecon.reconciliation.domain.models import CommissionRecord, ReconciliationMatch
from hotspotrecon.reconciliation.domain.value_objects import (
    REPORT_COLUMNS,
    BalanceSummary,
    BillingPlan,
    MatchCandidate,
    ReconciliationStats,
    ReportRow,
    ordered_signals,
)

pytestmark = pytest.mark.unit

ALL_SIGNALS = frozenset(MatchSignal)


class TestConfidence:
    @pytest.mark.parametrize(
        "count,expected",
        [(4, Confidence.HIGH), (3, Confidence.MEDIUM), (2, Confidence.LOW), (1, Confidence.LOW), (0, Confidence.LOW)],
    )
    def test_from_signal_count(self, count, expected):
        assert Confidence.from_signal_count(count) == expected

    def test_rank_orders_high_first(self):
        assert Confidence.HIGH.rank > Confidence.MEDIUM.rank > Confidence.LOW.rank


class TestStateEnums:
    def test_paired_states(self):
        assert MatchState.SUGGESTED.is_paired
        assert MatchState.APPROVED.is_paired
        assert not MatchState.UNMATCHED.is_paired

    def test_open_statuses(self):
        assert MatchStatus.SUGGESTED.is_open
        assert not MatchStatus.REJECTED.is_open
        assert not MatchStatus.UNMATCHED.is_open

    def test_settled_payouts(self):
        assert PayoutStatus.COMPLETED.is_settled
        assert PayoutStatus.FAILED.is_settled
        assert not PayoutStatus.PROCESSING.is_settled


class TestMatchCandidate:
    def _candidate(self, signals=ALL_SIGNALS, diff="0", rivals=()):
        return MatchCandidate(
            provider_tx_id=1,
            system_tx_id=2,
            matched_by=frozenset(signals),
            amount_diff=Decimal(diff) if diff is not None else None,
            time_gap_seconds=10.0,
            rivals=rivals,
        )

    def test_high_confidence_exact_amount_is_auto_approvable(self):
        candidate = self._candidate()

        assert candidate.confidence == Confidence.HIGH
        assert candidate.auto_approvable

    def test_ambiguous_candidate_is_not_auto_approvable(self):
        candidate = self._candidate(rivals=(3,))

        assert candidate.ambiguous
        assert not candidate.auto_approvable

    def test_medium_confidence_is_not_auto_approvable(self):
        candidate = self._candidate(signals={MatchSignal.PHONE, MatchSignal.REFERENCE, MatchSignal.TIME}, diff="5")

        assert candidate.confidence == Confidence.MEDIUM
        assert not candidate.auto_approvable

    def test_rank_key_prefers_confidence_then_smaller_difference(self):
        high = self._candidate()
        medium = self._candidate(signals={MatchSignal.PHONE, MatchSignal.REFERENCE, MatchSignal.TIME}, diff="1")
        medium_far = self._candidate(signals={MatchSignal.PHONE, MatchSignal.REFERENCE, MatchSignal.TIME}, diff="-9")
        unknown_amount = self._candidate(signals={MatchSignal.PHONE, MatchSignal.REFERENCE, MatchSignal.TIME}, diff=None)

        assert sorted([unknown_amount, medium_far, medium, high], key=lambda c: c.rank_key) == [
            high,
            medium,
            medium_far,
            unknown_amount,
        ]

    def test_to_dict_lists_signals_in_canonical_order(self):
        data = self._candidate().to_dict()

        assert data["matched_by"] == ["amount", "phone", "reference", "time"]
        assert data["confidence"] == "high"
        assert data["amount_diff"] == "0"


def test_ordered_signals():
    assert ordered_signals(frozenset({MatchSignal.TIME, MatchSignal.AMOUNT})) == ["amount", "time"]


def test_reconciliation_rate():
    stats = ReconciliationStats(
        total_provider=4,
        total_system=5,
        reconciled=3,
        suggested=1,
        unmatched_provider=0,
        unmatched_system=1,
        discrepancies=0,
        high_confidence=3,
    )
    assert stats.reconciliation_rate == 75.0


def test_reconciliation_rate_with_no_payments():
    stats = ReconciliationStats(0, 0, 0, 0, 0, 0, 0, 0)
    assert stats.reconciliation_rate == 0.0


class TestBillingPlan:
    def test_rate_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            BillingPlan(plan_code="x", plan_type=PlanType.PERCENTAGE, commission_rate=Decimal("101"))

    def test_flat_subscription_must_have_zero_rate(self):
        with pytest.raises(ValueError, match="zero commission rate"):
            BillingPlan(plan_code="isp", plan_type=PlanType.FLAT_SUBSCRIPTION, commission_rate=Decimal("5"))


class TestBalanceSummary:
    def test_available_subtracts_pending(self):
        summary = BalanceSummary(
            merchant_id="m",
            total_earned=Decimal("1500.00"),
            total_paid=Decimal("0.00"),
            withdrawable=Decimal("1500.00"),
            pending_payouts=Decimal("1000.00"),
            min_threshold=Decimal("1000.00"),
        )

        assert summary.available == Decimal("500.00")
        assert summary.meets_threshold


class TestReportRow:
    def test_columns_are_fixed(self):
        assert REPORT_COLUMNS == (
            "transaction_id",
            "counterpart_id",
            "confidence",
            "amount",
            "amount_diff",
            "commission",
        )

    def test_unpaired_row_has_empty_cells(self):
        row = ReportRow(
            transaction_id=7,
            counterpart_id=None,
            confidence=None,
            amount=Decimal("500.00"),
            amount_diff=None,
            commission=None,
        )
        assert row.as_cells() == ["7", "", "", "500.00", "", ""]


class TestEntities:
    def test_transaction_records_each_issue_once(self, provider_tx, db_session):
        error = InvalidPhoneFormat("123")

        provider_tx.record_issue(error)
        provider_tx.record_issue(error)
        db_session.commit()

        assert provider_tx.issue_codes == ["invalid_phone_format"]
        assert provider_tx.is_provider
        assert provider_tx.source == TransactionSource.PROVIDER

    def test_match_confidence_is_derived_from_signals(self):
        match = ReconciliationMatch(matched_by=["amount", "phone", "time"])
        assert match.confidence == Confidence.MEDIUM

    def test_commission_records_are_append_only(self, provider_tx, system_tx, db_session):
        record = CommissionRecord(
            transaction_id=system_tx.id,
            match_id=1,
            merchant_id=system_tx.merchant_id,
            plan_code="individual",
            plan_type=PlanType.PERCENTAGE,
            rate=Decimal("20"),
            base_amount=Decimal("500.00"),
            amount=Decimal("100.00"),
            kind=CommissionKind.ACCRUAL,
            earned_at=datetime(2024, 1, 15, 14, 30),
        )
        db_session.add(record)
        db_session.commit()

        record.amount = Decimal("1.00")
        with pytest.raises(HotspotReconError, match="append-only"):
            db_session.flush()
