"""Tests for ReconciliationLedger state transitions and commission side effects."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from hotspotrecon.exceptions import (
    InvalidAmount,
    RecordNotFoundError,
    StaleStateTransition,
    TransactionAlreadyMatched,
    ValidationError,
)
from hotspotrecon.reconciliation.application.services import (
    CommissionService,
    PayoutAggregator,
    ReconciliationLedger,
    StaticBillingPlanProvider,
)
from hotspotrecon.reconciliation.domain.enums import (
    CommissionKind,
    Confidence,
    MatchOrigin,
    MatchState,
    MatchStatus,
    TransactionSource,
)
from hotspotrecon.reconciliation.domain.models import ReconciliationMatch
from hotspotrecon.reconciliation.infrastructure.repository import TransactionRepository
from hotspotrecon.reconciliation.matchers import MatchingEngine

pytestmark = pytest.mark.unit


@pytest.fixture
def plans() -> StaticBillingPlanProvider:
    return StaticBillingPlanProvider(default_rate=Decimal("20"))


@pytest.fixture
def ledger(db_session, plans) -> ReconciliationLedger:
    return ReconciliationLedger(db_session, plans=plans)


def match_count(session) -> int:
    return session.execute(select(func.count(ReconciliationMatch.id))).scalar_one()


class TestPropose:
    def test_propose_pairs_both_sides(self, ledger, provider_tx, system_tx):
        match = ledger.propose(provider_tx.id, system_tx.id, operator="alice")

        assert match.status == MatchStatus.SUGGESTED
        assert match.origin == MatchOrigin.MANUAL
        assert match.matched_by == ["amount", "phone", "reference", "time"]
        assert match.confidence == Confidence.HIGH
        assert match.amount_diff == Decimal("0")
        assert provider_tx.match_state == MatchState.SUGGESTED
        assert system_tx.match_state == MatchState.SUGGESTED
        assert provider_tx.counterpart_id == system_tx.id
        assert system_tx.counterpart_id == provider_tx.id
        assert provider_tx.version == 1
        assert system_tx.version == 1

    def test_propose_is_idempotent(self, ledger, db_session, provider_tx, system_tx):
        first = ledger.propose(provider_tx.id, system_tx.id)
        second = ledger.propose(provider_tx.id, system_tx.id)

        assert first.id == second.id
        assert provider_tx.version == 1
        assert match_count(db_session) == 1

    def test_propose_rejects_transaction_paired_elsewhere(self, ledger, make_transaction, provider_tx, system_tx):
        other_order = make_transaction(TransactionSource.SYSTEM)
        ledger.propose(provider_tx.id, system_tx.id)

        with pytest.raises(TransactionAlreadyMatched) as exc_info:
            ledger.propose(provider_tx.id, other_order.id)

        assert exc_info.value.context["counterpart_id"] == system_tx.id
        assert other_order.match_state == MatchState.UNMATCHED

    def test_lost_race_rolls_back_the_whole_unit(self, ledger, db_session, provider_tx, system_tx, mocker):
        mocker.patch.object(TransactionRepository, "compare_and_swap", return_value=False)

        with pytest.raises(StaleStateTransition) as exc_info:
            ledger.propose(provider_tx.id, system_tx.id)

        assert exc_info.value.context["transaction_id"] == provider_tx.id
        assert match_count(db_session) == 0
        assert provider_tx.match_state == MatchState.UNMATCHED
        assert system_tx.match_state == MatchState.UNMATCHED

    def test_second_side_losing_keeps_first_side_unmatched(self, ledger, db_session, provider_tx, system_tx, mocker):
        original = TransactionRepository.compare_and_swap
        calls = []

        def flaky(self, tx, **kwargs):
            calls.append(tx.id)
            if len(calls) == 2:
                return False
            return original(self, tx, **kwargs)

        mocker.patch.object(TransactionRepository, "compare_and_swap", flaky)

        with pytest.raises(StaleStateTransition):
            ledger.propose(provider_tx.id, system_tx.id)

        assert provider_tx.match_state == MatchState.UNMATCHED
        assert provider_tx.counterpart_id is None
        assert provider_tx.version == 0

    def test_pair_must_be_provider_and_system(self, ledger, make_transaction):
        a = make_transaction(TransactionSource.SYSTEM)
        b = make_transaction(TransactionSource.SYSTEM)

        with pytest.raises(ValidationError):
            ledger.propose(a.id, b.id)

    def test_pair_must_share_merchant(self, ledger, make_transaction, provider_tx):
        foreign = make_transaction(TransactionSource.SYSTEM, merchant_id="merchant-2")

        with pytest.raises(ValidationError, match="different merchants"):
            ledger.propose(provider_tx.id, foreign.id)

    def test_unknown_transaction(self, ledger, provider_tx):
        with pytest.raises(RecordNotFoundError):
            ledger.propose(provider_tx.id, 999)


class TestApprove:
    def test_approve_books_commission_and_credits_balance(self, ledger, db_session, provider_tx, system_tx):
        ledger.propose(provider_tx.id, system_tx.id)

        match = ledger.approve(provider_tx.id, system_tx.id, operator="alice")

        assert match.status == MatchStatus.APPROVED
        assert match.decided_by == "alice"
        assert provider_tx.match_state == MatchState.APPROVED
        assert system_tx.match_state == MatchState.APPROVED

        history = CommissionService(db_session).history("merchant-1")
        assert len(history) == 1
        assert history[0].kind == CommissionKind.ACCRUAL
        assert history[0].transaction_id == system_tx.id
        assert history[0].base_amount == Decimal("500.00")
        assert history[0].amount == Decimal("100.00")

        summary = PayoutAggregator(db_session).balance_summary("merchant-1")
        assert summary.withdrawable == Decimal("100.00")
        assert summary.total_earned == Decimal("100.00")

    def test_approve_twice_is_a_noop(self, ledger, db_session, provider_tx, system_tx):
        ledger.propose(provider_tx.id, system_tx.id)
        first = ledger.approve(provider_tx.id, system_tx.id, operator="alice")
        second = ledger.approve(provider_tx.id, system_tx.id, operator="bob")

        assert first.id == second.id
        assert len(CommissionService(db_session).history("merchant-1")) == 1
        assert provider_tx.version == 2

    def test_approve_unproposed_pair_is_stale(self, ledger, provider_tx, system_tx):
        with pytest.raises(StaleStateTransition):
            ledger.approve(provider_tx.id, system_tx.id, operator="alice")

    def test_approve_pair_split_elsewhere(self, ledger, make_transaction, provider_tx, system_tx):
        other_order = make_transaction(TransactionSource.SYSTEM)
        ledger.propose(provider_tx.id, system_tx.id)

        with pytest.raises(TransactionAlreadyMatched):
            ledger.approve(provider_tx.id, other_order.id, operator="alice")

    def test_approve_without_system_amount_keeps_suggestion(self, ledger, db_session, make_transaction, provider_tx):
        no_amount = make_transaction(TransactionSource.SYSTEM, amount=None)
        ledger.propose(provider_tx.id, no_amount.id)

        with pytest.raises(InvalidAmount):
            ledger.approve(provider_tx.id, no_amount.id, operator="alice")

        assert provider_tx.match_state == MatchState.SUGGESTED
        assert no_amount.match_state == MatchState.SUGGESTED
        assert CommissionService(db_session).history("merchant-1") == []

    def test_flat_subscription_plan_books_zero_commission(self, ledger, plans, db_session, provider_tx, system_tx):
        plans.assign("merchant-1", "isp")

        ledger.match_manually(provider_tx.id, system_tx.id, operator="alice")

        history = CommissionService(db_session).history("merchant-1")
        assert history[0].amount == Decimal("0.00")
        assert history[0].plan_code == "isp"


class TestRelease:
    def test_unmatch_approved_pair_appends_reversal(self, ledger, db_session, provider_tx, system_tx):
        ledger.match_manually(provider_tx.id, system_tx.id, operator="alice")

        match = ledger.unmatch(system_tx.id, operator="bob", notes="wrong customer")

        assert match.status == MatchStatus.UNMATCHED
        assert match.notes == "wrong customer"
        assert provider_tx.match_state == MatchState.UNMATCHED
        assert system_tx.counterpart_id is None

        accrual, reversal = CommissionService(db_session).history("merchant-1")
        assert reversal.kind == CommissionKind.REVERSAL
        assert reversal.reverses_id == accrual.id
        assert reversal.amount == -accrual.amount
        assert reversal.base_amount == -accrual.base_amount
        assert PayoutAggregator(db_session).balance_summary("merchant-1").withdrawable == Decimal("0.00")

    def test_approve_unmatch_approve_nets_one_accrual(self, ledger, db_session, provider_tx, system_tx):
        ledger.match_manually(provider_tx.id, system_tx.id, operator="alice")
        ledger.unmatch(provider_tx.id, operator="alice")
        ledger.match_manually(provider_tx.id, system_tx.id, operator="alice")

        service = CommissionService(db_session)
        assert len(service.history("merchant-1")) == 3
        assert service.net_commission("merchant-1") == Decimal("100.00")
        assert PayoutAggregator(db_session).balance_summary("merchant-1").withdrawable == Decimal("100.00")

    def test_reject_suggestion_leaves_commission_untouched(self, ledger, db_session, provider_tx, system_tx):
        ledger.propose(provider_tx.id, system_tx.id)

        match = ledger.reject(provider_tx.id, system_tx.id, operator="alice")

        assert match.status == MatchStatus.REJECTED
        assert provider_tx.match_state == MatchState.UNMATCHED
        assert CommissionService(db_session).history("merchant-1") == []

    def test_rejected_pair_is_not_proposed_again(self, ledger, db_session, provider_tx, system_tx):
        ledger.propose(provider_tx.id, system_tx.id)
        ledger.reject(provider_tx.id, system_tx.id, operator="alice")

        candidates = MatchingEngine().find_candidates(
            [provider_tx], [system_tx], excluded_pairs=ledger.matches.rejected_pairs("merchant-1")
        )

        assert candidates == []

    def test_unmatch_unpaired_transaction_is_a_noop(self, ledger, provider_tx):
        assert ledger.unmatch(provider_tx.id, operator="alice") is None
        assert provider_tx.version == 0

    def test_reject_unpaired_pair_is_a_noop(self, ledger, provider_tx, system_tx):
        assert ledger.reject(provider_tx.id, system_tx.id, operator="alice") is None


class TestQueries:
    def test_review_queue_and_stats(self, ledger, make_transaction, provider_tx, system_tx):
        off_payment = make_transaction(TransactionSource.PROVIDER, amount="1505.00")
        off_order = make_transaction(TransactionSource.SYSTEM, amount="1500.00")
        make_transaction(TransactionSource.SYSTEM, amount="42.00", phone=None)
        ledger.match_manually(provider_tx.id, system_tx.id, operator="alice")
        ledger.propose(off_payment.id, off_order.id)

        queue = ledger.list_suggested("merchant-1")
        stats = ledger.stats("merchant-1")

        assert [(m.provider_tx_id, m.system_tx_id) for m in queue] == [(off_payment.id, off_order.id)]
        assert queue[0].confidence == Confidence.MEDIUM
        assert ledger.list_suggested("merchant-1", Confidence.HIGH) == []
        assert stats.total_provider == 2
        assert stats.total_system == 3
        assert stats.reconciled == 1
        assert stats.suggested == 1
        assert stats.unmatched_system == 1
        assert stats.discrepancies == 1
        assert stats.high_confidence == 1
        assert stats.reconciliation_rate == 50.0

    def test_get_match_for_either_side(self, ledger, provider_tx, system_tx):
        match = ledger.propose(provider_tx.id, system_tx.id)

        assert ledger.get_match_for(provider_tx.id).id == match.id
        assert ledger.get_match_for(system_tx.id).id == match.id

    def test_list_unmatched_by_source(self, ledger, make_transaction, provider_tx, system_tx):
        spare_order = make_transaction(TransactionSource.SYSTEM, amount="42.00")
        ledger.propose(provider_tx.id, system_tx.id)

        assert ledger.list_unmatched("merchant-1") == [spare_order]
        assert ledger.list_unmatched("merchant-1", TransactionSource.PROVIDER) == []
