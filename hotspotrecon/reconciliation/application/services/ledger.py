"""Reconciliation ledger: the durable state machine for transaction pairs.

States per transaction::

    UNMATCHED ──propose──▶ SUGGESTED ──approve──▶ APPROVED
        ▲                      │                      │
        └──────reject/unmatch──┴──────────────────────┘

Every transition is a compare-and-swap keyed on ``(id, match_state, version)``.
A lost race raises ``StaleStateTransition`` and rolls the whole unit back, so
two passes (or a pass and an operator) can never both claim a transaction.

Approval appends the commission accrual and credits the merchant balance in
the same database transaction. Releasing an approved pair appends a
compensating reversal instead of touching the accrual.
"""

from decimal import Decimal

from sqlalchemy.orm import Session

from ....exceptions import (
    AmbiguousMatch,
    RecordNotFoundError,
    StaleStateTransition,
    TransactionAlreadyMatched,
    ValidationError,
)
from ....storage.database.base import utcnow
from ....storage.session import unit_of_work
from ....utils.config import get_settings
from ....utils.logging import get_logger
from ... import metrics
from ...domain.enums import (
    CommissionKind,
    Confidence,
    MatchOrigin,
    MatchSignal,
    MatchState,
    MatchStatus,
    TransactionSource,
)
from ...domain.models import ReconciliationMatch, Transaction
from ...domain.value_objects import MatchCandidate, ReconciliationStats, ordered_signals
from ...infrastructure.repository import (
    CommissionRepository,
    MatchRepository,
    TransactionRepository,
)
from ...matchers.signals import MatchingRules, SignalMatcher, amount_diff
from .commission import BillingPlanProvider, CommissionCalculator, StaticBillingPlanProvider
from .payout import PayoutAggregator


class ReconciliationLedger:
    """Apply ledger transitions, one unit of work per public command.

    Args:
        session: SQLAlchemy session owned by the caller
        plans: Billing-plan collaborator supplying commission rates
        payouts: Balance aggregator credited on approval and release
        rules: Signal rules used to describe manually proposed pairs
    """

    def __init__(
        self,
        session: Session,
        plans: BillingPlanProvider | None = None,
        payouts: PayoutAggregator | None = None,
        rules: MatchingRules | None = None,
    ):
        settings = get_settings()
        self.session = session
        self.transactions = TransactionRepository(session)
        self.matches = MatchRepository(session)
        self.commissions = CommissionRepository(session)
        self.plans = plans or StaticBillingPlanProvider.from_settings(settings)
        self.payouts = payouts or PayoutAggregator(session, settings)
        self.calculator = CommissionCalculator()
        self.matcher = SignalMatcher(rules or MatchingRules.from_settings(settings))
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def propose(
        self,
        provider_id: int,
        system_id: int,
        *,
        origin: MatchOrigin = MatchOrigin.MANUAL,
        operator: str | None = None,
        notes: str | None = None,
    ) -> ReconciliationMatch:
        """Pair two unmatched transactions as SUGGESTED.

        Proposing a pair that is already suggested or approved is a no-op.

        Raises:
            TransactionAlreadyMatched: Either side is paired elsewhere
            StaleStateTransition: Either side changed concurrently
        """
        with unit_of_work(self.session):
            provider, system = self._load_pair(provider_id, system_id)
            match = self._propose(provider, system, origin=origin, operator=operator, notes=notes)
        return match

    def approve(self, provider_id: int, system_id: int, operator: str) -> ReconciliationMatch:
        """Approve a SUGGESTED pair and book its commission.

        Approving an already approved pair is a no-op that returns its entry.

        Raises:
            StaleStateTransition: The pair is not (or no longer) suggested
            TransactionAlreadyMatched: Either side is paired elsewhere
            InvalidAmount: The system side has no amount to base commission on
        """
        with unit_of_work(self.session):
            provider, system = self._load_pair(provider_id, system_id)
            match = self._approve(provider, system, operator=operator)
        return match

    def match_manually(
        self,
        provider_id: int,
        system_id: int,
        operator: str,
        approve: bool = True,
        notes: str | None = None,
    ) -> ReconciliationMatch:
        """Operator pairing: propose and, by default, approve in one unit."""
        with unit_of_work(self.session):
            provider, system = self._load_pair(provider_id, system_id)
            match = self._propose(
                provider, system, origin=MatchOrigin.MANUAL, operator=operator, notes=notes
            )
            if approve:
                match = self._approve(provider, system, operator=operator)
        return match

    def apply_candidate(self, candidate: MatchCandidate, auto_approve: bool = True) -> ReconciliationMatch:
        """Persist one engine candidate, auto-approving it when eligible.

        Ambiguity is recorded as an issue on every transaction involved.
        """
        eligible = auto_approve and candidate.auto_approvable
        with unit_of_work(self.session):
            provider, system = self._load_pair(candidate.provider_tx_id, candidate.system_tx_id)
            match = self._propose(
                provider,
                system,
                origin=MatchOrigin.AUTO if eligible else MatchOrigin.ENGINE,
                matched_by=candidate.matched_by,
                ambiguous=candidate.ambiguous,
            )
            if candidate.ambiguous:
                self._record_ambiguity(provider, system, candidate)
            if eligible:
                match = self._approve(provider, system, operator=None)
        return match

    def reject(
        self,
        provider_id: int,
        system_id: int,
        operator: str,
        notes: str | None = None,
    ) -> ReconciliationMatch | None:
        """Release a pair and keep the engine from proposing it again.

        Returns:
            The closed entry, or None when the pair was not paired (no-op)
        """
        with unit_of_work(self.session):
            provider, system = self._load_pair(provider_id, system_id)
            match = self._release(provider, system, MatchStatus.REJECTED, operator, notes)
        return match

    def unmatch(
        self,
        transaction_id: int,
        operator: str,
        notes: str | None = None,
    ) -> ReconciliationMatch | None:
        """Release whatever pair a transaction belongs to.

        Returns:
            The closed entry, or None when the transaction was unmatched (no-op)
        """
        with unit_of_work(self.session):
            tx = self._get(transaction_id)
            if tx.counterpart_id is None:
                self.logger.debug("unmatch_noop", transaction_id=transaction_id)
                return None
            other = self._get(tx.counterpart_id)
            provider, system = (tx, other) if tx.is_provider else (other, tx)
            match = self._release(provider, system, MatchStatus.UNMATCHED, operator, notes)
        return match

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_suggested(
        self, merchant_id: str, confidence: Confidence | None = None
    ) -> list[ReconciliationMatch]:
        """Review queue, best confidence first."""
        entries = self.matches.list_by_status(merchant_id, MatchStatus.SUGGESTED)
        if confidence is not None:
            entries = [m for m in entries if m.confidence == confidence]
        entries.sort(key=lambda m: (-m.confidence.rank, m.id))
        return entries

    def list_unmatched(
        self, merchant_id: str, source: TransactionSource | None = None
    ) -> list[Transaction]:
        return self.transactions.find_unmatched(merchant_id, source)

    def get_match_for(self, transaction_id: int) -> ReconciliationMatch | None:
        """The open (suggested or approved) entry a transaction belongs to."""
        return self.matches.find_open_for(transaction_id)

    def stats(self, merchant_id: str) -> ReconciliationStats:
        counts = self.transactions.count_by_state(merchant_id)

        def total(source: TransactionSource, *states: MatchState) -> int:
            return sum(counts.get((source, state), 0) for state in states or tuple(MatchState))

        open_entries = self.matches.list_by_status(
            merchant_id, MatchStatus.SUGGESTED
        ) + self.matches.list_by_status(merchant_id, MatchStatus.APPROVED)

        return ReconciliationStats(
            total_provider=total(TransactionSource.PROVIDER),
            total_system=total(TransactionSource.SYSTEM),
            reconciled=total(TransactionSource.PROVIDER, MatchState.APPROVED),
            suggested=total(TransactionSource.PROVIDER, MatchState.SUGGESTED),
            unmatched_provider=total(TransactionSource.PROVIDER, MatchState.UNMATCHED),
            unmatched_system=total(TransactionSource.SYSTEM, MatchState.UNMATCHED),
            discrepancies=self.matches.count_discrepancies(merchant_id),
            high_confidence=sum(1 for m in open_entries if m.confidence == Confidence.HIGH),
        )

    # ------------------------------------------------------------------
    # Transitions (no commit; callers wrap them in a unit of work)
    # ------------------------------------------------------------------

    def compare_and_swap(
        self,
        tx: Transaction,
        expected_state: MatchState,
        new_state: MatchState,
        counterpart_id: int | None,
    ) -> None:
        """Move ``tx`` from ``expected_state`` at its current version.

        Raises:
            StaleStateTransition: The row no longer has that state and version
        """
        expected_version = tx.version
        swapped = self.transactions.compare_and_swap(
            tx,
            expected_state=expected_state,
            expected_version=expected_version,
            new_state=new_state,
            counterpart_id=counterpart_id,
        )
        if not swapped:
            raise StaleStateTransition(
                tx.id, expected_state=expected_state.value, expected_version=expected_version
            )

    def _propose(
        self,
        provider: Transaction,
        system: Transaction,
        *,
        origin: MatchOrigin,
        matched_by: frozenset[MatchSignal] | None = None,
        ambiguous: bool = False,
        operator: str | None = None,
        notes: str | None = None,
    ) -> ReconciliationMatch:
        if self._paired(provider, system):
            existing = self.matches.find_open_pair(provider.id, system.id)
            if existing is not None:
                return existing

        for tx in (provider, system):
            if tx.match_state != MatchState.UNMATCHED:
                raise TransactionAlreadyMatched(tx.id, tx.counterpart_id, tx.match_state.value)

        # Signals are read before the swap expires the ledger fields.
        signals = matched_by if matched_by is not None else self.matcher.signals(provider, system)
        diff = amount_diff(provider, system)

        self.compare_and_swap(provider, MatchState.UNMATCHED, MatchState.SUGGESTED, system.id)
        self.compare_and_swap(system, MatchState.UNMATCHED, MatchState.SUGGESTED, provider.id)

        match = self.matches.add(
            ReconciliationMatch(
                merchant_id=provider.merchant_id,
                provider_tx_id=provider.id,
                system_tx_id=system.id,
                status=MatchStatus.SUGGESTED,
                matched_by=ordered_signals(signals),
                amount_diff=diff,
                origin=origin,
                ambiguous=ambiguous,
                decided_by=operator,
                notes=notes,
            )
        )

        metrics.record_transition("propose", origin.value)
        self.logger.info(
            "match_proposed",
            match_id=match.id,
            merchant_id=match.merchant_id,
            provider_tx_id=provider.id,
            system_tx_id=system.id,
            confidence=match.confidence.value,
            matched_by=match.matched_by,
            amount_diff=str(diff) if diff is not None else None,
            origin=origin.value,
        )
        return match

    def _approve(
        self,
        provider: Transaction,
        system: Transaction,
        *,
        operator: str | None,
    ) -> ReconciliationMatch:
        match = self.matches.find_open_pair(provider.id, system.id)

        if (
            self._paired(provider, system)
            and provider.match_state == MatchState.APPROVED
            and system.match_state == MatchState.APPROVED
            and match is not None
        ):
            self.logger.debug("approve_noop", match_id=match.id)
            return match

        for tx, other in ((provider, system), (system, provider)):
            if tx.counterpart_id is not None and tx.counterpart_id != other.id:
                raise TransactionAlreadyMatched(tx.id, tx.counterpart_id, tx.match_state.value)
            if tx.match_state != MatchState.SUGGESTED:
                raise StaleStateTransition(
                    tx.id, expected_state=MatchState.SUGGESTED.value, expected_version=tx.version
                )
        if match is None:
            raise RecordNotFoundError(
                "No open ledger entry for pair",
                entity_type="ReconciliationMatch",
                context={"provider_tx_id": provider.id, "system_tx_id": system.id},
            )

        plan = self.plans.plan_for(match.merchant_id)
        now = utcnow()
        record = self.calculator.accrue(match, system, plan, earned_at=now)

        self.compare_and_swap(provider, MatchState.SUGGESTED, MatchState.APPROVED, system.id)
        self.compare_and_swap(system, MatchState.SUGGESTED, MatchState.APPROVED, provider.id)

        match.status = MatchStatus.APPROVED
        match.decided_at = now
        if operator is not None:
            match.decided_by = operator
        self.commissions.add(record)
        self.payouts.credit(match.merchant_id, record.amount)

        metrics.record_transition("approve", match.origin.value)
        metrics.record_commission(CommissionKind.ACCRUAL.value, record.amount)
        self.logger.info(
            "match_approved",
            match_id=match.id,
            merchant_id=match.merchant_id,
            operator=operator or "auto",
            plan_code=plan.plan_code,
            rate=str(plan.commission_rate),
            commission=str(record.amount),
        )
        return match

    def _release(
        self,
        provider: Transaction,
        system: Transaction,
        status: MatchStatus,
        operator: str,
        notes: str | None,
    ) -> ReconciliationMatch | None:
        if not self._paired(provider, system):
            self.logger.debug(
                "release_noop", provider_tx_id=provider.id, system_tx_id=system.id, status=status.value
            )
            return None

        match = self.matches.find_open_pair(provider.id, system.id)
        was_approved = match is not None and match.status == MatchStatus.APPROVED

        self.compare_and_swap(provider, provider.match_state, MatchState.UNMATCHED, None)
        self.compare_and_swap(system, system.match_state, MatchState.UNMATCHED, None)

        if match is None:
            return None

        now = utcnow()
        reversal_amount = Decimal("0.00")
        if was_approved:
            accrual = self.commissions.find_for_match(match.id, CommissionKind.ACCRUAL)
            if accrual is not None:
                reversal = self.commissions.add(self.calculator.reverse(accrual, at=now))
                self.payouts.credit(match.merchant_id, reversal.amount)
                reversal_amount = reversal.amount
                metrics.record_commission(CommissionKind.REVERSAL.value, reversal.amount)

        match.status = status
        match.decided_by = operator
        match.decided_at = now
        if notes:
            match.notes = notes

        action = "reject" if status == MatchStatus.REJECTED else "unmatch"
        metrics.record_transition(action, MatchOrigin.MANUAL.value)
        self.logger.info(
            f"match_{action}ed",
            match_id=match.id,
            merchant_id=match.merchant_id,
            operator=operator,
            was_approved=was_approved,
            reversal=str(reversal_amount),
        )
        return match

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, tx_id: int) -> Transaction:
        tx = self.transactions.get(tx_id)
        if tx is None:
            raise RecordNotFoundError(
                f"Transaction {tx_id} not found", entity_type="Transaction", entity_id=tx_id
            )
        return tx

    def _load_pair(self, provider_id: int, system_id: int) -> tuple[Transaction, Transaction]:
        provider = self._get(provider_id)
        system = self._get(system_id)
        if provider.source != TransactionSource.PROVIDER or system.source != TransactionSource.SYSTEM:
            raise ValidationError(
                "A pair needs one provider and one system transaction",
                context={"provider_tx_id": provider_id, "system_tx_id": system_id},
            )
        if provider.merchant_id != system.merchant_id:
            raise ValidationError(
                "Transactions belong to different merchants",
                context={"provider_tx_id": provider_id, "system_tx_id": system_id},
            )
        return provider, system

    @staticmethod
    def _paired(provider: Transaction, system: Transaction) -> bool:
        return provider.counterpart_id == system.id and system.counterpart_id == provider.id

    def _record_ambiguity(
        self, provider: Transaction, system: Transaction, candidate: MatchCandidate
    ) -> None:
        for tx, counterpart_id in ((provider, system.id), (system, provider.id)):
            tx.record_issue(AmbiguousMatch(tx.id, [counterpart_id, *candidate.rivals]))
        self.logger.warning(
            "ambiguous_match_surfaced",
            provider_tx_id=provider.id,
            system_tx_id=system.id,
            rivals=list(candidate.rivals),
        )
