"""Repository implementations for reconciliation entities.

Repositories never commit: the application services own the unit of work
and commit or roll back once per operation, so a ledger transition and its
commission line land together or not at all.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from ...storage.database.base import utcnow
from ..domain.enums import (
    CommissionKind,
    MatchState,
    MatchStatus,
    PayoutStatus,
    PayoutTrigger,
    TransactionSource,
)
from ..domain.models import (
    CommissionRecord,
    Payout,
    PayoutBalance,
    ReconciliationMatch,
    Transaction,
)

_LEDGER_FIELDS = ["match_state", "counterpart_id", "version", "updated_at"]
_BALANCE_FIELDS = ["withdrawable", "total_earned", "total_paid", "version", "updated_at"]


class TransactionRepository:
    """Repository for Transaction entities."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, tx: Transaction) -> Transaction:
        self.session.add(tx)
        self.session.flush()
        return tx

    def get(self, tx_id: int) -> Transaction | None:
        return self.session.get(Transaction, tx_id, populate_existing=True)

    def find_by_external_id(
        self, merchant_id: str, source: TransactionSource, external_id: str
    ) -> Transaction | None:
        stmt = select(Transaction).where(
            Transaction.merchant_id == merchant_id,
            Transaction.source == source,
            Transaction.external_id == external_id,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def find_by_merchant(self, merchant_id: str) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.merchant_id == merchant_id)
            .order_by(Transaction.id)
        )
        return list(self.session.execute(stmt).scalars())

    def find_unmatched(
        self,
        merchant_id: str,
        source: TransactionSource | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Transaction]:
        """Unmatched transactions ordered by id, optionally bounded in time."""
        stmt = select(Transaction).where(
            Transaction.merchant_id == merchant_id,
            Transaction.match_state == MatchState.UNMATCHED,
        )
        if source is not None:
            stmt = stmt.where(Transaction.source == source)
        if since is not None:
            stmt = stmt.where(Transaction.occurred_at >= since)
        if until is not None:
            stmt = stmt.where(Transaction.occurred_at <= until)
        return list(self.session.execute(stmt.order_by(Transaction.id)).scalars())

    def merchant_ids(self) -> list[str]:
        stmt = select(Transaction.merchant_id).distinct().order_by(Transaction.merchant_id)
        return list(self.session.execute(stmt).scalars())

    def count_by_state(self, merchant_id: str) -> dict[tuple[TransactionSource, MatchState], int]:
        stmt = (
            select(Transaction.source, Transaction.match_state, func.count(Transaction.id))
            .where(Transaction.merchant_id == merchant_id)
            .group_by(Transaction.source, Transaction.match_state)
        )
        return {(source, state): count for source, state, count in self.session.execute(stmt)}

    def compare_and_swap(
        self,
        tx: Transaction,
        *,
        expected_state: MatchState,
        expected_version: int,
        new_state: MatchState,
        counterpart_id: int | None,
    ) -> bool:
        """Conditionally move ``tx`` to ``new_state``, bumping its version.

        Returns:
            True when exactly one row matched the expected state and version
        """
        stmt = (
            update(Transaction.__table__)
            .where(
                Transaction.__table__.c.id == tx.id,
                Transaction.__table__.c.match_state == expected_state,
                Transaction.__table__.c.version == expected_version,
            )
            .values(
                match_state=new_state,
                counterpart_id=counterpart_id,
                version=Transaction.__table__.c.version + 1,
                updated_at=utcnow(),
            )
        )
        swapped = self.session.execute(stmt).rowcount == 1
        self.session.expire(tx, _LEDGER_FIELDS)
        return swapped


class MatchRepository:
    """Repository for ReconciliationMatch ledger entries."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, match: ReconciliationMatch) -> ReconciliationMatch:
        self.session.add(match)
        self.session.flush()
        return match

    def find_open_pair(self, provider_tx_id: int, system_tx_id: int) -> ReconciliationMatch | None:
        """The suggested or approved entry for this exact pair, if any."""
        stmt = (
            select(ReconciliationMatch)
            .where(
                ReconciliationMatch.provider_tx_id == provider_tx_id,
                ReconciliationMatch.system_tx_id == system_tx_id,
                ReconciliationMatch.status.in_([MatchStatus.SUGGESTED, MatchStatus.APPROVED]),
            )
            .order_by(ReconciliationMatch.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def find_open_for(self, tx_id: int) -> ReconciliationMatch | None:
        """The open entry involving a transaction on either side."""
        stmt = (
            select(ReconciliationMatch)
            .where(
                or_(
                    ReconciliationMatch.provider_tx_id == tx_id,
                    ReconciliationMatch.system_tx_id == tx_id,
                ),
                ReconciliationMatch.status.in_([MatchStatus.SUGGESTED, MatchStatus.APPROVED]),
            )
            .order_by(ReconciliationMatch.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def list_by_status(self, merchant_id: str, status: MatchStatus) -> list[ReconciliationMatch]:
        stmt = (
            select(ReconciliationMatch)
            .where(
                ReconciliationMatch.merchant_id == merchant_id,
                ReconciliationMatch.status == status,
            )
            .order_by(ReconciliationMatch.id)
        )
        return list(self.session.execute(stmt).scalars())

    def rejected_pairs(self, merchant_id: str) -> set[tuple[int, int]]:
        """Pairs an operator rejected; the engine never proposes them again."""
        stmt = select(ReconciliationMatch.provider_tx_id, ReconciliationMatch.system_tx_id).where(
            ReconciliationMatch.merchant_id == merchant_id,
            ReconciliationMatch.status == MatchStatus.REJECTED,
        )
        return {(p, s) for p, s in self.session.execute(stmt)}

    def count_discrepancies(self, merchant_id: str) -> int:
        """Open entries whose amounts differ."""
        stmt = select(func.count(ReconciliationMatch.id)).where(
            ReconciliationMatch.merchant_id == merchant_id,
            ReconciliationMatch.status.in_([MatchStatus.SUGGESTED, MatchStatus.APPROVED]),
            ReconciliationMatch.amount_diff.is_not(None),
            ReconciliationMatch.amount_diff != 0,
        )
        return self.session.execute(stmt).scalar_one()


class CommissionRepository:
    """Repository for the append-only commission ledger."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, record: CommissionRecord) -> CommissionRecord:
        self.session.add(record)
        self.session.flush()
        return record

    def find_for_match(self, match_id: int, kind: CommissionKind) -> CommissionRecord | None:
        stmt = select(CommissionRecord).where(
            CommissionRecord.match_id == match_id,
            CommissionRecord.kind == kind,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def list_by_merchant(self, merchant_id: str) -> list[CommissionRecord]:
        stmt = (
            select(CommissionRecord)
            .where(CommissionRecord.merchant_id == merchant_id)
            .order_by(CommissionRecord.id)
        )
        return list(self.session.execute(stmt).scalars())

    def net_by_transaction(self, merchant_id: str) -> dict[int, Decimal]:
        """Net commission per system transaction (accruals plus reversals)."""
        net: dict[int, Decimal] = {}
        for record in self.list_by_merchant(merchant_id):
            net[record.transaction_id] = net.get(record.transaction_id, Decimal("0.00")) + record.amount
        return net


class PayoutRepository:
    """Repository for payout balances and payout events."""

    def __init__(self, session: Session):
        self.session = session

    def get_balance(self, merchant_id: str) -> PayoutBalance | None:
        stmt = select(PayoutBalance).where(PayoutBalance.merchant_id == merchant_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def add(self, entity: PayoutBalance | Payout) -> PayoutBalance | Payout:
        self.session.add(entity)
        self.session.flush()
        return entity

    def adjust_balance(
        self,
        balance: PayoutBalance,
        *,
        withdrawable: Decimal = Decimal("0.00"),
        total_earned: Decimal = Decimal("0.00"),
        total_paid: Decimal = Decimal("0.00"),
    ) -> None:
        """Apply deltas in SQL so concurrent units never lose an update."""
        table = PayoutBalance.__table__
        stmt = (
            update(table)
            .where(table.c.id == balance.id)
            .values(
                withdrawable=table.c.withdrawable + withdrawable,
                total_earned=table.c.total_earned + total_earned,
                total_paid=table.c.total_paid + total_paid,
                version=table.c.version + 1,
                updated_at=utcnow(),
            )
        )
        self.session.execute(stmt)
        self.session.expire(balance, _BALANCE_FIELDS)

    def get(self, payout_id: int) -> Payout | None:
        return self.session.get(Payout, payout_id)

    def list_payouts(self, merchant_id: str, status: PayoutStatus | None = None) -> list[Payout]:
        stmt = select(Payout).where(Payout.merchant_id == merchant_id)
        if status is not None:
            stmt = stmt.where(Payout.status == status)
        return list(self.session.execute(stmt.order_by(Payout.id)).scalars())

    def pending_total(self, merchant_id: str) -> Decimal:
        """Sum of payouts requested but not yet settled."""
        stmt = select(func.coalesce(func.sum(Payout.amount), 0)).where(
            Payout.merchant_id == merchant_id,
            Payout.status.in_([PayoutStatus.PENDING, PayoutStatus.PROCESSING]),
        )
        return Decimal(str(self.session.execute(stmt).scalar_one())).quantize(Decimal("0.01"))

    def has_unsettled(self, merchant_id: str) -> bool:
        stmt = select(func.count(Payout.id)).where(
            Payout.merchant_id == merchant_id,
            Payout.status.in_([PayoutStatus.PENDING, PayoutStatus.PROCESSING]),
        )
        return self.session.execute(stmt).scalar_one() > 0

    def auto_payout_balances(self) -> list[PayoutBalance]:
        stmt = (
            select(PayoutBalance)
            .where(PayoutBalance.auto_payouts.is_(True))
            .order_by(PayoutBalance.merchant_id)
        )
        return list(self.session.execute(stmt).scalars())

    def transition(
        self,
        payout: Payout,
        *,
        expected: list[PayoutStatus],
        status: PayoutStatus,
        reference: str | None = None,
        reason: str | None = None,
        processed_at: datetime | None = None,
    ) -> bool:
        """Conditionally move a payout out of ``expected``; False if it already left."""
        table = Payout.__table__
        stmt = (
            update(table)
            .where(table.c.id == payout.id, table.c.status.in_(expected))
            .values(
                status=status,
                disbursement_reference=reference,
                failure_reason=reason,
                processed_at=processed_at,
                updated_at=utcnow(),
            )
        )
        moved = self.session.execute(stmt).rowcount == 1
        self.session.expire(
            payout, ["status", "disbursement_reference", "failure_reason", "processed_at", "updated_at"]
        )
        return moved

    def find_for_period(self, merchant_id: str, period_label: str, trigger: PayoutTrigger) -> Payout | None:
        """A non-failed payout already created for this period and trigger."""
        stmt = (
            select(Payout)
            .where(
                Payout.merchant_id == merchant_id,
                Payout.period_label == period_label,
                Payout.trigger == trigger,
                Payout.status != PayoutStatus.FAILED,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()
