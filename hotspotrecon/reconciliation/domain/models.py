"""Domain models for payment reconciliation and commission accounting.

DDD Entities:
- Have identity (integer primary key)
- Mutable lifecycle, except CommissionRecord which is append-only
- Mapped to database tables via SQLAlchemy
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ...exceptions import HotspotReconError
from ...storage.database.base import Base
from .enums import (
    CommissionKind,
    Confidence,
    MatchOrigin,
    MatchSignal,
    MatchState,
    MatchStatus,
    OrderType,
    PayoutMethod,
    PayoutSchedule,
    PayoutStatus,
    PayoutTrigger,
    PlanType,
    TransactionSource,
)


class Transaction(Base):
    """One payment-side event, from the mobile-money gateway or from order creation.

    Attributes:
        merchant_id: Owner of the hotspot / router the payment belongs to
        source: PROVIDER (M-Pesa confirmation) or SYSTEM (internal order)
        external_id: M-Pesa receipt number or internal order id
        amount: Positive KES amount, None when the raw amount was invalid
        phone: Normalized 2547XXXXXXXX number, None when absent or invalid
        reference: Account reference supplied at payment time
        occurred_at: Confirmation time (provider) or order creation time (system)
        order_type: Voucher / PPPoE / subscription (system side only)
        match_state: UNMATCHED / SUGGESTED / APPROVED
        counterpart_id: The paired transaction while SUGGESTED or APPROVED
        version: Compare-and-swap counter bumped on every state transition
        issues: Errors recorded against this transaction (normalization, ambiguity, ...)
        raw_data: Original payload for audit
    """

    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("merchant_id", "source", "external_id"),)

    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source: Mapped[TransactionSource] = mapped_column(
        Enum(TransactionSource), nullable=False, index=True
    )
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    phone: Mapped[str | None] = mapped_column(String(12), index=True)
    reference: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    order_type: Mapped[OrderType | None] = mapped_column(Enum(OrderType))

    match_state: Mapped[MatchState] = mapped_column(
        Enum(MatchState), nullable=False, default=MatchState.UNMATCHED, index=True
    )
    counterpart_id: Mapped[int | None] = mapped_column(ForeignKey("transactions.id"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    issues: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    def record_issue(self, error: HotspotReconError) -> None:
        """Append an error to ``issues`` (reassigned so the JSON column is flushed)."""
        issue = error.as_issue()
        if issue not in (self.issues or []):
            self.issues = [*(self.issues or []), issue]

    @property
    def is_provider(self) -> bool:
        return self.source == TransactionSource.PROVIDER

    @property
    def issue_codes(self) -> list[str]:
        return [issue.get("code", "") for issue in self.issues or []]

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, source='{self.source.value}', "
            f"amount={self.amount}, state='{self.match_state.value}', "
            f"counterpart_id={self.counterpart_id})>"
        )


class ReconciliationMatch(Base):
    """Ledger entry for one proposed provider/system pairing.

    Entries are never deleted: a rejected or released pairing keeps its row
    with a terminal status, and a later re-pairing creates a new entry.
    """

    __tablename__ = "reconciliation_matches"

    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_tx_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, index=True
    )
    system_tx_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, index=True
    )
    status: Mapped[MatchStatus] = mapped_column(
        Enum(MatchStatus), nullable=False, default=MatchStatus.SUGGESTED, index=True
    )
    matched_by: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    amount_diff: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    origin: Mapped[MatchOrigin] = mapped_column(
        Enum(MatchOrigin), nullable=False, default=MatchOrigin.ENGINE
    )
    ambiguous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    decided_by: Mapped[str | None] = mapped_column(String(100))
    decided_at: Mapped[datetime | None] = mapped_column(DateTime)
    notes: Mapped[str | None] = mapped_column(Text)

    provider_tx: Mapped["Transaction"] = relationship(foreign_keys=[provider_tx_id])
    system_tx: Mapped["Transaction"] = relationship(foreign_keys=[system_tx_id])

    @property
    def signals(self) -> frozenset[MatchSignal]:
        return frozenset(MatchSignal(s) for s in self.matched_by or [])

    @property
    def confidence(self) -> Confidence:
        """Derived from the agreeing signals, never stored."""
        return Confidence.from_signal_count(len(self.signals))

    def __repr__(self) -> str:
        return (
            f"<ReconciliationMatch(id={self.id}, provider={self.provider_tx_id}, "
            f"system={self.system_tx_id}, status='{self.status.value}')>"
        )


class CommissionRecord(Base):
    """One append-only commission line.

    An accrual is written once per approved match. Releasing an approved
    match appends a REVERSAL with the negated amount instead of touching the
    accrual.
    """

    __tablename__ = "commission_records"
    __table_args__ = (UniqueConstraint("match_id", "kind"),)

    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, index=True
    )
    match_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliation_matches.id"), nullable=False, index=True
    )
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    plan_code: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_type: Mapped[PlanType] = mapped_column(Enum(PlanType), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    kind: Mapped[CommissionKind] = mapped_column(
        Enum(CommissionKind), nullable=False, default=CommissionKind.ACCRUAL
    )
    reverses_id: Mapped[int | None] = mapped_column(ForeignKey("commission_records.id"))
    order_type: Mapped[OrderType | None] = mapped_column(Enum(OrderType))
    earned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<CommissionRecord(id={self.id}, match_id={self.match_id}, "
            f"kind='{self.kind.value}', amount={self.amount})>"
        )


@event.listens_for(CommissionRecord, "before_update")
def _commission_records_are_append_only(mapper, connection, target: CommissionRecord) -> None:
    raise HotspotReconError(
        "Commission records are append-only", context={"commission_id": target.id}
    )


class PayoutBalance(Base):
    """Per-merchant running balance and payout preferences.

    ``withdrawable`` moves only when a commission line is appended or a
    disbursement is confirmed.
    """

    __tablename__ = "payout_balances"

    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    withdrawable: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_earned: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    # Settings
    min_threshold: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    schedule: Mapped[PayoutSchedule] = mapped_column(
        Enum(PayoutSchedule), nullable=False, default=PayoutSchedule.MONTHLY
    )
    auto_payouts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    method: Mapped[PayoutMethod] = mapped_column(
        Enum(PayoutMethod), nullable=False, default=PayoutMethod.MPESA
    )
    mpesa_number: Mapped[str | None] = mapped_column(String(12))
    bank_account_name: Mapped[str | None] = mapped_column(String(100))
    bank_account_number: Mapped[str | None] = mapped_column(String(34))
    bank_name: Mapped[str | None] = mapped_column(String(100))
    bank_branch_code: Mapped[str | None] = mapped_column(String(20))

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def destination_for(self, method: PayoutMethod) -> str | None:
        """Configured destination for a payout method, if any."""
        if method == PayoutMethod.MPESA:
            return self.mpesa_number
        return self.bank_account_number

    def __repr__(self) -> str:
        return (
            f"<PayoutBalance(merchant_id='{self.merchant_id}', "
            f"withdrawable={self.withdrawable}, min_threshold={self.min_threshold})>"
        )


class Payout(Base):
    """A payout request and its disbursement outcome."""

    __tablename__ = "payouts"

    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    method: Mapped[PayoutMethod] = mapped_column(Enum(PayoutMethod), nullable=False)
    destination: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING, index=True
    )
    trigger: Mapped[PayoutTrigger] = mapped_column(
        Enum(PayoutTrigger), nullable=False, default=PayoutTrigger.MANUAL
    )
    period_label: Mapped[str] = mapped_column(String(30), nullable=False)

    disbursement_reference: Mapped[str | None] = mapped_column(String(64))
    failure_reason: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return (
            f"<Payout(id={self.id}, merchant_id='{self.merchant_id}', "
            f"amount={self.amount}, status='{self.status.value}')>"
        )
