"""Domain value objects for reconciliation.

Value Objects in DDD:
- Immutable (frozen dataclasses / frozen pydantic models)
- No identity (equality based on attributes)
- Describe characteristics, not entities
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import Confidence, MatchSignal, OrderType, PayoutStatus, PlanType

if TYPE_CHECKING:
    from ...exceptions import NormalizationError
    from .models import Transaction

# Canonical order used whenever signals are listed.
SIGNAL_ORDER: tuple[MatchSignal, ...] = (
    MatchSignal.AMOUNT,
    MatchSignal.PHONE,
    MatchSignal.REFERENCE,
    MatchSignal.TIME,
)


def ordered_signals(signals: frozenset[MatchSignal]) -> list[str]:
    """Signals as plain strings in canonical order."""
    return [s.value for s in SIGNAL_ORDER if s in signals]


# ============================================================================
# Raw inputs from external collaborators
# ============================================================================


class ProviderPaymentRecord(BaseModel):
    """Confirmed mobile-money payment as delivered by the webhook collaborator.

    Fields are deliberately loose (``Any``) for amount and phone: validation
    happens in the normalizer so that a bad field never drops the record.
    """

    model_config = ConfigDict(frozen=True)

    merchant_id: str
    receipt: str = Field(min_length=1, description="Provider transaction id (M-Pesa receipt)")
    amount: Any = None
    phone: Any = None
    reference: str = ""
    confirmed_at: datetime
    raw: dict[str, Any] | None = None


class SystemOrderRecord(BaseModel):
    """Internally created order expected to be paid (voucher, PPPoE cycle, subscription)."""

    model_config = ConfigDict(frozen=True)

    merchant_id: str
    order_id: str = Field(min_length=1)
    order_type: OrderType = OrderType.VOUCHER
    amount: Any = None
    phone: Any = None
    reference: str = ""
    created_at: datetime
    raw: dict[str, Any] | None = None


@dataclass
class NormalizationResult:
    """A canonical transaction plus the non-fatal issues found on the way."""

    transaction: "Transaction"
    issues: list["NormalizationError"] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.issues


@dataclass
class IngestResult:
    """Result of persisting a batch of normalized records."""

    ingested: int = 0
    duplicates: int = 0
    with_issues: int = 0
    transaction_ids: list[int] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return self.ingested + self.duplicates

    def to_dict(self) -> dict[str, Any]:
        return {
            "ingested": self.ingested,
            "duplicates": self.duplicates,
            "with_issues": self.with_issues,
            "total_count": self.total_count,
            "issues": self.issues,
        }


# ============================================================================
# Matching
# ============================================================================


@dataclass(frozen=True)
class MatchCandidate:
    """A proposed provider/system pairing produced by one matching pass.

    ``confidence`` is derived from ``matched_by`` and never stored on its own.
    """

    provider_tx_id: int
    system_tx_id: int
    matched_by: frozenset[MatchSignal]
    amount_diff: Decimal | None
    time_gap_seconds: float
    rivals: tuple[int, ...] = ()

    @property
    def confidence(self) -> Confidence:
        return Confidence.from_signal_count(len(self.matched_by))

    @property
    def ambiguous(self) -> bool:
        """Tied on every ranking key with a pairing that shares a transaction."""
        return bool(self.rivals)

    @property
    def auto_approvable(self) -> bool:
        """High confidence, no amount difference, no equally-ranked rival."""
        return (
            self.confidence == Confidence.HIGH
            and self.amount_diff == Decimal("0")
            and not self.ambiguous
        )

    @property
    def rank_key(self) -> tuple:
        """Ordering used for conflict resolution, best first (ids excluded)."""
        diff = abs(self.amount_diff) if self.amount_diff is not None else Decimal("Infinity")
        return (-self.confidence.rank, diff, abs(self.time_gap_seconds))

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_tx_id": self.provider_tx_id,
            "system_tx_id": self.system_tx_id,
            "confidence": self.confidence.value,
            "matched_by": ordered_signals(self.matched_by),
            "amount_diff": str(self.amount_diff) if self.amount_diff is not None else None,
            "ambiguous": self.ambiguous,
        }


@dataclass
class MatchRunResult:
    """Outcome of one matching pass over a merchant's unmatched pool."""

    merchant_id: str
    candidates: list[MatchCandidate] = field(default_factory=list)
    auto_approved: int = 0
    suggested: int = 0
    ambiguous: int = 0
    conflicts: int = 0
    stale_retries: int = 0
    cancelled: bool = False
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def surfaced(self) -> int:
        return self.auto_approved + self.suggested

    def to_dict(self) -> dict[str, Any]:
        return {
            "merchant_id": self.merchant_id,
            "candidates": len(self.candidates),
            "auto_approved": self.auto_approved,
            "suggested": self.suggested,
            "ambiguous": self.ambiguous,
            "conflicts": self.conflicts,
            "stale_retries": self.stale_retries,
            "cancelled": self.cancelled,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class ReconciliationStats:
    """Dashboard counters for one merchant."""

    total_provider: int
    total_system: int
    reconciled: int
    suggested: int
    unmatched_provider: int
    unmatched_system: int
    discrepancies: int
    high_confidence: int

    @property
    def reconciliation_rate(self) -> float:
        """Share of provider transactions that are approved (0.0-100.0)."""
        if self.total_provider == 0:
            return 0.0
        return self.reconciled / self.total_provider * 100


# ============================================================================
# Commission & payouts
# ============================================================================


@dataclass(frozen=True)
class BillingPlan:
    """Merchant billing plan as supplied by the billing-plan collaborator."""

    plan_code: str
    plan_type: PlanType
    commission_rate: Decimal
    monthly_fee: Decimal = Decimal("0")
    name: str = ""

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.commission_rate <= Decimal("100"):
            raise ValueError(f"Commission rate must be between 0 and 100, got {self.commission_rate}")
        if self.plan_type == PlanType.FLAT_SUBSCRIPTION and self.commission_rate != 0:
            raise ValueError("Flat-subscription plans carry a zero commission rate")


@dataclass(frozen=True)
class CommissionPeriodSummary:
    """Commission totals for one calendar month."""

    year: int
    month: int
    total_sales: Decimal
    total_commission: Decimal
    transaction_count: int
    by_order_type: dict[str, Decimal] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return f"{self.year}-{self.month:02d}"


@dataclass(frozen=True)
class BalanceSummary:
    """Withdrawable balance breakdown for a merchant."""

    merchant_id: str
    total_earned: Decimal
    total_paid: Decimal
    withdrawable: Decimal
    pending_payouts: Decimal
    min_threshold: Decimal

    @property
    def available(self) -> Decimal:
        """Withdrawable minus payouts still awaiting disbursement."""
        return max(Decimal("0.00"), self.withdrawable - self.pending_payouts)

    @property
    def meets_threshold(self) -> bool:
        return self.withdrawable >= self.min_threshold


@dataclass(frozen=True)
class PayoutSummary:
    """Count and amount of a merchant's payouts per status."""

    counts: dict[PayoutStatus, int]
    amounts: dict[PayoutStatus, Decimal]


@dataclass(frozen=True)
class ScheduledPayoutOutcome:
    """What a scheduled payout run did for one merchant."""

    merchant_id: str
    outcome: str  # requested | not_due | pending_exists | below_threshold | failed
    payout_id: int | None = None
    reason: str | None = None


# ============================================================================
# Export
# ============================================================================

REPORT_COLUMNS: tuple[str, ...] = (
    "transaction_id",
    "counterpart_id",
    "confidence",
    "amount",
    "amount_diff",
    "commission",
)


@dataclass(frozen=True)
class ReportRow:
    """One line of the reconciliation export, in ``REPORT_COLUMNS`` order."""

    transaction_id: int
    counterpart_id: int | None
    confidence: Confidence | None
    amount: Decimal | None
    amount_diff: Decimal | None
    commission: Decimal | None

    def as_cells(self) -> list[str]:
        values = (
            self.transaction_id,
            self.counterpart_id,
            self.confidence.value if self.confidence else None,
            self.amount,
            self.amount_diff,
            self.commission,
        )
        return ["" if v is None else str(v) for v in values]
