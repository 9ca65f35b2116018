"""Domain enums for payment reconciliation and commission accounting."""

from enum import Enum


class TransactionSource(str, Enum):
    """Which side produced a transaction."""

    PROVIDER = "provider"  # Mobile-money gateway confirmation
    SYSTEM = "system"  # Internally created order

    def __str__(self) -> str:
        return self.value


class OrderType(str, Enum):
    """Kind of internal order behind a system transaction."""

    VOUCHER = "voucher"
    PPPOE = "pppoe"
    SUBSCRIPTION = "subscription"

    def __str__(self) -> str:
        return self.value


class MatchState(str, Enum):
    """Reconciliation state of a single transaction.

    Lifecycle:
        UNMATCHED → SUGGESTED (engine or operator proposal)
        SUGGESTED → APPROVED (auto-approval or operator)
        SUGGESTED/APPROVED → UNMATCHED (reject / unmatch)
    """

    UNMATCHED = "unmatched"
    SUGGESTED = "suggested"
    APPROVED = "approved"

    def __str__(self) -> str:
        return self.value

    @property
    def is_paired(self) -> bool:
        """Whether a transaction in this state carries a counterpart."""
        return self in (MatchState.SUGGESTED, MatchState.APPROVED)


class MatchStatus(str, Enum):
    """Status of a ledger entry (one proposed pairing)."""

    SUGGESTED = "suggested"
    APPROVED = "approved"
    REJECTED = "rejected"  # Operator said the pair is wrong
    UNMATCHED = "unmatched"  # Pair released after the fact

    def __str__(self) -> str:
        return self.value

    @property
    def is_open(self) -> bool:
        return self in (MatchStatus.SUGGESTED, MatchStatus.APPROVED)


class MatchOrigin(str, Enum):
    """Who created a ledger entry."""

    ENGINE = "engine"  # Surfaced by a matching pass for review
    AUTO = "auto"  # Surfaced and auto-approved by a matching pass
    MANUAL = "manual"  # Paired by an operator

    def __str__(self) -> str:
        return self.value


class MatchSignal(str, Enum):
    """Independent agreement signals between a provider and system transaction."""

    AMOUNT = "amount"
    PHONE = "phone"
    REFERENCE = "reference"
    TIME = "time"

    def __str__(self) -> str:
        return self.value


class Confidence(str, Enum):
    """Coarse confidence tier derived from the number of agreeing signals."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        """Sort rank, higher is better."""
        return {Confidence.HIGH: 3, Confidence.MEDIUM: 2, Confidence.LOW: 1}[self]

    @classmethod
    def from_signal_count(cls, count: int) -> "Confidence":
        if count >= 4:
            return cls.HIGH
        if count == 3:
            return cls.MEDIUM
        return cls.LOW


class PlanType(str, Enum):
    """Billing plan families."""

    PERCENTAGE = "percentage"  # Merchant earns rate% of each sale
    FLAT_SUBSCRIPTION = "flat_subscription"  # Merchant pays a periodic fee, rate is 0

    def __str__(self) -> str:
        return self.value


class CommissionKind(str, Enum):
    """Commission ledger line kind."""

    ACCRUAL = "accrual"
    REVERSAL = "reversal"  # Compensating negative entry

    def __str__(self) -> str:
        return self.value


class PayoutSchedule(str, Enum):
    """When automatic payouts run."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"

    def __str__(self) -> str:
        return self.value


class PayoutMethod(str, Enum):
    """Disbursement rail."""

    MPESA = "mpesa"
    BANK = "bank"

    def __str__(self) -> str:
        return self.value


class PayoutStatus(str, Enum):
    """Payout lifecycle.

    PENDING → PROCESSING → COMPLETED | FAILED
    PENDING → COMPLETED | FAILED (confirmation without a processing ack)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_settled(self) -> bool:
        return self in (PayoutStatus.COMPLETED, PayoutStatus.FAILED)


class PayoutTrigger(str, Enum):
    """What created a payout request."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"

    def __str__(self) -> str:
        return self.value
