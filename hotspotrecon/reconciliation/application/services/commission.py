"""Commission calculation and the append-only commission ledger.

The rate is supplied by the billing-plan collaborator (``BillingPlanProvider``)
and never hard-coded here. A percentage plan earns ``rate%`` of the
system-side amount; a flat-subscription plan has a zero rate.

Example:
    >>> calculate_commission(Decimal("500"), Decimal("20"))
    Decimal('100.00')
    >>> calculate_commission(Decimal("0.05"), Decimal("50"))
    Decimal('0.03')
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from ....exceptions import ConfigurationError, InvalidAmount, RecordNotFoundError
from ....storage.database.base import utcnow
from ....utils.config import Settings, get_settings
from ....utils.logging import get_logger
from ...domain.enums import CommissionKind, PlanType
from ...domain.models import CommissionRecord, ReconciliationMatch, Transaction
from ...domain.phone import quantize_money
from ...domain.value_objects import BillingPlan, CommissionPeriodSummary
from ...infrastructure.repository import CommissionRepository

logger = get_logger(__name__)

ZERO = Decimal("0.00")


def calculate_commission(amount: Decimal, rate: Decimal) -> Decimal:
    """``amount × rate / 100`` rounded half-up to the minor unit.

    Raises:
        ValueError: If the rate is outside 0-100 or the amount is negative
    """
    amount = Decimal(amount)
    rate = Decimal(rate)
    if not Decimal("0") <= rate <= Decimal("100"):
        raise ValueError(f"Commission rate must be between 0 and 100, got {rate}")
    if amount < 0:
        raise ValueError(f"Commission base must not be negative, got {amount}")
    return quantize_money(amount * rate / Decimal("100"))


# ============================================================================
# Billing plans
# ============================================================================


class BillingPlanProvider(ABC):
    """Source of truth for a merchant's active billing plan."""

    @abstractmethod
    def plan_for(self, merchant_id: str) -> BillingPlan:
        """Return the merchant's current plan."""


class StaticBillingPlanProvider(BillingPlanProvider):
    """In-process plan catalogue with per-merchant assignments.

    Catalogue:
        individual: percentage plan at the configured default rate
        isp: flat subscription, KES 2,500 / month
        isp_pro: flat subscription, KES 3,900 / month
    """

    def __init__(
        self,
        default_rate: Decimal = Decimal("20"),
        default_plan: str = "individual",
        assignments: dict[str, str] | None = None,
        overrides: dict[str, BillingPlan] | None = None,
    ) -> None:
        self.catalogue: dict[str, BillingPlan] = {
            "individual": BillingPlan(
                plan_code="individual",
                plan_type=PlanType.PERCENTAGE,
                commission_rate=Decimal(default_rate),
                name="Individual",
            ),
            "isp": BillingPlan(
                plan_code="isp",
                plan_type=PlanType.FLAT_SUBSCRIPTION,
                commission_rate=Decimal("0"),
                monthly_fee=Decimal("2500"),
                name="ISP",
            ),
            "isp_pro": BillingPlan(
                plan_code="isp_pro",
                plan_type=PlanType.FLAT_SUBSCRIPTION,
                commission_rate=Decimal("0"),
                monthly_fee=Decimal("3900"),
                name="ISP Pro",
            ),
        }
        if default_plan not in self.catalogue:
            raise ConfigurationError(
                f"Unknown default plan: {default_plan}", context={"plan_code": default_plan}
            )
        self.default_plan = default_plan
        self.assignments: dict[str, str] = {}
        for merchant_id, plan_code in (assignments or {}).items():
            self.assign(merchant_id, plan_code)
        self.overrides: dict[str, BillingPlan] = dict(overrides or {})

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "StaticBillingPlanProvider":
        settings = settings or get_settings()
        return cls(
            default_rate=settings.default_commission_rate,
            default_plan=settings.default_billing_plan,
            assignments=settings.billing_plan_assignments,
        )

    def assign(self, merchant_id: str, plan_code: str) -> None:
        if plan_code not in self.catalogue:
            raise RecordNotFoundError(
                f"Unknown billing plan: {plan_code}", entity_type="BillingPlan", entity_id=plan_code
            )
        self.assignments[merchant_id] = plan_code

    def plan_for(self, merchant_id: str) -> BillingPlan:
        if merchant_id in self.overrides:
            return self.overrides[merchant_id]
        return self.catalogue[self.assignments.get(merchant_id, self.default_plan)]


# ============================================================================
# Calculator
# ============================================================================


class CommissionCalculator:
    """Build commission ledger lines. Pure: nothing is persisted here."""

    def accrue(
        self,
        match: ReconciliationMatch,
        system_tx: Transaction,
        plan: BillingPlan,
        earned_at: datetime | None = None,
    ) -> CommissionRecord:
        """Commission line for a newly approved match.

        Raises:
            InvalidAmount: If the system transaction has no usable amount
        """
        if system_tx.amount is None:
            raise InvalidAmount(None, "system amount missing, commission cannot be computed")

        base = quantize_money(Decimal(system_tx.amount))
        return CommissionRecord(
            transaction_id=system_tx.id,
            match_id=match.id,
            merchant_id=match.merchant_id,
            plan_code=plan.plan_code,
            plan_type=plan.plan_type,
            rate=plan.commission_rate,
            base_amount=base,
            amount=calculate_commission(base, plan.commission_rate),
            kind=CommissionKind.ACCRUAL,
            order_type=system_tx.order_type,
            earned_at=earned_at or utcnow(),
        )

    def reverse(self, accrual: CommissionRecord, at: datetime | None = None) -> CommissionRecord:
        """Compensating line that cancels ``accrual`` exactly."""
        if accrual.kind != CommissionKind.ACCRUAL:
            raise ValueError("Only accruals can be reversed")
        return CommissionRecord(
            transaction_id=accrual.transaction_id,
            match_id=accrual.match_id,
            merchant_id=accrual.merchant_id,
            plan_code=accrual.plan_code,
            plan_type=accrual.plan_type,
            rate=accrual.rate,
            base_amount=-accrual.base_amount,
            amount=-accrual.amount,
            kind=CommissionKind.REVERSAL,
            reverses_id=accrual.id,
            order_type=accrual.order_type,
            earned_at=at or utcnow(),
        )


# ============================================================================
# Queries
# ============================================================================


class CommissionService:
    """Read side of the commission ledger."""

    def __init__(self, session: Session):
        self.session = session
        self.records = CommissionRepository(session)

    def history(self, merchant_id: str) -> list[CommissionRecord]:
        """Every line in insertion order, reversals included."""
        return self.records.list_by_merchant(merchant_id)

    def net_commission(self, merchant_id: str) -> Decimal:
        return sum((r.amount for r in self.history(merchant_id)), ZERO)

    def period_summaries(self, merchant_id: str) -> list[CommissionPeriodSummary]:
        """Monthly totals, oldest first. Reversals net out in the month they happen."""
        sales: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
        commission: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
        counts: dict[tuple[int, int], int] = defaultdict(int)
        by_type: dict[tuple[int, int], dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))

        for record in self.history(merchant_id):
            key = (record.earned_at.year, record.earned_at.month)
            sales[key] += record.base_amount
            commission[key] += record.amount
            counts[key] += 1 if record.kind == CommissionKind.ACCRUAL else -1
            order_type = record.order_type.value if record.order_type else "unknown"
            by_type[key][order_type] += record.amount

        return [
            CommissionPeriodSummary(
                year=year,
                month=month,
                total_sales=sales[(year, month)],
                total_commission=commission[(year, month)],
                transaction_count=counts[(year, month)],
                by_order_type=dict(by_type[(year, month)]),
            )
            for year, month in sorted(sales)
        ]
