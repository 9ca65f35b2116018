"""Tests for commission calculation, billing plans and commission queries."""

from datetime import datetime
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from hotspotrecon.exceptions import ConfigurationError, InvalidAmount, RecordNotFoundError
from hotspotrecon.reconciliation.application.services import (
    CommissionCalculator,
    CommissionService,
    StaticBillingPlanProvider,
    calculate_commission,
)
from hotspotrecon.reconciliation.domain.enums import CommissionKind, OrderType, PlanType
from hotspotrecon.reconciliation.domain.models import CommissionRecord, ReconciliationMatch, Transaction
from hotspotrecon.reconciliation.domain.value_objects import BillingPlan
from hotspotrecon.reconciliation.infrastructure.repository import CommissionRepository
from hotspotrecon.utils.config import Settings

pytestmark = pytest.mark.unit

amounts = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1000000"), places=2)
rates = st.decimals(min_value=Decimal("0"), max_value=Decimal("100"), places=2)


class TestCalculateCommission:
    @pytest.mark.parametrize(
        "amount,rate,expected",
        [
            ("500", "20", "100.00"),
            ("1500", "20", "300.00"),
            ("0.05", "50", "0.03"),  # 0.025 rounds half-up
            ("333.33", "15", "50.00"),
            ("500", "0", "0.00"),
            ("500", "100", "500.00"),
        ],
    )
    def test_examples(self, amount, rate, expected):
        assert calculate_commission(Decimal(amount), Decimal(rate)) == Decimal(expected)

    @pytest.mark.parametrize("rate", ["-1", "100.01"])
    def test_rate_out_of_range(self, rate):
        with pytest.raises(ValueError, match="between 0 and 100"):
            calculate_commission(Decimal("500"), Decimal(rate))

    def test_negative_base_rejected(self):
        with pytest.raises(ValueError):
            calculate_commission(Decimal("-1"), Decimal("20"))

    @given(amounts, amounts, rates)
    def test_monotonic_in_amount(self, a, b, rate):
        low, high = sorted([a, b])
        assert calculate_commission(low, rate) <= calculate_commission(high, rate)

    @given(amounts, rates)
    def test_never_exceeds_base(self, amount, rate):
        commission = calculate_commission(amount, rate)
        assert Decimal("0") <= commission <= amount


class TestStaticBillingPlanProvider:
    def test_default_plan_uses_configured_rate(self):
        plans = StaticBillingPlanProvider(default_rate=Decimal("15"))

        plan = plans.plan_for("merchant-1")

        assert plan.plan_code == "individual"
        assert plan.plan_type == PlanType.PERCENTAGE
        assert plan.commission_rate == Decimal("15")

    def test_assigned_flat_plan(self):
        plans = StaticBillingPlanProvider()
        plans.assign("merchant-1", "isp_pro")

        plan = plans.plan_for("merchant-1")

        assert plan.plan_type == PlanType.FLAT_SUBSCRIPTION
        assert plan.commission_rate == Decimal("0")
        assert plan.monthly_fee == Decimal("3900")

    def test_override_wins(self):
        custom = BillingPlan(plan_code="promo", plan_type=PlanType.PERCENTAGE, commission_rate=Decimal("5"))
        plans = StaticBillingPlanProvider(overrides={"merchant-1": custom})

        assert plans.plan_for("merchant-1") is custom
        assert plans.plan_for("merchant-2").plan_code == "individual"

    def test_unknown_plan(self):
        with pytest.raises(RecordNotFoundError):
            StaticBillingPlanProvider().assign("merchant-1", "enterprise")

    def test_unknown_default_plan(self):
        with pytest.raises(ConfigurationError):
            StaticBillingPlanProvider(default_plan="enterprise")

    def test_from_settings(self, tmp_path):
        settings = Settings(data_dir=tmp_path, default_commission_rate=Decimal("12.5"))

        plan = StaticBillingPlanProvider.from_settings(settings).plan_for("merchant-1")

        assert plan.commission_rate == Decimal("12.5")

    def test_from_settings_with_assignments(self, tmp_path):
        settings = Settings(data_dir=tmp_path, billing_plan_assignments={"merchant-2": "isp"})
        plans = StaticBillingPlanProvider.from_settings(settings)

        assert plans.plan_for("merchant-1").plan_code == "individual"
        assert plans.plan_for("merchant-2").commission_rate == Decimal("0")

    def test_unknown_assignment(self):
        with pytest.raises(RecordNotFoundError):
            StaticBillingPlanProvider(assignments={"merchant-1": "enterprise"})


class TestCommissionCalculator:
    def _match(self) -> ReconciliationMatch:
        return ReconciliationMatch(id=7, merchant_id="merchant-1", provider_tx_id=1, system_tx_id=2)

    def _order(self, amount: str | None = "750.00") -> Transaction:
        return Transaction(
            id=2,
            merchant_id="merchant-1",
            amount=Decimal(amount) if amount is not None else None,
            order_type=OrderType.PPPOE,
        )

    def test_accrue(self):
        plan = StaticBillingPlanProvider().plan_for("merchant-1")

        record = CommissionCalculator().accrue(self._match(), self._order(), plan, earned_at=datetime(2024, 1, 15))

        assert record.kind == CommissionKind.ACCRUAL
        assert record.match_id == 7
        assert record.transaction_id == 2
        assert record.rate == Decimal("20")
        assert record.base_amount == Decimal("750.00")
        assert record.amount == Decimal("150.00")
        assert record.order_type == OrderType.PPPOE

    def test_accrue_without_amount(self):
        plan = StaticBillingPlanProvider().plan_for("merchant-1")

        with pytest.raises(InvalidAmount):
            CommissionCalculator().accrue(self._match(), self._order(amount=None), plan)

    def test_reverse_negates_exactly(self):
        calculator = CommissionCalculator()
        accrual = calculator.accrue(
            self._match(), self._order(), StaticBillingPlanProvider().plan_for("merchant-1")
        )
        accrual.id = 11

        reversal = calculator.reverse(accrual)

        assert reversal.kind == CommissionKind.REVERSAL
        assert reversal.reverses_id == 11
        assert reversal.amount + accrual.amount == Decimal("0")
        assert reversal.base_amount + accrual.base_amount == Decimal("0")

    def test_reversal_cannot_be_reversed(self):
        calculator = CommissionCalculator()
        accrual = calculator.accrue(
            self._match(), self._order(), StaticBillingPlanProvider().plan_for("merchant-1")
        )

        with pytest.raises(ValueError):
            calculator.reverse(calculator.reverse(accrual))


class TestCommissionService:
    def _append(self, session, match_id, base, earned_at, kind=CommissionKind.ACCRUAL, order_type=OrderType.VOUCHER):
        sign = 1 if kind == CommissionKind.ACCRUAL else -1
        base = Decimal(base)
        return CommissionRepository(session).add(
            CommissionRecord(
                transaction_id=match_id,
                match_id=match_id,
                merchant_id="merchant-1",
                plan_code="individual",
                plan_type=PlanType.PERCENTAGE,
                rate=Decimal("20"),
                base_amount=sign * base,
                amount=sign * calculate_commission(base, Decimal("20")),
                kind=kind,
                order_type=order_type,
                earned_at=earned_at,
            )
        )

    def test_period_summaries_group_by_month(self, db_session):
        self._append(db_session, 1, "500.00", datetime(2024, 1, 10))
        self._append(db_session, 2, "200.00", datetime(2024, 1, 20), order_type=OrderType.PPPOE)
        self._append(db_session, 3, "300.00", datetime(2024, 2, 3))
        self._append(db_session, 1, "500.00", datetime(2024, 2, 5), kind=CommissionKind.REVERSAL)
        db_session.commit()

        january, february = CommissionService(db_session).period_summaries("merchant-1")

        assert january.label == "2024-01"
        assert january.total_sales == Decimal("700.00")
        assert january.total_commission == Decimal("140.00")
        assert january.transaction_count == 2
        assert january.by_order_type == {"voucher": Decimal("100.00"), "pppoe": Decimal("40.00")}

        assert february.label == "2024-02"
        assert february.total_commission == Decimal("-40.00")
        assert february.transaction_count == 0

    def test_net_commission_of_empty_ledger(self, db_session):
        assert CommissionService(db_session).net_commission("merchant-1") == Decimal("0.00")
