"""Payout aggregation: withdrawable balances, payout requests and disbursement.

Balance movements:
    - commission appended (accrual +, reversal -): ``credit()``, always inside
      the ledger's own unit of work
    - disbursement confirmed: ``confirm_disbursement(success=True)``

A payout request only records a PENDING payout. Nothing is subtracted until
the payment rail confirms the disbursement, so a failed transfer never
touches the balance.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from ....exceptions import (
    BelowPayoutThreshold,
    DuplicateDisbursementConfirmation,
    InsufficientBalance,
    PayoutDestinationMissing,
    PayoutError,
    RecordNotFoundError,
    ValidationError,
)
from ....storage.database.base import utcnow
from ....storage.session import unit_of_work
from ....utils.config import Settings, get_settings
from ....utils.logging import get_logger
from ... import metrics
from ...domain.enums import PayoutMethod, PayoutSchedule, PayoutStatus, PayoutTrigger
from ...domain.models import Payout, PayoutBalance
from ...domain.phone import normalize_phone, quantize_money
from ...domain.value_objects import BalanceSummary, PayoutSummary, ScheduledPayoutOutcome
from ...infrastructure.repository import PayoutRepository

logger = get_logger(__name__)

ZERO = Decimal("0.00")


def period_label(schedule: PayoutSchedule | None, now: datetime) -> str:
    """Label grouping payouts: ``2024-W03`` weekly, ``2024-01`` monthly, else the date."""
    if schedule == PayoutSchedule.WEEKLY:
        year, week, _ = now.isocalendar()
        return f"{year}-W{week:02d}"
    if schedule == PayoutSchedule.MONTHLY:
        return f"{now:%Y-%m}"
    return f"{now:%Y-%m-%d}"


class PayoutAggregator:
    """Maintain merchant balances and gate payouts.

    A commission reversal that lands while a payout is in flight is still
    debited, and the confirmed payout then takes ``withdrawable`` below
    zero. The negative balance is the clawback the merchant owes; later
    commission pays it down before any new payout meets the threshold.

    Example:
        >>> payouts = PayoutAggregator(session)
        >>> payout = payouts.request_payout("merchant-1")
        >>> payouts.confirm_disbursement(payout.id, success=True, reference="QK12AB34CD")
    """

    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.payouts = PayoutRepository(session)

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------

    def get_or_create_balance(self, merchant_id: str) -> PayoutBalance:
        """Load the merchant's balance, creating it with default settings. Does not commit."""
        balance = self.payouts.get_balance(merchant_id)
        if balance is None:
            balance = PayoutBalance(
                merchant_id=merchant_id,
                withdrawable=ZERO,
                total_earned=ZERO,
                total_paid=ZERO,
                min_threshold=self.settings.payout_default_min_threshold,
                schedule=PayoutSchedule(self.settings.payout_default_schedule),
                auto_payouts=True,
                method=PayoutMethod.MPESA,
                version=0,
            )
            self.payouts.add(balance)
            logger.info("payout_balance_created", merchant_id=merchant_id)
        return balance

    def credit(self, merchant_id: str, amount: Decimal) -> PayoutBalance:
        """Apply a commission line to the balance. Negative for reversals.

        Runs inside the caller's unit of work and never commits.
        """
        amount = quantize_money(Decimal(amount))
        balance = self.get_or_create_balance(merchant_id)
        self.payouts.adjust_balance(balance, withdrawable=amount, total_earned=amount)
        logger.debug("payout_balance_credited", merchant_id=merchant_id, amount=str(amount))
        return balance

    def balance_summary(self, merchant_id: str) -> BalanceSummary:
        balance = self.payouts.get_balance(merchant_id)
        if balance is None:
            return BalanceSummary(
                merchant_id=merchant_id,
                total_earned=ZERO,
                total_paid=ZERO,
                withdrawable=ZERO,
                pending_payouts=ZERO,
                min_threshold=self.settings.payout_default_min_threshold,
            )
        self.session.refresh(balance)
        return BalanceSummary(
            merchant_id=merchant_id,
            total_earned=balance.total_earned,
            total_paid=balance.total_paid,
            withdrawable=balance.withdrawable,
            pending_payouts=self.payouts.pending_total(merchant_id),
            min_threshold=balance.min_threshold,
        )

    def update_settings(
        self,
        merchant_id: str,
        *,
        min_threshold: Decimal | None = None,
        schedule: PayoutSchedule | None = None,
        auto_payouts: bool | None = None,
        method: PayoutMethod | None = None,
        mpesa_number: str | None = None,
        bank_account_name: str | None = None,
        bank_account_number: str | None = None,
        bank_name: str | None = None,
        bank_branch_code: str | None = None,
    ) -> PayoutBalance:
        """Update payout preferences.

        Raises:
            ValidationError: Threshold outside the configured bounds
            InvalidPhoneFormat: M-Pesa number is not a Kenyan mobile number
        """
        with unit_of_work(self.session):
            balance = self.get_or_create_balance(merchant_id)

            if min_threshold is not None:
                min_threshold = quantize_money(Decimal(min_threshold))
                floor = self.settings.payout_min_threshold_floor
                ceiling = self.settings.payout_min_threshold_ceiling
                if not floor <= min_threshold <= ceiling:
                    raise ValidationError(
                        f"Minimum payout threshold must be between {floor} and {ceiling}",
                        field="min_threshold",
                        value=min_threshold,
                    )
                balance.min_threshold = min_threshold
            if schedule is not None:
                balance.schedule = schedule
            if auto_payouts is not None:
                balance.auto_payouts = auto_payouts
            if method is not None:
                balance.method = method
            if mpesa_number is not None:
                balance.mpesa_number = normalize_phone(mpesa_number)
            if bank_account_name is not None:
                balance.bank_account_name = bank_account_name.strip()
            if bank_account_number is not None:
                balance.bank_account_number = bank_account_number.replace(" ", "")
            if bank_name is not None:
                balance.bank_name = bank_name.strip()
            if bank_branch_code is not None:
                balance.bank_branch_code = bank_branch_code.strip()

        logger.info(
            "payout_settings_updated",
            merchant_id=merchant_id,
            min_threshold=str(balance.min_threshold),
            schedule=balance.schedule.value,
            method=balance.method.value,
        )
        return balance

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_payout(
        self,
        merchant_id: str,
        amount: Decimal | None = None,
        method: PayoutMethod | None = None,
        trigger: PayoutTrigger = PayoutTrigger.MANUAL,
        now: datetime | None = None,
    ) -> Payout:
        """Record a PENDING payout; the balance is not touched.

        Args:
            merchant_id: Merchant to pay
            amount: Amount to pay, defaults to everything available
            method: Overrides the merchant's preferred method
            trigger: MANUAL or SCHEDULED
            now: Request time, used for the period label

        Raises:
            BelowPayoutThreshold: withdrawable < min_threshold
            InsufficientBalance: amount exceeds withdrawable minus pending payouts
            PayoutDestinationMissing: the method has no configured destination
        """
        now = now or utcnow()
        try:
            with unit_of_work(self.session):
                balance = self.get_or_create_balance(merchant_id)
                self.session.refresh(balance)

                if balance.withdrawable < balance.min_threshold:
                    raise BelowPayoutThreshold(
                        "Withdrawable balance is below the minimum payout threshold",
                        context={
                            "merchant_id": merchant_id,
                            "withdrawable": str(balance.withdrawable),
                            "min_threshold": str(balance.min_threshold),
                        },
                    )

                available = balance.withdrawable - self.payouts.pending_total(merchant_id)
                amount = quantize_money(Decimal(amount)) if amount is not None else available
                if amount <= 0 or amount > available:
                    raise InsufficientBalance(
                        "Requested payout exceeds the available balance",
                        context={
                            "merchant_id": merchant_id,
                            "requested": str(amount),
                            "available": str(available),
                        },
                    )

                method = method or balance.method
                destination = balance.destination_for(method)
                if not destination:
                    raise PayoutDestinationMissing(
                        f"No {method.value} destination configured",
                        context={"merchant_id": merchant_id, "method": method.value},
                    )

                schedule = balance.schedule if trigger == PayoutTrigger.SCHEDULED else None
                payout = Payout(
                    merchant_id=merchant_id,
                    amount=amount,
                    method=method,
                    destination=destination,
                    status=PayoutStatus.PENDING,
                    trigger=trigger,
                    period_label=period_label(schedule, now),
                )
                self.payouts.add(payout)
        except PayoutError as e:
            metrics.record_payout("rejected", trigger.value)
            logger.info("payout_request_rejected", reason=e.code, **e.context)
            raise

        metrics.record_payout(PayoutStatus.PENDING.value, trigger.value)
        logger.info(
            "payout_requested",
            merchant_id=merchant_id,
            payout_id=payout.id,
            amount=str(payout.amount),
            method=payout.method.value,
            destination=payout.destination,
            trigger=trigger.value,
        )
        return payout

    def mark_processing(self, payout_id: int, reference: str | None = None) -> Payout:
        """The payment rail accepted the job. Idempotent for PROCESSING payouts.

        Raises:
            DuplicateDisbursementConfirmation: The payout is already settled
        """
        with unit_of_work(self.session):
            payout = self._get_payout(payout_id)
            if payout.status == PayoutStatus.PROCESSING:
                return payout
            moved = self.payouts.transition(
                payout,
                expected=[PayoutStatus.PENDING],
                status=PayoutStatus.PROCESSING,
                reference=reference,
            )
            if not moved:
                raise DuplicateDisbursementConfirmation(
                    "Payout already settled",
                    context={"payout_id": payout_id, "status": payout.status.value},
                )
        logger.info("payout_processing", payout_id=payout_id, reference=reference)
        return payout

    def confirm_disbursement(
        self,
        payout_id: int,
        success: bool,
        reference: str | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Payout:
        """Settle a payout from the rail's confirmation.

        Success completes the payout and moves the amount from ``withdrawable``
        to ``total_paid`` in the same unit. Failure only marks the payout.

        Raises:
            DuplicateDisbursementConfirmation: The payout is already settled;
                nothing is changed
        """
        now = now or utcnow()
        with unit_of_work(self.session):
            payout = self._get_payout(payout_id)
            self.session.refresh(payout)
            if payout.status.is_settled:
                raise DuplicateDisbursementConfirmation(
                    "Disbursement already confirmed",
                    context={"payout_id": payout_id, "status": payout.status.value},
                )

            status = PayoutStatus.COMPLETED if success else PayoutStatus.FAILED
            moved = self.payouts.transition(
                payout,
                expected=[PayoutStatus.PENDING, PayoutStatus.PROCESSING],
                status=status,
                reference=reference or payout.disbursement_reference,
                reason=None if success else (reason or "disbursement failed"),
                processed_at=now,
            )
            if not moved:
                raise DuplicateDisbursementConfirmation(
                    "Disbursement confirmed concurrently", context={"payout_id": payout_id}
                )

            if success:
                balance = self.get_or_create_balance(payout.merchant_id)
                self.payouts.adjust_balance(
                    balance, withdrawable=-payout.amount, total_paid=payout.amount
                )

        metrics.record_payout(status.value, payout.trigger.value)
        logger.info(
            "payout_settled",
            payout_id=payout_id,
            merchant_id=payout.merchant_id,
            status=status.value,
            amount=str(payout.amount),
            reference=reference,
            reason=payout.failure_reason,
        )
        return payout

    def handle_disbursement_callback(
        self,
        payout_id: int,
        success: bool,
        reference: str | None = None,
        reason: str | None = None,
    ) -> bool:
        """Entry point for asynchronous rail callbacks.

        Returns:
            True when the confirmation was applied, False for an ignored duplicate
        """
        try:
            self.confirm_disbursement(payout_id, success, reference=reference, reason=reason)
        except DuplicateDisbursementConfirmation as e:
            metrics.record_payout("duplicate")
            logger.warning("disbursement_duplicate_ignored", **e.context)
            return False
        return True

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def is_due(self, schedule: PayoutSchedule, now: datetime) -> bool:
        if schedule == PayoutSchedule.WEEKLY:
            return now.weekday() == self.settings.payout_weekly_weekday
        if schedule == PayoutSchedule.MONTHLY:
            return now.day == self.settings.payout_monthly_day
        return False

    def run_scheduled_payouts(self, now: datetime | None = None) -> list[ScheduledPayoutOutcome]:
        """Request payouts for every auto-payout merchant whose schedule is due.

        Each merchant is its own unit of work; one failure does not stop the run.
        """
        now = now or utcnow()
        outcomes: list[ScheduledPayoutOutcome] = []

        for balance in self.payouts.auto_payout_balances():
            merchant_id = balance.merchant_id
            if not self.is_due(balance.schedule, now):
                outcomes.append(ScheduledPayoutOutcome(merchant_id, "not_due"))
                continue
            if self.payouts.has_unsettled(merchant_id):
                outcomes.append(ScheduledPayoutOutcome(merchant_id, "pending_exists"))
                continue
            label = period_label(balance.schedule, now)
            if self.payouts.find_for_period(merchant_id, label, PayoutTrigger.SCHEDULED):
                outcomes.append(ScheduledPayoutOutcome(merchant_id, "already_paid", reason=label))
                continue

            try:
                payout = self.request_payout(merchant_id, trigger=PayoutTrigger.SCHEDULED, now=now)
            except BelowPayoutThreshold as e:
                outcomes.append(ScheduledPayoutOutcome(merchant_id, "below_threshold", reason=e.message))
            except PayoutError as e:
                outcomes.append(ScheduledPayoutOutcome(merchant_id, "failed", reason=e.message))
            else:
                outcomes.append(ScheduledPayoutOutcome(merchant_id, "requested", payout_id=payout.id))

        logger.info(
            "scheduled_payouts_completed",
            merchants=len(outcomes),
            requested=sum(1 for o in outcomes if o.outcome == "requested"),
        )
        return outcomes

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_payouts(self, merchant_id: str, status: PayoutStatus | None = None) -> list[Payout]:
        return self.payouts.list_payouts(merchant_id, status)

    def payout_summary(self, merchant_id: str) -> PayoutSummary:
        counts = dict.fromkeys(PayoutStatus, 0)
        amounts = dict.fromkeys(PayoutStatus, ZERO)
        for payout in self.payouts.list_payouts(merchant_id):
            counts[payout.status] += 1
            amounts[payout.status] += payout.amount
        return PayoutSummary(counts=counts, amounts=amounts)

    def _get_payout(self, payout_id: int) -> Payout:
        payout = self.payouts.get(payout_id)
        if payout is None:
            raise RecordNotFoundError(
                f"Payout {payout_id} not found", entity_type="Payout", entity_id=payout_id
            )
        return payout
