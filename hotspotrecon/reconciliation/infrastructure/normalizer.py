"""Canonicalize provider payments and system orders into ``Transaction`` rows.

A failing field never drops the record: the field is nulled, the error is
recorded on the transaction and returned alongside it, and the remaining
signals (reference, time, the other of amount/phone) stay usable for matching.
"""

from datetime import UTC, datetime
from typing import Any

from ...exceptions import InvalidAmount, InvalidPhoneFormat, NormalizationError
from ...utils.logging import get_logger
from ..domain.enums import MatchState, OrderType, TransactionSource
from ..domain.models import Transaction
from ..domain.phone import normalize_amount, normalize_phone
from ..domain.value_objects import NormalizationResult, ProviderPaymentRecord, SystemOrderRecord

logger = get_logger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    """Aware datetimes are converted; naive ones are taken as UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class TransactionNormalizer:
    """Build canonical transactions from collaborator records."""

    def normalize_provider(self, record: ProviderPaymentRecord) -> NormalizationResult:
        """Normalize a confirmed mobile-money payment."""
        return self._build(
            source=TransactionSource.PROVIDER,
            merchant_id=record.merchant_id,
            external_id=record.receipt,
            amount=record.amount,
            phone=record.phone,
            reference=record.reference,
            occurred_at=record.confirmed_at,
            order_type=None,
            raw=record.raw,
        )

    def normalize_system(self, record: SystemOrderRecord) -> NormalizationResult:
        """Normalize an internal order. A missing phone is not an issue here."""
        return self._build(
            source=TransactionSource.SYSTEM,
            merchant_id=record.merchant_id,
            external_id=record.order_id,
            amount=record.amount,
            phone=record.phone,
            reference=record.reference,
            occurred_at=record.created_at,
            order_type=record.order_type,
            raw=record.raw,
        )

    def _build(
        self,
        *,
        source: TransactionSource,
        merchant_id: str,
        external_id: str,
        amount: Any,
        phone: Any,
        reference: str,
        occurred_at: datetime,
        order_type: OrderType | None,
        raw: dict[str, Any] | None,
    ) -> NormalizationResult:
        issues: list[NormalizationError] = []

        try:
            clean_amount = normalize_amount(amount)
        except InvalidAmount as e:
            clean_amount = None
            issues.append(e)

        clean_phone = None
        if phone not in (None, "") or source == TransactionSource.PROVIDER:
            try:
                clean_phone = normalize_phone(phone)
            except InvalidPhoneFormat as e:
                issues.append(e)

        tx = Transaction(
            merchant_id=merchant_id,
            source=source,
            external_id=external_id.strip(),
            amount=clean_amount,
            phone=clean_phone,
            reference=(reference or "").strip(),
            occurred_at=to_naive_utc(occurred_at),
            order_type=order_type,
            match_state=MatchState.UNMATCHED,
            counterpart_id=None,
            version=0,
            issues=[],
            raw_data=raw,
        )
        for issue in issues:
            tx.record_issue(issue)

        if issues:
            logger.warning(
                "transaction_normalized_with_issues",
                merchant_id=merchant_id,
                source=source.value,
                external_id=external_id,
                issues=[issue.code for issue in issues],
            )

        return NormalizationResult(transaction=tx, issues=issues)
