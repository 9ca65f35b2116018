"""Reconciliation domain: entities, enums, value objects and canonicalization rules."""

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
from .models import CommissionRecord, Payout, PayoutBalance, ReconciliationMatch, Transaction

__all__ = [
    "CommissionKind",
    "CommissionRecord",
    "Confidence",
    "MatchOrigin",
    "MatchSignal",
    "MatchState",
    "MatchStatus",
    "OrderType",
    "Payout",
    "PayoutBalance",
    "PayoutMethod",
    "PayoutSchedule",
    "PayoutStatus",
    "PayoutTrigger",
    "PlanType",
    "ReconciliationMatch",
    "Transaction",
    "TransactionSource",
]
