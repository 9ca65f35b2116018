"""Signal-agreement matcher.

Four independent signals are checked for a provider/system pair:

- **amount**: ``|provider.amount - system.amount| <= amount_tolerance``
  (exact by default; a small difference is still reported as ``amount_diff``)
- **phone**: both numbers present and equal after normalization
- **reference**: the system reference is a case-insensitive substring of
  (or equal to) the provider reference
- **time**: the order was created at or before the payment confirmation,
  at most ``max_time_skew`` earlier

Confidence is the number of agreeing signals: 4 → high, 3 → medium,
fewer → low. A pair where neither amount nor phone agrees is discarded.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from ..domain.enums import MatchSignal
from ..domain.value_objects import MatchCandidate
from .base import IMatcherStrategy

if TYPE_CHECKING:
    from ...utils.config import Settings
    from ..domain.models import Transaction


@dataclass(frozen=True)
class MatchingRules:
    """Tunable thresholds for a matching pass.

    Attributes:
        max_time_skew: Longest gap between order creation and payment
            confirmation that still counts as the time signal
        amount_tolerance: Largest absolute difference that still counts as
            the amount signal
        search_window: How far before a payment orders are compared at all
    """

    max_time_skew: timedelta = timedelta(minutes=5)
    amount_tolerance: Decimal = Decimal("0.00")
    search_window: timedelta = timedelta(hours=24)

    def __post_init__(self) -> None:
        if self.max_time_skew < timedelta(0):
            raise ValueError("max_time_skew must not be negative")
        if self.amount_tolerance < 0:
            raise ValueError("amount_tolerance must not be negative")
        if self.search_window < self.max_time_skew:
            raise ValueError("search_window must be at least max_time_skew")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "MatchingRules":
        return cls(
            max_time_skew=timedelta(seconds=settings.match_max_time_skew_seconds),
            amount_tolerance=settings.match_amount_tolerance,
            search_window=timedelta(hours=settings.match_search_window_hours),
        )


def amount_diff(provider: "Transaction", system: "Transaction") -> Decimal | None:
    """Signed ``provider.amount - system.amount``; None if either is missing."""
    if provider.amount is None or system.amount is None:
        return None
    return Decimal(provider.amount) - Decimal(system.amount)


def amount_agrees(provider: "Transaction", system: "Transaction", tolerance: Decimal) -> bool:
    diff = amount_diff(provider, system)
    return diff is not None and abs(diff) <= tolerance


def phone_agrees(provider: "Transaction", system: "Transaction") -> bool:
    return provider.phone is not None and system.phone is not None and provider.phone == system.phone


def reference_agrees(provider: "Transaction", system: "Transaction") -> bool:
    """References are short account codes; empty ones never agree."""
    provider_ref = (provider.reference or "").strip().casefold()
    system_ref = (system.reference or "").strip().casefold()
    if not provider_ref or not system_ref:
        return False
    return system_ref in provider_ref


def time_gap(provider: "Transaction", system: "Transaction") -> timedelta:
    """Positive when the order precedes the payment confirmation."""
    return provider.occurred_at - system.occurred_at


def time_agrees(provider: "Transaction", system: "Transaction", max_skew: timedelta) -> bool:
    gap = time_gap(provider, system)
    return timedelta(0) <= gap <= max_skew


class SignalMatcher(IMatcherStrategy):
    """Score pairs by counting agreeing signals.

    Example:
        >>> matcher = SignalMatcher(MatchingRules(max_time_skew=timedelta(minutes=2)))
        >>> candidate = matcher.score(provider_tx, system_tx)
        >>> candidate.confidence
        <Confidence.HIGH: 'high'>
    """

    def __init__(self, rules: MatchingRules | None = None) -> None:
        self.rules = rules or MatchingRules()

    def signals(self, provider: "Transaction", system: "Transaction") -> frozenset[MatchSignal]:
        """The set of signals on which the two transactions agree."""
        agreeing: set[MatchSignal] = set()
        if amount_agrees(provider, system, self.rules.amount_tolerance):
            agreeing.add(MatchSignal.AMOUNT)
        if phone_agrees(provider, system):
            agreeing.add(MatchSignal.PHONE)
        if reference_agrees(provider, system):
            agreeing.add(MatchSignal.REFERENCE)
        if time_agrees(provider, system, self.rules.max_time_skew):
            agreeing.add(MatchSignal.TIME)
        return frozenset(agreeing)

    def score(self, provider: "Transaction", system: "Transaction") -> MatchCandidate | None:
        agreeing = self.signals(provider, system)

        # Without amount or phone the pair is noise.
        if MatchSignal.AMOUNT not in agreeing and MatchSignal.PHONE not in agreeing:
            return None

        return MatchCandidate(
            provider_tx_id=provider.id,
            system_tx_id=system.id,
            matched_by=agreeing,
            amount_diff=amount_diff(provider, system),
            time_gap_seconds=time_gap(provider, system).total_seconds(),
        )

    def __repr__(self) -> str:
        return (
            f"<SignalMatcher(max_time_skew={self.rules.max_time_skew}, "
            f"amount_tolerance={self.rules.amount_tolerance})>"
        )
