"""Matching engine: scoring plus global conflict resolution.

A pass takes the unmatched provider and system pools of one merchant and
returns the candidate set that should be surfaced. It is pure: nothing is
written, so running it twice over an unchanged pool yields the same list.

Pipeline:
    1. Bucket system transactions by UTC day of ``occurred_at``
    2. For each provider transaction, score system transactions from the
       buckets overlapping ``[occurred_at - search_window, occurred_at + max_time_skew]``
    3. Rank every scored candidate globally and accept greedily so each
       transaction appears in at most one surfaced candidate
    4. Flag accepted candidates that are tied on every ranking key with an
       alternative sharing one of their transactions
"""

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import replace
from datetime import date, timedelta

from ...utils.logging import get_logger
from ..domain.enums import MatchState, TransactionSource
from ..domain.models import Transaction
from ..domain.value_objects import MatchCandidate
from .base import IMatcherStrategy
from .signals import MatchingRules, SignalMatcher

logger = get_logger(__name__)

PairKey = tuple[int, int]


def _day(tx: Transaction) -> date:
    return tx.occurred_at.date()


def _candidate_order(candidate: MatchCandidate) -> tuple:
    return (candidate.rank_key, candidate.provider_tx_id, candidate.system_tx_id)


class MatchingEngine:
    """Produce the surfaced candidate set for a pool of unmatched transactions.

    Example:
        >>> engine = MatchingEngine(rules=MatchingRules.from_settings(get_settings()))
        >>> candidates = engine.find_candidates(providers, systems)
        >>> [c for c in candidates if c.auto_approvable]
    """

    def __init__(
        self,
        strategy: IMatcherStrategy | None = None,
        rules: MatchingRules | None = None,
    ) -> None:
        self.rules = rules or MatchingRules()
        self.strategy = strategy or SignalMatcher(self.rules)

    def find_candidates(
        self,
        providers: Iterable[Transaction],
        systems: Iterable[Transaction],
        excluded_pairs: Iterable[PairKey] = (),
    ) -> list[MatchCandidate]:
        """Score, rank and resolve one pool.

        Args:
            providers: Provider-side transactions; anything not UNMATCHED is ignored
            systems: System-side transactions; anything not UNMATCHED is ignored
            excluded_pairs: ``(provider_id, system_id)`` pairs never to surface
                again (operator rejections)

        Returns:
            Surfaced candidates sorted by ``(provider_tx_id, system_tx_id)``
        """
        pool_p = [
            tx
            for tx in providers
            if tx.source == TransactionSource.PROVIDER and tx.match_state == MatchState.UNMATCHED
        ]
        pool_s = [
            tx
            for tx in systems
            if tx.source == TransactionSource.SYSTEM and tx.match_state == MatchState.UNMATCHED
        ]

        scored = self.score_pool(pool_p, pool_s, excluded=set(excluded_pairs))
        resolved = self.resolve(scored)

        logger.debug(
            "candidates_resolved",
            providers=len(pool_p),
            systems=len(pool_s),
            scored=len(scored),
            surfaced=len(resolved),
            ambiguous=sum(1 for c in resolved if c.ambiguous),
        )
        return resolved

    def score_pool(
        self,
        providers: list[Transaction],
        systems: list[Transaction],
        excluded: set[PairKey] | None = None,
    ) -> list[MatchCandidate]:
        """Score every provider/system pair that falls inside the search window."""
        excluded = excluded or set()

        buckets: dict[date, list[Transaction]] = defaultdict(list)
        for tx in systems:
            buckets[_day(tx)].append(tx)

        scored: list[MatchCandidate] = []
        for provider in providers:
            earliest = provider.occurred_at - self.rules.search_window
            latest = provider.occurred_at + self.rules.max_time_skew

            day = earliest.date()
            while day <= latest.date():
                for system in buckets.get(day, ()):
                    if not earliest <= system.occurred_at <= latest:
                        continue
                    if (provider.id, system.id) in excluded:
                        continue
                    candidate = self.strategy.score(provider, system)
                    if candidate is not None:
                        scored.append(candidate)
                day += timedelta(days=1)

        return scored

    @staticmethod
    def resolve(candidates: Iterable[MatchCandidate]) -> list[MatchCandidate]:
        """Keep at most one candidate per transaction.

        Candidates are accepted best-first (confidence, |amount_diff|, time
        proximity, then ids). An accepted candidate records as ``rivals`` the
        opposite-side ids of equally-ranked alternatives that were still
        available when it won.
        """
        ordered = sorted(candidates, key=_candidate_order)

        by_provider: dict[int, list[MatchCandidate]] = defaultdict(list)
        by_system: dict[int, list[MatchCandidate]] = defaultdict(list)
        for candidate in ordered:
            by_provider[candidate.provider_tx_id].append(candidate)
            by_system[candidate.system_tx_id].append(candidate)

        used_providers: set[int] = set()
        used_systems: set[int] = set()
        accepted: list[MatchCandidate] = []

        for candidate in ordered:
            if candidate.provider_tx_id in used_providers or candidate.system_tx_id in used_systems:
                continue

            rivals: set[int] = set()
            for other in by_provider[candidate.provider_tx_id]:
                if (
                    other is not candidate
                    and other.rank_key == candidate.rank_key
                    and other.system_tx_id not in used_systems
                ):
                    rivals.add(other.system_tx_id)
            for other in by_system[candidate.system_tx_id]:
                if (
                    other is not candidate
                    and other.rank_key == candidate.rank_key
                    and other.provider_tx_id not in used_providers
                ):
                    rivals.add(other.provider_tx_id)

            used_providers.add(candidate.provider_tx_id)
            used_systems.add(candidate.system_tx_id)
            accepted.append(replace(candidate, rivals=tuple(sorted(rivals))))

        accepted.sort(key=lambda c: (c.provider_tx_id, c.system_tx_id))
        return accepted

    def __repr__(self) -> str:
        return f"<MatchingEngine(strategy={self.strategy!r})>"
