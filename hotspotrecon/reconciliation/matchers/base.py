"""Base interface for pairwise matching strategies.

Implements the Strategy pattern so the matching engine can score a
provider/system pair with interchangeable algorithms.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..domain.models import Transaction
    from ..domain.value_objects import MatchCandidate


class IMatcherStrategy(ABC):
    """Abstract base class for pairwise matching strategies.

    A strategy looks at exactly one provider transaction and one system
    transaction and either returns a ``MatchCandidate`` or ``None`` when the
    pair is noise. Strategies must be pure: the same two transactions always
    produce the same result, which keeps matching passes deterministic.

    Implementing a new strategy:
        1. Inherit from IMatcherStrategy
        2. Implement score()
        3. Return None for pairs that must never be surfaced
    """

    @abstractmethod
    def score(self, provider: "Transaction", system: "Transaction") -> "MatchCandidate | None":
        """Score one provider/system pair.

        Args:
            provider: Transaction with source PROVIDER
            system: Transaction with source SYSTEM

        Returns:
            A candidate carrying the agreeing signals, or None
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
