"""Matching strategies and the matching engine."""

from .base import IMatcherStrategy
from .engine import MatchingEngine
from .signals import MatchingRules, SignalMatcher

__all__ = ["IMatcherStrategy", "MatchingEngine", "MatchingRules", "SignalMatcher"]
