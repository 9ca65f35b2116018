"""Batch matching passes.

A pass reads one merchant's unmatched pool, asks the engine for candidates
and applies each one through the ledger in its own unit of work. The pass is
safe to re-trigger: surfaced pairs leave the unmatched pool, so a second run
over an unchanged pool finds nothing new.

Lost compare-and-swap races are retried a bounded number of times against
the post-race state. Everything else is recorded on the affected
transactions and reported in the ``MatchRunResult``.
"""

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime

from sqlalchemy.orm import Session

from ....exceptions import HotspotReconError, TransactionAlreadyMatched
from ....storage.session import unit_of_work
from ....utils.config import Settings, get_settings
from ....utils.logging import LogPerformance, correlation_scope, get_logger
from ....utils.retry import STALE_STATE_RETRY, retry_sync
from ... import metrics
from ...domain.enums import MatchStatus, TransactionSource
from ...domain.value_objects import MatchCandidate, MatchRunResult
from ...infrastructure.repository import MatchRepository, TransactionRepository
from ...matchers.engine import MatchingEngine
from ...matchers.signals import MatchingRules
from .commission import BillingPlanProvider
from .ledger import ReconciliationLedger

logger = get_logger(__name__)

_merchant_locks: dict[str, threading.Lock] = {}
_merchant_locks_guard = threading.Lock()


def merchant_lock(merchant_id: str) -> threading.Lock:
    """In-process lock scoped to one merchant's transaction pool."""
    with _merchant_locks_guard:
        return _merchant_locks.setdefault(merchant_id, threading.Lock())


class MatchingService:
    """Run matching passes for a merchant.

    Example:
        >>> with db_session() as session:
        ...     result = MatchingService(session).run_pass("merchant-1")
        >>> result.auto_approved, result.suggested
        (12, 3)
    """

    def __init__(
        self,
        session: Session,
        settings: Settings | None = None,
        plans: BillingPlanProvider | None = None,
        engine: MatchingEngine | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.rules = MatchingRules.from_settings(self.settings)
        self.engine = engine or MatchingEngine(rules=self.rules)
        self.ledger = ReconciliationLedger(session, plans=plans, rules=self.rules)
        self.transactions = TransactionRepository(session)
        self.matches = MatchRepository(session)
        self.retry_config = STALE_STATE_RETRY.with_retries(self.settings.match_stale_retries)

    def preview(
        self,
        merchant_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[MatchCandidate]:
        """Candidates a pass would apply, without writing anything."""
        providers = self.transactions.find_unmatched(
            merchant_id, TransactionSource.PROVIDER, since=since, until=until
        )
        systems = self.transactions.find_unmatched(
            merchant_id,
            TransactionSource.SYSTEM,
            since=since - self.rules.search_window if since else None,
            until=until + self.rules.max_time_skew if until else None,
        )
        return self.engine.find_candidates(
            providers, systems, excluded_pairs=self.matches.rejected_pairs(merchant_id)
        )

    def run_pass(
        self,
        merchant_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        auto_approve: bool | None = None,
        cancel: Callable[[], bool] | None = None,
    ) -> MatchRunResult:
        """Match one merchant's unmatched pool.

        Args:
            merchant_id: Merchant whose pool is matched
            since: Only provider payments confirmed at or after this time
            until: Only provider payments confirmed at or before this time
            auto_approve: Overrides ``match_auto_approve`` from settings
            cancel: Polled between candidates; returning True stops the pass
                (already applied candidates stay applied)
        """
        auto_approve = self.settings.match_auto_approve if auto_approve is None else auto_approve
        result = MatchRunResult(merchant_id=merchant_id)

        with correlation_scope(), merchant_lock(merchant_id):
            with LogPerformance("match_pass", logger, merchant_id=merchant_id):
                with metrics.match_pass_duration_seconds.time():
                    result.candidates = self.preview(merchant_id, since, until)

                    for candidate in result.candidates:
                        if cancel is not None and cancel():
                            result.cancelled = True
                            logger.info("match_pass_cancelled", merchant_id=merchant_id)
                            break
                        self._apply(candidate, auto_approve, result)

            metrics.update_review_queue_size(
                merchant_id, len(self.matches.list_by_status(merchant_id, MatchStatus.SUGGESTED))
            )
            logger.info("match_pass_summary", **{k: v for k, v in result.to_dict().items() if k != "errors"})
        return result

    def _apply(self, candidate: MatchCandidate, auto_approve: bool, result: MatchRunResult) -> None:
        def on_retry(error: Exception, attempt: int) -> None:
            result.stale_retries += 1
            metrics.record_stale_retry()

        try:
            match = retry_sync(
                lambda: self.ledger.apply_candidate(candidate, auto_approve=auto_approve),
                config=self.retry_config,
                on_retry=on_retry,
            )
        except TransactionAlreadyMatched as e:
            # Claimed by a concurrent pass or operator; the pair is no longer available.
            result.conflicts += 1
            logger.info("candidate_conflict", **e.context)
            return
        except HotspotReconError as e:
            result.errors.append({**candidate.to_dict(), "error": e.code, "message": e.message})
            self._record_failure(candidate, e)
            return

        confidence = candidate.confidence.value
        if match.status == MatchStatus.APPROVED:
            result.auto_approved += 1
            metrics.record_candidate(confidence, "auto_approved")
        else:
            result.suggested += 1
            metrics.record_candidate(confidence, "ambiguous" if candidate.ambiguous else "suggested")
        if candidate.ambiguous:
            result.ambiguous += 1

    def _record_failure(self, candidate: MatchCandidate, error: HotspotReconError) -> None:
        """Keep the failure discoverable on both transactions."""
        with unit_of_work(self.session):
            for tx_id in (candidate.provider_tx_id, candidate.system_tx_id):
                tx = self.transactions.get(tx_id)
                if tx is not None:
                    tx.record_issue(error)
        logger.warning(
            "candidate_failed",
            provider_tx_id=candidate.provider_tx_id,
            system_tx_id=candidate.system_tx_id,
            error=error.code,
            message=error.message,
        )


def reconcile_merchants(
    session_factory: Callable[[], Session],
    merchant_ids: Iterable[str] | None = None,
    max_workers: int = 4,
    plans: BillingPlanProvider | None = None,
    **pass_kwargs,
) -> dict[str, MatchRunResult]:
    """Run one pass per merchant in parallel, one session per merchant.

    ``plans`` is shared by every pass and must be safe to read from several
    threads. Without it each pass uses the configured static catalogue.

    Merchants share no mutable state, so their passes never contend on the
    ledger.
    """
    if merchant_ids is None:
        session = session_factory()
        try:
            merchant_ids = TransactionRepository(session).merchant_ids()
        finally:
            session.close()
    merchant_ids = list(merchant_ids)

    def run(merchant_id: str) -> MatchRunResult:
        session = session_factory()
        try:
            return MatchingService(session, plans=plans).run_pass(merchant_id, **pass_kwargs)
        finally:
            session.close()

    results: dict[str, MatchRunResult] = {}
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = {pool.submit(run, merchant_id): merchant_id for merchant_id in merchant_ids}
        for future in as_completed(futures):
            merchant_id = futures[future]
            try:
                results[merchant_id] = future.result()
            except Exception as e:
                logger.error(
                    "merchant_pass_failed",
                    merchant_id=merchant_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                failed = MatchRunResult(merchant_id=merchant_id)
                failed.errors.append({"error": type(e).__name__, "message": str(e)})
                results[merchant_id] = failed

    return dict(sorted(results.items()))
