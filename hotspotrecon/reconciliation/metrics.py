"""Prometheus metrics for the reconciliation back office.

Covers ingestion volume, matching outcomes, ledger transitions, commission
and payouts.
"""

from typing import Any

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from ..utils.logging import get_logger

logger = get_logger(__name__)

# ============================================================================
# Metric Definitions
# ============================================================================

transactions_ingested_total = Counter(
    "hotspotrecon_transactions_ingested_total",
    "Total number of transactions ingested",
    ["source", "status"],  # labels: provider/system, ingested/duplicate/with_issues
)

candidates_surfaced_total = Counter(
    "hotspotrecon_candidates_surfaced_total",
    "Match candidates surfaced by matching passes",
    ["confidence", "outcome"],  # labels: high/medium/low, auto_approved/suggested/ambiguous
)

ledger_transitions_total = Counter(
    "hotspotrecon_ledger_transitions_total",
    "Ledger state transitions applied",
    ["action", "origin"],  # labels: propose/approve/reject/unmatch, engine/auto/manual
)

stale_state_retries_total = Counter(
    "hotspotrecon_stale_state_retries_total",
    "Compare-and-swap transitions retried after losing a race",
)

commission_recorded_total = Counter(
    "hotspotrecon_commission_recorded_kes_total",
    "Commission appended to the ledger, in KES (reversals counted separately)",
    ["kind"],  # labels: accrual/reversal
)

payouts_total = Counter(
    "hotspotrecon_payouts_total",
    "Payout events by resulting status",
    ["status", "trigger"],  # labels: pending/completed/failed/rejected, manual/scheduled
)

review_queue_size = Gauge(
    "hotspotrecon_review_queue_size",
    "Suggested pairs awaiting operator review",
    ["merchant_id"],
)

match_pass_duration_seconds = Histogram(
    "hotspotrecon_match_pass_duration_seconds",
    "Time taken by one merchant matching pass",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)


# ============================================================================
# Metrics Server
# ============================================================================


def start_metrics_server(port: int = 8000) -> bool:
    """Start the Prometheus HTTP exporter.

    Returns:
        False when the port is already taken
    """
    try:
        start_http_server(port)
    except OSError as e:
        logger.warning("metrics_server_not_started", port=port, error=str(e))
        return False
    logger.info("metrics_server_started", port=port)
    return True


# ============================================================================
# Convenience Functions
# ============================================================================


def record_ingestion(source: str, status: str, count: int = 1) -> None:
    if count:
        transactions_ingested_total.labels(source=source, status=status).inc(count)


def record_candidate(confidence: str, outcome: str) -> None:
    candidates_surfaced_total.labels(confidence=confidence, outcome=outcome).inc()


def record_transition(action: str, origin: str = "manual") -> None:
    ledger_transitions_total.labels(action=action, origin=origin).inc()


def record_stale_retry(*_: Any) -> None:
    """Usable directly as a ``retry_sync`` ``on_retry`` callback."""
    stale_state_retries_total.inc()


def record_commission(kind: str, amount: Any) -> None:
    commission_recorded_total.labels(kind=kind).inc(abs(float(amount)))


def record_payout(status: str, trigger: str = "manual") -> None:
    payouts_total.labels(status=status, trigger=trigger).inc()


def update_review_queue_size(merchant_id: str, count: int) -> None:
    review_queue_size.labels(merchant_id=merchant_id).set(count)
