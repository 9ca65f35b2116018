"""Application services for reconciliation, commission and payouts.

Service Layer Pattern: each public command is one unit of work.
"""

__all__ = [
    "BillingPlanProvider",
    "CommissionCalculator",
    "CommissionService",
    "IngestionService",
    "MatchingService",
    "PayoutAggregator",
    "ReconciliationLedger",
    "ReconciliationReportService",
    "StaticBillingPlanProvider",
    "calculate_commission",
    "reconcile_merchants",
]

from .commission import (
    BillingPlanProvider,
    CommissionCalculator,
    CommissionService,
    StaticBillingPlanProvider,
    calculate_commission,
)
from .ingestion import IngestionService
from .ledger import ReconciliationLedger
from .matching_service import MatchingService, reconcile_merchants
from .payout import PayoutAggregator
from .report import ReconciliationReportService
