"""Tabular reconciliation export.

One row per transaction of a merchant, columns always present and always in
this order::

    transaction_id, counterpart_id, confidence, amount, amount_diff, commission

Unpaired transactions carry empty cells for counterpart, confidence and
amount_diff. ``commission`` is the net commission booked on the system side
(accruals plus reversals).
"""

import csv
from io import StringIO
from pathlib import Path

from sqlalchemy.orm import Session

from ....utils.logging import get_logger
from ...infrastructure.repository import (
    CommissionRepository,
    MatchRepository,
    TransactionRepository,
)
from ...domain.value_objects import REPORT_COLUMNS, ReportRow

logger = get_logger(__name__)


class ReconciliationReportService:
    """Build the reconciliation report for one merchant."""

    def __init__(self, session: Session):
        self.transactions = TransactionRepository(session)
        self.matches = MatchRepository(session)
        self.commissions = CommissionRepository(session)

    def rows(self, merchant_id: str) -> list[ReportRow]:
        commission_by_tx = self.commissions.net_by_transaction(merchant_id)
        rows: list[ReportRow] = []

        for tx in self.transactions.find_by_merchant(merchant_id):
            match = self.matches.find_open_for(tx.id) if tx.counterpart_id is not None else None
            commission = None
            if not tx.is_provider and tx.id in commission_by_tx:
                commission = commission_by_tx[tx.id]
            rows.append(
                ReportRow(
                    transaction_id=tx.id,
                    counterpart_id=tx.counterpart_id,
                    confidence=match.confidence if match else None,
                    amount=tx.amount,
                    amount_diff=match.amount_diff if match else None,
                    commission=commission,
                )
            )
        return rows

    def to_csv(self, merchant_id: str) -> str:
        output = StringIO()
        writer = csv.writer(output)
        writer.writerow(REPORT_COLUMNS)
        for row in self.rows(merchant_id):
            writer.writerow(row.as_cells())
        return output.getvalue()

    def write_csv(self, merchant_id: str, path: Path) -> int:
        """Write the report to ``path``; returns the number of data rows."""
        content = self.to_csv(merchant_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        row_count = max(0, content.count("\n") - 1)
        logger.info("reconciliation_report_exported", merchant_id=merchant_id, path=str(path), rows=row_count)
        return row_count
