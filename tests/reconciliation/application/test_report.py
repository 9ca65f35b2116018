"""Tests for the reconciliation export."""

import csv
from decimal import Decimal
from io import StringIO

import pytest

from hotspotrecon.reconciliation.application.services import (
    ReconciliationLedger,
    ReconciliationReportService,
    StaticBillingPlanProvider,
)
from hotspotrecon.reconciliation.domain.enums import Confidence, TransactionSource
from hotspotrecon.reconciliation.domain.value_objects import REPORT_COLUMNS

pytestmark = pytest.mark.unit


@pytest.fixture
def ledger(db_session) -> ReconciliationLedger:
    return ReconciliationLedger(db_session, plans=StaticBillingPlanProvider(default_rate=Decimal("20")))


@pytest.fixture
def report(db_session) -> ReconciliationReportService:
    return ReconciliationReportService(db_session)


def parse(content: str) -> list[list[str]]:
    return list(csv.reader(StringIO(content)))


class TestReportRows:
    def test_approved_pair(self, ledger, report, provider_tx, system_tx):
        ledger.match_manually(provider_tx.id, system_tx.id, operator="alice")

        payment_row, order_row = report.rows("merchant-1")

        assert payment_row.counterpart_id == system_tx.id
        assert payment_row.confidence == Confidence.HIGH
        assert payment_row.amount_diff == Decimal("0")
        assert payment_row.commission is None
        assert order_row.counterpart_id == provider_tx.id
        assert order_row.commission == Decimal("100.00")

    def test_unpaired_transaction_has_empty_cells(self, report, provider_tx):
        (row,) = report.rows("merchant-1")

        assert row.as_cells() == [str(provider_tx.id), "", "", "500.00", "", ""]

    def test_released_pair_shows_net_zero_commission(self, ledger, report, provider_tx, system_tx):
        ledger.match_manually(provider_tx.id, system_tx.id, operator="alice")
        ledger.unmatch(provider_tx.id, operator="alice")

        payment_row, order_row = report.rows("merchant-1")

        assert payment_row.counterpart_id is None
        assert payment_row.confidence is None
        assert order_row.commission == Decimal("0.00")

    def test_suggestion_carries_amount_difference(self, ledger, report, make_transaction):
        payment = make_transaction(TransactionSource.PROVIDER, amount="1505.00")
        order = make_transaction(TransactionSource.SYSTEM, amount="1500.00")
        ledger.propose(payment.id, order.id)

        payment_row, order_row = report.rows("merchant-1")

        assert payment_row.confidence == Confidence.MEDIUM
        assert payment_row.amount_diff == Decimal("5.00")
        assert order_row.commission is None


class TestCsvExport:
    def test_header_is_fixed(self, report):
        assert parse(report.to_csv("merchant-1")) == [list(REPORT_COLUMNS)]

    def test_write_csv(self, ledger, report, provider_tx, system_tx, tmp_path):
        ledger.match_manually(provider_tx.id, system_tx.id, operator="alice")
        path = tmp_path / "exports" / "merchant-1.csv"

        rows = report.write_csv("merchant-1", path)

        assert rows == 2
        header, payment_row, order_row = parse(path.read_text(encoding="utf-8"))
        assert header == [
            "transaction_id",
            "counterpart_id",
            "confidence",
            "amount",
            "amount_diff",
            "commission",
        ]
        assert payment_row[:3] == [str(provider_tx.id), str(system_tx.id), "high"]
        assert order_row[-1] == "100.00"

    def test_other_merchants_are_excluded(self, report, make_transaction):
        make_transaction(TransactionSource.PROVIDER, merchant_id="merchant-2")

        assert report.rows("merchant-1") == []
