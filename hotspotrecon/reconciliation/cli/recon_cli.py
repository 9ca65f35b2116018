"""Reconciliation CLI commands.

Ingestion, matching passes, the operator review queue, commission history
and merchant payouts.
"""

import json
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table
from sqlalchemy.orm import Session

from ...exceptions import HotspotReconError
from ...storage.database import base as database
from ...storage.session import db_session
from ...utils.config import get_settings
from ...utils.logging import get_logger
from ..application.services import (
    CommissionService,
    IngestionService,
    MatchingService,
    PayoutAggregator,
    ReconciliationLedger,
    ReconciliationReportService,
    reconcile_merchants,
)
from ..domain.enums import Confidence, PayoutMethod, PayoutSchedule, PayoutStatus
from ..domain.value_objects import ProviderPaymentRecord, SystemOrderRecord, ordered_signals
from ..infrastructure.payloads import from_payload

app = typer.Typer(name="recon", help="💸 Payment reconciliation, commission & payouts")
console = Console()
logger = get_logger(__name__)

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]


def _ensure_db() -> None:
    """Initialize the configured database on first use."""
    if database.SessionLocal is None:
        settings = get_settings()
        if settings.database_url is None:
            settings.data_dir.mkdir(parents=True, exist_ok=True)
        database.init_db(settings.resolved_database_url)


@contextmanager
def _session() -> Generator[Session, None, None]:
    _ensure_db()
    with db_session() as session:
        yield session


def _fail(error: Exception | str) -> typer.Exit:
    console.print(f"[red]✗ {error}[/]")
    return typer.Exit(1)


def _load_json_list(path: Path) -> list[dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise _fail(f"{path.name} is not valid JSON: {e}")
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise _fail(f"{path.name} must contain a JSON object or a list of objects")
    return data


def _money(value: Decimal | None) -> str:
    return "-" if value is None else f"KES {value:,.2f}"


# ============================================================================
# Ingestion
# ============================================================================


@app.command("ingest-provider")
def ingest_provider(
    file_path: Path = typer.Argument(..., help="JSON file of payments", exists=True),
    merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID"),
):
    """📥 Ingest confirmed M-Pesa payments.

    Accepts C2B confirmations, STK callbacks or already flattened records
    (receipt, amount, phone, reference, confirmed_at).

    Examples:
        hotspotrecon recon ingest-provider payments.json --merchant m-1
    """
    records: list[ProviderPaymentRecord] = []
    skipped = 0
    try:
        for item in _load_json_list(file_path):
            if "TransID" in item or "Body" in item:
                record = from_payload(merchant_id, item)
            else:
                record = ProviderPaymentRecord.model_validate({**item, "merchant_id": merchant_id})
            if record is None:
                skipped += 1
                continue
            records.append(record)
    except (HotspotReconError, PydanticValidationError) as e:
        raise _fail(e)

    with _session() as session:
        result = IngestionService(session).ingest_provider(records)

    _print_ingest(result, skipped)


@app.command("ingest-orders")
def ingest_orders(
    file_path: Path = typer.Argument(..., help="JSON file of orders", exists=True),
    merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID"),
):
    """📥 Ingest internal orders (vouchers, PPPoE cycles, subscriptions).

    Examples:
        hotspotrecon recon ingest-orders orders.json --merchant m-1
    """
    try:
        records = [
            SystemOrderRecord.model_validate({**item, "merchant_id": merchant_id})
            for item in _load_json_list(file_path)
        ]
    except PydanticValidationError as e:
        raise _fail(e)

    with _session() as session:
        result = IngestionService(session).ingest_system(records)

    _print_ingest(result)


def _print_ingest(result, skipped: int = 0) -> None:
    table = Table(title="📊 Ingestion Results", show_header=True)
    table.add_column("Metric", style="cyan", width=20)
    table.add_column("Count", justify="right", style="bold")
    table.add_row("✅ Ingested", f"[green]{result.ingested}[/]")
    table.add_row("🔁 Duplicates", f"[yellow]{result.duplicates}[/]")
    table.add_row("⚠️  With issues", f"[red]{result.with_issues}[/]")
    if skipped:
        table.add_row("⏭️  Not paid", f"[dim]{skipped}[/]")
    console.print(table)

    for issue in result.issues[:10]:
        console.print(f"  [dim]• {issue}[/]")
    if len(result.issues) > 10:
        console.print(f"  [dim]... and {len(result.issues) - 10} more[/]")


# ============================================================================
# Matching & review
# ============================================================================


@app.command()
def match(
    merchant_id: Optional[str] = typer.Option(None, "--merchant", "-m", help="Merchant ID (default: all)"),
    auto_approve: Optional[bool] = typer.Option(None, "--auto-approve/--suggest-only"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show candidates without applying them"),
    workers: int = typer.Option(4, "--workers", "-w", min=1, max=32),
):
    """🔗 Run a matching pass.

    Safe to re-run: pairs already surfaced are not proposed again.
    Commission follows each merchant's plan in BILLING_PLAN_ASSIGNMENTS.

    Examples:
        hotspotrecon recon match --merchant m-1
        hotspotrecon recon match --suggest-only
        hotspotrecon recon match --merchant m-1 --dry-run
    """
    if dry_run:
        if merchant_id is None:
            raise _fail("--dry-run needs --merchant")
        with _session() as session:
            candidates = MatchingService(session).preview(merchant_id)
        table = Table(title=f"🔍 Candidates ({len(candidates)})")
        table.add_column("Provider", justify="right")
        table.add_column("System", justify="right")
        table.add_column("Confidence")
        table.add_column("Signals", style="dim")
        table.add_column("Diff", justify="right")
        table.add_column("Flags", style="yellow")
        for c in candidates:
            flags = "auto" if c.auto_approvable else ("ambiguous" if c.ambiguous else "")
            table.add_row(
                str(c.provider_tx_id),
                str(c.system_tx_id),
                c.confidence.value,
                ", ".join(ordered_signals(c.matched_by)),
                "-" if c.amount_diff is None else str(c.amount_diff),
                flags,
            )
        console.print(table)
        return

    if merchant_id is not None:
        with _session() as session:
            results = {merchant_id: MatchingService(session).run_pass(merchant_id, auto_approve=auto_approve)}
    else:
        _ensure_db()
        results = reconcile_merchants(
            database.get_session, max_workers=workers, auto_approve=auto_approve
        )

    table = Table(title="🔗 Matching Results")
    table.add_column("Merchant", style="cyan")
    table.add_column("Auto-approved", justify="right", style="green")
    table.add_column("Suggested", justify="right", style="yellow")
    table.add_column("Ambiguous", justify="right", style="magenta")
    table.add_column("Conflicts", justify="right", style="dim")
    table.add_column("Errors", justify="right", style="red")
    for merchant, result in results.items():
        table.add_row(
            merchant,
            str(result.auto_approved),
            str(result.suggested),
            str(result.ambiguous),
            str(result.conflicts),
            str(len(result.errors)),
        )
    console.print(table)


@app.command()
def queue(
    merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID"),
    confidence: Optional[Confidence] = typer.Option(None, "--confidence", "-c"),
):
    """📋 Suggested pairs awaiting operator review.

    Examples:
        hotspotrecon recon queue --merchant m-1
        hotspotrecon recon queue --merchant m-1 --confidence medium
    """
    with _session() as session:
        entries = ReconciliationLedger(session).list_suggested(merchant_id, confidence)

        if not entries:
            console.print("[green]✅ Nothing to review[/]")
            return

        table = Table(title=f"📋 Review Queue ({len(entries)} items)")
        table.add_column("Provider", justify="right")
        table.add_column("System", justify="right")
        table.add_column("Amount", justify="right", style="green")
        table.add_column("Phone")
        table.add_column("Confidence")
        table.add_column("Signals", style="dim")
        table.add_column("Diff", justify="right")
        table.add_column("⚠", style="yellow")
        for entry in entries:
            table.add_row(
                str(entry.provider_tx_id),
                str(entry.system_tx_id),
                _money(entry.provider_tx.amount),
                entry.provider_tx.phone or "-",
                entry.confidence.value,
                ", ".join(entry.matched_by),
                "-" if entry.amount_diff is None else str(entry.amount_diff),
                "ambiguous" if entry.ambiguous else "",
            )
        console.print(table)


@app.command()
def approve(
    provider_id: int = typer.Argument(..., help="Provider transaction ID"),
    system_id: int = typer.Argument(..., help="System transaction ID"),
    operator: str = typer.Option("operator", "--operator", "-o", envvar="HOTSPOTRECON_OPERATOR"),
):
    """✅ Approve a suggested pair (books commission)."""
    with _session() as session:
        try:
            entry = ReconciliationLedger(session).approve(provider_id, system_id, operator=operator)
        except HotspotReconError as e:
            raise _fail(e)
        console.print(f"[green]✅ Pair {provider_id} ↔ {system_id} approved[/] (match #{entry.id})")


@app.command()
def reject(
    provider_id: int = typer.Argument(..., help="Provider transaction ID"),
    system_id: int = typer.Argument(..., help="System transaction ID"),
    operator: str = typer.Option("operator", "--operator", "-o", envvar="HOTSPOTRECON_OPERATOR"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
):
    """❌ Reject a pair; it will not be proposed again."""
    with _session() as session:
        try:
            entry = ReconciliationLedger(session).reject(provider_id, system_id, operator, notes)
        except HotspotReconError as e:
            raise _fail(e)
    if entry is None:
        console.print("[dim]Pair was not paired, nothing to do[/]")
    else:
        console.print(f"[yellow]⏭️  Pair {provider_id} ↔ {system_id} rejected[/]")


@app.command()
def unmatch(
    transaction_id: int = typer.Argument(..., help="Transaction ID (either side)"),
    operator: str = typer.Option("operator", "--operator", "-o", envvar="HOTSPOTRECON_OPERATOR"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
):
    """↩️  Release the pair a transaction belongs to."""
    with _session() as session:
        try:
            entry = ReconciliationLedger(session).unmatch(transaction_id, operator, notes)
        except HotspotReconError as e:
            raise _fail(e)
    if entry is None:
        console.print(f"[dim]Transaction {transaction_id} is already unmatched[/]")
    else:
        console.print(f"[yellow]↩️  Match #{entry.id} released[/]")


@app.command("manual-match")
def manual_match(
    provider_id: int = typer.Argument(..., help="Provider transaction ID"),
    system_id: int = typer.Argument(..., help="System transaction ID"),
    operator: str = typer.Option("operator", "--operator", "-o", envvar="HOTSPOTRECON_OPERATOR"),
    approve_pair: bool = typer.Option(True, "--approve/--suggest-only"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
):
    """🤝 Pair two transactions by hand."""
    with _session() as session:
        try:
            entry = ReconciliationLedger(session).match_manually(
                provider_id, system_id, operator, approve=approve_pair, notes=notes
            )
        except HotspotReconError as e:
            raise _fail(e)
        console.print(
            f"[green]✅ Pair {provider_id} ↔ {system_id} {entry.status.value}[/] "
            f"(confidence {entry.confidence.value})"
        )


@app.command()
def stats(merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID")):
    """📊 Reconciliation statistics."""
    with _session() as session:
        s = ReconciliationLedger(session).stats(merchant_id)

    table = Table(title=f"📊 Reconciliation: {merchant_id}")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right", style="cyan")
    table.add_row("Provider transactions", str(s.total_provider))
    table.add_row("System transactions", str(s.total_system))
    table.add_row("✅ Reconciled", str(s.reconciled))
    table.add_row("💡 Suggested", str(s.suggested))
    table.add_row("🔍 Unmatched (provider)", str(s.unmatched_provider))
    table.add_row("🔍 Unmatched (system)", str(s.unmatched_system))
    table.add_row("⚠️  Discrepancies", str(s.discrepancies))
    table.add_row("High confidence", str(s.high_confidence))
    table.add_row("━" * 22, "━" * 8)
    table.add_row("[bold]Reconciliation rate", f"[bold]{s.reconciliation_rate:.1f}%")
    console.print(table)


# ============================================================================
# Commission & payouts
# ============================================================================


@app.command()
def commissions(
    merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID"),
    monthly: bool = typer.Option(False, "--monthly", help="Show monthly totals instead of lines"),
):
    """🧾 Commission history (append-only, reversals included)."""
    with _session() as session:
        service = CommissionService(session)

        if monthly:
            table = Table(title="🧾 Commission by Month")
            table.add_column("Period", style="cyan")
            table.add_column("Sales", justify="right")
            table.add_column("Commission", justify="right", style="green")
            table.add_column("Transactions", justify="right")
            for summary in service.period_summaries(merchant_id):
                table.add_row(
                    summary.label,
                    _money(summary.total_sales),
                    _money(summary.total_commission),
                    str(summary.transaction_count),
                )
            console.print(table)
            return

        table = Table(title="🧾 Commission Ledger")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Date")
        table.add_column("Match", justify="right")
        table.add_column("Kind")
        table.add_column("Plan")
        table.add_column("Rate", justify="right")
        table.add_column("Base", justify="right")
        table.add_column("Amount", justify="right", style="green")
        for record in service.history(merchant_id):
            table.add_row(
                str(record.id),
                record.earned_at.strftime("%Y-%m-%d %H:%M"),
                str(record.match_id),
                record.kind.value,
                record.plan_code,
                f"{record.rate}%",
                _money(record.base_amount),
                _money(record.amount),
            )
        console.print(table)
        console.print(f"[bold]Net commission:[/] {_money(service.net_commission(merchant_id))}")


@app.command()
def balance(merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID")):
    """💰 Withdrawable balance."""
    with _session() as session:
        summary = PayoutAggregator(session).balance_summary(merchant_id)

    table = Table(title=f"💰 Balance: {merchant_id}")
    table.add_column("Metric", style="bold")
    table.add_column("Amount", justify="right", style="cyan")
    table.add_row("Total earned", _money(summary.total_earned))
    table.add_row("Total paid", _money(summary.total_paid))
    table.add_row("Withdrawable", _money(summary.withdrawable))
    table.add_row("Pending payouts", _money(summary.pending_payouts))
    table.add_row("Available", _money(summary.available))
    table.add_row("Minimum threshold", _money(summary.min_threshold))
    console.print(table)
    if not summary.meets_threshold:
        console.print("[yellow]Balance is below the minimum payout threshold[/]")


@app.command("payout-settings")
def payout_settings(
    merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Minimum payout (KES)"),
    schedule: Optional[PayoutSchedule] = typer.Option(None, "--schedule"),
    method: Optional[PayoutMethod] = typer.Option(None, "--method"),
    auto_payouts: Optional[bool] = typer.Option(None, "--auto/--no-auto"),
    mpesa_number: Optional[str] = typer.Option(None, "--mpesa"),
    bank_account_name: Optional[str] = typer.Option(None, "--bank-account-name"),
    bank_account_number: Optional[str] = typer.Option(None, "--bank-account-number"),
    bank_name: Optional[str] = typer.Option(None, "--bank-name"),
    bank_branch_code: Optional[str] = typer.Option(None, "--bank-branch"),
):
    """⚙️  Payout preferences."""
    with _session() as session:
        try:
            settings = PayoutAggregator(session).update_settings(
                merchant_id,
                min_threshold=Decimal(str(threshold)) if threshold is not None else None,
                schedule=schedule,
                auto_payouts=auto_payouts,
                method=method,
                mpesa_number=mpesa_number,
                bank_account_name=bank_account_name,
                bank_account_number=bank_account_number,
                bank_name=bank_name,
                bank_branch_code=bank_branch_code,
            )
        except HotspotReconError as e:
            raise _fail(e)
        console.print(
            f"[green]✅ Settings saved[/]: threshold {_money(settings.min_threshold)}, "
            f"{settings.schedule.value}, {settings.method.value}, "
            f"auto payouts {'on' if settings.auto_payouts else 'off'}"
        )


@app.command("payout-request")
def payout_request(
    merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID"),
    amount: Optional[float] = typer.Option(None, "--amount", "-a", help="Amount (default: all available)"),
    method: Optional[PayoutMethod] = typer.Option(None, "--method"),
):
    """📤 Request a payout."""
    with _session() as session:
        try:
            payout = PayoutAggregator(session).request_payout(
                merchant_id,
                amount=Decimal(str(amount)) if amount is not None else None,
                method=method,
            )
        except HotspotReconError as e:
            raise _fail(e)
        console.print(
            f"[green]✅ Payout #{payout.id} requested[/]: {_money(payout.amount)} "
            f"via {payout.method.value} (pending disbursement)"
        )


@app.command("payout-processing")
def payout_processing(
    payout_id: int = typer.Argument(..., help="Payout ID"),
    reference: Optional[str] = typer.Option(None, "--reference", "-r"),
):
    """⏳ Mark a payout as accepted by the payment rail."""
    with _session() as session:
        try:
            PayoutAggregator(session).mark_processing(payout_id, reference)
        except HotspotReconError as e:
            raise _fail(e)
    console.print(f"[cyan]⏳ Payout #{payout_id} processing[/]")


@app.command("payout-confirm")
def payout_confirm(
    payout_id: int = typer.Argument(..., help="Payout ID"),
    success: bool = typer.Option(True, "--success/--failed"),
    reference: Optional[str] = typer.Option(None, "--reference", "-r"),
    reason: Optional[str] = typer.Option(None, "--reason"),
):
    """📬 Record the disbursement outcome. Duplicates are ignored."""
    with _session() as session:
        try:
            applied = PayoutAggregator(session).handle_disbursement_callback(
                payout_id, success, reference=reference, reason=reason
            )
        except HotspotReconError as e:
            raise _fail(e)
    if not applied:
        console.print(f"[yellow]Payout #{payout_id} was already settled, confirmation ignored[/]")
    elif success:
        console.print(f"[green]✅ Payout #{payout_id} completed[/]")
    else:
        console.print(f"[red]✗ Payout #{payout_id} failed[/], balance unchanged")


@app.command()
def payouts(
    merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID"),
    status: Optional[PayoutStatus] = typer.Option(None, "--status", "-s"),
):
    """📜 Payout history."""
    with _session() as session:
        aggregator = PayoutAggregator(session)
        items = aggregator.list_payouts(merchant_id, status)

        table = Table(title=f"📜 Payouts ({len(items)})")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Requested")
        table.add_column("Period")
        table.add_column("Amount", justify="right", style="green")
        table.add_column("Method")
        table.add_column("Status")
        table.add_column("Trigger", style="dim")
        table.add_column("Reference")
        for payout in items:
            table.add_row(
                str(payout.id),
                payout.created_at.strftime("%Y-%m-%d %H:%M"),
                payout.period_label,
                _money(payout.amount),
                payout.method.value,
                payout.status.value,
                payout.trigger.value,
                payout.disbursement_reference or payout.failure_reason or "-",
            )
        console.print(table)

        summary = aggregator.payout_summary(merchant_id)
        console.print(
            " • ".join(
                f"{s.value}: {summary.counts[s]} ({_money(summary.amounts[s])})" for s in PayoutStatus
            )
        )


@app.command("scheduled-payouts")
def scheduled_payouts(
    at: Optional[datetime] = typer.Option(None, "--at", formats=DATE_FORMATS, help="Run as of (UTC)"),
):
    """🗓️  Request payouts for merchants whose schedule is due."""
    with _session() as session:
        outcomes = PayoutAggregator(session).run_scheduled_payouts(now=at)

    table = Table(title="🗓️  Scheduled Payouts")
    table.add_column("Merchant", style="cyan")
    table.add_column("Outcome")
    table.add_column("Payout", justify="right")
    table.add_column("Reason", style="dim")
    for outcome in outcomes:
        table.add_row(
            outcome.merchant_id,
            outcome.outcome,
            str(outcome.payout_id) if outcome.payout_id else "-",
            outcome.reason or "",
        )
    console.print(table)


@app.command()
def export(
    merchant_id: str = typer.Option(..., "--merchant", "-m", help="Merchant ID"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="CSV file (default: stdout)"),
):
    """📤 Export the reconciliation report as CSV."""
    with _session() as session:
        report = ReconciliationReportService(session)
        if output is None:
            typer.echo(report.to_csv(merchant_id), nl=False)
            return
        rows = report.write_csv(merchant_id, output)
    console.print(f"[green]✅ {rows} rows written to {output}[/]")


if __name__ == "__main__":
    app()
