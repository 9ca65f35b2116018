"""Main CLI entry point for hotspotrecon."""

import typer
from rich.console import Console

from hotspotrecon import __version__
from hotspotrecon.reconciliation import metrics
from hotspotrecon.utils.config import get_settings
from hotspotrecon.utils.logging import configure_from_settings

# Reconciliation commands live in the reconciliation package.
from ..reconciliation.cli import app as recon_app

app = typer.Typer(
    name="hotspotrecon",
    help="📶 Payment reconciliation & commission accounting for hotspot billing",
    add_completion=True,
    rich_markup_mode="rich",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]hotspotrecon[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """
    hotspotrecon - M-Pesa reconciliation, commission ledger and merchant payouts.
    """
    settings = get_settings()
    configure_from_settings(settings)

    if settings.metrics_enabled:
        metrics.start_metrics_server(settings.metrics_port)


app.add_typer(recon_app, name="recon", help="💸 Reconciliation, commission & payouts")


if __name__ == "__main__":
    app()
