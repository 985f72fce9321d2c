"""
DealerLedger CLI — command-line interface.

Usage:
    dealerledger connect --user USER_ID
    dealerledger callback --user USER_ID --code CODE --state STATE
    dealerledger sync-vehicle ITEM_ID --user USER_ID
    dealerledger reverse A 42 --user USER_ID
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from dealerledger import __version__
from dealerledger.errors import DealerLedgerError

app = typer.Typer(
    name="dealerledger",
    help="DealerLedger — Fortnox bookkeeping for vehicle dealerships",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_config_option = typer.Option(
    "dealerledger.yaml",
    "--config",
    "-c",
    help="Path to config file",
)
_user_option = typer.Option(..., "--user", "-u", help="Acting user id")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]DealerLedger[/bold] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to the terminal"),
) -> None:
    """DealerLedger — connect to Fortnox, sync purchases, post corrections."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, rich_tracebacks=True)],
        )
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _ledger(config: str):
    from dealerledger.engine import DealerLedger

    config_path = config if Path(config).exists() else None
    return DealerLedger.from_config(config_path)


def _fail(error: Exception) -> None:
    if isinstance(error, DealerLedgerError):
        console.print(f"[red]✗ {error.user_message}[/red]")
        console.print(f"[dim]{error}[/dim]")
    else:
        console.print(f"[red]✗ {error}[/red]")
    raise typer.Exit(1)


@app.command()
def connect(user: str = _user_option, config: str = _config_option) -> None:
    """Print the Fortnox consent URL for a user."""
    ledger = _ledger(config)
    try:
        url = ledger.begin_authorization(user)
    except DealerLedgerError as e:
        _fail(e)
    console.print(Panel.fit(url, title="Open in a browser to connect Fortnox"))


@app.command()
def callback(
    user: str = _user_option,
    code: str = typer.Option(..., "--code", help="Authorization code from the redirect"),
    state: str = typer.Option(..., "--state", help="State from the redirect"),
    config: str = _config_option,
) -> None:
    """Complete the connection with the values Fortnox redirected back with."""
    ledger = _ledger(config)
    try:
        with console.status("[bold green]Connecting to Fortnox...[/bold green]"):
            credential = asyncio.run(ledger.complete_authorization(user, code, state))
    except DealerLedgerError as e:
        _fail(e)
    console.print(f"[green]✓[/green] Connected to [bold]{credential.company_name}[/bold]")


@app.command()
def status(user: str = _user_option, config: str = _config_option) -> None:
    """Show a user's Fortnox connection."""
    info = _ledger(config).connection_status(user)
    table = Table(title="Fortnox Connection", show_lines=True)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Connected", "✅ Yes" if info.connected else "❌ No")
    if info.connected:
        table.add_row("Company", info.company_name or "-")
        table.add_row("Registration number", info.company_id or "-")
        table.add_row("Connected since", f"{info.connected_since:%Y-%m-%d %H:%M}" if info.connected_since else "-")
        table.add_row("Token expires", f"{info.token_expires_at:%Y-%m-%d %H:%M}" if info.token_expires_at else "-")
    console.print(table)


@app.command()
def disconnect(user: str = _user_option, config: str = _config_option) -> None:
    """Deactivate a user's Fortnox credentials."""
    count = _ledger(config).disconnect(user)
    console.print(f"[green]✓[/green] Deactivated {count} credential(s)")


@app.command("sync-vehicle")
def sync_vehicle(
    item_id: str = typer.Argument(..., help="Inventory item id"),
    user: str = _user_option,
    vat: str = typer.Option(None, "--vat", help="Expected VAT treatment: VMB, MOMS, VMBI, MOMSI"),
    config: str = _config_option,
) -> None:
    """Book a vehicle purchase in Fortnox."""
    ledger = _ledger(config)
    try:
        with console.status("[bold green]Syncing purchase...[/bold green]"):
            result = asyncio.run(ledger.sync_vehicle(item_id, user, vat))
    except (DealerLedgerError, ValueError) as e:
        _fail(e)

    if result.already_synced:
        console.print(f"[yellow]Already synced[/yellow] (invoice {result.invoice_number})")
        return

    table = Table(title=f"Supplier invoice {result.invoice_number}")
    table.add_column("Account", style="bold cyan")
    table.add_column("Debit", justify="right")
    table.add_column("Credit", justify="right")
    table.add_column("Project")
    for row in result.rows:
        table.add_row(str(row.account), f"{row.debit:,.2f}", f"{row.credit:,.2f}", row.project or "")
    console.print(table)
    console.print(f"[green]✓[/green] Synced as {result.vat_treatment.value if result.vat_treatment else '-'}")


@app.command("sync-cost")
def sync_cost(
    cost_id: str = typer.Argument(..., help="Additional cost id"),
    user: str = _user_option,
    config: str = _config_option,
) -> None:
    """Book an additional cost (påkostnad) in Fortnox."""
    ledger = _ledger(config)
    try:
        result = asyncio.run(ledger.sync_additional_cost(cost_id, user))
    except (DealerLedgerError, ValueError) as e:
        _fail(e)
    if result.already_synced:
        console.print(f"[yellow]Already synced[/yellow] (invoice {result.invoice_number})")
    else:
        console.print(f"[green]✓[/green] Booked as supplier invoice {result.invoice_number}")


@app.command()
def reverse(
    series: str = typer.Argument(..., help="Voucher series, e.g. A"),
    number: str = typer.Argument(..., help="Voucher number"),
    user: str = _user_option,
    item: str = typer.Option(None, "--item", help="Inventory item whose documentation to attach"),
    correction_series: str = typer.Option(None, "--correction-series", help="Series for the correction"),
    config: str = _config_option,
) -> None:
    """Post a correction voucher that cancels SERIES-NUMBER."""
    ledger = _ledger(config)
    try:
        correction = asyncio.run(
            ledger.reverse_voucher(
                series, number, user, inventory_item_id=item, correction_series=correction_series
            )
        )
    except (DealerLedgerError, ValueError) as e:
        _fail(e)
    console.print(
        f"[green]✓[/green] {series}-{number} reversed by "
        f"[bold]{correction.correction_series}-{correction.correction_number}[/bold]"
    )
    if item and not correction.attachment_connected:
        console.print("[dim]Documentation could not be attached[/dim]")


@app.command("cleanup-states")
def cleanup_states(config: str = _config_option) -> None:
    """Delete expired OAuth states."""
    removed = _ledger(config).cleanup_expired_states()
    console.print(f"[green]✓[/green] Removed {removed} expired state(s)")


@app.command("migrate-tokens")
def migrate_tokens(config: str = _config_option) -> None:
    """Encrypt credential tokens still stored as plaintext."""
    try:
        migrated = _ledger(config).migrate_tokens()
    except DealerLedgerError as e:
        _fail(e)
    console.print(f"[green]✓[/green] Encrypted {migrated} credential(s)")


@app.command()
def accounts(user: str = _user_option, config: str = _config_option) -> None:
    """List the chart of accounts of the connected Fortnox company."""
    ledger = _ledger(config)
    try:
        rows = asyncio.run(ledger.list_accounts(user))
    except DealerLedgerError as e:
        _fail(e)

    table = Table(title="Chart of Accounts")
    table.add_column("Number", style="bold cyan")
    table.add_column("Description")
    table.add_column("Active")
    for account in rows:
        table.add_row(
            str(account.get("Number", "")),
            account.get("Description", ""),
            "✅" if account.get("Active", True) else "—",
        )
    console.print(table)


@app.command()
def suppliers(user: str = _user_option, config: str = _config_option) -> None:
    """List the suppliers registered in the connected Fortnox company."""
    ledger = _ledger(config)
    try:
        rows = asyncio.run(ledger.list_suppliers(user))
    except DealerLedgerError as e:
        _fail(e)

    table = Table(title="Suppliers")
    table.add_column("Number", style="bold cyan")
    table.add_column("Name")
    table.add_column("Organisation number")
    for supplier in rows:
        table.add_row(
            str(supplier.get("SupplierNumber", "")),
            supplier.get("Name", ""),
            supplier.get("OrganisationNumber", "") or "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
