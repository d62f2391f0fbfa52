"""
Command-line interface for the bank feed reconciliation engine.
"""

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional
import sys

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import generate_default_config, load_config
from .engine import ReconEngine
from .models.connection import FlowState
from .models.matching import CandidateType, Direction, MatchSelection
from .utils.exceptions import BankReconError
from .utils.logging_config import setup_logging

console = Console()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "-c",
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option(
    "--org",
    "organization_id",
    envvar="BANK_RECON_ORG",
    default="default",
    show_default=True,
    help="Organization the command acts for",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, config: Optional[Path], organization_id: str, verbose: bool):
    """Bank statement import, bank feed sync and reconciliation."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["organization_id"] = organization_id
    ctx.obj["verbose"] = verbose


def _engine(ctx: click.Context) -> ReconEngine:
    """Load configuration, configure logging and build a ready engine."""
    recon_config = load_config(ctx.obj["config_path"])
    setup_logging(recon_config.logging, verbose=ctx.obj["verbose"])

    engine = ReconEngine(recon_config)
    engine.initialize()
    return engine


def _fail(ctx: click.Context, error: Exception) -> None:
    console.print(f"[red]Error: {error}[/red]")
    if ctx.obj.get("verbose"):
        console.print_exception()
    sys.exit(1)


def _money(amount: Optional[Decimal]) -> str:
    return f"{amount:,.2f}" if amount is not None else "-"


def _shorten(text: Optional[str], width: int = 40) -> str:
    text = text or "-"
    return text[:width] + "..." if len(text) > width else text


# Setup


@main.command("init-config")
@click.option(
    "-o", "--output", type=click.Path(path_type=Path), default=Path("config.yaml")
)
def init_config(output: Path):
    """Generate a sample configuration file."""
    generate_default_config(output)
    console.print(f"[green]Configuration file generated: {output}[/green]")


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create the database schema."""
    try:
        engine = _engine(ctx)
        if not engine.database.check_connection():
            raise BankReconError("Database is not reachable")
        console.print("[green]Database schema is ready[/green]")
    except BankReconError as e:
        _fail(ctx, e)


@main.command("add-account")
@click.argument("name")
@click.option("--currency", default="EUR", show_default=True)
@click.option("--number", "account_number", default=None, help="IBAN or account number")
@click.option("--opening-balance", default="0", show_default=True)
@click.pass_context
def add_account(
    ctx: click.Context,
    name: str,
    currency: str,
    account_number: Optional[str],
    opening_balance: str,
):
    """Create a bank account."""
    try:
        engine = _engine(ctx)
        account = engine.store.create_account(
            ctx.obj["organization_id"],
            name,
            currency,
            account_number,
            _decimal(opening_balance),
        )
        console.print(f"[green]Created account {account.id}: {account.name}[/green]")
    except BankReconError as e:
        _fail(ctx, e)


@main.command("accounts")
@click.pass_context
def accounts(ctx: click.Context):
    """List bank accounts and their balances."""
    try:
        engine = _engine(ctx)
        organization_id = ctx.obj["organization_id"]
        table = Table(title=f"Bank Accounts: {organization_id}")
        table.add_column("ID", justify="right")
        table.add_column("Name")
        table.add_column("Currency")
        table.add_column("Number")
        table.add_column("Feed")
        table.add_column("Balance", justify="right")

        for account in engine.store.list_accounts(organization_id):
            balance = engine.store.account_balance(organization_id, account.id)
            table.add_row(
                str(account.id),
                account.name,
                account.currency_code,
                account.account_number or "-",
                account.bank_feeds_source,
                _money(balance),
            )
        console.print(table)
    except BankReconError as e:
        _fail(ctx, e)


@main.command("add-counterpart")
@click.argument("kind", type=click.Choice(["invoice", "payment"]))
@click.argument("reference")
@click.argument("amount")
@click.option("--currency", default="EUR", show_default=True)
@click.option(
    "--direction",
    type=click.Choice([d.value for d in Direction]),
    default=Direction.INBOUND.value,
    show_default=True,
)
@click.option("--partner", default=None)
@click.option("--date", "doc_date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.pass_context
def add_counterpart(
    ctx: click.Context,
    kind: str,
    reference: str,
    amount: str,
    currency: str,
    direction: str,
    partner: Optional[str],
    doc_date,
):
    """Register an open invoice or payment to match against."""
    try:
        engine = _engine(ctx)
        item = engine.counterparts.add_counterpart(
            ctx.obj["organization_id"],
            CandidateType(kind),
            reference,
            _decimal(amount),
            currency,
            Direction(direction),
            partner_name=partner,
            doc_date=doc_date.date() if doc_date else None,
        )
        console.print(f"[green]Added {item.kind.value} {item.id}: {item.reference}[/green]")
    except BankReconError as e:
        _fail(ctx, e)


# Statement import


@main.command()
@click.argument("statement", type=click.Path(exists=True, path_type=Path))
@click.option("-a", "--account", "account_id", type=int, required=True)
@click.option("-f", "--format", "format_hint", default=None, help="csv, ofx, qif or camt")
@click.pass_context
def preview(ctx: click.Context, statement: Path, account_id: int, format_hint: Optional[str]):
    """
    Parse a statement file and show what would be imported.

    STATEMENT: Path to the bank statement file
    """
    try:
        engine = _engine(ctx)
        result = engine.preview_import(
            ctx.obj["organization_id"], account_id, statement, format_hint=format_hint
        )
        limit = engine.config.input.preview_limit

        table = Table(title=f"Statement Preview: {statement.name} ({result.format.value})")
        table.add_column("Date")
        table.add_column("Reference")
        table.add_column("Partner")
        table.add_column("Amount", justify="right")

        for txn in result.head(limit):
            table.add_row(
                str(txn.date),
                _shorten(txn.payment_ref),
                _shorten(txn.partner_name, 25),
                _money(txn.amount),
            )
        console.print(table)

        if result.total_count > limit:
            console.print(f"\n... and {result.total_count - limit} more transactions")
        console.print(f"\nTotal transactions: {result.total_count}")
        console.print(f"Total amount: {_money(result.total_amount)}")
        if result.opening_balance is not None:
            console.print(f"Opening balance: {_money(result.opening_balance)}")
        if result.closing_balance is not None:
            console.print(f"Closing balance: {_money(result.closing_balance)}")
    except BankReconError as e:
        _fail(ctx, e)


@main.command("import")
@click.argument("statement", type=click.Path(exists=True, path_type=Path))
@click.option("-a", "--account", "account_id", type=int, required=True)
@click.option("-f", "--format", "format_hint", default=None, help="csv, ofx, qif or camt")
@click.pass_context
def import_statement(
    ctx: click.Context, statement: Path, account_id: int, format_hint: Optional[str]
):
    """
    Import a statement file into a bank account.

    STATEMENT: Path to the bank statement file
    """
    try:
        engine = _engine(ctx)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Importing statement...", total=None)
            result = engine.commit_import(
                ctx.obj["organization_id"], account_id, statement, format_hint=format_hint
            )
            progress.update(task, completed=True)

        if result.all_skipped:
            console.print(
                f"[yellow]All {result.total_count} transactions were already imported[/yellow]"
            )
        else:
            console.print(
                f"[green]Imported {result.imported} of {result.total_count} transactions "
                f"({result.skipped} duplicates skipped), total {_money(result.total_amount)}[/green]"
            )
    except BankReconError as e:
        _fail(ctx, e)


@main.command()
@click.option("-a", "--account", "account_id", type=int, required=True)
@click.option("--unreconciled", is_flag=True, help="Only show unreconciled transactions")
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_context
def transactions(ctx: click.Context, account_id: int, unreconciled: bool, limit: int):
    """List transactions of a bank account."""
    try:
        engine = _engine(ctx)
        rows = engine.store.list_transactions(
            ctx.obj["organization_id"],
            account_id,
            reconciled=False if unreconciled else None,
            limit=limit,
        )

        table = Table(title=f"Transactions: account {account_id}")
        table.add_column("ID", justify="right")
        table.add_column("Date")
        table.add_column("Reference")
        table.add_column("Partner")
        table.add_column("Amount", justify="right")
        table.add_column("Balance", justify="right")
        table.add_column("Reconciled")

        for txn in rows:
            table.add_row(
                str(txn.id),
                str(txn.date),
                _shorten(txn.payment_ref),
                _shorten(txn.partner_name, 25),
                _money(txn.amount),
                _money(txn.running_balance),
                "yes" if txn.is_reconciled else "",
            )
        console.print(table)
    except BankReconError as e:
        _fail(ctx, e)


# Matching


@main.command()
@click.argument("transaction_id", type=int)
@click.pass_context
def suggest(ctx: click.Context, transaction_id: int):
    """Show ranked match candidates for a transaction."""
    try:
        engine = _engine(ctx)
        candidates = engine.suggest(ctx.obj["organization_id"], transaction_id)
        if not candidates:
            console.print("[yellow]No match candidates[/yellow]")
            return

        table = Table(title=f"Match Candidates: transaction {transaction_id}")
        table.add_column("Type")
        table.add_column("ID", justify="right")
        table.add_column("Reference")
        table.add_column("Partner")
        table.add_column("Amount", justify="right")
        table.add_column("Score", justify="right")
        table.add_column("Tier")
        table.add_column("Reason")

        tier_styles = {"perfect": "green", "high": "cyan", "medium": "yellow", "low": "red"}
        for c in candidates:
            style = tier_styles.get(c.tier.value, "white")
            table.add_row(
                c.type.value,
                str(c.id),
                _shorten(c.reference, 30),
                _shorten(c.partner_name, 25),
                _money(c.amount),
                f"{c.score:.2f}",
                f"[{style}]{c.tier.value}[/{style}]",
                c.reason or "",
            )
        console.print(table)

        best = candidates[0]
        console.print(
            f"\nBest candidate: {best.type.value} {best.id} "
            f"({best.tier.value}, score {best.score:.2f})"
        )
    except BankReconError as e:
        _fail(ctx, e)


@main.command()
@click.argument("transaction_id", type=int)
@click.option(
    "-m",
    "--match",
    "selections",
    multiple=True,
    required=True,
    help="TYPE:ID:AMOUNT, e.g. invoice:12:60.00 (repeatable)",
)
@click.pass_context
def reconcile(ctx: click.Context, transaction_id: int, selections: tuple[str, ...]):
    """Reconcile a transaction against one or more counterparts."""
    try:
        matches = [_parse_selection(s) for s in selections]
        engine = _engine(ctx)
        result = engine.reconcile(ctx.obj["organization_id"], transaction_id, matches)
        console.print(
            f"[green]Reconciled transaction {transaction_id}: allocated "
            f"{_money(result.total_allocated)}, residual {_money(result.residual)}[/green]"
        )
    except BankReconError as e:
        _fail(ctx, e)


@main.command("auto-reconcile")
@click.option("-a", "--account", "account_id", type=int, required=True)
@click.pass_context
def auto_reconcile(ctx: click.Context, account_id: int):
    """Reconcile every transaction with a single perfect candidate."""
    try:
        engine = _engine(ctx)
        summary = engine.auto_reconcile(ctx.obj["organization_id"], account_id)

        table = Table(title="Auto-Reconcile Summary")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Reconciled", str(summary["reconciled"]))
        table.add_row("Skipped", str(summary["skipped"]))
        table.add_row("Errors", str(summary["errors"]))
        console.print(table)
    except BankReconError as e:
        _fail(ctx, e)


# Bank connections


@main.command()
@click.pass_context
def providers(ctx: click.Context):
    """List open banking providers."""
    try:
        engine = _engine(ctx)
        table = Table(title="Bank Feed Providers")
        table.add_column("Key")
        table.add_column("Name")
        table.add_column("Authorization")
        table.add_column("Configured")
        table.add_column("Countries")

        for info in engine.list_providers():
            table.add_row(
                info.key,
                info.display_name,
                info.authorization_model.value,
                "[green]yes[/green]" if info.configured else "[red]no[/red]",
                _shorten(", ".join(info.countries), 50),
            )
        console.print(table)
    except BankReconError as e:
        _fail(ctx, e)


@main.command()
@click.argument("provider")
@click.argument("country")
@click.option("--search", default=None, help="Filter institutions by name")
@click.pass_context
def institutions(ctx: click.Context, provider: str, country: str, search: Optional[str]):
    """List banks a provider offers in a country."""
    try:
        engine = _engine(ctx)
        adapter = engine.orchestrator.adapter_for(provider)
        adapter.require_configured()
        found = adapter.list_institutions(country)
        if search:
            found = [i for i in found if search.lower() in i.name.lower()]

        table = Table(title=f"{adapter.display_name} institutions in {country.upper()}")
        table.add_column("ID")
        table.add_column("Name")
        table.add_column("BIC")
        table.add_column("History (days)", justify="right")
        for inst in found:
            table.add_row(
                inst.id,
                inst.name,
                inst.bic or "-",
                str(inst.transaction_total_days or "-"),
            )
        console.print(table)
        console.print(f"\nTotal institutions: {len(found)}")
    except BankReconError as e:
        _fail(ctx, e)


@main.command()
@click.argument("provider")
@click.option("-a", "--account", "account_id", type=int, required=True)
@click.option("--country", required=True)
@click.option("--institution", "institution_id", required=True)
@click.option(
    "--redirect-uri",
    default="http://localhost:8000/bank-feeds/callback",
    show_default=True,
)
@click.option("--reauthorize", "connection_id", type=int, default=None,
              help="Re-authorize an existing connection instead of creating one")
@click.pass_context
def connect(
    ctx: click.Context,
    provider: str,
    account_id: int,
    country: str,
    institution_id: str,
    redirect_uri: str,
    connection_id: Optional[int],
):
    """Start connecting a bank account to a provider."""
    organization_id = ctx.obj["organization_id"]
    try:
        engine = _engine(ctx)
        if connection_id is not None:
            flow = engine.reauthorize(organization_id, connection_id)
        else:
            flow = engine.start_connection(organization_id, provider, account_id)
        token = flow.request_token

        engine.select_country(token, country)
        engine.select_institution(token, institution_id)
        engine.select_account(token, account_id)
        flow = engine.initiate_connection(token, redirect_uri)

        console.print(f"Request token: [bold]{token}[/bold]")
        if flow.state == FlowState.AWAITING_REDIRECT_AUTHORIZATION:
            console.print(f"Open this link to authorize access:\n{flow.authorization_url}")
        else:
            console.print(f"Link token for the embedded widget: {flow.link_token}")
        console.print("Then run: bank-recon confirm <request token> [--code <code>]")
    except BankReconError as e:
        _fail(ctx, e)


@main.command()
@click.argument("request_token")
@click.option("--code", default=None, help="Requisition reference or public token")
@click.pass_context
def confirm(ctx: click.Context, request_token: str, code: Optional[str]):
    """Finish a connection after authorizing at the bank."""
    try:
        engine = _engine(ctx)
        connection = engine.confirm_connection(request_token, code)
        console.print(
            f"[green]Connection {connection.id} is active for account "
            f"{connection.account_id}[/green]"
        )
    except BankReconError as e:
        _fail(ctx, e)


@main.command()
@click.option("-a", "--account", "account_id", type=int, default=None)
@click.pass_context
def connections(ctx: click.Context, account_id: Optional[int]):
    """List bank connections."""
    try:
        engine = _engine(ctx)
        table = Table(title="Bank Connections")
        table.add_column("ID", justify="right")
        table.add_column("Account", justify="right")
        table.add_column("Provider")
        table.add_column("Institution")
        table.add_column("Status")
        table.add_column("Sync")
        table.add_column("Last Sync")
        table.add_column("Next Sync")
        table.add_column("Error")

        for conn in engine.list_connections(ctx.obj["organization_id"], account_id):
            table.add_row(
                str(conn.id),
                str(conn.account_id),
                conn.provider,
                conn.institution_name or "-",
                conn.status.value,
                "on" if conn.sync_enabled else "off",
                _when(conn.last_sync_at),
                _when(conn.next_sync_at),
                _shorten(conn.error_message, 30) if conn.error_message else "",
            )
        console.print(table)
    except BankReconError as e:
        _fail(ctx, e)


@main.command()
@click.argument("connection_id", type=int)
@click.pass_context
def sync(ctx: click.Context, connection_id: int):
    """Sync one connection now."""
    try:
        engine = _engine(ctx)
        outcome = engine.sync_now(ctx.obj["organization_id"], connection_id)
        console.print(
            f"[green]Connection {connection_id} synced: {outcome.imported} imported, "
            f"{outcome.skipped} duplicates skipped[/green]"
        )
    except BankReconError as e:
        _fail(ctx, e)


@main.command("sync-due")
@click.pass_context
def sync_due(ctx: click.Context):
    """Sync every connection that is due."""
    try:
        engine = _engine(ctx)
        summary = engine.run_due_syncs()

        table = Table(title="Sync Run")
        table.add_column("Connection", justify="right")
        table.add_column("Result")
        table.add_column("Imported", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Error")
        for outcome in summary.outcomes:
            table.add_row(
                str(outcome.connection_id),
                "[green]ok[/green]" if outcome.success else "[red]failed[/red]",
                str(outcome.imported),
                str(outcome.skipped),
                outcome.error or "",
            )
        console.print(table)
        console.print(
            f"\n{summary.succeeded} succeeded, {summary.failed} failed, "
            f"{summary.imported} transactions imported"
        )
    except BankReconError as e:
        _fail(ctx, e)


@main.command("toggle-sync")
@click.argument("connection_id", type=int)
@click.option("--enable/--disable", default=True)
@click.pass_context
def toggle_sync(ctx: click.Context, connection_id: int, enable: bool):
    """Enable or disable scheduled sync for a connection."""
    try:
        engine = _engine(ctx)
        conn = engine.set_sync_enabled(ctx.obj["organization_id"], connection_id, enable)
        state = "enabled" if conn.sync_enabled else "disabled"
        console.print(f"[green]Sync {state} for connection {conn.id}[/green]")
    except BankReconError as e:
        _fail(ctx, e)


@main.command()
@click.argument("connection_id", type=int)
@click.pass_context
def disconnect(ctx: click.Context, connection_id: int):
    """Revoke a bank connection."""
    try:
        engine = _engine(ctx)
        conn = engine.disconnect(ctx.obj["organization_id"], connection_id)
        console.print(f"[green]Connection {conn.id} revoked[/green]")
    except BankReconError as e:
        _fail(ctx, e)


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise click.BadParameter(f"'{value}' is not a valid amount")


def _parse_selection(value: str) -> MatchSelection:
    """Parse TYPE:ID:AMOUNT into a MatchSelection."""
    parts = value.split(":")
    if len(parts) != 3:
        raise click.BadParameter(f"'{value}' is not TYPE:ID:AMOUNT")
    kind, item_id, amount = parts
    try:
        return MatchSelection(
            type=CandidateType(kind), id=int(item_id), allocated_amount=_decimal(amount)
        )
    except ValueError:
        raise click.BadParameter(f"'{value}' is not TYPE:ID:AMOUNT")


def _when(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


if __name__ == "__main__":
    main()
