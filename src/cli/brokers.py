"""Trading platform CLI commands."""

from datetime import datetime, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from src.config import get_settings
from src.core.brokers import (
    PlatformId,
    SyncOptions,
    SyncResult,
    TradeSyncService,
    get_supported_platforms,
)
from src.core.brokers.repository import UserRepository
from src.db.database import get_db
from src.db.models import TradingAccount

settings = get_settings()
console = Console()
app = typer.Typer()


def _resolve_user(db, email: Optional[str]):
    users = UserRepository(db)
    user = users.get_by_email(email) if email else users.get_by_email(settings.default_user_email)
    if not user:
        console.print("[red]Error: User not found[/red]")
        raise typer.Exit(1)
    return user


def _find_account(db, account_id: str) -> TradingAccount:
    account = (
        db.query(TradingAccount)
        .filter(TradingAccount.id.like(f"{account_id}%"))
        .first()
    )
    if not account:
        console.print(f"[red]Error: Account {account_id} not found[/red]")
        raise typer.Exit(1)
    return account


def _print_result(label: str, result: SyncResult) -> None:
    if result.success:
        console.print(
            f"  [green]OK[/green] {label} - {result.trades_created} created, "
            f"{result.trades_updated} updated, {result.trades_skipped} skipped "
            f"({result.duration_ms} ms)"
        )
    else:
        console.print(f"  [red]Failed[/red] {label} - {result.error_message or 'Unknown error'}")
        for detail in result.error_details[:5]:
            console.print(f"    - {detail}")


@app.command("status")
def broker_status():
    """Show which platforms are configured."""
    console.print("[bold]Trading Platform Status[/bold]\n")

    table = Table()
    table.add_column("Platform")
    table.add_column("Connection")
    table.add_column("Configured", justify="center")

    for platform in get_supported_platforms():
        if platform["connection"] == "unavailable":
            configured = "[dim]-[/dim]"
        elif platform["connection"] == "credentials":
            configured = "[green]User supplied[/green]"
        elif settings.platform_app(platform["value"]):
            configured = "[green]Yes[/green]"
        else:
            prefix = platform["value"].upper()
            configured = f"[yellow]No[/yellow] [dim]set {prefix}_CLIENT_ID / {prefix}_CLIENT_SECRET[/dim]"
        table.add_row(platform["label"], platform["connection"], configured)

    console.print(table)


@app.command("platforms")
def list_platforms():
    """List supported trading platforms."""
    table = Table(title="Supported Platforms")
    table.add_column("Value", style="dim")
    table.add_column("Name")
    table.add_column("Description")
    table.add_column("Connection")

    for platform in get_supported_platforms():
        table.add_row(
            platform["value"],
            platform["label"],
            platform["description"],
            platform["connection"],
        )

    console.print(table)


@app.command("list")
def list_accounts(
    user: Optional[str] = typer.Option(
        None,
        "--user",
        "-u",
        help="User email (default: default user)",
    ),
    all_accounts: bool = typer.Option(False, "--all", help="Include disconnected accounts"),
):
    """List connected trading accounts."""
    with get_db() as db:
        user_obj = _resolve_user(db, user)
        accounts = TradeSyncService(db).list_accounts(user_obj.id, include_inactive=all_accounts)

        if not accounts:
            console.print("[yellow]No connected trading accounts.[/yellow]")
            console.print("\nTo connect an account, open /api/auth/<platform> in the web app.")
            return

        table = Table(title="Trading Accounts")
        table.add_column("ID", style="dim")
        table.add_column("Platform")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Last Synced")
        table.add_column("Error")

        for acc in accounts:
            status = {
                "CONNECTED": "[green]Connected[/green]",
                "ERROR": "[red]Error[/red]",
            }.get(acc.sync_status, "[yellow]Pending[/yellow]")
            if not acc.is_active:
                status = "[dim]Inactive[/dim]"

            table.add_row(
                acc.id[:8] + "...",
                acc.platform,
                acc.account_name or "-",
                status,
                acc.last_sync_at.strftime("%Y-%m-%d %H:%M") if acc.last_sync_at else "Never",
                (acc.last_sync_error[:30] + "...") if acc.last_sync_error else "-",
            )

        console.print(table)


@app.command("sync")
def sync_accounts(
    account_id: Optional[str] = typer.Option(
        None,
        "--account",
        "-a",
        help="Specific account ID to sync (default: all)",
    ),
    user: Optional[str] = typer.Option(
        None,
        "--user",
        "-u",
        help="User email (default: default user)",
    ),
    days: int = typer.Option(
        None,
        "--days",
        "-d",
        help=f"Days of history to fetch (default: {settings.sync_default_days})",
    ),
    no_update: bool = typer.Option(False, "--no-update", help="Skip trades that already exist"),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        "-c",
        help=f"Accounts synced in parallel (default: {settings.sync_max_concurrency})",
    ),
):
    """Sync trades from connected trading accounts."""
    end_date = datetime.utcnow()
    options = SyncOptions(
        start_date=end_date - timedelta(days=days) if days else None,
        end_date=end_date,
        update_existing=not no_update,
        force_full_sync=bool(days),
    )

    with get_db() as db:
        user_obj = _resolve_user(db, user)
        service = TradeSyncService(db, session_scope=get_db)

        if account_id:
            account = _find_account(db, account_id)
            console.print(f"Syncing {account.platform} account: {account.account_name}...")
            _print_result(account.platform, service.sync_account(account.id, options))
            return

        accounts = service.list_accounts(user_obj.id)
        if not accounts:
            console.print("[yellow]No connected accounts to sync.[/yellow]")
            return

        # Release the read transaction before workers open their own sessions
        db.commit()
        console.print(f"Syncing {len(accounts)} account(s)...\n")
        results = service.sync_all_accounts(options, max_concurrency=concurrency, user_id=user_obj.id)
        for result in results:
            _print_result(result.platform or result.account_id, result)

        total_created = sum(r.trades_created for r in results)
        console.print(f"\n[green]Sync complete![/green] {total_created} new trade(s)")


@app.command("history")
def sync_history(
    account_id: str = typer.Argument(..., help="Account ID"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show"),
):
    """Show recent sync runs of an account."""
    with get_db() as db:
        account = _find_account(db, account_id)
        runs = TradeSyncService(db).get_sync_history(account.id, limit=limit)

        if not runs:
            console.print("[dim]No sync runs yet[/dim]")
            return

        table = Table(title=f"Sync History: {account.account_name or account.platform}")
        table.add_column("Started")
        table.add_column("Result", justify="center")
        table.add_column("Fetched", justify="right")
        table.add_column("Created", justify="right")
        table.add_column("Updated", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Error")

        for run in runs:
            table.add_row(
                run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                "[green]OK[/green]" if run.success else "[red]Failed[/red]",
                str(run.trades_fetched),
                str(run.trades_created),
                str(run.trades_updated),
                str(run.trades_skipped),
                (run.error_message[:40] + "...") if run.error_message else "-",
            )

        console.print(table)


@app.command("disconnect")
def disconnect_account(
    account_id: str = typer.Argument(..., help="Account ID to disconnect"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """Disconnect a trading account. Synced trades are kept."""
    with get_db() as db:
        account = _find_account(db, account_id)

        if not force:
            confirm = typer.confirm(f"Disconnect {account.account_name or account.platform}?")
            if not confirm:
                console.print("[yellow]Cancelled.[/yellow]")
                raise typer.Exit(0)

        TradeSyncService(db).deactivate_account(account.id)
        console.print("[green]Account disconnected.[/green]")


@app.command("watch")
def watch(
    interval: int = typer.Option(
        None,
        "--interval",
        "-n",
        help=f"Minutes between syncs (default: {settings.background_sync_interval_minutes})",
    ),
    lookback: int = typer.Option(
        None,
        "--lookback",
        help=f"Hours of history each sync re-reads (default: {settings.background_sync_lookback_hours})",
    ),
):
    """Run background syncs continuously."""
    from src.core.scheduler import start_scheduler

    configured = [p.value for p in PlatformId if settings.platform_app(p)]

    console.print("[bold]Starting background trade sync[/bold]")
    console.print(f"  Interval: {interval or settings.background_sync_interval_minutes} minutes")
    console.print(f"  Lookback: {lookback or settings.background_sync_lookback_hours} hours")
    console.print(f"  OAuth apps: {', '.join(configured) or 'none configured'}")
    console.print()
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    start_scheduler(interval_minutes=interval, lookback_hours=lookback)


if __name__ == "__main__":
    app()
