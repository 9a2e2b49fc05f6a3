"""Main CLI entry point using Typer."""

import logging
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console

from src.config import PRODUCT_NAME, PRODUCT_TAGLINE, PRODUCT_VERSION, get_settings
from src.core.auth.security import create_access_token
from src.core.brokers.repository import UserRepository
from src.db.database import get_db, init_db

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Reduce noise from third-party libraries
logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

console = Console()
app = typer.Typer(
    name="ledger",
    help=f"{PRODUCT_NAME} - {PRODUCT_TAGLINE}",
    add_completion=False,
)


@app.callback()
def main_callback():
    """Initialize database on startup."""
    init_db()


# Import and add subcommands
from src.cli.brokers import app as brokers_app

app.add_typer(brokers_app, name="brokers", help="Trading platform connections and trade sync")


@app.command()
def token(
    email: Optional[str] = typer.Option(None, "--email", "-e", help="User email (defaults to the default user)"),
    days: int = typer.Option(7, "--days", "-d", help="Days until the token expires"),
):
    """Issue an API access token for a user."""
    with get_db() as db:
        users = UserRepository(db)
        user = users.get_by_email(email) if email else users.get_or_create_default()
        if not user or not user.is_active:
            console.print("[red]Error: User not found[/red]")
            raise typer.Exit(1)

        access_token = create_access_token({"sub": user.id}, expires_delta=timedelta(days=days))
        console.print(f"[green]Access token for {user.email}:[/green]")
        console.print(f"  {access_token}")
        console.print("\n[dim]Use this token in Authorization header: Bearer <token>[/dim]")


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold #4F46E5]{PRODUCT_NAME}[/]")
    console.print(f"[bold]Version:[/] {PRODUCT_VERSION}")
    console.print(f"[bold]Tagline:[/] {PRODUCT_TAGLINE}")


if __name__ == "__main__":
    app()
