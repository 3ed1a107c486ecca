"""
CLI interface for the usage ledger.

Operator access to grants, balances, spending limits, usage recording and
the reconciliation sweep.
"""

import sys
import threading
from datetime import datetime, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_ledger.config.loader import BillingConfig, load_billing_config
from usage_ledger.core.engine import UsageLedger, stripe_provider_from_env
from usage_ledger.core.errors import BillingError
from usage_ledger.core.pricing import has_model_pricing
from usage_ledger.core.spending_limit import SubscriptionLimitInfo
from usage_ledger.core.token_counter import TokenUsage
from usage_ledger.observability import configure_logging
from usage_ledger.storage import repository
from usage_ledger.storage.models import Subscription
from usage_ledger.storage.repository import utcnow

app = typer.Typer()
limit_app = typer.Typer(help="Show, set or clear a user's monthly spending limit.")
app.add_typer(limit_app, name="limit")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class _State:
    config: BillingConfig = BillingConfig()
    db_path: Optional[str] = None


state = _State()


def _build_ledger() -> UsageLedger:
    """Ledger wired with Stripe when ``STRIPE_SECRET_KEY`` is set."""
    provider = stripe_provider_from_env(state.config)
    return UsageLedger(state.config, provider=provider, db_path=state.db_path)


def _format_currency(amount: Optional[float]) -> str:
    """Format currency for display; storage keeps full precision."""
    if amount is None:
        return "unlimited"
    return f"${amount:,.4f}" if 0 < abs(amount) < 0.01 else f"${amount:,.2f}"


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config file"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    log_format: str = typer.Option("console", "--log-format", help="'json' or 'console'"),
):
    """Usage Ledger CLI."""
    configure_logging(log_level, log_format)
    try:
        state.config = load_billing_config(config)
    except (FileNotFoundError, ValueError) as e:
        _fail(str(e))
    state.db_path = db
    if ctx.invoked_subcommand is None:
        console.print("Usage Ledger - Use --help to see available commands")


@app.command()
def init():
    """Initialize the ledger database."""
    try:
        _build_ledger().initialize()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-user")
def add_user(
    user_id: str,
    email: Optional[str] = typer.Option(None, "--email", help="Billing email"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
):
    """Register a user with the ledger."""
    ledger = _build_ledger()
    with ledger.repo.connection() as conn:
        repository.upsert_user(conn, user_id, email, name)
    console.print(f"[green]✓[/] User {user_id} saved")


@app.command()
def subscribe(
    user_id: str,
    subscription_id: str = typer.Option(..., "--id", help="Provider subscription id"),
    status: str = typer.Option("active", "--status", help="Subscription status"),
    period_start: Optional[datetime] = typer.Option(None, "--period-start",
                                                    help="Billing period start (default: now)"),
    period_days: int = typer.Option(30, "--period-days", help="Billing period length"),
):
    """Mirror a subscription from the billing provider."""
    start = period_start or utcnow()
    subscription = Subscription(
        id=subscription_id,
        user_id=user_id,
        status=status,
        period_start=start,
        period_end=start + timedelta(days=period_days),
    )
    ledger = _build_ledger()
    with ledger.repo.connection() as conn:
        repository.upsert_subscription(conn, subscription)
    console.print(f"[green]✓[/] Subscription {subscription_id} is {status}")


@app.command()
def grant(
    user_id: str,
    amount: float,
    grant_type: str = typer.Option("promo", "--type", "-t", help="Grant type"),
    expires_days: Optional[int] = typer.Option(None, "--expires-days", "-e",
                                               help="Days until the grant expires"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
):
    """Grant prepaid credit to a user."""
    ledger = _build_ledger()
    expires_at = utcnow() + timedelta(days=expires_days) if expires_days else None
    try:
        created = ledger.ledger.grant_credit(user_id, amount, grant_type, description, expires_at)
    except BillingError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Granted {_format_currency(created.amount_usd)} to {user_id}")


@app.command()
def welcome(user_id: str):
    """Grant the one-time welcome credit."""
    ledger = _build_ledger()
    try:
        granted = ledger.ledger.grant_signup_credits(user_id)
    except BillingError as e:
        _fail(str(e))
    if granted is None:
        console.print(f"[yellow]{user_id} already received welcome credit[/]")
    else:
        console.print(f"[green]✓[/] Welcome credit of {_format_currency(granted.amount_usd)} granted")


@app.command()
def balance(user_id: str):
    """Show a user's credit balance."""
    summary = _build_ledger().ledger.summary(user_id)

    table = Table(title=f"Credit balance: {user_id}")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("Available", _format_currency(summary.available))
    table.add_row("Total granted", _format_currency(summary.total_granted))
    table.add_row("Total used", _format_currency(summary.total_used))
    table.add_row("Nearest expiry",
                  summary.nearest_expiry.isoformat() if summary.nearest_expiry else "-")
    table.add_row("Welcome credit", "yes" if summary.welcomed else "no")
    console.print(table)


@limit_app.command("show")
def limit_show(user_id: str):
    """Show the spending limit and usage for the current period."""
    info = _build_ledger().limits.info(user_id)

    console.print(f"\n[bold]Mode:[/bold] {info.mode}")
    console.print(f"Monthly cap: {_format_currency(info.monthly_cap_usd)}")
    console.print(f"Period start: {info.period_start.isoformat()}")
    console.print(f"Period usage: {_format_currency(info.period_usage_usd)}")
    if isinstance(info, SubscriptionLimitInfo):
        remaining = info.remaining_usd
        console.print(f"Remaining: {_format_currency(remaining)}")
    else:
        console.print(f"Credit available: {_format_currency(info.available)}")
        console.print(f"Credit granted: {_format_currency(info.total_granted)}")


@limit_app.command("set")
def limit_set(user_id: str, monthly_cap_usd: float):
    """Set the monthly spending limit."""
    try:
        cap = _build_ledger().limits.update_limit(user_id, monthly_cap_usd)
    except BillingError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Monthly cap set to {_format_currency(cap)}")


@limit_app.command("clear")
def limit_clear(user_id: str):
    """Remove the monthly spending limit."""
    _build_ledger().limits.update_limit(user_id, None)
    console.print("[green]✓[/] Monthly cap cleared")


@app.command()
def check(
    user_id: str,
    external_key: bool = typer.Option(False, "--external-key", help="Call uses the user's own key"),
):
    """Check whether a user may make a billable call."""
    result = _build_ledger().guard.check_usage_limit(user_id, external_key)
    if result.allowed:
        console.print("[green]ALLOWED[/]")
    else:
        console.print(f"[red]BLOCKED[/] {result.block_reason.value}")
    if result.limit:
        console.print(f"Messages: {result.current}/{result.limit}")


@app.command()
def record(
    user_id: str,
    task_type: str = typer.Option(..., "--task-type", "-t", help="Task identifier"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model identifier"),
    input_tokens: int = typer.Option(0, "--input-tokens"),
    output_tokens: int = typer.Option(0, "--output-tokens"),
    cache_read_tokens: Optional[int] = typer.Option(None, "--cache-read-tokens"),
    cache_write_tokens: Optional[int] = typer.Option(None, "--cache-write-tokens"),
    cost: Optional[float] = typer.Option(None, "--cost", help="Fixed cost in USD (no model)"),
    external_key: bool = typer.Option(False, "--external-key"),
):
    """Record usage for a model call or a fixed-cost task."""
    with _build_ledger() as ledger:
        try:
            if model:
                if not has_model_pricing(model):
                    console.print(f"[yellow]Model {model} is not priced; recording at zero cost[/]")
                usage = TokenUsage(
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cache_read_tokens=cache_read_tokens,
                    cache_write_tokens=cache_write_tokens,
                )
                created = ledger.recorder.record_token_usage(
                    user_id, "cli", model, task_type, usage, is_external_key=external_key,
                )
            else:
                created = ledger.recorder.record_fixed_cost_usage(user_id, task_type, cost)
        except (BillingError, ValueError) as e:
            _fail(str(e))

    console.print(f"[green]✓[/] Recorded {created.id}")
    console.print(f"Credit used: {_format_currency(created.credit_used_usd)}")
    console.print(f"Billed: {_format_currency(created.cost_usd)}")


@app.command()
def sweep(
    watch: bool = typer.Option(False, "--watch", "-w", help="Keep running on the configured interval"),
):
    """Retry undelivered usage reports and expire unreportable ones."""
    ledger = _build_ledger()
    if ledger.sweep is None:
        _fail("No metering provider configured (set STRIPE_SECRET_KEY)")

    if watch:
        console.print(f"Sweeping every {ledger.config.sweep.interval_seconds:.0f}s, Ctrl+C to stop")
        stop = threading.Event()
        try:
            ledger.sweep.run_forever(stop)
        except KeyboardInterrupt:
            stop.set()
        sys.exit(EXIT_CODE_PASS)

    result = ledger.sweep.run()
    console.print(f"Expired: {result.expired}")
    console.print(f"Attempted: {result.attempted}")
    console.print(f"Succeeded: {result.succeeded}")
    if result.expired:
        console.print(f"[bold red]{result.expired} usage record(s) expired unreported[/]")


if __name__ == "__main__":
    app()
