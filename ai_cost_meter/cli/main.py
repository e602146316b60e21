"""
CLI interface for AI Cost Meter.

Provides command-line access to quota administration, admission checks
and usage summaries.
"""

import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_cost_meter.config.loader import DatabaseConfig, MeteringConfig, load_metering_config
from ai_cost_meter.core.quota import QuotaCheckRequest, QuotaCheckResult
from ai_cost_meter.core.service import MeteringService
from ai_cost_meter.demo.seed_demo_data import seed_pricing
from ai_cost_meter.logging_config import configure_logging
from ai_cost_meter.storage.models import PricingRecord, QuotaDefinition, QuotaPeriod, next_reset_at
from ai_cost_meter.storage.repository import default_window, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1  # Failing error
EXIT_CODE_DENIED = 2  # Admission check denied the request


def _config(ctx: typer.Context) -> MeteringConfig:
    return ctx.obj or MeteringConfig.defaults()


def _service(ctx: typer.Context) -> MeteringService:
    return MeteringService.from_config(_config(ctx))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to metering YAML configuration"
    ),
    db_path: Optional[str] = typer.Option(
        None, "--db", help="Override the SQLite database path"
    ),
):
    """AI Cost Meter CLI."""
    try:
        config = load_metering_config(config_path) if config_path else MeteringConfig.defaults()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if db_path:
        config = MeteringConfig(
            database=DatabaseConfig(path=db_path),
            cache=config.cache,
            estimation=config.estimation,
            logging=config.logging,
        )
    configure_logging(config.logging.level, config.logging.json)
    ctx.obj = config

    if ctx.invoked_subcommand is None:
        console.print("AI Cost Meter - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Show database location and cache connectivity."""
    service = _service(ctx)
    stats = service.cache.stats()
    console.print(f"Database: {_config(ctx).database.path}")
    if not stats["enabled"]:
        console.print("Cache: [yellow]disabled[/] (quota checks read the database directly)")
    elif stats["connected"]:
        console.print(f"Cache: [green]connected[/] ({stats['key_count']} keys)")
    else:
        console.print("Cache: [red]unreachable[/] (falling back to the database)")


@app.command()
def init(
    ctx: typer.Context,
    seed: bool = typer.Option(False, "--seed", help="Load the demo price list"),
):
    """Initialize the AI Cost Meter database."""
    config = _config(ctx)
    try:
        initialize_schema(config.database.path)
        console.print("[green]✓[/] Database initialized successfully")
        if seed:
            inserted = seed_pricing(_service(ctx).store)
            console.print(f"[green]✓[/] Seeded {inserted} pricing records")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-pricing")
def add_pricing(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider tag, e.g. openai"),
    model: str = typer.Argument(..., help="Model identifier"),
    input_cost: str = typer.Option(..., "--input", help="USD per 1K input tokens"),
    output_cost: str = typer.Option(..., "--output", help="USD per 1K output tokens"),
    effective: Optional[str] = typer.Option(
        None, "--effective", help="Effective date (YYYY-MM-DD), defaults to today"
    ),
):
    """Append a pricing version for a provider/model."""
    try:
        record = PricingRecord(
            provider=provider,
            model=model,
            effective_date=date.fromisoformat(effective) if effective else date.today(),
            input_cost_per_1k=Decimal(input_cost),
            output_cost_per_1k=Decimal(output_cost),
        )
        _service(ctx).cost_model.add_pricing(record)
    except (ValueError, InvalidOperation) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"[green]✓[/] {provider}/{model}: ${record.input_cost_per_1k} in, "
        f"${record.output_cost_per_1k} out per 1K tokens from {record.effective_date}"
    )


@app.command("set-quota")
def set_quota(
    ctx: typer.Context,
    organization_id: str = typer.Argument(..., help="Organization identifier"),
    limit: float = typer.Option(..., "--limit", "-l", help="Spend limit in USD"),
    period: QuotaPeriod = typer.Option(QuotaPeriod.MONTHLY, "--period", "-p", help="Quota period"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Limit a single provider"),
    model: Optional[str] = typer.Option(None, "--model", help="Limit a single model"),
):
    """Create or replace a quota for an organization scope."""
    service = _service(ctx)
    try:
        quota = service.store.put_quota(QuotaDefinition(
            organization_id=organization_id,
            period=period,
            limit_amount=limit,
            provider=provider,
            model=model,
            reset_at=next_reset_at(period),
        ))
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    service.cache.invalidate_organization(organization_id)
    console.print(
        f"[green]✓[/] {quota.quota_type} quota for {organization_id}: "
        f"{_format_currency(quota.limit_amount)} (resets {quota.reset_at.isoformat()})"
    )


@app.command()
def check(
    ctx: typer.Context,
    organization_id: str = typer.Argument(..., help="Organization identifier"),
    provider: str = typer.Argument(..., help="Provider tag"),
    model: str = typer.Argument(..., help="Model identifier"),
    cost: Optional[float] = typer.Option(None, "--cost", help="Estimated cost in USD"),
    tokens: Optional[int] = typer.Option(None, "--tokens", help="Estimated token count"),
):
    """Run an admission check without making a call."""
    service = _service(ctx)
    if cost is None:
        if tokens:
            cost = service.cost_model.estimate_tokens_cost(provider, model, tokens)
        else:
            cost = float(service.cost_model.default_cost)

    try:
        result = service.evaluator.check(QuotaCheckRequest(
            organization_id=organization_id,
            provider=provider,
            model=model,
            estimated_cost=cost,
        ))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_check_result(result, cost)
    sys.exit(EXIT_CODE_PASS if result.allowed else EXIT_CODE_DENIED)


@app.command()
def summary(
    ctx: typer.Context,
    organization_id: str = typer.Argument(..., help="Organization identifier"),
    days: int = typer.Option(30, "--days", "-d", help="Days to look back"),
):
    """Show spend for an organization by provider and model."""
    start, end = default_window(days)
    usage = _service(ctx).store.usage_summary(organization_id, start, end)

    if usage.total_calls == 0:
        console.print(f"\n[bold yellow]No usage recorded for {organization_id} in the last {days} days[/]\n")
        return

    console.print(f"\n[bold]Usage for {organization_id}[/bold] (last {days} days)")
    console.print("-" * 40)
    console.print(f"Total cost: {_format_currency(usage.total_cost)}")
    console.print(f"Total tokens: {usage.total_tokens:,}")
    console.print(f"Total calls: {usage.total_calls:,}")

    for title, groups in (("Provider", usage.by_provider), ("Model", usage.by_model)):
        table = Table(title=f"By {title.lower()}")
        table.add_column(title)
        table.add_column("Cost", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Calls", justify="right")
        for name, group in sorted(groups.items(), key=lambda item: -item[1]["cost"]):
            table.add_row(
                name,
                _format_currency(group["cost"]),
                f"{int(group['tokens']):,}",
                f"{int(group['calls']):,}",
            )
        console.print(table)


@app.command("reset-quotas")
def reset_quotas(ctx: typer.Context):
    """Zero quotas whose period has ended and move them to the next period."""
    service = _service(ctx)
    count = service.store.reset_expired_quotas()
    console.print(f"[green]✓[/] Reset {count} expired quotas")


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _display_check_result(result: QuotaCheckResult, cost: float):
    """Display an admission decision and every quota that was checked."""
    verdict = "[green]ALLOWED[/]" if result.allowed else "[red]DENIED[/]"
    console.print(f"\n[bold]Verdict:[/bold] {verdict} (estimated cost ${cost:,.4f})")

    if not result.all_quota_statuses:
        console.print("[dim]No quotas defined, remaining is unlimited.[/]")
        return

    if result.limiting_quota is not None:
        console.print(f"Limiting quota: {result.limiting_quota.quota_type}")

    table = Table()
    table.add_column("Quota")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Admits")
    for quota in result.all_quota_statuses:
        table.add_row(
            quota.quota_type,
            _format_currency(quota.limit),
            _format_currency(quota.current),
            _format_currency(quota.remaining),
            "yes" if quota.allowed else "no",
        )
    console.print(table)


if __name__ == "__main__":
    app()
