"""
CLI interface for AI Usage Meter.

Provides command-line access to collection, hook ingestion, billing reports
and quota status.
"""

import logging
import sys
from datetime import datetime
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_usage_meter.adapters import (
    CollectOptions,
    HookPayloadError,
    HookUnsupportedError,
    all_sources,
    source_by_system,
    system_names,
)
from ai_usage_meter.config.loader import MeterConfig, load_meter_config
from ai_usage_meter.core.billing import UsageSummary, summarize_usage
from ai_usage_meter.core.collector import collect_all, ingest_hook_payload
from ai_usage_meter.core.extraction import parse_timestamp
from ai_usage_meter.core.live_usage import (
    DEFAULT_BASE_URL,
    LiveUsageClient,
    UsageAPIError,
    usage_percent_metrics,
)
from ai_usage_meter.core.status import UsageStatus, derive_status, status_for_failure
from ai_usage_meter.storage.db import DEFAULT_DB_PATH
from ai_usage_meter.storage.repository import (
    EventRepository,
    fetch_events,
    initialize_schema,
    insert_events,
)

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_STATUS_STYLES = {
    UsageStatus.OK: "green",
    UsageStatus.NEAR_LIMIT: "yellow",
    UsageStatus.LIMITED: "red",
    UsageStatus.AUTH: "red",
    UsageStatus.ERROR: "red",
    UsageStatus.UNSUPPORTED: "dim",
    UsageStatus.UNKNOWN: "dim",
}


def _configure_logging(verbose: bool) -> None:
    """Route package logs through rich on stderr."""
    package_logger = logging.getLogger("ai_usage_meter")
    if not any(isinstance(h, RichHandler) for h in package_logger.handlers):
        package_logger.addHandler(RichHandler(console=err_console, show_path=False))
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config(config_path: Optional[str]) -> MeterConfig:
    if config_path is None:
        return MeterConfig()
    return load_meter_config(config_path)


def _parse_now(value: Optional[str]) -> datetime:
    if value is None:
        return datetime.now().astimezone()
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Invalid --now timestamp: {value}")
    return parsed


def _parse_metrics(values: List[str]) -> Dict[str, float]:
    """Parse ``name=percent`` pairs."""
    metrics = {}
    for item in values:
        name, sep, raw = item.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"Invalid metric '{item}', expected name=percent")
        try:
            metrics[name] = float(raw.strip().rstrip("%"))
        except ValueError:
            raise ValueError(f"Invalid percent in metric '{item}'")
    return metrics


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_tokens(count: float) -> str:
    return f"{int(count):,}"


def _print_status(status: UsageStatus) -> None:
    style = _STATUS_STYLES[status]
    console.print(f"[bold]Status:[/bold] [{style}]{status.value}[/]")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Usage Meter CLI."""
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("AI Usage Meter - Use --help to see available commands")


@app.command()
def init(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the event ledger"),
):
    """Initialize the event ledger database."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Database initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def collect(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Meter configuration file"),
    db: Optional[str] = typer.Option(None, "--db", help="Store collected events in this ledger"),
    workers: int = typer.Option(4, "--workers", "-w", help="Sources scanned in parallel"),
):
    """
    Scan every configured source and print per-source event counts.

    Sources without an entry in the configuration are scanned with empty
    options and contribute nothing.
    """
    try:
        meter_config = _load_config(config)
        sources = all_sources(meter_config.pricing_table())
        report = collect_all(sources, meter_config.options_by_system(), max_workers=workers)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Collected events")
    table.add_column("Source")
    table.add_column("Events", justify="right")
    table.add_column("Error")
    for source in sources:
        system = source.system()
        table.add_row(
            system,
            str(report.counts.get(system, 0)),
            report.errors.get(system, ""),
        )
    console.print(table)

    if report.cancelled:
        console.print("[yellow]Collection was cancelled; counts are partial[/]")

    if db is not None:
        try:
            initialize_schema(db)
            stored = insert_events(report.events, db)
        except Exception as e:
            console.print(f"[red]Error storing events:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
        console.print(f"[green]✓[/] Stored {stored} new events in {db}")

    sys.exit(EXIT_CODE_FAIL if report.errors else EXIT_CODE_PASS)


@app.command()
def report(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Meter configuration file"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the event ledger"),
    scan: bool = typer.Option(False, "--scan", help="Collect fresh events instead of reading the ledger"),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluate at this instant (RFC 3339)"),
):
    """
    Show the active billing block, burn rate and daily totals.

    Events come from the ledger unless --scan is given.
    """
    try:
        meter_config = _load_config(config)
        pricing = meter_config.pricing_table()
        at = _parse_now(now)
        agent_stats = {}
        if scan:
            events = collect_all(all_sources(pricing), meter_config.options_by_system()).events
        else:
            initialize_schema(db)
            events = fetch_events(db_path=db)
            agent_stats = EventRepository(db).get_usage_stats()

        summary = summarize_usage(
            events,
            now=at,
            duration=meter_config.billing.block_duration,
            pricing=pricing,
            min_burn_elapsed=meter_config.billing.min_burn_elapsed,
        )
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not summary.blocks:
        console.print("\n[bold yellow]No usage data found[/]")
        console.print("\nTo get started with AI Usage Meter:")
        console.print("1. Point a configuration file at your assistant logs")
        console.print("2. Run `ai-usage-meter collect --config <file> --db <ledger>`")
        console.print("3. Run this command again to see the report\n")
        sys.exit(EXIT_CODE_PASS)

    _display_summary(summary)
    if agent_stats:
        _display_agent_stats(agent_stats)
    sys.exit(EXIT_CODE_PASS)


def _display_summary(summary: UsageSummary):
    """Display the billing summary in a clean, financial format."""
    console.print("\n[bold]AI Usage Report[/bold]")
    console.print("-" * 40)

    block = summary.active_block
    if block is None:
        console.print("\n[dim]No active billing block.[/]")
    else:
        console.print(f"\n[bold]Active block:[/bold] {block.start:%Y-%m-%d %H:%M} - {block.end:%H:%M} UTC")
        console.print(f"Block cost: {_format_currency(block.cost_usd)}")
        console.print(f"Block tokens: {_format_tokens(block.total_tokens)}")
        console.print(f"Messages: {block.message_count}")
        if block.models_seen:
            console.print(f"Models: {', '.join(sorted(block.models_seen))}")
        if summary.burn_rate_usd_per_hour is not None:
            console.print(f"Burn rate: {_format_currency(summary.burn_rate_usd_per_hour)}/h")
        reset = summary.resets.get("billing_block")
        if reset is not None:
            console.print(f"Resets at: {reset:%Y-%m-%d %H:%M} UTC")

    table = Table(title="Daily totals (UTC)")
    table.add_column("Date")
    table.add_column("Messages", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for day in summary.daily:
        table.add_row(
            day.day.isoformat(),
            str(day.message_count),
            _format_tokens(day.total_tokens),
            _format_currency(day.cost_usd),
        )
    console.print()
    console.print(table)

    total = summary.metrics.get("total_cost_usd")
    if total is not None:
        console.print(f"Total cost: {_format_currency(total.used)}")


def _display_agent_stats(stats: Dict[str, Dict[str, float]]):
    table = Table(title="Ledger totals by agent")
    table.add_column("Agent")
    table.add_column("Messages", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Reported cost", justify="right")
    for agent, values in stats.items():
        table.add_row(
            agent or "-",
            str(int(values["messages"])),
            _format_tokens(values["total_tokens"]),
            _format_currency(values["cost_usd"]),
        )
    console.print(table)


@app.command()
def hook(
    system: str = typer.Argument(..., help="Source system that produced the payload"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the event ledger"),
    account_id: Optional[str] = typer.Option(None, "--account-id", help="Account stamped on events"),
):
    """
    Ingest one hook payload read from stdin.

    Sources without hook support are reported and exit successfully, so
    that a misconfigured hook never breaks the calling tool.
    """
    source = source_by_system(system)
    if source is None:
        console.print(f"[red]Unknown source '{system}'.[/] Expected one of: {', '.join(system_names())}")
        sys.exit(EXIT_CODE_FAIL)

    raw = typer.get_binary_stream("stdin").read()
    try:
        events = ingest_hook_payload(source, raw, CollectOptions(account_id=account_id))
    except HookUnsupportedError as e:
        console.print(f"[yellow]{e}[/]")
        sys.exit(EXIT_CODE_PASS)
    except HookPayloadError as e:
        console.print(f"[red]Invalid hook payload:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        initialize_schema(db)
        stored = insert_events(events, db)
    except Exception as e:
        console.print(f"[red]Error storing events:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Recorded {stored} of {len(events)} events from {system}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(
    metric: List[str] = typer.Option([], "--metric", "-m", help="Percent used, as name=percent"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Meter configuration file"),
):
    """Derive quota status from percent-used metrics."""
    try:
        meter_config = _load_config(config)
        metrics = _parse_metrics(metric)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    derived = derive_status(
        metrics,
        near_limit=meter_config.thresholds.near_limit,
        limited=meter_config.thresholds.limited,
    )
    for name, value in metrics.items():
        console.print(f"{name}: {value:.1f}%")
    _print_status(derived)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def live(
    org: str = typer.Option(..., "--org", help="Organization identifier"),
    session_key: str = typer.Option(
        ...,
        "--session-key",
        envvar="AI_USAGE_METER_SESSION_KEY",
        help="Session cookie value for the usage endpoint",
    ),
    base_url: str = typer.Option(DEFAULT_BASE_URL, "--base-url", help="Usage endpoint host"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Meter configuration file"),
):
    """Fetch live quota utilization and derive status."""
    try:
        meter_config = _load_config(config)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        with LiveUsageClient(base_url=base_url, cookies={"sessionKey": session_key}) as client:
            windows = client.fetch_usage(org)
    except UsageAPIError as e:
        console.print(f"[red]Usage API error:[/] {str(e)}")
        _print_status(status_for_failure(e))
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Live usage windows")
    table.add_column("Window")
    table.add_column("Used", justify="right")
    table.add_column("Resets at")
    for name, window in windows.items():
        resets = f"{window.resets_at:%Y-%m-%d %H:%M} UTC" if window.resets_at else "-"
        table.add_row(name, f"{window.utilization:.1f}%", resets)
    console.print(table)

    derived = derive_status(
        usage_percent_metrics(windows),
        near_limit=meter_config.thresholds.near_limit,
        limited=meter_config.thresholds.limited,
    )
    _print_status(derived)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
