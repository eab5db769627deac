"""
CLI interface for Video Ledger.

Provides command-line access to ingestion, queries and budget checks.
"""

import json
import logging
import signal
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from video_ledger.config.loader import LedgerConfig, LogBackend, load_config
from video_ledger.core.events import RECOGNIZED_TYPES
from video_ledger.ingest.log import build_event_log
from video_ledger.services import LedgerServices, build_services
from video_ledger.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

logger = logging.getLogger("video_ledger.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _config(ctx: typer.Context) -> LedgerConfig:
    return ctx.obj["config"]


def _services(ctx: typer.Context) -> LedgerServices:
    if ctx.obj.get("services") is None:
        ctx.obj["services"] = build_services(_config(ctx))
    return ctx.obj["services"]


def _format_currency(amount: Optional[float]) -> str:
    """Format currency with sign, keeping sub-cent precision visible."""
    if amount is None:
        return "-"
    sign = "-" if amount < 0 else ""
    if 0 < abs(amount) < 0.01:
        return f"{sign}${abs(amount):.6f}"
    return f"{sign}${abs(amount):,.2f}"


def _format_percent(value: Optional[float]) -> str:
    if value is None:
        return "N/A"
    return f"{'+' if value >= 0 else ''}{value:,.1f}%"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="VIDEO_LEDGER_CONFIG",
        help="Path to the YAML configuration file",
    ),
    log_level: str = typer.Option("info", "--log-level", help="Logging level"),
):
    """Video Ledger CLI."""
    _configure_logging(log_level)
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        raise typer.Exit(EXIT_CODE_FAIL)
    ctx.obj = {"config": config, "services": None}
    if ctx.invoked_subcommand is None:
        console.print("Video Ledger - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    try:
        initialize_schema(_config(ctx).database.path)
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def consume(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Process a single batch and exit"),
):
    """Consume pipeline events from the shared log until interrupted."""
    config = _config(ctx)
    if config.event_log.backend == LogBackend.MEMORY:
        logger.warning("Using the in-process memory log; no external producer can reach it")

    loop = _services(ctx).ingestion_loop()
    if once:
        try:
            loop.run_once()
        finally:
            loop.log.close()
        console.print(
            f"Processed {loop.stats.processed} entries, "
            f"acknowledged {loop.stats.acknowledged}, failed {loop.stats.failed}"
        )
        sys.exit(EXIT_CODE_FAIL if loop.stats.failed else EXIT_CODE_PASS)

    def _shutdown(signum, frame):
        logger.info("Received signal %s, stopping after the current read", signum)
        loop.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    loop.run()
    sys.exit(EXIT_CODE_PASS)


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(3010, "--port"),
):
    """Serve the HTTP API."""
    import uvicorn

    from video_ledger.api.app import create_app

    uvicorn.run(create_app(services=_services(ctx)), host=host, port=port)


@app.command()
def publish(
    ctx: typer.Context,
    event_type: str = typer.Argument(..., help="Envelope type, e.g. llm.tokens_used"),
    payload: str = typer.Argument(..., help="JSON payload"),
):
    """Append an event envelope to the configured log."""
    try:
        json.loads(payload)
    except ValueError as e:
        console.print(f"[red]Payload is not valid JSON:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if event_type not in RECOGNIZED_TYPES:
        console.print(f"[yellow]Warning:[/] '{event_type}' is not a type the ledger consumes")

    log = build_event_log(_config(ctx).event_log)
    try:
        entry_id = log.append({"type": event_type, "payload": payload})
    finally:
        log.close()
    console.print(f"[green]✓[/] Appended entry {entry_id}")


@app.command()
def video(ctx: typer.Context, video_id: str = typer.Argument(...)):
    """Show the cost breakdown of a video."""
    breakdown = _services(ctx).aggregator.get_video_cost_breakdown(video_id)
    if breakdown is None:
        console.print(f"[red]Video not found:[/] {video_id}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Video:[/bold] {breakdown.video_id}  [dim]channel {breakdown.channel_id}[/]")
    table = Table("Bucket", "Cost")
    costs = breakdown.costs
    for label, amount in (
        ("LLM", costs.llm_total),
        ("TTS", costs.tts_total),
        ("Media", costs.media_total),
        ("Images", costs.image_total),
        ("Storage", costs.storage_total),
        ("Other", costs.other),
    ):
        table.add_row(label, _format_currency(amount))
    table.add_row("[bold]Total[/bold]", f"[bold]{_format_currency(costs.total)}[/bold]")
    console.print(table)

    console.print(f"Revenue: {_format_currency(breakdown.revenue_usd)}")
    console.print(f"Profit: {_format_currency(breakdown.profit_usd)}")
    console.print(f"ROI: {_format_percent(breakdown.roi_percent)}")
    console.print(f"Cost per view: {_format_currency(breakdown.cost_per_view)}")


@app.command()
def channel(
    ctx: typer.Context,
    channel_id: str = typer.Argument(...),
    days: int = typer.Option(30, "--days", "-d", min=1, help="Trailing window in days"),
):
    """Show the cost and revenue summary of a channel."""
    summary = _services(ctx).aggregator.get_channel_cost_summary(channel_id, days=days)

    console.print(f"\n[bold]Channel:[/bold] {summary.channel_id} (last {summary.period_days} days)")
    console.print("-" * 40)
    console.print(f"Videos: {summary.video_count}")
    console.print(f"Total cost: {_format_currency(summary.total_cost_usd)}")
    console.print(f"Total revenue: {_format_currency(summary.total_revenue_usd)}")
    console.print(f"Total profit: {_format_currency(summary.total_profit_usd)}")
    console.print(f"Average ROI: {_format_percent(summary.avg_roi_percent)}")
    if summary.unpriced_events:
        console.print(f"[yellow]{summary.unpriced_events} events had no price[/]")

    if summary.breakdown_by_provider:
        table = Table("Provider", "Cost")
        for provider, amount in summary.breakdown_by_provider.items():
            table.add_row(provider, _format_currency(amount))
        console.print(table)

    if summary.most_profitable_videos:
        table = Table("Most profitable", "Profit")
        for ranked in summary.most_profitable_videos:
            table.add_row(ranked.video_id, _format_currency(ranked.amount_usd))
        console.print(table)


@app.command()
def pricing(ctx: typer.Context):
    """Show the pricing table in effect."""
    table = Table("Key", "Price (USD)", "Unit")
    for entry in _services(ctx).pricing.entries():
        table.add_row(entry.key, f"{entry.price_usd}", entry.unit_label)
    console.print(table)


@app.command()
def alerts(ctx: typer.Context):
    """Check budgets and report any threshold newly crossed."""
    budgets = _services(ctx).budgets
    if not budgets.config.scopes:
        console.print("[dim]No budget scopes configured.[/]")
        sys.exit(EXIT_CODE_PASS)

    fired = budgets.check()
    table = Table("Scope", "Period", "Spent", "Cap", "Level")
    for status in budgets.status():
        table.add_row(
            status.scope_key,
            status.period,
            _format_currency(status.spent_usd),
            _format_currency(status.cap_usd),
            status.level_label or "-",
        )
    console.print(table)

    for alert in fired:
        console.print(f"[bold red]ALERT[/] {alert.message}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
