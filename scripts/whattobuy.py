#!/usr/bin/env python3
"""whattobuy command-line interface.

Builds a target portfolio allocation and tells what to buy for a given
amount of cash, in whole lots, using MOEX prices.

Examples:
    # Add positions (one "TICKER PERCENT" per argument or line)
    python scripts/whattobuy.py add --user 42 "FXMM 30" "SBER 70"

    # Lock the allocation once it sums to 100%
    python scripts/whattobuy.py finish --user 42

    # What to buy for 100 000 roubles
    python scripts/whattobuy.py buy --user 42 100000

    # Start over (prints the old allocation for undo)
    python scripts/whattobuy.py restart --user 42

    # Refresh market data every 30 minutes in the foreground
    python scripts/whattobuy.py warm --interval 30
"""

import sys
import time
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

# Add src to path
sys.path.append(".")

from src.api.portfolio_api import PortfolioAPI
from src.orchestration.scheduler import CacheRefreshScheduler
from src.portfolio.allocation import LineStatus, PurchasePlan
from src.utils.config import load_config
from src.utils.exceptions import DataError, PortfolioError
from src.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)


def build_api(ctx: click.Context) -> PortfolioAPI:
    """Create the PortfolioAPI once per invocation and close it on exit."""
    config = load_config(ctx.obj["config_path"])
    ctx.obj["config"] = config
    setup_logging(
        level=ctx.obj["log_level"] or config.get("logging.level", "INFO"),
        log_format=config.get("logging.format"),
    )
    api = PortfolioAPI.from_config(config)
    ctx.call_on_close(api.close)
    return api


def run_command(func):
    """Report user errors verbatim and operational errors generically."""
    try:
        return func()
    except PortfolioError as e:
        console.print(f"[yellow]Invalid input:[/yellow] {e}")
        sys.exit(2)
    except DataError as e:
        logger.error("Command failed: %s", e, exc_info=True)
        console.print(f"[bold red]Server error:[/bold red] {e}")
        sys.exit(1)


def render_plan(api: PortfolioAPI, plan: PurchasePlan) -> Table:
    table = Table(title=f"What to buy for {plan.capital:,.2f}")
    table.add_column("Ticker", style="cyan")
    table.add_column("Share", justify="right")
    table.add_column("Lots", justify="right")
    table.add_column("Spend", justify="right")
    table.add_column("Note")

    for line in plan.lines:
        ticker = api.display_ticker(line.secid)
        share = f"{line.percent:.2f}%"
        if line.status is LineStatus.BUY:
            table.add_row(ticker, share, str(line.lots), f"{line.spend:,.2f}", "")
        elif line.status is LineStatus.UNPRICED:
            table.add_row(ticker, share, "-", "-", "[red]no current price[/red]")
        elif line.units_affordable == 0:
            table.add_row(
                ticker,
                share,
                "0",
                "0.00",
                f"one security costs {line.price:,.2f}, more than {line.target_spend:,.2f}",
            )
        else:
            table.add_row(
                ticker,
                share,
                "0",
                "0.00",
                f"can buy {line.units_affordable} securities, a lot has {line.lot_size:.0f}",
            )

    table.add_row("", "", "", "", "")
    table.add_row("[bold]Total[/bold]", "", "", f"[bold]{plan.total_spend:,.2f}[/bold]", "")
    return table


@click.group()
@click.option("--config", "config_path", default=None, help="Path to YAML config")
@click.option("--log-level", default=None, help="Override logging level")
@click.pass_context
def cli(ctx: click.Context, config_path, log_level):
    """whattobuy - whole-lot purchase planner for a target allocation."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option("--user", "-u", required=True, help="User identifier")
@click.argument("positions", nargs=-1, required=True)
@click.pass_context
def add(ctx: click.Context, user: str, positions: tuple):
    """Add or replace positions, e.g. "FXMM 30"."""
    api = build_api(ctx)

    def _add():
        result = api.add_allocation(user, "\n".join(positions))
        for secid, percent in sorted(result.added.items()):
            console.print(f"[green]+[/green] {api.display_ticker(secid)} {percent:.2f}%")
        if result.not_found:
            console.print("[yellow]Not found:[/yellow] " + ", ".join(result.not_found))
        console.print(f"Allocated: {result.total_percent:.2f}%")
        if result.complete:
            console.print("[bold green]The allocation reached 100%. Run 'finish' to lock it.[/bold green]")

    run_command(_add)


@cli.command()
@click.option("--user", "-u", required=True, help="User identifier")
@click.pass_context
def view(ctx: click.Context, user: str):
    """Show the current allocation."""
    api = build_api(ctx)

    def _view():
        lines = api.view(user)
        if not lines:
            console.print("The portfolio is empty. Add 'ticker percent' positions.")
            return
        table = Table(title=f"Portfolio of {user}")
        table.add_column("Ticker", style="cyan")
        table.add_column("Share", justify="right")
        table.add_column("Name")
        for line in lines:
            table.add_row(line.secid, f"{line.percent:.2f}%", line.short_name or "-")
        console.print(table)

    run_command(_view)


@cli.command()
@click.option("--user", "-u", required=True, help="User identifier")
@click.pass_context
def finish(ctx: click.Context, user: str):
    """Lock an allocation that sums to 100%."""
    api = build_api(ctx)

    def _finish():
        api.finish(user)
        console.print("[bold green]Portfolio saved.[/bold green] Use 'buy AMOUNT' to plan purchases.")

    run_command(_finish)


@cli.command()
@click.option("--user", "-u", required=True, help="User identifier")
@click.pass_context
def restart(ctx: click.Context, user: str):
    """Delete the allocation and print it for undo."""
    api = build_api(ctx)

    def _restart():
        previous = api.restart(user)
        console.print("Portfolio deleted. To restore it, add these positions again:")
        for ticker, percent in sorted(previous.items()):
            console.print(f"{ticker} {percent:.2f}")

    run_command(_restart)


@cli.command()
@click.option("--user", "-u", required=True, help="User identifier")
@click.argument("capital", type=float)
@click.pass_context
def buy(ctx: click.Context, user: str, capital: float):
    """Plan whole-lot purchases for CAPITAL."""
    api = build_api(ctx)
    run_command(lambda: console.print(render_plan(api, api.buy(user, capital))))


@cli.command()
@click.pass_context
def refresh(ctx: click.Context):
    """Refresh the market data cache and report the record count."""
    api = build_api(ctx)
    run_command(lambda: console.print(f"Cached {api.cache.refresh()} securities"))


@cli.command()
@click.option("--interval", "-i", default=None, type=float, help="Minutes between refreshes")
@click.pass_context
def warm(ctx: click.Context, interval):
    """Keep the market data cache warm until Ctrl+C."""
    api = build_api(ctx)
    scheduler_config = dict(ctx.obj["config"].get("scheduler", {}))
    if interval is not None:
        scheduler_config["refresh_interval_minutes"] = interval

    scheduler = CacheRefreshScheduler(api.cache, scheduler_config)
    scheduler.start()
    console.print(
        f"[bold green]Refreshing every {scheduler.interval_minutes:g} min. Press Ctrl+C to exit.[/bold green]"
    )
    try:
        while True:
            time.sleep(60)
            console.print(
                f"[dim]{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}[/dim] "
                f"cached: {len(api.cache)}, refreshes: {scheduler.refresh_count}, "
                f"failures: {scheduler.failure_count}"
            )
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
    finally:
        scheduler.stop()


if __name__ == "__main__":
    cli()
