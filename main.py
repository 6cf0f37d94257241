#!/usr/bin/env python3
"""Rebalancer CLI: inspect the portfolio, run a rebalance, correct entries."""

import argparse
import logging
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import MAX_POSITIONS
from errors import ConcurrentRunConflict, PersistenceFailure
from market_data import fetch_history, get_data_source_status
from performance import performance_summary
from rebalancer import configure_logging, refresh_prices, run_rebalance
from screener import screen
from signals import analyze
from store import ReportStore

console = Console()


def print_header(text: str):
    """Print a header."""
    console.print(Panel(text, style="bold blue"))


def _pct(value: float) -> str:
    style = "green" if value >= 0 else "red"
    return f"[{style}]{value:+.2f}%[/{style}]"


def cmd_status(store: ReportStore):
    """Show the current portfolio."""
    print_header("Current Portfolio")

    latest = store.latest()
    if latest is None:
        console.print("No reports yet. Run: python main.py run")
        return

    console.print(f"Report {latest.id} | {latest.date} | Positions: {len(latest.finalists)}/{MAX_POSITIONS}")
    console.print(f"Data source: {get_data_source_status()}")

    table = Table(title="Holdings")
    table.add_column("Status", style="cyan")
    table.add_column("Code")
    table.add_column("Name")
    table.add_column("Industry")
    table.add_column("Entry", justify="right")
    table.add_column("Since", style="dim")
    table.add_column("Current", justify="right")
    table.add_column("ROI", justify="right")

    for p in latest.finalists:
        table.add_row(
            p.status, p.code, p.name, p.industry,
            f"{p.entry_price:.2f}", p.entry_date,
            f"{p.current_price:.2f}", _pct(p.roi),
        )
    console.print(table)

    if latest.sold:
        sold_table = Table(title="Sold in this report")
        sold_table.add_column("Code")
        sold_table.add_column("Name")
        sold_table.add_column("Entry", justify="right")
        sold_table.add_column("Exit", justify="right")
        sold_table.add_column("ROI", justify="right")
        sold_table.add_column("Reason")
        for s in latest.sold:
            sold_table.add_row(s.code, s.name, f"{s.entry_price:.2f}", f"{s.exit_price:.2f}",
                               _pct(s.roi), s.reason)
        console.print(sold_table)

    if latest.news_summary:
        console.print(Panel(latest.news_summary, title="Market summary"))


def cmd_history(store: ReportStore, limit: int = 10):
    """Show the most recent reports."""
    print_header("Report History")

    reports = store.all()[:limit]
    if not reports:
        console.print("No reports yet.")
        return

    table = Table(title=f"Last {len(reports)} Reports")
    table.add_column("ID", style="dim")
    table.add_column("Date", style="cyan")
    table.add_column("Holdings")
    table.add_column("Sold")
    for r in reports:
        table.add_row(
            str(r.id), r.date,
            ", ".join(p.code for p in r.finalists) or "-",
            ", ".join(s.code for s in r.sold) or "-",
        )
    console.print(table)


def cmd_performance(store: ReportStore):
    """Show win rate and ROI statistics."""
    print_header("Performance")

    summary = performance_summary(store.all())
    table = Table()
    table.add_column("Period", style="cyan")
    table.add_column("Trades", justify="right")
    table.add_column("Wins", justify="right")
    table.add_column("Win Rate", justify="right")
    table.add_column("Avg ROI", justify="right")
    table.add_column("Total ROI", justify="right")
    for label, stats in summary.items():
        table.add_row(
            label, str(stats["count"]), str(stats["wins"]),
            f"{stats['winRate']:.1f}%", _pct(stats["avgRoi"]), _pct(stats["totalRoi"]),
        )
    console.print(table)


def cmd_quote(code: str):
    """Technical snapshot for one code."""
    print_header(f"Quote: {code.upper()}")

    signal = analyze(fetch_history(code), code)
    if not signal.has_opinion:
        console.print(f"Could not analyze {code}: {signal.reason}")
        return

    table = Table()
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Price", f"{signal.price:.2f}")
    table.add_row("RSI", f"{signal.rsi:.1f}")
    table.add_row("MA 5", f"{signal.ma5:.2f}")
    table.add_row("MA 20", f"{signal.ma20:.2f}")
    table.add_row("MA 60", f"{signal.ma60:.2f}")
    table.add_row("Signals", ", ".join(signal.signals))
    table.add_row("Action", signal.action)
    console.print(table)


def cmd_screen(codes):
    """Run the liquidity/trend screen over codes."""
    print_header("Screened Candidates")

    screened = screen(codes)
    if not screened:
        console.print("No candidates pass the screen.")
        return
    for stock in screened:
        console.print(f"{stock['code']}: {stock['price']:.2f} | {stock['volume']:,} lots | {stock['tech_note']}")


def cmd_run(store: ReportStore):
    """Run a full rebalance now."""
    print_header("Rebalance")

    result = run_rebalance(store)
    if result.success:
        console.print(f"[green]SUCCESS:[/green] saved report {result.report_id}")
        cmd_status(store)
    else:
        console.print(f"[red]FAILED:[/red] {result.error} ({result.details})")
        sys.exit(1)


def cmd_refresh(store: ReportStore):
    """Refresh prices of the current holdings."""
    snapshot = refresh_prices(store)
    if snapshot is None:
        console.print("No reports yet.")
        return
    cmd_status(store)


def cmd_set_entry(store: ReportStore, code: str, price: float):
    """Manually correct an entry price."""
    if store.set_entry_price(code, price):
        console.print(f"[green]Updated[/green] entry price of {code} to {price:.2f}")
    else:
        console.print(f"[red]Not found:[/red] {code} is not in the current portfolio")
        sys.exit(1)


def cmd_reset(store: ReportStore):
    """Clear all report history."""
    print_header("Clear History")

    confirm = input("This deletes every saved report. Confirm? (yes/no): ")
    if confirm.lower() == 'yes':
        store.clear()
        console.print("History cleared.")
    else:
        console.print("Reset cancelled.")


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="AI Portfolio Rebalancer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  status                  Show the current portfolio
  history [N]             Show the last N reports
  performance             Show win rate / ROI statistics
  quote CODE              Technical snapshot for a code
  screen CODE...          Run the liquidity/trend screen
  run                     Run a full rebalance now
  refresh                 Refresh prices of current holdings
  set-entry CODE PRICE    Correct an entry price
  reset                   Clear all history

Examples:
  python main.py status
  python main.py quote 2330
  python main.py screen 2330 2317 2603
  python main.py set-entry 2330 1000
        """
    )

    parser.add_argument('command', nargs='?', default='status',
                        help='Command to execute')
    parser.add_argument('args', nargs='*', help='Command arguments')
    parser.add_argument('--log-level', default=None, help='Logging level')

    args = parser.parse_args()
    configure_logging(args.log_level or "WARNING")

    store = ReportStore()
    command = args.command.lower()

    try:
        if command == 'status':
            cmd_status(store)

        elif command == 'history':
            limit = int(args.args[0]) if args.args else 10
            cmd_history(store, limit)

        elif command == 'performance':
            cmd_performance(store)

        elif command == 'quote':
            if not args.args:
                console.print("Usage: quote <CODE>")
                sys.exit(1)
            cmd_quote(args.args[0])

        elif command == 'screen':
            if not args.args:
                console.print("Usage: screen <CODE> [CODE...]")
                sys.exit(1)
            cmd_screen(args.args)

        elif command == 'run':
            logging.getLogger().setLevel((args.log_level or "INFO").upper())
            cmd_run(store)

        elif command == 'refresh':
            cmd_refresh(store)

        elif command == 'set-entry':
            if len(args.args) < 2:
                console.print("Usage: set-entry <CODE> <PRICE>")
                sys.exit(1)
            cmd_set_entry(store, args.args[0], float(args.args[1]))

        elif command == 'reset':
            cmd_reset(store)

        else:
            console.print(f"Unknown command: {command}")
            parser.print_help()
            sys.exit(1)

    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        sys.exit(0)
    except (ConcurrentRunConflict, PersistenceFailure, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
