#!/usr/bin/env python3
"""
AI Portfolio Rebalancer

This script:
1. Loads the current portfolio (latest report)
2. Runs the technical firewall over current holdings
3. Asks the AI for news themes and related tickers
4. Screens candidates on liquidity and trend
5. Asks the AI for the final holding list
6. Reconciles the proposal with the hard rules and fresh prices
7. Saves the new report
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from types import ModuleType
from typing import Callable, Optional

import pytz
from rich.logging import RichHandler

import advisor
from config import MARKET
from errors import AIProviderError, ConcurrentRunConflict, MalformedProposal, RebalancerError
from firewall import partition
from market_data import HistoryCache, HistoryFetcher, fetch_price, fetch_prices
from portfolio import PortfolioSnapshot, market_today, now_ms
from reconciler import reconcile, validate_proposal
from screener import screen
from store import ReportStore
from strategy_config import LOGGING, SCHEDULE

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Daily analysis failed"


def configure_logging(level: str = None):
    """Route log records through rich."""
    logging.basicConfig(
        level=(level or LOGGING["level"]).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


class RunGuard:
    """Single-slot guard: at most one rebalance runs at a time.

    A second caller is rejected, never queued. The slot is released on
    both success and failure.
    """

    def __init__(self):
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self):
        if not self._lock.acquire(blocking=False):
            raise ConcurrentRunConflict()
        try:
            yield
        finally:
            self._lock.release()


RUN_GUARD = RunGuard()


@dataclass
class RunResult:
    """Result of a rebalance run."""
    success: bool
    report_id: Optional[int] = None
    snapshot: Optional[PortfolioSnapshot] = None
    error: str = ""
    details: str = ""


def run_rebalance(
    store: ReportStore = None,
    history_fetcher: HistoryFetcher = None,
    price_fetcher: Callable[[str], float] = None,
    ai: ModuleType = advisor,
    guard: RunGuard = RUN_GUARD,
) -> RunResult:
    """Run one full rebalance and persist the resulting report.

    Raises ConcurrentRunConflict if another run holds the guard. Any other
    failure returns an unsuccessful RunResult and leaves the history as it
    was.
    """
    store = ReportStore() if store is None else store
    price_fetcher = fetch_price if price_fetcher is None else price_fetcher

    with guard.hold():
        try:
            snapshot = _run_cycle(store, HistoryCache(history_fetcher), price_fetcher, ai)
            report_id = store.append(snapshot)
        except RebalancerError as e:
            logger.error("[Automation] Job failed: %s", e)
            return RunResult(success=False, error=FAILURE_MESSAGE, details=str(e))
        except Exception as e:
            logger.exception("[Automation] Job failed unexpectedly")
            return RunResult(success=False, error=FAILURE_MESSAGE, details=str(e))

    log_run_summary(snapshot)
    return RunResult(success=True, report_id=report_id, snapshot=snapshot)


def _run_cycle(store: ReportStore, history: HistoryCache,
               price_fetcher: Callable[[str], float], ai: ModuleType) -> PortfolioSnapshot:
    today = market_today()

    # 1. Current portfolio, always re-read from disk
    store.invalidate()
    latest = store.latest()
    open_book = latest.finalists if latest else []
    logger.info("[Portfolio] Current holdings: %d stocks", len(open_book))

    # 2. Firewall runs before any proposal is requested
    wall = partition(open_book, history)

    # 3. News and themes, then tickers
    logger.info("[Automation] Step 1: news and themes")
    news = ai.fetch_news_and_themes(today)
    logger.info("[Automation] Step 2: mapping %d themes to tickers", len(news["themes"]))
    raw_candidates = ai.map_themes_to_candidates(news["themes"])

    # 4. Liquidity / trend screen
    candidates = screen(raw_candidates, history)

    # 5. Final proposal (untrusted; failures degrade to an empty proposal)
    logger.info("[Automation] Step 3: portfolio decision")
    try:
        proposal = ai.propose({
            "keepers": wall.keepers,
            "candidates": candidates,
            "marketSummary": news["newsSummary"],
        })
    except (AIProviderError, MalformedProposal) as e:
        logger.warning("Proposal unavailable (%s), keeping current holdings only", e)
        proposal = []

    # 6. Fresh prices for everything that could end up held or sold
    codes = [p.code for p in open_book] + [e["code"] for e in validate_proposal(proposal)]
    fresh = fetch_prices(codes, price_fetcher)

    result = reconcile(
        wall.keepers,
        proposal,
        fresh,
        prior_book=open_book,
        leavers=wall.leavers,
        leaver_reasons=wall.leaver_reasons,
        today=today,
    )

    timestamp = now_ms()
    if latest and timestamp <= latest.timestamp:
        timestamp = latest.timestamp + 1

    return PortfolioSnapshot(
        date=today,
        timestamp=timestamp,
        news_summary=news["newsSummary"],
        candidates=candidates,
        finalists=result.finalists,
        sold=result.sold,
        themes=news["themes"],
    )


def refresh_prices(store: ReportStore = None,
                   price_fetcher: Callable[[str], float] = None,
                   guard: RunGuard = RUN_GUARD) -> Optional[PortfolioSnapshot]:
    """Refresh current prices and ROI of the latest report in place.

    A zero entry price self-heals to the current price. Returns the updated
    snapshot, or None when there is no report yet.
    """
    store = ReportStore() if store is None else store
    price_fetcher = fetch_price if price_fetcher is None else price_fetcher

    with guard.hold():
        store.invalidate()
        latest = store.latest()
        if latest is None:
            return None

        prices = fetch_prices([p.code for p in latest.finalists], price_fetcher)
        for position in latest.finalists:
            current = prices.get(position.code) or position.current_price
            if not position.entry_price:
                position.entry_price = current
            position.refresh(current)

        store.update_prices(latest.id, latest.finalists)
        logger.info("Refreshed prices for %d holdings", len(latest.finalists))
        return latest


def log_run_summary(snapshot: PortfolioSnapshot):
    """Append the run to the JSON session log and print it if verbose."""
    session = {
        "timestamp": datetime.now().isoformat(),
        "report_id": snapshot.id,
        "date": snapshot.date,
        "themes": [t.get("keyword") for t in snapshot.themes],
        "candidates": [c.get("code") for c in snapshot.candidates],
        "finalists": [p.to_dict() for p in snapshot.finalists],
        "sold": [s.to_dict() for s in snapshot.sold],
    }

    log_file = LOGGING["log_file"]
    try:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        try:
            with open(log_file, "r", encoding="utf-8") as f:
                log = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            log = {"sessions": []}
        if not isinstance(log, dict) or not isinstance(log.get("sessions"), list):
            log = {"sessions": []}

        log["sessions"].append(session)
        log["sessions"] = log["sessions"][-LOGGING["max_sessions"]:]

        with open(log_file, "w", encoding="utf-8") as f:
            json.dump(log, f, indent=2, ensure_ascii=False)
    except OSError as e:
        logger.warning("Could not write run log %s: %s", log_file, e)

    if not LOGGING["verbose"]:
        return
    logger.info("=" * 60)
    logger.info("REBALANCE - %s (report %s)", snapshot.date, snapshot.id)
    for p in snapshot.finalists:
        logger.info("  %-4s %s %s @ %.2f -> %.2f (%+.1f%%)",
                    p.status, p.code, p.name, p.entry_price, p.current_price, p.roi)
    for s in snapshot.sold:
        logger.info("  SOLD %s %s %+.1f%%: %s", s.code, s.name, s.roi, s.reason)
    logger.info("=" * 60)


def is_run_time(now: datetime = None, last_run_date: str = None) -> bool:
    """True once per trade day, at or after the scheduled run time."""
    tz = pytz.timezone(MARKET["timezone"])
    now = now or datetime.now(tz)

    if now.weekday() not in SCHEDULE["trade_days"]:
        return False
    if last_run_date == now.strftime('%Y-%m-%d'):
        return False

    run_h, run_m = map(int, SCHEDULE["run_time"].split(":"))
    return (now.hour, now.minute) >= (run_h, run_m)


def run_continuous():
    """Run the rebalance once per trade day."""
    logger.info("AI PORTFOLIO REBALANCER")
    logger.info("Daily run at %s %s", SCHEDULE["run_time"], MARKET["timezone"])

    last_run_date = None
    while True:
        try:
            if is_run_time(last_run_date=last_run_date):
                result = run_rebalance()
                if result.success:
                    last_run_date = market_today()
                else:
                    logger.error("%s: %s", result.error, result.details)
            time.sleep(SCHEDULE["check_interval_minutes"] * 60)
        except ConcurrentRunConflict as e:
            logger.warning("%s", e)
            time.sleep(60)
        except KeyboardInterrupt:
            logger.info("Stopping rebalancer...")
            break


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="AI Portfolio Rebalancer")
    parser.add_argument("--once", action="store_true", help="Run once then exit")
    args = parser.parse_args()

    configure_logging()
    if args.once:
        outcome = run_rebalance()
        if not outcome.success:
            raise SystemExit(f"{outcome.error}: {outcome.details}")
    else:
        run_continuous()
