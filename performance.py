"""Performance statistics over realized trades and the open book."""

import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

import pytz

from config import MARKET, STATS_LABELS, STATS_WINDOWS
from portfolio import PortfolioSnapshot

DAY_MS = 24 * 60 * 60 * 1000
CURRENT_HOLDINGS = "currentHoldings"


@dataclass
class Stats:
    count: int = 0
    wins: int = 0
    win_rate: float = 0.0
    avg_roi: float = 0.0
    total_roi: float = 0.0

    def to_dict(self) -> Dict:
        data = asdict(self)
        return {
            "count": data["count"],
            "wins": data["wins"],
            "winRate": data["win_rate"],
            "avgRoi": data["avg_roi"],
            "totalRoi": data["total_roi"],
        }


def compute_stats(rois: Iterable[float]) -> Stats:
    """Win rate and ROI statistics; all zero when there is nothing to count."""
    rois = [r or 0.0 for r in rois]
    count = len(rois)
    if count == 0:
        return Stats()
    wins = sum(1 for r in rois if r > 0)
    total = sum(rois)
    return Stats(
        count=count,
        wins=wins,
        win_rate=wins / count * 100,
        avg_roi=total / count,
        total_roi=total,
    )


def _date_to_ms(date_str: str) -> Optional[int]:
    """Midnight of a YYYY-MM-DD date in the exchange timezone, as epoch ms."""
    try:
        day = datetime.strptime(date_str[:10], '%Y-%m-%d')
    except (TypeError, ValueError):
        return None
    tz = pytz.timezone(MARKET["timezone"])
    return int(tz.localize(day).timestamp() * 1000)


def trade_log(snapshots: List[PortfolioSnapshot]) -> List[Dict]:
    """Every sold entry across all snapshots, each with its own timestamp."""
    trades = []
    for snapshot in snapshots:
        for sold in snapshot.sold:
            timestamp = _date_to_ms(sold.sold_date) if sold.sold_date else None
            trades.append({
                **sold.to_dict(),
                "timestamp": timestamp if timestamp is not None else snapshot.timestamp,
            })
    return trades


def latest_snapshot(snapshots: List[PortfolioSnapshot]) -> Optional[PortfolioSnapshot]:
    if not snapshots:
        return None
    return max(snapshots, key=lambda s: s.timestamp)


def aggregate(
    snapshots: List[PortfolioSnapshot],
    windows: List[Optional[int]] = None,
    now: Optional[int] = None,
) -> Dict[Union[int, None, str], Stats]:
    """Rolling statistics per window (in days, None = all time).

    The extra key ``"currentHoldings"`` applies the same formula to the
    latest snapshot's open positions (unrealized performance).
    """
    windows = STATS_WINDOWS if windows is None else windows
    now = int(time.time() * 1000) if now is None else now
    trades = trade_log(snapshots)

    stats: Dict[Union[int, None, str], Stats] = {}
    for window in windows:
        if window is None:
            period = trades
        else:
            cutoff = now - window * DAY_MS
            period = [t for t in trades if t["timestamp"] >= cutoff]
        stats[window] = compute_stats(t["roi"] for t in period)

    latest = latest_snapshot(snapshots)
    stats[CURRENT_HOLDINGS] = compute_stats(p.roi for p in latest.finalists) if latest else Stats()
    return stats


def performance_summary(snapshots: List[PortfolioSnapshot], now: Optional[int] = None) -> Dict[str, Dict]:
    """Labelled statistics for display (month1 ... allTime, currentHoldings)."""
    stats = aggregate(snapshots, STATS_WINDOWS, now)
    summary = {}
    for window in STATS_WINDOWS:
        label = STATS_LABELS.get(window, f"days{window}")
        summary[label] = stats[window].to_dict()
    summary[CURRENT_HOLDINGS] = stats[CURRENT_HOLDINGS].to_dict()
    return summary
