"""Portfolio data model: positions, sold positions and snapshots."""

import math
import time
from datetime import datetime
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

import pytz

from config import MARKET

STATUS_NEW = "NEW"
STATUS_HOLD = "HOLD"

_SUFFIXES = sorted(MARKET["suffixes"], key=len, reverse=True)


def canonical_code(code: Any) -> str:
    """Canonical identity for a ticker code.

    Trims whitespace, upper-cases and strips the exchange suffix, so
    ``" 2330.tw"``, ``2330`` and ``2330.0`` all map to ``"2330"``.
    """
    if code is None:
        return ""
    if isinstance(code, float) and code.is_integer():
        code = int(code)
    text = str(code).strip().upper()
    for suffix in _SUFFIXES:
        if text.endswith(suffix):
            text = text[:-len(suffix)]
            break
    return text


def to_float(value: Any) -> float:
    """Coerce a loosely typed number to float, 0.0 if unusable."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def compute_roi(entry_price: float, current_price: float) -> float:
    """Percentage return of current_price over entry_price.

    0 when either price is unknown (zero or missing).
    """
    if not entry_price or (current_price or 0) <= 0:
        return 0.0
    return (current_price - entry_price) / entry_price * 100


def market_today() -> str:
    """Today's date (YYYY-MM-DD) in the exchange timezone."""
    tz = pytz.timezone(MARKET["timezone"])
    return datetime.now(tz).strftime('%Y-%m-%d')


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Position:
    """An open position in the portfolio."""
    code: str
    name: str = ""
    industry: str = ""
    entry_price: float = 0.0
    entry_date: str = ""
    current_price: float = 0.0
    roi: float = 0.0
    status: str = STATUS_NEW
    reason: str = ""

    def refresh(self, current_price: float):
        """Set a new current price and recompute ROI."""
        self.current_price = current_price
        self.roi = compute_roi(self.entry_price, current_price)

    def to_dict(self) -> Dict:
        return {
            "code": self.code,
            "name": self.name,
            "industry": self.industry,
            "entryPrice": self.entry_price,
            "entryDate": self.entry_date,
            "currentPrice": self.current_price,
            "roi": self.roi,
            "status": self.status,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Position':
        code = canonical_code(data.get("code"))
        if not code:
            raise ValueError(f"Position without code: {data!r}")
        status = str(data.get("status") or STATUS_HOLD).upper()
        return cls(
            code=code,
            name=str(data.get("name") or ""),
            industry=str(data.get("industry") or ""),
            entry_price=to_float(data.get("entryPrice")),
            entry_date=str(data.get("entryDate") or ""),
            current_price=to_float(data.get("currentPrice")),
            roi=to_float(data.get("roi")),
            status=status if status in (STATUS_NEW, STATUS_HOLD) else STATUS_HOLD,
            reason=str(data.get("reason") or ""),
        )


@dataclass
class SoldPosition:
    """A position that left the portfolio. Immutable once created."""
    code: str
    name: str
    entry_price: float
    exit_price: float
    roi: float
    reason: str
    sold_date: str

    def to_dict(self) -> Dict:
        return {
            "code": self.code,
            "name": self.name,
            "entryPrice": self.entry_price,
            "exitPrice": self.exit_price,
            "roi": self.roi,
            "reason": self.reason,
            "soldDate": self.sold_date,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SoldPosition':
        code = canonical_code(data.get("code"))
        if not code:
            raise ValueError(f"Sold position without code: {data!r}")
        entry_price = to_float(data.get("entryPrice"))
        exit_price = to_float(data.get("exitPrice"))
        roi = data.get("roi")
        return cls(
            code=code,
            name=str(data.get("name") or ""),
            entry_price=entry_price,
            exit_price=exit_price,
            roi=to_float(roi) if roi is not None else compute_roi(entry_price, exit_price),
            reason=str(data.get("reason") or ""),
            sold_date=str(data.get("soldDate") or ""),
        )


@dataclass
class PortfolioSnapshot:
    """One persisted rebalance outcome (a daily report)."""
    date: str
    timestamp: int
    news_summary: str = ""
    candidates: List[Dict] = field(default_factory=list)
    finalists: List[Position] = field(default_factory=list)
    sold: List[SoldPosition] = field(default_factory=list)
    themes: List[Dict] = field(default_factory=list)
    id: Optional[int] = None

    def find(self, code: str) -> Optional[Position]:
        """Find an open position by code."""
        code = canonical_code(code)
        for position in self.finalists:
            if position.code == code:
                return position
        return None

    def to_record(self) -> Dict:
        """Storage record: top-level metadata plus a structured data block."""
        return {
            "id": self.id,
            "date": self.date,
            "timestamp": self.timestamp,
            "newsSummary": self.news_summary,
            "data": {
                "candidates": self.candidates,
                "finalists": [p.to_dict() for p in self.finalists],
                "sold": [s.to_dict() for s in self.sold],
                "themes": self.themes,
            },
        }

    @classmethod
    def from_record(cls, record: Dict) -> 'PortfolioSnapshot':
        """Build a snapshot from a storage record, validating its shape."""
        if not isinstance(record, dict):
            raise ValueError("Snapshot record is not an object")
        data = record.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Snapshot data block is not an object")

        timestamp = record.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            raise ValueError(f"Snapshot timestamp invalid: {timestamp!r}")

        finalists = data.get("finalists")
        sold = data.get("sold")
        candidates = data.get("candidates")
        themes = data.get("themes")

        return cls(
            id=record.get("id"),
            date=str(record.get("date") or ""),
            timestamp=int(timestamp),
            news_summary=str(record.get("newsSummary") or ""),
            candidates=[c for c in candidates if isinstance(c, dict)] if isinstance(candidates, list) else [],
            finalists=[Position.from_dict(p) for p in finalists if isinstance(p, dict)]
            if isinstance(finalists, list) else [],
            sold=[SoldPosition.from_dict(s) for s in sold if isinstance(s, dict)]
            if isinstance(sold, list) else [],
            themes=[t for t in themes if isinstance(t, dict)] if isinstance(themes, list) else [],
        )
