"""Technical signal analysis: moving averages, RSI and the buy/hold/sell classifier."""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd

from config import SIGNALS
from market_data import HistoryFetcher, calculate_rsi, calculate_sma, fetch_history
from portfolio import canonical_code

logger = logging.getLogger(__name__)

# Actions
BUY = "BUY"
HOLD = "HOLD"
SELL = "SELL"
NEUTRAL = "NEUTRAL"

# Signal tags
RSI_BULLISH = "RSI_BULLISH"
RSI_BEARISH = "RSI_BEARISH"
MA20_BULLISH = "MA20_BULLISH"
MA20_BEARISH = "MA20_BEARISH"

INSUFFICIENT_DATA = "insufficient data"
ANALYSIS_FAILED = "analysis failed"


@dataclass
class TechnicalSignal:
    """Technical state of one symbol. Recomputed every run, never persisted."""
    code: str
    price: float = 0.0
    rsi: Optional[float] = None
    ma5: Optional[float] = None
    ma20: Optional[float] = None
    ma60: Optional[float] = None
    signals: List[str] = field(default_factory=list)
    action: str = NEUTRAL
    reason: str = ""

    @property
    def has_opinion(self) -> bool:
        return self.reason not in (INSUFFICIENT_DATA, ANALYSIS_FAILED)

    @property
    def technical_reason(self) -> str:
        """Human-readable summary of the indicators behind the action."""
        if not self.has_opinion:
            return f"{self.code}: {self.reason}"
        parts = [f"RSI {self.rsi:.1f}"]
        if MA20_BULLISH in self.signals:
            parts.append(f"close {self.price:.2f} > MA20 {self.ma20:.2f}")
        else:
            parts.append(f"close {self.price:.2f} <= MA20 {self.ma20:.2f}")
        return f"[{self.action}] " + ", ".join(parts)

    def to_dict(self) -> Dict:
        return {
            "code": self.code,
            "price": self.price,
            "rsi": self.rsi,
            "ma5": self.ma5,
            "ma20": self.ma20,
            "ma60": self.ma60,
            "signals": list(self.signals),
            "action": self.action,
            "reason": self.reason or self.technical_reason,
        }


def classify(rsi: float, close: float, ma20: float, held: bool = False) -> Tuple[str, List[str]]:
    """Classify a symbol from its RSI and its close relative to MA20.

    RSI above the bullish threshold is a BUY, below the bearish threshold a
    SELL; both thresholds are exclusive. Inside the band the action starts
    NEUTRAL (HOLD for a held position). A close above MA20 promotes
    NEUTRAL to HOLD; a close at or below MA20 demotes HOLD to SELL.
    """
    tags = []
    if rsi > SIGNALS["rsi_bullish"]:
        tags.append(RSI_BULLISH)
        action = BUY
    elif rsi < SIGNALS["rsi_bearish"]:
        tags.append(RSI_BEARISH)
        action = SELL
    else:
        action = HOLD if held else NEUTRAL

    if close > ma20:
        tags.append(MA20_BULLISH)
        if action == NEUTRAL:
            action = HOLD
    else:
        tags.append(MA20_BEARISH)
        if action == HOLD:
            action = SELL

    return action, tags


def analyze(series: Optional[pd.DataFrame], code: str = "", held: bool = False) -> TechnicalSignal:
    """Compute the technical signal for a price series.

    A missing or short series, or one whose latest indicators are NaN,
    yields a NEUTRAL signal with reason "insufficient data", which callers
    treat as "no opinion".
    """
    code = canonical_code(code)
    if series is None or len(series) < SIGNALS["min_bars"]:
        return TechnicalSignal(code=code, action=NEUTRAL, reason=INSUFFICIENT_DATA)

    short, mid, long_ = SIGNALS["ma_periods"]
    close = float(series['Close'].iloc[-1])
    ma5 = float(calculate_sma(series, short).iloc[-1])
    ma20 = float(calculate_sma(series, mid).iloc[-1])
    ma60 = float(calculate_sma(series, long_).iloc[-1])
    rsi = float(calculate_rsi(series, SIGNALS["rsi_period"]).iloc[-1])
    if any(math.isnan(v) for v in (close, ma5, ma20, ma60, rsi)):
        return TechnicalSignal(code=code, action=NEUTRAL, reason=INSUFFICIENT_DATA)

    action, tags = classify(rsi, close, ma20, held=held)

    return TechnicalSignal(
        code=code,
        price=round(close, 2),
        rsi=round(rsi, 2),
        ma5=round(ma5, 2),
        ma20=round(ma20, 2),
        ma60=round(ma60, 2),
        signals=tags,
        action=action,
    )


def analyze_code(code: str, fetch: HistoryFetcher = None, held: bool = False) -> TechnicalSignal:
    """Fetch history for a code and analyze it."""
    fetch = fetch_history if fetch is None else fetch
    series = fetch(code)
    signal = analyze(series, code, held=held)
    if not signal.has_opinion:
        logger.info("No technical opinion for %s (%s)", signal.code, signal.reason)
    return signal
