"""Candidate screening: liquidity and trend filters over AI-proposed tickers."""

import logging
from typing import Dict, List, Union

import pandas as pd

from config import SCREENING, SIGNALS
from errors import DataUnavailable
from market_data import HistoryFetcher, calculate_rsi, calculate_sma, fetch_history
from portfolio import canonical_code

logger = logging.getLogger(__name__)


def _dedupe(raw_candidates: List[Union[Dict, str]]) -> Dict[str, Dict]:
    """Unique candidates by canonical code, first metadata seen wins."""
    unique = {}
    for item in raw_candidates or []:
        if isinstance(item, dict):
            meta = dict(item)
        elif isinstance(item, (str, int, float)):
            meta = {"code": item}
        else:
            continue

        code = canonical_code(meta.get("code"))
        if not code or code in unique:
            continue
        meta["code"] = code
        unique[code] = meta
    return unique


def screen_one(meta: Dict, fetch: HistoryFetcher) -> Dict:
    """Apply the filters to one candidate; returns None if it is discarded.

    Raises DataUnavailable when the history is missing or too short.
    """
    code = meta["code"]
    hist = fetch(code)
    if hist is None:
        raise DataUnavailable(code, "no history")
    if len(hist) < SCREENING["min_bars"]:
        raise DataUnavailable(code, f"only {len(hist)} bars")

    last = hist.iloc[-1]
    if pd.isna(last['Close']):
        raise DataUnavailable(code, "no close on the latest bar")
    close = float(last['Close'])
    volume = 0.0 if pd.isna(last['Volume']) else float(last['Volume'])

    if volume < SCREENING["min_volume"]:
        logger.info("[Filter] %s dropped: volume %d lots", code, round(volume / SCREENING["board_lot"]))
        return None

    ma20 = float(calculate_sma(hist, SCREENING["trend_ma"]).iloc[-1])
    if close < ma20:
        logger.info("[Filter] %s dropped: close %.2f < MA20 %.2f", code, close, ma20)
        return None

    rsi_series = calculate_rsi(hist, SIGNALS["rsi_period"])
    rsi = float(rsi_series.iloc[-1]) if rsi_series.notna().any() else 50.0

    relation = ">" if close > ma20 else "="
    return {
        **meta,
        "price": round(close, 2),
        "volume": round(volume / SCREENING["board_lot"]),
        "tech_note": f"Price({close:.2f}) {relation} MA20({ma20:.2f}) | RSI={rsi:.1f}",
    }


def screen(raw_candidates: List[Union[Dict, str]], fetch: HistoryFetcher = None) -> List[Dict]:
    """Filter raw ticker proposals down to liquid names in an uptrend.

    The result depends only on the set of codes and their market state:
    survivors are returned ordered by code.
    """
    fetch = fetch_history if fetch is None else fetch
    unique = _dedupe(raw_candidates)
    logger.info("Tech filter running on %d unique candidates", len(unique))

    screened = []
    for code in sorted(unique):
        try:
            result = screen_one(unique[code], fetch)
        except DataUnavailable as e:
            logger.info("[Filter] %s dropped: %s", code, e)
            continue
        except Exception as e:
            logger.warning("[Filter] %s dropped: unexpected error: %s", code, e)
            continue
        if result is not None:
            screened.append(result)

    logger.info("Tech filter result: %d passed", len(screened))
    return screened
