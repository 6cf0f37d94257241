"""Market data fetching using the Yahoo Finance chart API, with yfinance as a secondary source."""

import logging
import os
import random
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
import requests
import yfinance as yf

from config import MARKET, SIGNALS
from portfolio import canonical_code

logger = logging.getLogger(__name__)

# Environment variable to force sample data mode
USE_SAMPLE_DATA = os.environ.get('REBALANCER_SAMPLE_DATA', '').lower() in ('1', 'true', 'yes')

# Yahoo Finance API endpoints (try multiple)
YAHOO_ENDPOINTS = [
    "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}",
    "https://query2.finance.yahoo.com/v8/finance/chart/{symbol}",
]

# Request headers to mimic browser
HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': 'application/json',
}

# Rate limiting
_last_request_time = 0
_rate_limited = False  # Track if we've been rate limited
_rate_limit_until = 0  # Timestamp when rate limit should expire
RATE_LIMIT_BACKOFF = 300

# Sample prices for offline mode (TWSE codes)
SAMPLE_PRICES = {
    "2330": 1030.0, "2317": 210.0, "2382": 290.0, "2454": 1300.0, "2603": 190.0,
    "2609": 60.0, "2615": 75.0, "2308": 380.0, "3231": 110.0, "6669": 2800.0,
    "1519": 600.0, "2881": 90.0, "2891": 35.0, "0050": 190.0,
}

OHLCV_COLUMNS = ["Open", "High", "Low", "Close", "Volume"]

HistoryFetcher = Callable[[str], Optional[pd.DataFrame]]


def yahoo_symbols(code: str) -> List[str]:
    """Yahoo symbols to try for an exchange code, in order."""
    code = canonical_code(code)
    return [f"{code}{suffix}" for suffix in MARKET["suffixes"]]


def _throttle():
    """Serialize upstream calls with a fixed inter-call delay."""
    global _last_request_time
    elapsed = time.time() - _last_request_time
    delay = MARKET["request_delay"]
    if elapsed < delay:
        time.sleep(delay - elapsed)
    _last_request_time = time.time()


def _fetch_yahoo_chart(symbol: str, range_str: str = "1y", interval: str = "1d") -> Optional[Dict]:
    """Fetch data directly from Yahoo Finance chart API."""
    global _rate_limited, _rate_limit_until

    # If we're rate limited, check if we should try again
    if _rate_limited:
        if time.time() < _rate_limit_until:
            return None
        _rate_limited = False

    params = {
        "interval": interval,
        "range": range_str,
    }

    for endpoint in YAHOO_ENDPOINTS:
        url = endpoint.format(symbol=symbol)
        try:
            _throttle()
            resp = requests.get(url, headers=HEADERS, params=params, timeout=10)

            if resp.status_code == 429:
                _rate_limited = True
                _rate_limit_until = time.time() + RATE_LIMIT_BACKOFF
                logger.warning("Yahoo rate limit hit, backing off %ss", RATE_LIMIT_BACKOFF)
                continue

            if resp.status_code != 200:
                continue

            data = resp.json()
            result = data.get("chart", {}).get("result")
            if result:
                _rate_limited = False
                return result[0]
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.debug("Chart request failed for %s: %s", symbol, e)
            continue

    return None


def _parse_chart_to_dataframe(chart_data: Dict) -> Optional[pd.DataFrame]:
    """Parse Yahoo chart API response into a DataFrame."""
    timestamps = chart_data.get("timestamp") or []
    quotes = (chart_data.get("indicators", {}).get("quote") or [{}])[0]

    if not timestamps or not quotes:
        return None

    try:
        df = pd.DataFrame({
            "Open": quotes.get("open", []),
            "High": quotes.get("high", []),
            "Low": quotes.get("low", []),
            "Close": quotes.get("close", []),
            "Volume": quotes.get("volume", []),
        }, index=pd.to_datetime(timestamps, unit='s'))
    except ValueError:
        return None

    # Remove rows with NaN close prices
    df = df.dropna(subset=['Close'])
    df['Volume'] = df['Volume'].fillna(0)

    return df.sort_index() if not df.empty else None


def _fetch_yfinance_history(symbol: str) -> Optional[pd.DataFrame]:
    """Secondary history source through yfinance."""
    try:
        hist = yf.Ticker(symbol).history(period=MARKET["history_range"], auto_adjust=False)
    except Exception as e:
        logger.debug("yfinance failed for %s: %s", symbol, e)
        return None

    if hist is None or hist.empty or not set(OHLCV_COLUMNS).issubset(hist.columns):
        return None

    df = hist[OHLCV_COLUMNS].dropna(subset=['Close']).copy()
    df['Volume'] = df['Volume'].fillna(0)
    return df.sort_index() if not df.empty else None


def _generate_sample_history(code: str, days: int = 250) -> pd.DataFrame:
    """Generate deterministic sample history for a code."""
    rng = random.Random(code)
    base_price = SAMPLE_PRICES.get(code, 100.0)
    dates = pd.date_range(end=datetime.now().date(), periods=days, freq='B')

    prices = [base_price]
    for _ in range(days - 1):
        change = rng.gauss(0.0005, 0.015)
        prices.append(prices[-1] * (1 + change))

    return pd.DataFrame({
        'Open': [p * rng.uniform(0.995, 1.005) for p in prices],
        'High': [p * rng.uniform(1.0, 1.02) for p in prices],
        'Low': [p * rng.uniform(0.98, 1.0) for p in prices],
        'Close': prices,
        'Volume': [int(rng.uniform(5e5, 5e7)) for _ in prices],
    }, index=dates)


def fetch_history(code: str) -> Optional[pd.DataFrame]:
    """Daily OHLCV bars for an exchange code, or None if unavailable.

    Tries every market suffix against the chart API first, then yfinance,
    before declaring the code unavailable.
    """
    code = canonical_code(code)
    if not code:
        return None

    if USE_SAMPLE_DATA:
        return _generate_sample_history(code)

    for symbol in yahoo_symbols(code):
        chart = _fetch_yahoo_chart(symbol, MARKET["history_range"])
        if chart:
            df = _parse_chart_to_dataframe(chart)
            if df is not None:
                return df

    for symbol in yahoo_symbols(code):
        df = _fetch_yfinance_history(symbol)
        if df is not None:
            return df

    logger.warning("History unavailable for %s", code)
    return None


def fetch_price(code: str) -> float:
    """Latest tradable price for a code; 0.0 means unavailable."""
    code = canonical_code(code)
    if not code:
        return 0.0

    if USE_SAMPLE_DATA:
        return round(float(_generate_sample_history(code)['Close'].iloc[-1]), 2)

    for symbol in yahoo_symbols(code):
        chart = _fetch_yahoo_chart(symbol, "5d")
        if not chart:
            continue

        meta = chart.get("meta", {})
        price = meta.get("regularMarketPrice")
        if price:
            return round(float(price), 2)

        # Fallback to last close
        df = _parse_chart_to_dataframe(chart)
        if df is not None:
            return round(float(df['Close'].iloc[-1]), 2)

    logger.warning("Price unavailable for %s", code)
    return 0.0


def fetch_prices(codes: Iterable[str], price_fetcher: Callable[[str], float] = None) -> Dict[str, float]:
    """Fresh prices for several codes; codes with no price are left out."""
    price_fetcher = fetch_price if price_fetcher is None else price_fetcher
    prices = {}
    for code in dict.fromkeys(canonical_code(c) for c in codes):
        if not code:
            continue
        price = price_fetcher(code)
        if price and price > 0:
            prices[code] = price
    return prices


class HistoryCache:
    """Per-run memo of history fetches, so each code is fetched once."""

    def __init__(self, fetcher: HistoryFetcher = None):
        self.fetcher = fetch_history if fetcher is None else fetcher
        self._cache: Dict[str, Optional[pd.DataFrame]] = {}

    def __call__(self, code: str) -> Optional[pd.DataFrame]:
        code = canonical_code(code)
        if code not in self._cache:
            self._cache[code] = self.fetcher(code)
        return self._cache[code]

    def __len__(self):
        return len(self._cache)


def calculate_sma(data: pd.DataFrame, period: int) -> pd.Series:
    """Calculate Simple Moving Average."""
    return data['Close'].rolling(window=period).mean()


def calculate_rsi(data: pd.DataFrame, period: int = None) -> pd.Series:
    """Calculate Relative Strength Index with Wilder smoothing.

    The first average is the simple mean of the first ``period`` changes;
    each later average is ``(prev * (period - 1) + current) / period``.
    Values before the first full window are NaN.
    """
    period = period or SIGNALS["rsi_period"]
    closes = data['Close'].to_numpy(dtype=float)
    rsi = np.full(len(closes), np.nan)
    if len(closes) <= period:
        return pd.Series(rsi, index=data.index)

    deltas = np.diff(closes)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    rsi[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        rsi[i + 1] = _rsi_value(avg_gain, avg_loss)

    return pd.Series(rsi, index=data.index)


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def is_using_sample_data() -> bool:
    """Check if currently using sample data."""
    return USE_SAMPLE_DATA


def get_data_source_status() -> str:
    """Get a description of the current data source status."""
    if USE_SAMPLE_DATA:
        return "Sample data (forced via REBALANCER_SAMPLE_DATA env var)"

    if _rate_limited:
        remaining = int(_rate_limit_until - time.time())
        if remaining > 0:
            return f"Yahoo API rate limited, retry in {remaining}s (yfinance fallback active)"
        return "Rate limit expired, will retry Yahoo API"
    return "Live data (Yahoo Finance API)"


def reset_rate_limit():
    """Reset rate limit flag (for testing/debugging)."""
    global _rate_limited, _rate_limit_until
    _rate_limited = False
    _rate_limit_until = 0
