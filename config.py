"""Configuration settings for the portfolio rebalancer."""

import os


def _env_float(name: str, default: float) -> float:
    """Read a float override from the environment."""
    value = os.environ.get(name, '')
    try:
        return float(value) if value else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Read an int override from the environment."""
    return int(_env_float(name, default))


# Portfolio size cap
MAX_POSITIONS = _env_int('REBALANCER_MAX_POSITIONS', 5)

# Technical signal parameters
SIGNALS = {
    "rsi_period": 14,
    "rsi_bullish": _env_float('REBALANCER_RSI_BULLISH', 55),   # RSI above -> BUY
    "rsi_bearish": _env_float('REBALANCER_RSI_BEARISH', 45),   # RSI below -> SELL
    "ma_periods": [5, 20, 60],
    "min_bars": 60,
}

# Candidate screening parameters
SCREENING = {
    "min_bars": 20,
    "board_lot": 1000,                                                      # shares per lot
    "min_volume": _env_int('REBALANCER_MIN_VOLUME', 1000 * 1000),          # shares (1,000 lots)
    "trend_ma": 20,
}

# Risk management
RISK = {
    "stop_loss_pct": _env_float('REBALANCER_STOP_LOSS_PCT', 10),   # force exit at -10% or worse
}

# Performance windows in days (None = all time)
STATS_WINDOWS = [30, 90, 180, 365, None]
STATS_LABELS = {
    30: "month1",
    90: "month3",
    180: "month6",
    365: "year1",
    None: "allTime",
}

# Market settings (Taiwan)
MARKET = {
    "timezone": "Asia/Taipei",
    "suffixes": [".TW", ".TWO"],        # listed first, then OTC
    "history_range": "1y",              # covers the 200 calendar days MA60 needs
    "request_delay": _env_float('REBALANCER_REQUEST_DELAY', 1.1),
}

# Data paths
DATA_DIR = os.environ.get('REBALANCER_DATA_DIR', 'data')
REPORTS_FILE = os.environ.get('REBALANCER_REPORTS_FILE', os.path.join(DATA_DIR, 'reports.json'))
SETTINGS_FILE = os.environ.get('REBALANCER_SETTINGS_FILE', os.path.join(DATA_DIR, 'settings.json'))
