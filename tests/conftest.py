import pandas as pd
import pytest

import settings
from store import ReportStore
from strategy_config import LOGGING


@pytest.fixture(autouse=True)
def isolated_files(tmp_path, monkeypatch):
    """Keep the run log and AI settings of every test under tmp_path."""
    monkeypatch.setitem(LOGGING, "log_file", str(tmp_path / "run_log.json"))
    monkeypatch.setattr(settings, "_default_store", settings.SettingsStore(str(tmp_path / "settings.json")))


def build_series(closes, volume=2_000_000):
    """Daily OHLCV frame with the given closes and a flat volume."""
    index = pd.date_range("2024-01-01", periods=len(closes), freq="B")
    return pd.DataFrame({
        "Open": closes,
        "High": [c * 1.01 for c in closes],
        "Low": [c * 0.99 for c in closes],
        "Close": closes,
        "Volume": [volume] * len(closes),
    }, index=index)


def alternating(bars=80, last=101.0):
    """Closes flipping between 100 and 101 that end on `last`.

    RSI settles inside the neutral band and MA20 sits at 100.5.
    """
    other = 201.0 - last
    return [last if (bars - 1 - i) % 2 == 0 else other for i in range(bars)]


@pytest.fixture
def make_series():
    return build_series


@pytest.fixture
def series_book():
    """Canned histories per code: rising, falling, neutral above/below MA20."""
    return {
        "2330": build_series([100.0 + i for i in range(80)]),
        "2317": build_series([200.0 - i for i in range(80)]),
        "2454": build_series(alternating(last=101.0)),
        "2603": build_series(alternating(last=100.0)),
    }


@pytest.fixture
def fetch(series_book):
    return lambda code: series_book.get(code)


@pytest.fixture
def store(tmp_path):
    return ReportStore(str(tmp_path / "reports.json"))
