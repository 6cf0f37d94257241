import json
import os
from datetime import datetime
from types import SimpleNamespace

import pytest
import pytz

from errors import AIProviderError, ConcurrentRunConflict, MalformedProposal, PersistenceFailure
from portfolio import PortfolioSnapshot, Position
from rebalancer import FAILURE_MESSAGE, RunGuard, is_run_time, refresh_prices, run_rebalance
from strategy_config import LOGGING

PRICES = {"2330": 180.0, "2454": 101.0, "2603": 100.0, "3231": 50.0}


def price_fetcher(code):
    return PRICES.get(code, 0.0)


def held(code, entry, current=None):
    position = Position(code=code, name=code, industry="Tech", entry_price=entry,
                        entry_date="2024-04-01", status="HOLD")
    position.refresh(entry if current is None else current)
    return position


def fake_ai(proposal=None, propose_error=None, news_error=None):
    seen = {}

    def fetch_news_and_themes(today):
        if news_error:
            raise news_error
        return {"newsSummary": "• Chips strong", "themes": [{"keyword": "AI"}]}

    def map_themes_to_candidates(themes):
        return [{"code": "3231", "name": "Wistron"}, {"code": "2317", "name": "Hon Hai"}]

    def propose(context):
        seen["context"] = context
        if propose_error:
            raise propose_error
        return proposal if proposal is not None else []

    return SimpleNamespace(
        fetch_news_and_themes=fetch_news_and_themes,
        map_themes_to_candidates=map_themes_to_candidates,
        propose=propose,
        seen=seen,
    )


@pytest.fixture
def history(series_book, make_series):
    book = dict(series_book)
    book["3231"] = make_series([40.0 + i * 0.1 for i in range(80)])
    return lambda code: book.get(code)


@pytest.fixture
def seeded(store):
    store.append(PortfolioSnapshot(
        date="2024-05-01",
        timestamp=1000,
        finalists=[held("2330", 170.0), held("2454", 100.0), held("2603", 110.0)],
    ))
    return store


def test_first_run_builds_portfolio(store, history):
    ai = fake_ai(proposal=[{"code": "3231", "name": "Wistron", "reason": "[New] AI servers"}])
    result = run_rebalance(store, history, price_fetcher, ai, RunGuard())

    assert result.success
    assert result.report_id == 1
    latest = store.latest()
    assert [p.code for p in latest.finalists] == ["3231"]
    assert latest.finalists[0].status == "NEW"
    assert latest.finalists[0].entry_price == 50.0
    assert latest.sold == []
    assert [c["code"] for c in latest.candidates] == ["3231"]
    assert latest.news_summary == "• Chips strong"


def test_rebalance_keeps_keepers_and_sells_leavers(seeded, history):
    ai = fake_ai(proposal=[{"code": "2603", "reason": "still good"}, {"code": "3231", "reason": "[New] AI"}])
    result = run_rebalance(seeded, history, price_fetcher, ai, RunGuard())

    assert result.success
    assert result.report_id == 2
    latest = seeded.latest()
    assert latest.timestamp > 1000
    assert [p.code for p in latest.finalists] == ["2330", "2454", "3231"]
    assert latest.finalists[0].entry_price == 170.0
    assert latest.finalists[0].current_price == 180.0
    assert [s.code for s in latest.sold] == ["2603"]
    assert latest.sold[0].reason.startswith("[Hard rule]")
    assert latest.sold[0].exit_price == 100.0

    keepers = ai.seen["context"]["keepers"]
    assert [p.code for p in keepers] == ["2330", "2454"]


@pytest.mark.parametrize("error", [AIProviderError("timeout"), MalformedProposal("garbage")])
def test_proposal_failure_keeps_keepers_only(seeded, history, error):
    result = run_rebalance(seeded, history, price_fetcher, fake_ai(propose_error=error), RunGuard())
    assert result.success
    assert [p.code for p in seeded.latest().finalists] == ["2330", "2454"]


def test_news_failure_fails_run_and_keeps_history(seeded, history):
    ai = fake_ai(news_error=AIProviderError("Claude CLI not found"))
    result = run_rebalance(seeded, history, price_fetcher, ai, RunGuard())

    assert not result.success
    assert result.error == FAILURE_MESSAGE
    assert "Claude CLI not found" in result.details
    assert [r.id for r in seeded.all()] == [1]


def test_persistence_failure_fails_run(seeded, history, monkeypatch):
    def broken_append(snapshot):
        raise PersistenceFailure("disk full")

    monkeypatch.setattr(seeded, "append", broken_append)
    guard = RunGuard()
    result = run_rebalance(seeded, history, price_fetcher, fake_ai(), guard)

    assert not result.success
    assert result.details == "disk full"
    assert not guard.running
    monkeypatch.undo()
    assert [r.id for r in seeded.all()] == [1]


def test_concurrent_run_is_rejected(store, history):
    guard = RunGuard()
    with guard.hold():
        assert guard.running
        with pytest.raises(ConcurrentRunConflict):
            run_rebalance(store, history, price_fetcher, fake_ai(), guard)
    assert not guard.running
    assert store.all() == []


def test_guard_released_after_unexpected_error(store, history):
    ai = fake_ai(news_error=RuntimeError("boom"))
    guard = RunGuard()
    result = run_rebalance(store, history, price_fetcher, ai, guard)
    assert not result.success
    assert not guard.running


def test_run_fetches_each_history_once_through_the_run_cache(seeded, series_book, make_series):
    calls = []
    book = dict(series_book)
    book["3231"] = make_series([40.0 + i * 0.1 for i in range(80)])

    def counting(code):
        calls.append(code)
        return book.get(code)

    ai = fake_ai(proposal=[{"code": "2454"}, {"code": "3231"}])
    result = run_rebalance(seeded, counting, price_fetcher, ai, RunGuard())

    assert result.success
    assert sorted(calls) == sorted(set(calls))
    assert set(calls) == {"2330", "2454", "2603", "2317", "3231"}


def test_successful_run_appends_to_run_log(store, history):
    log_file = LOGGING["log_file"]
    ai = fake_ai(proposal=[{"code": "3231", "name": "Wistron"}])
    run_rebalance(store, history, price_fetcher, ai, RunGuard())
    run_rebalance(store, history, price_fetcher, ai, RunGuard())

    with open(log_file, encoding="utf-8") as f:
        sessions = json.load(f)["sessions"]
    assert [s["report_id"] for s in sessions] == [1, 2]
    assert sessions[-1]["finalists"][0]["code"] == "3231"
    assert sessions[-1]["candidates"] == ["3231"]


def test_run_log_keeps_most_recent_sessions(store, history, monkeypatch):
    monkeypatch.setitem(LOGGING, "max_sessions", 2)
    for _ in range(3):
        run_rebalance(store, history, price_fetcher, fake_ai(), RunGuard())

    with open(LOGGING["log_file"], encoding="utf-8") as f:
        sessions = json.load(f)["sessions"]
    assert [s["report_id"] for s in sessions] == [2, 3]


def test_failed_run_is_not_logged(store, history):
    run_rebalance(store, history, price_fetcher, fake_ai(news_error=RuntimeError("boom")), RunGuard())
    assert not os.path.exists(LOGGING["log_file"])


def test_refresh_prices(store):
    store.append(PortfolioSnapshot(
        date="2024-05-01",
        timestamp=1000,
        finalists=[held("2330", 150.0), held("2454", 0.0, 0.0), held("9999", 10.0, 12.0)],
    ))

    snapshot = refresh_prices(store, price_fetcher, RunGuard())
    assert snapshot.id == 1

    positions = {p.code: p for p in store.latest().finalists}
    assert positions["2330"].current_price == 180.0
    assert positions["2330"].roi == pytest.approx(20.0)
    assert positions["2454"].entry_price == 101.0
    assert positions["2454"].roi == 0.0
    assert positions["9999"].current_price == 12.0
    assert len(store.all()) == 1


def test_refresh_prices_without_reports(store):
    assert refresh_prices(store, price_fetcher, RunGuard()) is None


@pytest.mark.parametrize("when,last_run,expected", [
    (datetime(2024, 6, 3, 8, 45), None, True),
    (datetime(2024, 6, 3, 8, 0), None, False),
    (datetime(2024, 6, 3, 9, 0), "2024-06-03", False),
    (datetime(2024, 6, 1, 9, 0), None, False),
])
def test_is_run_time(when, last_run, expected):
    now = pytz.timezone("Asia/Taipei").localize(when)
    assert is_run_time(now, last_run) is expected
