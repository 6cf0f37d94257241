from firewall import partition
from market_data import HistoryCache
from portfolio import Position
from signals import ANALYSIS_FAILED, SELL


def _held(code):
    return Position(code=code, name=code, entry_price=100.0, entry_date="2024-01-02",
                    current_price=100.0, status="HOLD")


def test_partition_splits_on_sell(fetch):
    result = partition([_held("2330"), _held("2317"), _held("2454"), _held("2603")], fetch)
    assert [p.code for p in result.keepers] == ["2330", "2454"]
    assert [p.code for p in result.leavers] == ["2317", "2603"]
    assert all(result.signals[p.code].action == SELL for p in result.leavers)


def test_held_position_in_neutral_band_below_ma20_leaves(fetch):
    result = partition([_held("2603")], fetch)
    assert result.keepers == []
    assert result.leaver_reasons["2603"].startswith("[Hard rule] [SELL]")


def test_missing_history_is_no_opinion(fetch):
    result = partition([_held("9999")], fetch)
    assert [p.code for p in result.keepers] == ["9999"]
    assert result.leavers == []
    assert not result.signals["9999"].has_opinion


def test_empty_book():
    result = partition([], lambda code: None)
    assert result.keepers == []
    assert result.leavers == []
    assert result.leaver_reasons == {}


def test_partition_uses_an_empty_history_cache(series_book):
    calls = []

    def fetcher(code):
        calls.append(code)
        return series_book.get(code)

    result = partition([_held("2330"), _held("2317")], HistoryCache(fetcher))
    assert [p.code for p in result.keepers] == ["2330"]
    assert [p.code for p in result.leavers] == ["2317"]
    assert calls == ["2330", "2317"]


def test_failed_analysis_keeps_position_and_classifies_the_rest(series_book):
    def fetcher(code):
        if code == "6666":
            raise RuntimeError("upstream exploded")
        return series_book.get(code)

    result = partition([_held("6666"), _held("2330"), _held("2317")], fetcher)
    assert [p.code for p in result.keepers] == ["6666", "2330"]
    assert [p.code for p in result.leavers] == ["2317"]
    assert result.signals["6666"].reason == ANALYSIS_FAILED
    assert not result.signals["6666"].has_opinion
