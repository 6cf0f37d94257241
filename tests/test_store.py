import json

import pytest

from errors import PersistenceFailure
from portfolio import PortfolioSnapshot, Position, SoldPosition
from store import ReportStore


def snapshot(timestamp, *positions, sold=()):
    return PortfolioSnapshot(
        date="2024-05-02",
        timestamp=timestamp,
        news_summary="• Market steady",
        candidates=[{"code": "2330", "price": 600.0}],
        finalists=list(positions),
        sold=list(sold),
        themes=[{"keyword": "AI"}],
    )


def position(code, entry=100.0, current=110.0):
    p = Position(code=code, name=code, entry_price=entry, entry_date="2024-05-01", status="NEW")
    p.refresh(current)
    return p


def test_empty_store(store):
    assert store.all() == []
    assert store.latest() is None
    assert store.get(1) is None


def test_append_assigns_increasing_ids(store):
    assert store.append(snapshot(1000, position("2330"))) == 1
    assert store.append(snapshot(2000, position("2454"))) == 2

    reports = store.all()
    assert [r.id for r in reports] == [2, 1]
    assert store.latest().id == 2
    assert store.latest().finalists[0].code == "2454"
    assert store.get(1).finalists[0].code == "2330"


def test_record_layout(store):
    store.append(snapshot(1000, position("2330"), sold=[
        SoldPosition("2317", "Hon Hai", 200.0, 180.0, -10.0, "Portfolio rebalanced", "2024-05-02"),
    ]))
    with open(store.path, encoding="utf-8") as f:
        raw = json.load(f)

    record = raw["reports"][0]
    assert raw["next_id"] == 2
    assert set(record) == {"id", "date", "timestamp", "newsSummary", "data"}
    assert set(record["data"]) == {"candidates", "finalists", "sold", "themes"}
    assert record["data"]["finalists"][0]["entryPrice"] == 100.0
    assert record["data"]["sold"][0]["exitPrice"] == 180.0


def test_append_rejects_non_increasing_timestamp(store):
    store.append(snapshot(2000, position("2330")))
    with pytest.raises(PersistenceFailure):
        store.append(snapshot(2000, position("2454")))
    assert [r.id for r in store.all()] == [1]


def test_failed_write_keeps_history(store, tmp_path, monkeypatch):
    store.append(snapshot(1000, position("2330")))

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("store.os.replace", broken_replace)
    with pytest.raises(PersistenceFailure):
        store.append(snapshot(2000, position("2454")))

    monkeypatch.undo()
    assert [r.id for r in store.all()] == [1]
    assert list(tmp_path.glob("*.tmp")) == []


def test_latest_is_cached_until_invalidated(store):
    store.append(snapshot(1000, position("2330")))
    assert store.latest().id == 1

    other = ReportStore(store.path)
    other.append(snapshot(2000, position("2454")))
    assert store.latest().id == 1

    store.invalidate()
    assert store.latest().id == 2


def test_set_entry_price_recomputes_roi(store):
    store.append(snapshot(1000, position("2330", entry=100.0, current=110.0)))

    assert store.set_entry_price("2330.TW", 55.0) is True
    updated = store.latest().find("2330")
    assert updated.entry_price == 55.0
    assert updated.current_price == 110.0
    assert updated.roi == pytest.approx(100.0)


def test_set_entry_price_not_found(store):
    assert store.set_entry_price("2330", 10.0) is False
    store.append(snapshot(1000, position("2330")))
    assert store.set_entry_price("9999", 10.0) is False
    assert store.set_entry_price("2330", 10.0, report_id=42) is False


def test_set_entry_price_rejects_non_positive(store):
    store.append(snapshot(1000, position("2330")))
    with pytest.raises(ValueError):
        store.set_entry_price("2330", 0)


def test_update_prices_in_place(store):
    report_id = store.append(snapshot(1000, position("2330")))
    latest = store.latest()
    latest.finalists[0].refresh(130.0)
    assert store.update_prices(report_id, latest.finalists)

    reports = store.all()
    assert len(reports) == 1
    assert reports[0].finalists[0].current_price == 130.0
    assert reports[0].finalists[0].roi == pytest.approx(30.0)


def test_corrupted_record_is_skipped(store):
    with open(store.path, "w", encoding="utf-8") as f:
        json.dump({"next_id": 3, "reports": [
            {"id": 1, "date": "2024-05-01", "timestamp": "yesterday", "data": {}},
            {"id": 2, "date": "2024-05-02", "timestamp": 2000,
             "data": {"finalists": [{"code": "2330", "entryPrice": "100", "currentPrice": 120}]}},
        ]}, f)

    reports = store.all()
    assert [r.id for r in reports] == [2]
    assert reports[0].finalists[0].entry_price == 100.0
    assert reports[0].sold == []


def test_unreadable_store_raises(store):
    with open(store.path, "w", encoding="utf-8") as f:
        f.write("{not json")
    with pytest.raises(PersistenceFailure):
        store.all()


def test_clear(store):
    store.append(snapshot(1000, position("2330")))
    assert store.latest() is not None
    store.clear()
    assert store.latest() is None
    assert store.append(snapshot(500, position("2454"))) == 1
