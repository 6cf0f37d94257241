import pytest

import app as web
import settings
from errors import ConcurrentRunConflict, PersistenceFailure
from portfolio import PortfolioSnapshot, Position
from rebalancer import RunResult


@pytest.fixture
def client(store):
    web.app.config["REPORT_STORE"] = store
    web.app.config["TESTING"] = True
    with web.app.test_client() as client:
        yield client
    web.app.config["REPORT_STORE"] = None


@pytest.fixture
def seeded(store):
    position = Position(code="2330", name="TSMC", entry_price=500.0, entry_date="2024-05-01",
                        current_price=550.0, roi=10.0, status="NEW")
    store.append(PortfolioSnapshot(date="2024-05-01", timestamp=1000, finalists=[position]))
    return store


def test_latest_without_reports(client):
    response = client.get("/api/reports/latest")
    assert response.status_code == 404


def test_reports(client, seeded):
    response = client.get("/api/reports")
    assert response.status_code == 200
    reports = response.get_json()
    assert len(reports) == 1
    assert reports[0]["id"] == "1"
    assert reports[0]["finalists"][0]["entryPrice"] == 500.0

    latest = client.get("/api/reports/latest").get_json()
    assert latest["finalists"][0]["code"] == "2330"


def test_performance(client, seeded):
    payload = client.get("/api/performance").get_json()
    assert payload["currentHoldings"]["count"] == 1
    assert payload["allTime"]["count"] == 0


def test_run_success(client, monkeypatch):
    monkeypatch.setattr(web, "run_rebalance", lambda store: RunResult(success=True, report_id=7))
    response = client.post("/api/run")
    assert response.status_code == 200
    assert response.get_json()["reportId"] == "7"


def test_run_failure(client, monkeypatch):
    failed = RunResult(success=False, error="Daily analysis failed", details="boom")
    monkeypatch.setattr(web, "run_rebalance", lambda store: failed)
    response = client.get("/api/cron/trigger")
    assert response.status_code == 500
    assert response.get_json() == {"error": "Daily analysis failed", "details": "boom"}


def test_run_conflict(client, monkeypatch):
    def busy(store):
        raise ConcurrentRunConflict()

    monkeypatch.setattr(web, "run_rebalance", busy)
    assert client.post("/api/run").status_code == 409


def test_entry_price(client, seeded):
    response = client.post("/api/reports/1/entry-price", json={"code": "2330", "price": 440})
    assert response.status_code == 200
    assert seeded.latest().find("2330").entry_price == 440.0

    assert client.post("/api/reports/1/entry-price", json={"code": "9999", "price": 10}).status_code == 404
    assert client.post("/api/reports/1/entry-price", json={"code": "2330", "price": -1}).status_code == 400
    assert client.post("/api/reports/1/entry-price", json={"code": "2330", "price": "abc"}).status_code == 400
    assert client.post("/api/reports/1/entry-price", json={"code": "2330"}).status_code == 400


def test_clear_history_requires_password(client, seeded, monkeypatch):
    monkeypatch.setenv("REBALANCER_ADMIN_PASSWORD", "s3cret")
    assert client.delete("/api/admin/clear-history", json={"password": "wrong"}).status_code == 401
    assert seeded.latest() is not None

    assert client.delete("/api/admin/clear-history", json={"password": "s3cret"}).status_code == 200
    assert seeded.latest() is None


def test_clear_history_disabled_without_password(client, seeded, monkeypatch):
    monkeypatch.delenv("REBALANCER_ADMIN_PASSWORD", raising=False)
    assert client.delete("/api/admin/clear-history", json={"password": ""}).status_code == 401


def test_settings_list_and_save(client):
    steps = client.get("/api/settings").get_json()
    assert [s["step_key"] for s in steps] == ["layer1_news", "layer2_mapping", "layer3_decision"]

    response = client.post("/api/settings", json={
        "step_key": "layer2_mapping",
        "provider": "qwen",
        "model_name": "qwen-max",
        "prompt_template": "Map {themes}",
    })
    assert response.status_code == 200
    assert response.get_json()["setting"]["model_name"] == "qwen-max"

    steps = {s["step_key"]: s for s in client.get("/api/settings").get_json()}
    assert steps["layer2_mapping"]["provider"] == "qwen"
    assert steps["layer2_mapping"]["prompt_template"] == "Map {themes}"


def test_settings_rejects_bad_requests(client):
    assert client.post("/api/settings", json={"step_key": "layer1_news", "provider": "qwen"}).status_code == 400
    unknown = client.post("/api/settings", json={"step_key": "layer1_news", "provider": "oracle",
                                                 "model_name": "x"})
    assert unknown.status_code == 400
    assert "oracle" in unknown.get_json()["error"]


def test_settings_save_failure(client, monkeypatch):
    def broken_save(*args, **kwargs):
        raise PersistenceFailure("disk full")

    monkeypatch.setattr(settings.default_store(), "save", broken_save)
    response = client.post("/api/settings", json={"step_key": "layer1_news", "provider": "qwen",
                                                  "model_name": "qwen-plus"})
    assert response.status_code == 500
    assert response.get_json()["error"] == "Failed to save setting"


def test_backup_downloads_report_file(client, seeded):
    response = client.get("/api/backup")
    assert response.status_code == 200
    assert "attachment" in response.headers["Content-Disposition"]
    assert response.get_json()["reports"][0]["id"] == 1
    response.close()


def test_backup_without_reports(client):
    response = client.get("/api/backup")
    assert response.status_code == 404
    assert response.get_json()["error"] == "File not found"
