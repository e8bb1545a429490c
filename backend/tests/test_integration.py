"""
Integration tests: FastAPI app + engine message protocol.

Each test gets a fresh SQLite file and a fake upstream client.
"""
import pytest
from fastapi.testclient import TestClient

import app.main as main_module
from app.core.config import settings
from app.main import app

TENANT = "guid-a"


@pytest.fixture
def client(tmp_path, monkeypatch, fake_client):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setattr(settings, "LOG_FILE", "")
    monkeypatch.setattr(main_module, "UpstreamClient", lambda: fake_client)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


def _post(client, message_type, **payload):
    response = client.post("/api/engine/messages", json={"type": message_type, "payload": payload})
    assert response.status_code == 200, response.text
    return response.json()["events"]


def _payload(events, event_type):
    (payload,) = [e["payload"] for e in events if e["type"] == event_type]
    return payload


class TestHealth:
    def test_health(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "ok"
        assert data["db"] == "ok"
        assert data["engine"] == "ready"

    def test_engine_status(self, client):
        r = client.get("/api/engine/status")
        assert r.json() == {"status": "ready", "ready": True}

    def test_root(self, client):
        assert client.get("/").json()["docs"] == "/docs"


class TestMessages:
    def test_unknown_type_rejected(self, client):
        r = client.post("/api/engine/messages", json={"type": "explode", "payload": {}})
        assert r.status_code == 400

    def test_missing_type_rejected(self, client):
        r = client.post("/api/engine/messages", json={"payload": {}})
        assert r.status_code == 422

    def test_download_then_dashboard(self, client, fake_client, make_voucher):
        fake_client.vouchers_by_date = {
            "20250410": [
                make_voucher("1", date="20250410", amount="5000"),
                make_voucher("2", date="20250410", amount="2000", reserved="Credit Note"),
            ]
        }
        events = _post(
            client, "download",
            tallyloc_id=7, company="Acme", guid=TENANT, fromdate="20250410", todate="20250410", token="x",
        )
        assert _payload(events, "downloadComplete")["totalRecords"] == 2

        events = _post(client, "get_dashboard_data", guid=TENANT, fromDate="20250401", toDate="20250430")
        kpi = _payload(events, "dashboardData")["kpi"]
        assert kpi["totalSales"] == pytest.approx(3000)
        assert kpi["totalTxns"] == 2
        assert kpi["maxSale"] == pytest.approx(5000)

        events = _post(client, "getStats", guid=TENANT)
        assert _payload(events, "stats")["totalVouchers"] == 2

    def test_error_events_are_returned(self, client):
        events = _post(client, "getStats")
        assert [e["type"] for e in events] == ["error"]
