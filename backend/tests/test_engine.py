"""Message protocol of the cache engine."""
from datetime import date

import pytest

from app.engine import CacheEngine

TENANT = "guid-a"


def _types(events):
    return [e["type"] for e in events]


def _one(events, event_type):
    (payload,) = [e["payload"] for e in events if e["type"] == event_type]
    return payload


@pytest.fixture
def cache(tmp_path, fake_client):
    received = []
    engine = CacheEngine(
        database_url=f"sqlite:///{tmp_path / 'engine.db'}", client=fake_client, sink=received.append
    )
    engine.received = received
    yield engine
    engine.close()


@pytest.fixture
def ready(cache):
    cache.handle({"type": "init"})
    return cache


def _download(engine, fromdate="20250410", todate="20250412"):
    return engine.handle(
        {
            "type": "download",
            "payload": {
                "tallyloc_id": 7,
                "company": "Acme",
                "guid": TENANT,
                "fromdate": fromdate,
                "todate": todate,
                "token": "t0k",
            },
        }
    )


class TestInit:
    def test_init_emits_ready(self, cache):
        events = cache.handle({"type": "init"})
        assert _types(events) == ["statusChanged", "statusChanged", "ready"]
        assert [e["payload"]["status"] for e in events[:2]] == ["initializing", "ready"]
        assert cache.snapshot() == {"status": "ready", "ready": True}

    def test_requests_before_init_fail(self, cache):
        events = cache.handle({"type": "getStats", "payload": {"guid": TENANT}})
        assert _types(events) == ["error"]
        assert events[0]["payload"]["fatal"] is True

    def test_sink_receives_events(self, cache):
        events = cache.handle({"type": "init"})
        assert cache.received == events


class TestProtocol:
    def test_unknown_type(self, ready):
        assert not ready.accepts("explode")
        events = ready.handle({"type": "explode"})
        assert _types(events) == ["error"]

    def test_aliases(self, ready):
        assert ready.accepts("get_stats")
        events = ready.handle({"type": "get_stats", "payload": {"guid": TENANT}})
        stats = _one(events, "stats")
        assert stats["totalVouchers"] == 0
        assert stats["dateRange"] == {"min": "N/A", "max": "N/A"}
        assert stats["lastSync"] == "Never"

    def test_missing_guid(self, ready):
        events = ready.handle({"type": "getDashboardData", "payload": {}})
        assert _types(events) == ["error"]
        assert events[0]["payload"]["fatal"] is False


class TestDownloadFlow:
    def test_partial_failure_reaches_ready(self, ready, fake_client, make_voucher):
        fake_client.vouchers_by_date = {
            "20250410": [make_voucher("1", date="20250410", amount="5000")],
            "20250412": [make_voucher("2", date="20250412", amount="2000", reserved="Credit Note")],
        }
        fake_client.fail_dates = {"20250411"}

        events = _download(ready)

        assert _types(events).count("progress") == 3
        errors = [e["payload"] for e in events if e["type"] == "error"]
        assert len(errors) == 1 and errors[0]["fatal"] is False
        done = _one(events, "downloadComplete")
        assert done["totalRecords"] == 2
        assert done["succeededChunks"] == 2
        assert done["failedChunks"] == 1
        statuses = [e["payload"]["status"] for e in events if e["type"] == "statusChanged"]
        assert statuses == ["initializing", "downloading", "ready"]

        dashboard = _one(
            ready.handle(
                {
                    "type": "getDashboardData",
                    "payload": {"guid": TENANT, "fromDate": "2025-04-01", "toDate": "2025-04-30"},
                }
            ),
            "dashboardData",
        )
        assert dashboard["kpi"]["totalSales"] == pytest.approx(3000)
        assert dashboard["kpi"]["totalTxns"] == 2

    def test_fatal_ingestion_error(self, ready, fake_client, make_voucher):
        bad = make_voucher("1")
        del bad["masterid"]
        fake_client.vouchers_by_date = {"20250410": [bad]}
        events = _download(ready, "20250410", "20250410")
        error = _one(events, "error")
        assert error["fatal"] is True
        assert ready.status.value == "error"
        assert "downloadComplete" not in _types(events)

    def test_unusable_range_moves_to_error(self, ready):
        events = _download(ready, "2025-04-xx", "20250412")
        error = _one(events, "error")
        assert error["fatal"] is True
        statuses = [e["payload"]["status"] for e in events if e["type"] == "statusChanged"]
        assert statuses == ["initializing", "downloading", "error"]
        assert ready.status.value == "error"

    def test_update(self, ready, fake_client, make_voucher):
        fake_client.vouchers_by_date = {"20250410": [make_voucher("1", alterid=5)]}
        _download(ready, "20250410", "20250410")
        ready.sync.today = lambda: date(2025, 4, 11)
        events = ready.handle({"type": "update", "payload": {"guid": TENANT, "company": "Acme"}})
        assert _one(events, "updateComplete")["totalRecords"] == 1
        assert fake_client.calls[-1]["lastaltid"] == 5

    def test_clear(self, ready, fake_client, make_voucher):
        fake_client.vouchers_by_date = {"20250410": [make_voucher("1")]}
        _download(ready, "20250410", "20250410")
        events = ready.handle({"type": "clear", "payload": {"guid": TENANT}})
        assert _types(events) == ["clearComplete"]
        stats = _one(ready.handle({"type": "getStats", "payload": {"guid": TENANT}}), "stats")
        assert stats["totalVouchers"] == 0
        assert stats["lastSync"] == "Never"


class TestReads:
    @pytest.fixture(autouse=True)
    def loaded(self, ready, fake_client, make_voucher):
        fake_client.vouchers_by_date = {
            "20250410": [
                make_voucher("1", date="20250410", amount="5000", party="ABC Corp"),
                make_voucher("2", date="20250410", amount="1200", party="XYZ Ltd"),
            ]
        }
        _download(ready, "20250410", "20250410")

    def test_dashboard_without_dates(self, ready):
        data = _one(
            ready.handle({"type": "getDashboardData", "payload": {"guid": TENANT}}),
            "dashboardData",
        )
        assert data["kpi"]["totalSales"] == pytest.approx(6200)
        assert data["kpi"]["totalTxns"] == 2
        states = sum(row["value"] for row in data["charts"]["salesByState"])
        assert states == pytest.approx(6200)

    def test_extended(self, ready):
        data = _one(
            ready.handle(
                {
                    "type": "getExtendedDashboardData",
                    "payload": {"guid": TENANT, "fromDate": "20250401", "toDate": "20250430"},
                }
            ),
            "extendedDashboardData",
        )
        assert data["profitAnalysis"]["revenue"] == pytest.approx(6200)

    def test_custom_cards_from_payload(self, ready):
        events = ready.handle(
            {
                "type": "getCustomCardsData",
                "payload": {
                    "guid": TENANT,
                    "fromDate": "20250401",
                    "toDate": "20250430",
                    "cards": [{"id": 3, "title": "Top", "groupBy": "customer", "valueField": "amount"}],
                },
            }
        )
        cards = _one(events, "customCardsData")["cardsData"]
        assert cards[3][0] == {"name": "ABC Corp", "value": pytest.approx(5000)}

    def test_custom_cards_fetched_from_portal(self, ready, fake_client):
        fake_client.card_records = [
            {"title": "__DASHBOARD_SETTINGS__", "cardConfig": {"cardSortIndex": {"B": 0}}},
            {"id": 1, "title": "A", "isActive": True, "groupBy": "customer", "valueField": "amount"},
            {"id": 2, "title": "B", "isActive": True, "groupBy": "customer",
             "valueField": "transactions", "aggregation": "count"},
            {"id": 9, "title": "Off", "isActive": False, "groupBy": "customer", "valueField": "amount"},
        ]
        events = ready.handle(
            {
                "type": "get_custom_cards_data",
                "payload": {"guid": TENANT, "fromDate": "20250401", "toDate": "20250430",
                            "tallyloc_id": 7, "token": "t0k"},
            }
        )
        cards = _one(events, "customCardsData")["cardsData"]
        assert list(cards) == [2, 1]
        assert fake_client.calls[-1]["co_guid"] == TENANT

    def test_raw_data_pagination(self, ready):
        data = _one(
            ready.handle({"type": "getRawData", "payload": {"guid": TENANT, "limit": 1, "offset": 1}}),
            "rawData",
        )
        assert data["totalVouchers"] == 2
        assert data["showing"] == {"offset": 1, "limit": 1, "count": 1}
        (voucher,) = data["vouchers"]
        assert len(voucher["ledgerEntries"]) == 2
        assert len(voucher["inventoryEntries"]) == 1
        assert "tenant_guid" not in voucher

    def test_stats(self, ready):
        stats = _one(ready.handle({"type": "getStats", "payload": {"guid": TENANT}}), "stats")
        assert stats["totalVouchers"] == 2
        assert stats["totalLedgerEntries"] == 4
        assert stats["dateRange"] == {"min": "20250410", "max": "20250410"}
        assert stats["maxAlterId"] == 1
        assert stats["dailyAggregates"] == 1
        assert stats["lastSync"] != "Never"
