"""
Shared pytest fixtures.

Every test gets its own SQLite file under tmp_path; nothing touches the
configured DATABASE_URL or the network.
"""
import os
import sys

# Ensure app package is importable when running pytest from project root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest  # noqa: E402

from app.core.database import make_engine  # noqa: E402
from app.core.errors import TransportError  # noqa: E402
from app.core.schema import init_schema  # noqa: E402


def voucher_payload(
    master_id,
    date="20250410",
    amount="5000",
    reserved="Sales",
    party="ABC Corp",
    state="Karnataka",
    country="India",
    alterid=1,
    items=None,
    group="Sundry Debtors",
    cancelled="No",
    salesperson=None,
):
    """
    A sales-extract voucher as the portal returns it.

    ``items`` is a list of (name, stock group, amount, billed qty, profit).
    """
    if items is None:
        items = [("Widget", "Hardware", amount, "1", "0")]
    payload = {
        "masterid": str(master_id),
        "alterid": str(alterid),
        "vouchertypename": reserved,
        "vouchertypereservedname": reserved,
        "vouchernumber": f"INV-{master_id}",
        "date": date,
        "partyledgername": party,
        "state": state,
        "country": country,
        "amount": str(amount),
        "iscancelled": cancelled,
        "isoptional": "No",
        "ledgerentries": [
            {"ledgername": party, "ispartyledger": "Yes", "group": group, "amount": str(amount)},
            {"ledgername": "Sales GST 18%", "ispartyledger": "No", "group": "Sales Accounts",
             "amount": str(amount)},
        ],
        "allinventoryentries": [
            {
                "stockitemname": name,
                "stockitemgroup": stock_group,
                "amount": str(line_amount),
                "billedqty": str(qty),
                "profit": str(profit),
            }
            for name, stock_group, line_amount, qty, profit in items
        ],
    }
    if salesperson is not None:
        payload["salesperson"] = salesperson
    return payload


class FakeClient:
    """Stands in for UpstreamClient; answers chunk requests from a dict keyed by date."""

    def __init__(self, vouchers_by_date=None, fail_dates=(), card_records=None):
        self.vouchers_by_date = vouchers_by_date or {}
        self.fail_dates = set(fail_dates)
        self.card_records = card_records or []
        self.calls = []

    def fetch_ledger_chunk(self, **kwargs):
        self.calls.append(kwargs)
        if kwargs["fromdate"] in self.fail_dates:
            raise TransportError("API error: 500 Internal Server Error")
        return {"vouchers": self.vouchers_by_date.get(kwargs["fromdate"], [])}

    def fetch_card_configs(self, **kwargs):
        self.calls.append(kwargs)
        return self.card_records


@pytest.fixture
def engine(tmp_path):
    store = make_engine(f"sqlite:///{tmp_path / 'cache.db'}")
    init_schema(store)
    yield store
    store.dispose()


@pytest.fixture
def make_voucher():
    return voucher_payload


@pytest.fixture
def fake_client():
    return FakeClient()
