"""Ingestion pipeline: idempotent replace, batch atomicity, tenant scoping."""
import pytest
from sqlmodel import Session, select

from app.core.errors import IngestionError
from app.etl.importer import ingest
from app.models.transaction import InventoryEntry, LedgerEntry, Voucher

TENANT = "guid-a"


def _all(engine, model, tenant=TENANT):
    with Session(engine) as s:
        return s.exec(select(model).where(model.tenant_guid == tenant)).all()


class TestIngest:
    def test_writes_voucher_and_entries(self, engine, make_voucher):
        written = ingest(engine, [make_voucher("1")], TENANT)
        assert written == 1
        (voucher,) = _all(engine, Voucher)
        assert voucher.amount == "5000"
        assert voucher.salesperson == "Sundry Debtors"
        assert len(_all(engine, LedgerEntry)) == 2
        assert len(_all(engine, InventoryEntry)) == 1

    def test_reingest_replaces_children(self, engine, make_voucher):
        ingest(
            engine,
            [make_voucher("1", items=[("Old A", "G", "2500", "1", "0"), ("Old B", "G", "2500", "1", "0")])],
            TENANT,
        )
        ingest(
            engine,
            [make_voucher("1", alterid=2, items=[("New", "G", "5000", "2", "0")])],
            TENANT,
        )

        vouchers = _all(engine, Voucher)
        assert len(vouchers) == 1
        assert vouchers[0].alter_id == 2
        lines = _all(engine, InventoryEntry)
        assert [line.stock_item_name for line in lines] == ["New"]
        assert len(_all(engine, LedgerEntry)) == 2

    def test_last_write_wins_regardless_of_alter_id(self, engine, make_voucher):
        ingest(engine, [make_voucher("1", alterid=9, amount="100")], TENANT)
        ingest(engine, [make_voucher("1", alterid=3, amount="200")], TENANT)
        (voucher,) = _all(engine, Voucher)
        assert voucher.amount == "200"

    def test_empty_batch(self, engine):
        assert ingest(engine, [], TENANT) == 0

    def test_failed_batch_rolls_back(self, engine, make_voucher):
        bad = make_voucher("2")
        del bad["masterid"]
        with pytest.raises(IngestionError) as exc_info:
            ingest(engine, [make_voucher("1"), bad], TENANT)
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert _all(engine, Voucher) == []
        assert _all(engine, LedgerEntry) == []

    def test_missing_tenant_rejected(self, engine, make_voucher):
        with pytest.raises(IngestionError):
            ingest(engine, [make_voucher("1")], "")

    def test_same_master_id_in_two_tenants(self, engine, make_voucher):
        ingest(engine, [make_voucher("1", amount="100")], TENANT)
        ingest(engine, [make_voucher("1", amount="900")], "guid-b")
        assert _all(engine, Voucher)[0].amount == "100"
        assert _all(engine, Voucher, "guid-b")[0].amount == "900"
