"""Aggregate maintainer: rollup contents, sign convention, idempotency, self-healing."""
from datetime import datetime

import pytest
from sqlalchemy import select

import app.analytics.aggregates as aggregates_module
from app.analytics.aggregates import AggregateMaintainer
from app.core.errors import AggregateRebuildError
from app.etl.importer import ingest
from app.models.aggregate import AggregateState, DailyAggregate, DimensionalAggregate

TENANT = "guid-a"


def _daily(engine, tenant=TENANT):
    table = DailyAggregate.__table__
    with engine.connect() as conn:
        return [
            dict(r)
            for r in conn.execute(
                select(table).where(table.c.tenant_guid == tenant).order_by(table.c.date)
            ).mappings()
        ]


def _dims(engine, dimension_type, tenant=TENANT):
    table = DimensionalAggregate.__table__
    with engine.connect() as conn:
        rows = conn.execute(
            select(table.c.dimension_name, table.c.amount, table.c.profit, table.c.qty).where(
                table.c.tenant_guid == tenant, table.c.dimension_type == dimension_type
            )
        ).all()
    return {name: (amount, profit, qty) for name, amount, profit, qty in rows}


@pytest.fixture
def maintainer(engine):
    return AggregateMaintainer(engine)


class TestRebuild:
    def test_single_sale(self, engine, maintainer, make_voucher):
        ingest(engine, [make_voucher("1", amount="5000")], TENANT)
        maintainer.rebuild(TENANT)
        (row,) = _daily(engine)
        assert row["date"] == "20250410"
        assert row["total_sales"] == pytest.approx(5000)
        assert row["total_txns"] == 1
        assert row["max_sale"] == pytest.approx(5000)

    def test_credit_note_is_negative_everywhere(self, engine, maintainer, make_voucher):
        ingest(
            engine,
            [
                make_voucher("1", amount="5000", items=[("Widget", "Hardware", "5000", "5", "800")]),
                make_voucher(
                    "2", amount="1000", reserved="Credit Note",
                    items=[("Widget", "Hardware", "1000", "1", "100")],
                ),
            ],
            TENANT,
        )
        maintainer.rebuild(TENANT)

        (row,) = _daily(engine)
        assert row["total_sales"] == pytest.approx(4000)
        assert row["total_txns"] == 2
        assert row["max_sale"] == pytest.approx(5000)

        amount, profit, qty = _dims(engine, "item")["Widget"]
        assert amount == pytest.approx(4000)
        assert profit == pytest.approx(700)
        assert qty == pytest.approx(6)
        assert _dims(engine, "stockGroup")["Hardware"][0] == pytest.approx(4000)
        assert _dims(engine, "country")["India"][0] == pytest.approx(4000)

    def test_only_credit_notes_have_zero_max_sale(self, engine, maintainer, make_voucher):
        ingest(engine, [make_voucher("1", amount="1000", reserved="Credit Note")], TENANT)
        maintainer.rebuild(TENANT)
        (row,) = _daily(engine)
        assert row["total_sales"] == pytest.approx(-1000)
        assert row["max_sale"] == 0

    def test_cancelled_vouchers_excluded(self, engine, maintainer, make_voucher):
        ingest(
            engine,
            [make_voucher("1", amount="5000"), make_voucher("2", amount="700", cancelled="Yes")],
            TENANT,
        )
        maintainer.rebuild(TENANT)
        (row,) = _daily(engine)
        assert row["total_txns"] == 1
        assert row["total_sales"] == pytest.approx(5000)

    def test_voucher_dimensions(self, engine, maintainer, make_voucher):
        ingest(
            engine,
            [
                make_voucher("1", amount="300", country="", group="South Zone"),
                make_voucher("2", amount="200", salesperson="Ravi"),
            ],
            TENANT,
        )
        maintainer.rebuild(TENANT)
        countries = _dims(engine, "country")
        assert countries["Unknown"][0] == pytest.approx(300)
        assert countries["India"][0] == pytest.approx(200)
        people = _dims(engine, "salesperson")
        assert people["South Zone"][0] == pytest.approx(300)
        assert people["Ravi"][0] == pytest.approx(200)
        ledger_groups = _dims(engine, "ledgerGroup")
        assert set(ledger_groups) == {"South Zone", "Sundry Debtors"}
        assert "Sales Accounts" not in ledger_groups

    def test_rebuild_is_idempotent(self, engine, maintainer, make_voucher):
        ingest(
            engine,
            [make_voucher("1"), make_voucher("2", date="20250411", amount="250")],
            TENANT,
        )
        first = maintainer.rebuild(TENANT)
        daily_before = _daily(engine)
        dims_before = _dims(engine, "item")
        second = maintainer.rebuild(TENANT)
        assert first == second
        assert [(r["date"], r["total_sales"]) for r in _daily(engine)] == [
            (r["date"], r["total_sales"]) for r in daily_before
        ]
        assert _dims(engine, "item") == dims_before

    def test_rebuild_scoped_to_tenant(self, engine, maintainer, make_voucher):
        ingest(engine, [make_voucher("1")], TENANT)
        ingest(engine, [make_voucher("1", amount="42")], "guid-b")
        maintainer.rebuild(TENANT)
        maintainer.rebuild("guid-b")
        assert _daily(engine)[0]["total_sales"] == pytest.approx(5000)
        assert _daily(engine, "guid-b")[0]["total_sales"] == pytest.approx(42)

    def test_failure_rolls_back(self, engine, maintainer, make_voucher, monkeypatch):
        ingest(engine, [make_voucher("1")], TENANT)
        maintainer.rebuild(TENANT)

        def boom(tenant_guid):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(aggregates_module, "dimension_selects", boom)
        with pytest.raises(AggregateRebuildError):
            maintainer.rebuild(TENANT)
        assert len(_daily(engine)) == 1
        assert _dims(engine, "item")

    def test_build_time_recorded(self, engine, maintainer, make_voucher):
        ingest(engine, [make_voucher("1")], TENANT)
        maintainer.rebuild(TENANT)
        table = AggregateState.__table__
        with engine.connect() as conn:
            built_at = conn.execute(
                select(table.c.built_at).where(table.c.tenant_guid == TENANT)
            ).scalar_one()
        assert isinstance(built_at, datetime)
        assert built_at.year >= 2025

    def test_model_default_is_timezone_aware(self):
        state = AggregateState(tenant_guid=TENANT, fingerprint="x")
        assert state.built_at.tzinfo is not None


class TestEnsureFresh:
    def test_no_vouchers(self, maintainer):
        assert maintainer.ensure_fresh(TENANT) is False

    def test_missing_rollups_are_built(self, engine, maintainer, make_voucher):
        ingest(engine, [make_voucher("1")], TENANT)
        assert _daily(engine) == []
        assert maintainer.ensure_fresh(TENANT) is True
        assert len(_daily(engine)) == 1

    def test_stale_rollups_are_rebuilt(self, engine, maintainer, make_voucher):
        ingest(engine, [make_voucher("1", amount="100")], TENANT)
        maintainer.rebuild(TENANT)
        ingest(engine, [make_voucher("1", amount="900", alterid=2)], TENANT)
        maintainer.ensure_fresh(TENANT)
        assert _daily(engine)[0]["total_sales"] == pytest.approx(900)

    def test_fresh_rollups_untouched(self, engine, maintainer, make_voucher, monkeypatch):
        ingest(engine, [make_voucher("1")], TENANT)
        maintainer.rebuild(TENANT)

        def fail(tenant_guid):
            raise AssertionError("should not rebuild")

        monkeypatch.setattr(maintainer, "rebuild", fail)
        assert maintainer.ensure_fresh(TENANT) is True

    def test_all_cancelled_tenant_not_rebuilt_repeatedly(self, engine, maintainer, make_voucher):
        ingest(engine, [make_voucher("1", cancelled="Yes")], TENANT)
        maintainer.ensure_fresh(TENANT)
        table = AggregateState.__table__
        with engine.connect() as conn:
            assert conn.execute(select(table.c.tenant_guid)).scalar_one() == TENANT
        assert maintainer.tenants_without_aggregates() == []


class TestBootstrapCandidates:
    def test_tenants_without_aggregates(self, engine, maintainer, make_voucher):
        ingest(engine, [make_voucher("1")], TENANT)
        ingest(engine, [make_voucher("1")], "guid-b")
        maintainer.rebuild("guid-b")
        assert maintainer.tenants_without_aggregates() == [TENANT]
