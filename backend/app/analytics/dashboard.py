"""
Dashboard query planner.

Fast path (date range only): KPIs and trend come from the daily rollup, the
extended breakdowns from the dimensional rollup, and a few simple breakdowns
from direct scans on the (tenant_guid, is_cancelled, date) index.

Slow path (any dimensional filter): a per-query CTE of the matching vouchers
("filtered_vouchers") is built once and every figure is computed against it.
When an item or stock-group filter is active, voucher revenue is replaced by
the sum of the matching inventory lines, so a multi-line voucher only
contributes the part attributable to the filtered items.
"""
from __future__ import annotations

from typing import Any, Optional

from loguru import logger
from sqlalchemy import and_, case, exists, func, select
from sqlalchemy.engine import Connection, Engine

from app.analytics.aggregates import AggregateMaintainer
from app.analytics.expressions import (
    DATE_CEILING,
    DATE_FLOOR,
    as_real,
    inventory_entries,
    inventory_join_on,
    is_credit_note,
    ledger_entries,
    ledger_join_on,
    live_vouchers,
    month_of,
    signed_amount,
    unknown_if_blank,
    vouchers,
)
from app.models.aggregate import DailyAggregate, DimensionalAggregate

daily = DailyAggregate.__table__
dimensional = DimensionalAggregate.__table__

TOP_LIMIT = 10

# Dashboard drill-down dimensions
INVENTORY_FILTERS = {
    "stockGroup": inventory_entries.c.stock_item_group,
    "stockItem": inventory_entries.c.stock_item_name,
}
LEDGER_FILTERS = {
    "ledgerGroup": ledger_entries.c.group_name,
}
SCALAR_FILTERS = {
    "state": unknown_if_blank(vouchers.c.state),
    "country": unknown_if_blank(vouchers.c.country),
    "customer": vouchers.c.party_ledger_name,
    "salesperson": unknown_if_blank(vouchers.c.salesperson),
    "period": month_of(vouchers.c.date),
}
FILTER_DIMENSIONS = (*INVENTORY_FILTERS, *LEDGER_FILTERS, *SCALAR_FILTERS)


def normalize_filters(filters: Optional[dict]) -> dict[str, list[str]]:
    """
    Reduce a filter mapping to {dimension: [values]}.

    Values may be scalars, lists, or drill-down objects carrying a ``value``.
    Unknown dimensions and empty values are dropped.
    """
    result: dict[str, list[str]] = {}
    for key, raw in (filters or {}).items():
        if key not in FILTER_DIMENSIONS:
            logger.warning(f"Ignoring unknown dashboard filter {key!r}")
            continue
        if isinstance(raw, dict):
            raw = raw.get("value")
        values = raw if isinstance(raw, (list, tuple, set)) else [raw]
        values = [str(v) for v in values if v is not None and str(v) != ""]
        if values:
            result[key] = values
    return result


def _rows(conn: Connection, stmt) -> list[dict[str, Any]]:
    return [dict(r) for r in conn.execute(stmt).mappings()]


def empty_dashboard() -> dict[str, Any]:
    return {
        "kpi": {"totalSales": 0.0, "totalTxns": 0, "avgOrderValue": 0.0, "maxSale": 0.0},
        "charts": {"salesTrend": [], "salesByState": [], "topCustomers": [], "topItems": []},
    }


def empty_extended() -> dict[str, Any]:
    return {
        "salesByStockGroup": [],
        "salesByLedgerGroup": [],
        "salesByCountry": [],
        "salesBySalesperson": [],
        "salesByPeriod": [],
        "topItemsByQty": [],
        "profitAnalysis": {"revenue": 0.0, "profit": 0.0},
        "monthWiseProfit": [],
        "topProfitableItems": [],
        "topLossItems": [],
    }


def _kpi(total_sales, total_txns, max_sale) -> dict[str, Any]:
    total_sales = float(total_sales or 0.0)
    total_txns = int(total_txns or 0)
    return {
        "totalSales": total_sales,
        "totalTxns": total_txns,
        "avgOrderValue": total_sales / total_txns if total_txns else 0.0,
        "maxSale": float(max_sale or 0.0),
    }


class DashboardPlanner:
    """Answers the fixed dashboard KPIs and charts. Read-only."""

    def __init__(self, engine: Engine, aggregates: Optional[AggregateMaintainer] = None) -> None:
        self.engine = engine
        self.aggregates = aggregates or AggregateMaintainer(engine)

    # ── public API ────────────────────────────────────────────────────────────

    def get_dashboard_data(
        self, tenant_guid: str, from_date: str, to_date: str, filters: Optional[dict] = None
    ) -> dict[str, Any]:
        from_date, to_date = from_date or DATE_FLOOR, to_date or DATE_CEILING
        active = normalize_filters(filters)
        if not self.aggregates.ensure_fresh(tenant_guid):
            return empty_dashboard()
        with self.engine.connect() as conn:
            if active:
                logger.debug(f"Dashboard slow path for {tenant_guid}: {sorted(active)}")
                return self._slow_dashboard(conn, tenant_guid, from_date, to_date, active)
            return self._fast_dashboard(conn, tenant_guid, from_date, to_date)

    def get_extended_dashboard_data(
        self, tenant_guid: str, from_date: str, to_date: str, filters: Optional[dict] = None
    ) -> dict[str, Any]:
        from_date, to_date = from_date or DATE_FLOOR, to_date or DATE_CEILING
        active = normalize_filters(filters)
        if not self.aggregates.ensure_fresh(tenant_guid):
            return empty_extended()
        with self.engine.connect() as conn:
            if active:
                return self._slow_extended(conn, tenant_guid, from_date, to_date, active)
            return self._fast_extended(conn, tenant_guid, from_date, to_date)

    # ── fast path ─────────────────────────────────────────────────────────────

    def _fast_dashboard(self, conn, tenant_guid, from_date, to_date) -> dict[str, Any]:
        in_range = and_(
            daily.c.tenant_guid == tenant_guid,
            daily.c.date >= from_date,
            daily.c.date <= to_date,
        )
        total_sales, total_txns, max_sale = conn.execute(
            select(
                func.sum(daily.c.total_sales),
                func.sum(daily.c.total_txns),
                func.max(daily.c.max_sale),
            ).where(in_range)
        ).one()

        sales_trend = _rows(
            conn,
            select(daily.c.date, daily.c.total_sales.label("total"))
            .where(in_range)
            .order_by(daily.c.date),
        )

        live = live_vouchers(tenant_guid, from_date, to_date)
        value = func.sum(signed_amount()).label("value")
        state_name = unknown_if_blank(vouchers.c.state).label("name")
        sales_by_state = _rows(
            conn,
            select(state_name, value).where(live).group_by(state_name).order_by(value.desc()),
        )
        top_customers = _rows(
            conn,
            select(vouchers.c.party_ledger_name.label("name"), value)
            .where(live)
            .group_by(vouchers.c.party_ledger_name)
            .order_by(value.desc())
            .limit(TOP_LIMIT),
        )
        item_value = func.sum(
            case(
                (is_credit_note(), -as_real(inventory_entries.c.amount)),
                else_=as_real(inventory_entries.c.amount),
            )
        ).label("value")
        top_items = _rows(
            conn,
            select(inventory_entries.c.stock_item_name.label("name"), item_value)
            .select_from(vouchers.join(inventory_entries, inventory_join_on()))
            .where(live)
            .group_by(inventory_entries.c.stock_item_name)
            .order_by(item_value.desc())
            .limit(TOP_LIMIT),
        )

        return {
            "kpi": _kpi(total_sales, total_txns, max_sale),
            "charts": {
                "salesTrend": sales_trend,
                "salesByState": sales_by_state,
                "topCustomers": top_customers,
                "topItems": top_items,
            },
        }

    def _fast_extended(self, conn, tenant_guid, from_date, to_date) -> dict[str, Any]:
        def dims(dimension_type: str):
            return and_(
                dimensional.c.tenant_guid == tenant_guid,
                dimensional.c.dimension_type == dimension_type,
                dimensional.c.date >= from_date,
                dimensional.c.date <= to_date,
            )

        name = dimensional.c.dimension_name.label("name")
        amount = func.sum(dimensional.c.amount).label("value")
        profit = func.sum(dimensional.c.profit).label("value")
        qty = func.sum(dimensional.c.qty).label("value")
        period = month_of(dimensional.c.date).label("period")

        def breakdown(dimension_type: str):
            return _rows(
                conn,
                select(name, amount)
                .where(dims(dimension_type))
                .group_by(dimensional.c.dimension_name)
                .order_by(amount.desc()),
            )

        daily_period = month_of(daily.c.date).label("period")
        sales_by_period = _rows(
            conn,
            select(daily_period, func.sum(daily.c.total_sales).label("value"))
            .where(
                daily.c.tenant_guid == tenant_guid,
                daily.c.date >= from_date,
                daily.c.date <= to_date,
            )
            .group_by(daily_period)
            .order_by(daily_period),
        )
        revenue, total_profit = conn.execute(
            select(func.sum(dimensional.c.amount), func.sum(dimensional.c.profit)).where(
                dims("item")
            )
        ).one()

        def by_item(measure):
            return select(name, measure).where(dims("item")).group_by(dimensional.c.dimension_name)

        return {
            "salesByStockGroup": breakdown("stockGroup"),
            "salesByLedgerGroup": breakdown("ledgerGroup"),
            "salesByCountry": breakdown("country"),
            "salesBySalesperson": breakdown("salesperson"),
            "salesByPeriod": sales_by_period,
            "topItemsByQty": _rows(conn, by_item(qty).order_by(qty.desc()).limit(TOP_LIMIT)),
            "profitAnalysis": {
                "revenue": float(revenue or 0.0),
                "profit": float(total_profit or 0.0),
            },
            "monthWiseProfit": _rows(
                conn,
                select(period, profit).where(dims("item")).group_by(period).order_by(period),
            ),
            "topProfitableItems": _rows(
                conn,
                by_item(profit).having(profit > 0).order_by(profit.desc()).limit(TOP_LIMIT),
            ),
            "topLossItems": _rows(
                conn,
                by_item(profit).having(profit < 0).order_by(profit.asc()).limit(TOP_LIMIT),
            ),
        }

    # ── slow path ─────────────────────────────────────────────────────────────

    def _filtered_facts(self, tenant_guid, from_date, to_date, active: dict[str, list[str]]):
        """
        CTE of the vouchers matching every active filter.

        Columns: master_id, date, party, state, country, salesperson,
        is_cn (0/1), amt (unsigned revenue), samt (signed revenue).
        """
        conds = [live_vouchers(tenant_guid, from_date, to_date)]

        for key, column in SCALAR_FILTERS.items():
            if key in active:
                conds.append(column.in_(active[key]))

        for key, column in LEDGER_FILTERS.items():
            if key in active:
                conds.append(
                    exists().where(
                        ledger_join_on(),
                        ledger_entries.c.is_party_ledger == "Yes",
                        column.in_(active[key]),
                    )
                )

        inventory_conds = self._inventory_conditions(active)
        if inventory_conds:
            conds.append(exists().where(inventory_join_on(), *inventory_conds))
            amt = (
                select(func.coalesce(func.sum(as_real(inventory_entries.c.amount)), 0.0))
                .where(inventory_join_on(), *inventory_conds)
                .scalar_subquery()
            )
        else:
            amt = as_real(vouchers.c.amount)

        is_cn = case((is_credit_note(), 1), else_=0)
        return (
            select(
                vouchers.c.master_id,
                vouchers.c.date,
                vouchers.c.party_ledger_name.label("party"),
                vouchers.c.state,
                vouchers.c.country,
                vouchers.c.salesperson,
                is_cn.label("is_cn"),
                amt.label("amt"),
                case((is_credit_note(), -amt), else_=amt).label("samt"),
            )
            .where(*conds)
            .cte("filtered_vouchers")
        )

    @staticmethod
    def _inventory_conditions(active: dict[str, list[str]]) -> list:
        return [column.in_(active[key]) for key, column in INVENTORY_FILTERS.items() if key in active]

    def _fact_lines(self, facts, tenant_guid, active):
        """Inventory lines of the filtered vouchers, restricted to the filtered items."""
        join_on = and_(
            inventory_entries.c.voucher_master_id == facts.c.master_id,
            inventory_entries.c.tenant_guid == tenant_guid,
            *self._inventory_conditions(active),
        )
        return facts.join(inventory_entries, join_on)

    @staticmethod
    def _signed_line(facts, column):
        return case((facts.c.is_cn == 1, -as_real(column)), else_=as_real(column))

    def _slow_dashboard(self, conn, tenant_guid, from_date, to_date, active) -> dict[str, Any]:
        facts = self._filtered_facts(tenant_guid, from_date, to_date, active)

        total_sales, total_txns, max_sale = conn.execute(
            select(
                func.sum(facts.c.samt),
                func.count(),
                func.max(case((facts.c.is_cn == 0, facts.c.amt))),
            ).select_from(facts)
        ).one()

        value = func.sum(facts.c.samt).label("value")
        sales_trend = _rows(
            conn,
            select(facts.c.date, func.sum(facts.c.samt).label("total"))
            .group_by(facts.c.date)
            .order_by(facts.c.date),
        )
        state_name = unknown_if_blank(facts.c.state).label("name")
        sales_by_state = _rows(
            conn, select(state_name, value).group_by(state_name).order_by(value.desc())
        )
        top_customers = _rows(
            conn,
            select(facts.c.party.label("name"), value)
            .group_by(facts.c.party)
            .order_by(value.desc())
            .limit(TOP_LIMIT),
        )
        item_value = func.sum(self._signed_line(facts, inventory_entries.c.amount)).label("value")
        top_items = _rows(
            conn,
            select(inventory_entries.c.stock_item_name.label("name"), item_value)
            .select_from(self._fact_lines(facts, tenant_guid, active))
            .group_by(inventory_entries.c.stock_item_name)
            .order_by(item_value.desc())
            .limit(TOP_LIMIT),
        )

        return {
            "kpi": _kpi(total_sales, total_txns, max_sale),
            "charts": {
                "salesTrend": sales_trend,
                "salesByState": sales_by_state,
                "topCustomers": top_customers,
                "topItems": top_items,
            },
        }

    def _slow_extended(self, conn, tenant_guid, from_date, to_date, active) -> dict[str, Any]:
        facts = self._filtered_facts(tenant_guid, from_date, to_date, active)
        lines = self._fact_lines(facts, tenant_guid, active)

        value = func.sum(facts.c.samt).label("value")
        line_amount = func.sum(self._signed_line(facts, inventory_entries.c.amount)).label("value")
        line_profit = func.sum(self._signed_line(facts, inventory_entries.c.profit)).label("value")
        line_qty = func.sum(as_real(inventory_entries.c.billed_qty)).label("value")
        item = inventory_entries.c.stock_item_name.label("name")
        period = month_of(facts.c.date).label("period")

        def by_voucher_column(column):
            name = unknown_if_blank(column).label("name")
            return _rows(conn, select(name, value).group_by(name).order_by(value.desc()))

        party_ledgers = facts.join(
            ledger_entries,
            and_(
                ledger_entries.c.voucher_master_id == facts.c.master_id,
                ledger_entries.c.tenant_guid == tenant_guid,
                ledger_entries.c.is_party_ledger == "Yes",
            ),
        )
        revenue, total_profit = conn.execute(
            select(
                func.sum(self._signed_line(facts, inventory_entries.c.amount)),
                func.sum(self._signed_line(facts, inventory_entries.c.profit)),
            ).select_from(lines)
        ).one()

        def by_item(measure):
            return select(item, measure).select_from(lines).group_by(inventory_entries.c.stock_item_name)

        return {
            "salesByStockGroup": _rows(
                conn,
                select(inventory_entries.c.stock_item_group.label("name"), line_amount)
                .select_from(lines)
                .group_by(inventory_entries.c.stock_item_group)
                .order_by(line_amount.desc()),
            ),
            "salesByLedgerGroup": _rows(
                conn,
                select(ledger_entries.c.group_name.label("name"), value)
                .select_from(party_ledgers)
                .group_by(ledger_entries.c.group_name)
                .order_by(value.desc()),
            ),
            "salesByCountry": by_voucher_column(facts.c.country),
            "salesBySalesperson": by_voucher_column(facts.c.salesperson),
            "salesByPeriod": _rows(
                conn, select(period, value).group_by(period).order_by(period)
            ),
            "topItemsByQty": _rows(
                conn, by_item(line_qty).order_by(line_qty.desc()).limit(TOP_LIMIT)
            ),
            "profitAnalysis": {
                "revenue": float(revenue or 0.0),
                "profit": float(total_profit or 0.0),
            },
            "monthWiseProfit": _rows(
                conn,
                select(period, line_profit).select_from(lines).group_by(period).order_by(period),
            ),
            "topProfitableItems": _rows(
                conn,
                by_item(line_profit).having(line_profit > 0)
                .order_by(line_profit.desc()).limit(TOP_LIMIT),
            ),
            "topLossItems": _rows(
                conn,
                by_item(line_profit).having(line_profit < 0)
                .order_by(line_profit.asc()).limit(TOP_LIMIT),
            ),
        }
