"""
Dynamic card query compiler.

Turns a saved card configuration (group-by dimension, value field,
aggregation, filters, optional segment or multi-axis series) into a
parameterised SELECT against the base tables and shapes the result for the
chart:

  plain       → [{name, value}]
  segmented   → {groups, segments, data, isSegmented}
  multi-axis  → {data, seriesInfo, isMultiAxis}

Identifiers are never interpolated: every dimension resolves to a known
column expression or to a column validated against the voucher table.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import and_, exists, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.sql import Select

from app.analytics.dashboard import normalize_filters
from app.analytics.expressions import (
    as_real,
    inventory_entries,
    inventory_join_on,
    ledger_entries,
    ledger_join_on,
    live_vouchers,
    month_of,
    quarter_of,
    signed,
    signed_amount,
    unknown_if_blank,
    vouchers,
    week_of,
)
from app.core.config import settings as app_settings
from app.core.errors import QueryError
from app.etl.client import SETTINGS_CARD_TITLE
from app.schemas.cards import CardFilter, CardSpec, SeriesSpec

OTHER_SEGMENT = "Other"
UNSORTED_INDEX = 999


class Dimension(str, Enum):
    DATE = "date"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    ITEM = "item"
    CUSTOMER = "customer"
    STATE = "state"
    COUNTRY = "country"
    LEDGER_GROUP = "ledgerentries.group"
    STOCK_GROUP = "allinventoryentries.stockitemgroup"


DIMENSION_ALIASES: dict[str, Dimension] = {
    "ledgerGroup": Dimension.LEDGER_GROUP,
    "ledger_group": Dimension.LEDGER_GROUP,
    "stockGroup": Dimension.STOCK_GROUP,
    "stock_group": Dimension.STOCK_GROUP,
    "stockItem": Dimension.ITEM,
    "allinventoryentries.stockitemname": Dimension.ITEM,
    "party": Dimension.CUSTOMER,
    "partyledgername": Dimension.CUSTOMER,
}


@dataclass(frozen=True)
class RawColumn:
    """A voucher column named directly by a card."""

    name: str


GroupKey = Union[Dimension, RawColumn]


def _normalise(name: str) -> str:
    return name.lower().replace("_", "").replace(".", "")


def voucher_column(name: str):
    """Validate a free-form field name against the voucher table."""
    wanted = _normalise(name or "")
    for column in vouchers.c:
        if _normalise(column.name) == wanted:
            return column
    raise QueryError(f"Unknown field {name!r}")


def resolve_dimension(key: Optional[str]) -> GroupKey:
    if not key:
        raise QueryError("Missing dimension")
    try:
        return Dimension(key)
    except ValueError:
        pass
    if key in DIMENSION_ALIASES:
        return DIMENSION_ALIASES[key]
    return RawColumn(voucher_column(key).name)


# table each dimension lives on: "v" vouchers, "i" inventory lines, "l" ledger entries
def _dimension_table(dim: GroupKey) -> str:
    if dim in (Dimension.ITEM, Dimension.STOCK_GROUP):
        return "i"
    if dim is Dimension.LEDGER_GROUP:
        return "l"
    return "v"


def dimension_expr(dim: GroupKey):
    if isinstance(dim, RawColumn):
        return vouchers.c[dim.name]
    return {
        Dimension.DATE: lambda: vouchers.c.date,
        Dimension.WEEK: lambda: week_of(vouchers.c.date),
        Dimension.MONTH: lambda: month_of(vouchers.c.date),
        Dimension.QUARTER: lambda: quarter_of(vouchers.c.date),
        Dimension.ITEM: lambda: inventory_entries.c.stock_item_name,
        Dimension.CUSTOMER: lambda: vouchers.c.party_ledger_name,
        Dimension.STATE: lambda: unknown_if_blank(vouchers.c.state),
        Dimension.COUNTRY: lambda: unknown_if_blank(vouchers.c.country),
        Dimension.LEDGER_GROUP: lambda: ledger_entries.c.group_name,
        Dimension.STOCK_GROUP: lambda: inventory_entries.c.stock_item_group,
    }[dim]()


# ── value fields ──────────────────────────────────────────────────────────────

DISTINCT_VOUCHER_FIELDS = {"transactions", "unique_orders"}
DISTINCT_PARTY_FIELDS = {"unique_customers"}
ITEM_AMOUNT_FIELDS = {"allinventoryentries.accountingallocation.amount", "item_amount"}
QUANTITY_FIELDS = {"quantity", "allinventoryentries.billedqty"}
INVENTORY_VALUE_FIELDS = {"profit"} | ITEM_AMOUNT_FIELDS | QUANTITY_FIELDS


def _count_expr(value_field: str):
    if value_field in DISTINCT_VOUCHER_FIELDS:
        return func.count(vouchers.c.master_id.distinct())
    if value_field in DISTINCT_PARTY_FIELDS:
        return func.count(vouchers.c.party_ledger_name.distinct())
    return func.count()


def value_needs_inventory(value_field: Optional[str], aggregation: str) -> bool:
    return aggregation != "count" and (value_field or "") in INVENTORY_VALUE_FIELDS


def value_expr(value_field: str, aggregation: str, inventory_joined: bool):
    """
    SQL aggregate for a card value.

    ``amount`` is the signed voucher amount, or the signed line amount when
    inventory lines are joined (a voucher amount repeated per line would
    overstate revenue).
    """
    if aggregation == "count" or value_field in DISTINCT_VOUCHER_FIELDS | DISTINCT_PARTY_FIELDS:
        return _count_expr(value_field)
    if aggregation != "sum":
        raise QueryError(f"Unsupported aggregation {aggregation!r}")
    if value_field == "amount":
        if inventory_joined:
            return func.sum(signed(as_real(inventory_entries.c.amount)))
        return func.sum(signed_amount())
    if value_field == "profit":
        return func.sum(signed(as_real(inventory_entries.c.profit)))
    if value_field in ITEM_AMOUNT_FIELDS:
        return func.sum(signed(as_real(inventory_entries.c.amount)))
    if value_field in QUANTITY_FIELDS:
        return func.sum(as_real(inventory_entries.c.billed_qty))
    return func.sum(as_real(voucher_column(value_field)))


# ── filters ───────────────────────────────────────────────────────────────────

# filter fields with a fixed mapping; anything else resolves as a dimension
FILTER_FIELDS = {
    "ledgerentries.group": ("l", ledger_entries.c.group_name),
    "ledgerentries.ledgername": ("l", ledger_entries.c.ledger_name),
    "allinventoryentries.stockitemgroup": ("i", inventory_entries.c.stock_item_group),
    "allinventoryentries.stockitemname": ("i", inventory_entries.c.stock_item_name),
    # blank salesperson compares as "Unknown", matching the dashboard filter
    "salesperson": ("v", unknown_if_blank(vouchers.c.salesperson)),
}

# dashboard drill-down dimension → card filter field
DASHBOARD_FILTER_FIELDS = {
    "stockGroup": "allinventoryentries.stockitemgroup",
    "stockItem": "allinventoryentries.stockitemname",
    "ledgerGroup": "ledgerentries.group",
    "state": "state",
    "country": "country",
    "customer": "customer",
    "salesperson": "salesperson",
    "period": "month",
}


def dashboard_filters_to_card_filters(filters: Optional[dict]) -> list[CardFilter]:
    return [
        CardFilter(filter_field=DASHBOARD_FILTER_FIELDS[key], filter_values=values)
        for key, values in normalize_filters(filters).items()
    ]


@dataclass
class QueryPlan:
    """Joins and predicates needed by one card (or one series)."""

    conditions: list = field(default_factory=list)
    inventory: bool = False
    ledger: bool = False

    def need(self, table: str) -> None:
        if table == "i":
            self.inventory = True
        elif table == "l":
            self.ledger = True

    def add_filter(self, flt: CardFilter) -> None:
        values = [v for v in flt.filter_values if v is not None]
        if not flt.filter_field or not values:
            return
        if flt.filter_field in FILTER_FIELDS:
            table, column = FILTER_FIELDS[flt.filter_field]
        else:
            dim = resolve_dimension(flt.filter_field)
            table, column = _dimension_table(dim), dimension_expr(dim)
        if table == "l":
            # semi-join: a voucher matches once however many entries match
            self.conditions.append(exists().where(ledger_join_on(), column.in_(values)))
        else:
            self.need(table)
            self.conditions.append(column.in_(values))

    def source(self):
        src = vouchers
        if self.inventory:
            src = src.join(inventory_entries, inventory_join_on())
        if self.ledger:
            src = src.join(
                ledger_entries,
                and_(ledger_join_on(), ledger_entries.c.is_party_ledger == "Yes"),
            )
        return src


def _limit(card: CardSpec) -> Optional[int]:
    if card.top_n:
        return card.top_n
    if card.chart_type == "line":
        return None
    return app_settings.DEFAULT_CARD_LIMIT


def _number(value) -> float:
    return value if value is not None else 0


class CardCompiler:
    """Compiles and runs card configurations for one store."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ── planning ──────────────────────────────────────────────────────────────

    def _plan(
        self,
        tenant_guid: str,
        from_date: str,
        to_date: str,
        dims: list[GroupKey],
        value_field: str,
        aggregation: str,
        filters: list[CardFilter],
    ) -> QueryPlan:
        plan = QueryPlan(conditions=[live_vouchers(tenant_guid, from_date, to_date)])
        for dim in dims:
            plan.need(_dimension_table(dim))
        if value_needs_inventory(value_field, aggregation):
            plan.need("i")
        for flt in filters:
            plan.add_filter(flt)
        return plan

    def build_query(
        self,
        tenant_guid: str,
        from_date: str,
        to_date: str,
        group_by: str,
        value_field: str,
        aggregation: str = "sum",
        filters: Optional[list[CardFilter]] = None,
        limit: Optional[int] = None,
    ) -> Select:
        """SELECT name, value ... GROUP BY name ORDER BY value DESC [LIMIT n]"""
        dim = resolve_dimension(group_by)
        plan = self._plan(
            tenant_guid, from_date, to_date, [dim], value_field, aggregation, filters or []
        )
        group = dimension_expr(dim)
        value = value_expr(value_field, aggregation, plan.inventory).label("value")
        stmt = (
            select(group.label("name"), value)
            .select_from(plan.source())
            .where(*plan.conditions)
            .group_by(group)
            .order_by(value.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return stmt

    def build_card_query(
        self,
        card: CardSpec,
        tenant_guid: str,
        from_date: str,
        to_date: str,
        extra_filters: Optional[list[CardFilter]] = None,
    ) -> Select:
        return self.build_query(
            tenant_guid,
            from_date,
            to_date,
            card.group_by,
            card.value_field,
            card.aggregation,
            [*card.filters, *(extra_filters or [])],
            _limit(card),
        )

    # ── execution ─────────────────────────────────────────────────────────────

    def _rows(self, stmt) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            return [dict(r) for r in conn.execute(stmt).mappings()]

    def compute_card(
        self,
        card: Union[CardSpec, dict],
        tenant_guid: str,
        from_date: str,
        to_date: str,
        filters: Optional[dict] = None,
    ):
        if not isinstance(card, CardSpec):
            card = CardSpec.model_validate(card)
        if not card.group_by or not card.value_field:
            return []
        extra = dashboard_filters_to_card_filters(filters)

        if card.chart_type == "multiAxis" and card.card_config.multi_axis_series:
            return self._multi_axis(card, tenant_guid, from_date, to_date, extra)
        if card.card_config.segment_by:
            return self._segmented(card, tenant_guid, from_date, to_date, extra)
        return self._rows(self.build_card_query(card, tenant_guid, from_date, to_date, extra))

    def _segmented(self, card: CardSpec, tenant_guid, from_date, to_date, extra) -> dict:
        dim = resolve_dimension(card.group_by)
        seg_dim = resolve_dimension(card.card_config.segment_by)
        filters = [*card.filters, *extra]
        plan = self._plan(
            tenant_guid, from_date, to_date, [dim, seg_dim],
            card.value_field, card.aggregation, filters,
        )
        group = dimension_expr(dim)
        segment = dimension_expr(seg_dim)
        value = value_expr(card.value_field, card.aggregation, plan.inventory).label("value")

        groups_stmt = (
            select(group.label("name"), value)
            .select_from(plan.source())
            .where(*plan.conditions)
            .group_by(group)
            .order_by(value.desc())
        )
        limit = _limit(card)
        if limit:
            groups_stmt = groups_stmt.limit(limit)
        group_names = [row["name"] for row in self._rows(groups_stmt)]
        if not group_names:
            return {"groups": [], "segments": [], "data": [], "isSegmented": True}

        cells = self._rows(
            select(group.label("name"), segment.label("segment"), value)
            .select_from(plan.source())
            .where(*plan.conditions, group.in_(group_names))
            .group_by(group, segment)
        )
        return pivot_segments(group_names, cells)

    def _multi_axis(self, card: CardSpec, tenant_guid, from_date, to_date, extra) -> dict:
        by_series: list[tuple[SeriesSpec, dict]] = []
        names: set = set()
        for series in card.card_config.multi_axis_series:
            stmt = self.build_query(
                tenant_guid,
                from_date,
                to_date,
                card.group_by,
                series.field,
                series.aggregation or "sum",
                [*card.filters, *series.filters, *extra],
            )
            values = {row["name"]: row["value"] for row in self._rows(stmt)}
            names.update(values)
            by_series.append((series, values))

        axis = sorted(names, key=lambda n: (n is None, str(n)))[: app_settings.DEFAULT_CARD_LIMIT]
        data = []
        for name in axis:
            row: dict[str, Any] = {"name": name}
            for series, values in by_series:
                row[series.alias] = _number(values.get(name))
            data.append(row)
        series_info = [
            {
                "id": s.id,
                "label": s.label,
                "alias": s.alias,
                "axis": s.axis,
                "type": s.type,
                "field": s.field,
            }
            for s, _ in by_series
        ]
        return {"data": data, "seriesInfo": series_info, "isMultiAxis": True}

    # ── whole dashboards ──────────────────────────────────────────────────────

    def compute_all(
        self,
        cards: list,
        tenant_guid: str,
        from_date: str,
        to_date: str,
        filters: Optional[dict] = None,
        settings: Optional[dict] = None,
    ) -> dict:
        """Compute every card; a failing card yields [] and does not stop the rest."""
        period_settings = (settings or {}).get("cardPeriodSettings") or {}
        results: dict = {}
        for position, raw in enumerate(cards or []):
            try:
                card = raw if isinstance(raw, CardSpec) else CardSpec.model_validate(raw)
            except ValidationError as exc:
                key = None
                if isinstance(raw, dict):
                    key = raw["id"] if raw.get("id") is not None else raw.get("title")
                if not isinstance(key, (int, str)) or key == "":
                    key = position
                logger.error(f"Invalid card configuration {key!r}: {exc}")
                results[key] = []
                continue
            if card.title == SETTINGS_CARD_TITLE:
                continue

            key = card.key if card.key not in (None, "") else position
            card_from, card_to = from_date, to_date
            if card.from_date and card.to_date:
                card_from, card_to = card.from_date, card.to_date
            elif card.card_config.override_date_filter and card.title in period_settings:
                window = period_settings[card.title] or {}
                card_from = window.get("fromDate") or from_date
                card_to = window.get("toDate") or to_date
            card_from = str(card_from).replace("-", "")
            card_to = str(card_to).replace("-", "")

            try:
                results[key] = self.compute_card(card, tenant_guid, card_from, card_to, filters)
            except Exception as exc:
                logger.error(f"Card {card.title!r} failed: {exc}")
                results[key] = []
        return results


def pivot_segments(group_names: list, cells: list[dict]) -> dict:
    """
    Pivot (group, segment, value) cells into one row per group.

    The largest ``MAX_SEGMENTS`` segments by absolute total keep their own
    column; the rest are summed into "Other".  Every cell is present.
    """
    totals: dict = {}
    for cell in cells:
        segment = cell["segment"] if cell["segment"] is not None else ""
        totals[segment] = totals.get(segment, 0) + abs(cell["value"] or 0)
    ranked = sorted(totals, key=lambda s: (-totals[s], str(s)))
    top = ranked[: app_settings.MAX_SEGMENTS]
    has_other = len(ranked) > app_settings.MAX_SEGMENTS

    # segment column labels must not shadow the row key or the Other bucket
    reserved = {"name", OTHER_SEGMENT} if has_other else {"name"}
    labels = {
        segment: f"{segment} (segment)" if str(segment) in reserved else segment
        for segment in top
    }

    data = []
    for name in group_names:
        row: dict[str, Any] = {"name": name, **{labels[segment]: 0 for segment in top}}
        if has_other:
            row[OTHER_SEGMENT] = 0
        for cell in cells:
            if cell["name"] != name:
                continue
            segment = cell["segment"] if cell["segment"] is not None else ""
            row[labels.get(segment, OTHER_SEGMENT)] += cell["value"] or 0
        data.append(row)

    segments = [labels[segment] for segment in top]
    if has_other:
        segments.append(OTHER_SEGMENT)
    return {"groups": group_names, "segments": segments, "data": data, "isSegmented": True}


def sort_cards(cards: list, settings: Optional[dict] = None) -> list:
    """Order cards by the dashboard's cardSortIndex (unknown titles last)."""
    index = (settings or {}).get("cardSortIndex") or {}

    def position(card) -> int:
        title = card.title if isinstance(card, CardSpec) else card.get("title")
        return index.get(title, UNSORTED_INDEX)

    return sorted(cards, key=position)
