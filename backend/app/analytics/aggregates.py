"""
Aggregate maintainer: rebuilds the daily and dimensional rollups of a tenant
from the base tables.

Rollups are a cache.  ``rebuild`` replaces a tenant's rows wholesale inside a
single transaction; ``ensure_fresh`` is the self-healing check every
rollup-backed read goes through first.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from loguru import logger
from sqlalchemy import delete, func, insert, literal, null, case, select
from sqlalchemy.engine import Connection, Engine

from app.analytics.expressions import (
    as_real,
    inventory_entries,
    inventory_join_on,
    is_credit_note,
    ledger_entries,
    ledger_join_on,
    live_vouchers,
    signed,
    signed_amount,
    unknown_if_blank,
    vouchers,
)
from app.core.errors import AggregateRebuildError
from app.models.aggregate import AggregateState, DailyAggregate, DimensionalAggregate

daily = DailyAggregate.__table__
dimensional = DimensionalAggregate.__table__
state = AggregateState.__table__

_DIM_COLUMNS = [
    "tenant_guid", "date", "dimension_type", "dimension_name", "amount", "profit", "qty",
]


def _daily_select(tenant_guid: str):
    amount = as_real(vouchers.c.amount)
    return (
        select(
            literal(tenant_guid),
            vouchers.c.date,
            func.coalesce(func.sum(signed_amount()), 0.0),
            func.count(),
            func.coalesce(func.max(case((is_credit_note(), null()), else_=amount)), 0.0),
        )
        .where(live_vouchers(tenant_guid))
        .group_by(vouchers.c.date)
    )


def _inventory_dimension(tenant_guid: str, dimension_type: str, name_col):
    name = func.coalesce(name_col, "")
    return (
        select(
            literal(tenant_guid),
            vouchers.c.date,
            literal(dimension_type),
            name,
            func.coalesce(func.sum(signed(as_real(inventory_entries.c.amount))), 0.0),
            func.coalesce(func.sum(signed(as_real(inventory_entries.c.profit))), 0.0),
            func.coalesce(func.sum(as_real(inventory_entries.c.billed_qty)), 0.0),
        )
        .select_from(vouchers.join(inventory_entries, inventory_join_on()))
        .where(live_vouchers(tenant_guid))
        .group_by(vouchers.c.date, name)
    )


def _voucher_dimension(tenant_guid: str, dimension_type: str, name_col):
    name = unknown_if_blank(name_col)
    return (
        select(
            literal(tenant_guid),
            vouchers.c.date,
            literal(dimension_type),
            name,
            func.coalesce(func.sum(signed_amount()), 0.0),
            literal(0.0),
            literal(0.0),
        )
        .where(live_vouchers(tenant_guid))
        .group_by(vouchers.c.date, name)
    )


def _ledger_group_dimension(tenant_guid: str):
    name = func.coalesce(ledger_entries.c.group_name, "")
    return (
        select(
            literal(tenant_guid),
            vouchers.c.date,
            literal("ledgerGroup"),
            name,
            func.coalesce(func.sum(signed_amount()), 0.0),
            literal(0.0),
            literal(0.0),
        )
        .select_from(vouchers.join(ledger_entries, ledger_join_on()))
        .where(live_vouchers(tenant_guid), ledger_entries.c.is_party_ledger == "Yes")
        .group_by(vouchers.c.date, name)
    )


def dimension_selects(tenant_guid: str) -> dict:
    return {
        "stockGroup": _inventory_dimension(
            tenant_guid, "stockGroup", inventory_entries.c.stock_item_group
        ),
        "item": _inventory_dimension(tenant_guid, "item", inventory_entries.c.stock_item_name),
        "ledgerGroup": _ledger_group_dimension(tenant_guid),
        "country": _voucher_dimension(tenant_guid, "country", vouchers.c.country),
        "salesperson": _voucher_dimension(tenant_guid, "salesperson", vouchers.c.salesperson),
    }


def base_fingerprint(conn: Connection, tenant_guid: str) -> Optional[str]:
    """
    Cheap signature of a tenant's base data, or None when it has no vouchers.

    Any ingestion that adds, replaces or cancels vouchers (or changes their
    entries) moves at least one of these numbers.
    """
    row = conn.execute(
        select(
            func.count(),
            func.coalesce(func.sum(case((vouchers.c.is_cancelled == "No", 1), else_=0)), 0),
            func.coalesce(func.max(vouchers.c.alter_id), 0),
            func.coalesce(func.sum(vouchers.c.alter_id), 0),
            func.coalesce(func.sum(as_real(vouchers.c.amount)), 0.0),
        ).where(vouchers.c.tenant_guid == tenant_guid)
    ).one()
    if not row[0]:
        return None
    n_ledger = conn.execute(
        select(func.count()).where(ledger_entries.c.tenant_guid == tenant_guid)
    ).scalar_one()
    n_inventory = conn.execute(
        select(func.count()).where(inventory_entries.c.tenant_guid == tenant_guid)
    ).scalar_one()
    total, live, max_alter, sum_alter, sum_amount = row
    return f"{total}|{live}|{max_alter}|{sum_alter}|{round(sum_amount, 4)}|{n_ledger}|{n_inventory}"


class AggregateMaintainer:
    """Sole writer of the derived tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def rebuild(self, tenant_guid: str) -> dict[str, int]:
        """Regenerate all rollups for a tenant. Returns row counts per table."""
        logger.info(f"Rebuilding aggregates for {tenant_guid}")
        counts: dict[str, int] = {}
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(daily).where(daily.c.tenant_guid == tenant_guid))
                conn.execute(delete(dimensional).where(dimensional.c.tenant_guid == tenant_guid))
                conn.execute(delete(state).where(state.c.tenant_guid == tenant_guid))

                conn.execute(
                    insert(daily).from_select(
                        ["tenant_guid", "date", "total_sales", "total_txns", "max_sale"],
                        _daily_select(tenant_guid),
                    )
                )
                for stmt in dimension_selects(tenant_guid).values():
                    conn.execute(insert(dimensional).from_select(_DIM_COLUMNS, stmt))

                fingerprint = base_fingerprint(conn, tenant_guid)
                if fingerprint is not None:
                    conn.execute(
                        insert(state).values(
                            tenant_guid=tenant_guid,
                            fingerprint=fingerprint,
                            built_at=datetime.now(timezone.utc),
                        )
                    )

                counts["daily"] = conn.execute(
                    select(func.count()).where(daily.c.tenant_guid == tenant_guid)
                ).scalar_one()
                counts["dimensional"] = conn.execute(
                    select(func.count()).where(dimensional.c.tenant_guid == tenant_guid)
                ).scalar_one()
        except Exception as exc:
            logger.error(f"Aggregate rebuild failed for {tenant_guid}: {exc}")
            raise AggregateRebuildError(
                f"Failed to rebuild aggregates for {tenant_guid}: {exc}"
            ) from exc

        logger.info(
            f"Aggregates for {tenant_guid}: {counts['daily']} daily, "
            f"{counts['dimensional']} dimensional rows"
        )
        return counts

    def ensure_fresh(self, tenant_guid: str) -> bool:
        """
        Make sure rollups reflect the base tables before a read.

        Returns False when the tenant has no vouchers at all (callers answer
        with an empty result).  Rebuilds synchronously when the rollups are
        missing or were built from different base data.
        """
        with self.engine.connect() as conn:
            current = base_fingerprint(conn, tenant_guid)
            if current is None:
                return False
            stored = conn.execute(
                select(state.c.fingerprint).where(state.c.tenant_guid == tenant_guid)
            ).scalar_one_or_none()
            has_rows = conn.execute(
                select(daily.c.date).where(daily.c.tenant_guid == tenant_guid).limit(1)
            ).first() is not None
            has_live = conn.execute(
                select(vouchers.c.master_id).where(live_vouchers(tenant_guid)).limit(1)
            ).first() is not None

        if stored == current and (has_rows or not has_live):
            return True
        reason = "missing" if stored is None or not has_rows else "stale"
        logger.info(f"Aggregates {reason} for {tenant_guid}; rebuilding before read")
        self.rebuild(tenant_guid)
        return True

    def tenants_without_aggregates(self) -> list[str]:
        """Tenants that have vouchers but have never had rollups built."""
        stmt = (
            select(vouchers.c.tenant_guid)
            .where(
                ~select(daily.c.tenant_guid)
                .where(daily.c.tenant_guid == vouchers.c.tenant_guid)
                .exists(),
                ~select(state.c.tenant_guid)
                .where(state.c.tenant_guid == vouchers.c.tenant_guid)
                .exists(),
            )
            .distinct()
            .order_by(vouchers.c.tenant_guid)
        )
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(stmt)]
