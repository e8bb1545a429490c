"""Cache statistics and paginated raw-voucher browsing."""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from app.analytics.expressions import inventory_entries, ledger_entries, vouchers
from app.core.config import settings
from app.models.aggregate import DailyAggregate, DimensionalAggregate
from app.models.sync import SyncMeta

_VOUCHER_FIELDS = [c.name for c in vouchers.c if c.name != "tenant_guid"]
_ENTRY_SKIP = {"id", "voucher_master_id", "tenant_guid"}


def _count(conn, table, tenant_guid: str) -> int:
    return conn.execute(
        select(func.count()).select_from(table).where(table.c.tenant_guid == tenant_guid)
    ).scalar_one()


def get_stats(engine: Engine, tenant_guid: str) -> dict[str, Any]:
    meta = SyncMeta.__table__
    with engine.connect() as conn:
        min_date, max_date, max_alter = conn.execute(
            select(
                func.min(vouchers.c.date),
                func.max(vouchers.c.date),
                func.coalesce(func.max(vouchers.c.alter_id), 0),
            ).where(vouchers.c.tenant_guid == tenant_guid)
        ).one()
        last_sync = conn.execute(
            select(meta.c.value).where(meta.c.key == "last_sync_time")
        ).scalar_one_or_none()
        return {
            "totalVouchers": _count(conn, vouchers, tenant_guid),
            "totalLedgerEntries": _count(conn, ledger_entries, tenant_guid),
            "totalInventoryEntries": _count(conn, inventory_entries, tenant_guid),
            "dateRange": {"min": min_date or "N/A", "max": max_date or "N/A"},
            "lastSync": last_sync or "Never",
            "maxAlterId": int(max_alter or 0),
            "dailyAggregates": _count(conn, DailyAggregate.__table__, tenant_guid),
            "dimensionalAggregates": _count(conn, DimensionalAggregate.__table__, tenant_guid),
        }


def _entries(conn, table, tenant_guid: str, master_ids: list[str]) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {mid: [] for mid in master_ids}
    rows = conn.execute(
        select(table)
        .where(table.c.tenant_guid == tenant_guid, table.c.voucher_master_id.in_(master_ids))
        .order_by(table.c.id)
    ).mappings()
    for row in rows:
        grouped[row["voucher_master_id"]].append(
            {k: v for k, v in row.items() if k not in _ENTRY_SKIP}
        )
    return grouped


def get_raw_data(
    engine: Engine, tenant_guid: str, limit: Optional[int] = None, offset: int = 0
) -> dict[str, Any]:
    """One page of vouchers (newest first) with their ledger and inventory entries."""
    limit = max(1, int(limit or settings.RAW_PAGE_LIMIT))
    offset = max(0, int(offset or 0))
    with engine.connect() as conn:
        total = _count(conn, vouchers, tenant_guid)
        page = [
            dict(r)
            for r in conn.execute(
                select(*[vouchers.c[name] for name in _VOUCHER_FIELDS])
                .where(vouchers.c.tenant_guid == tenant_guid)
                .order_by(vouchers.c.date.desc(), vouchers.c.master_id)
                .limit(limit)
                .offset(offset)
            ).mappings()
        ]
        master_ids = [v["master_id"] for v in page]
        ledgers = _entries(conn, ledger_entries, tenant_guid, master_ids)
        inventory = _entries(conn, inventory_entries, tenant_guid, master_ids)

    for voucher in page:
        voucher["ledgerEntries"] = ledgers[voucher["master_id"]]
        voucher["inventoryEntries"] = inventory[voucher["master_id"]]
    return {
        "totalVouchers": total,
        "showing": {"offset": offset, "limit": limit, "count": len(page)},
        "vouchers": page,
    }
