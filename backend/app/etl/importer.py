"""
ETL Importer: parse → replace vouchers and their entries in SQLite.

Idempotency strategy:
  - A voucher is keyed by (master_id, tenant_guid); re-ingesting replaces it.
  - Ledger and inventory entries have no natural key, so they are deleted and
    re-inserted wholesale whenever their parent voucher is ingested.
  - One call = one transaction.  Any failure rolls back the whole batch.
"""
from __future__ import annotations

from typing import Any, Iterable

from loguru import logger
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.core.errors import IngestionError
from app.etl.parser import parse_voucher
from app.models.transaction import InventoryEntry, LedgerEntry, Voucher


# ── helpers ──────────────────────────────────────────────────────────────────


def _delete_entries(session: Session, master_id: str, tenant_guid: str) -> None:
    for model in (LedgerEntry, InventoryEntry):
        old_rows = session.exec(
            select(model).where(
                model.voucher_master_id == master_id,
                model.tenant_guid == tenant_guid,
            )
        ).all()
        for row in old_rows:
            session.delete(row)
    session.flush()


def _replace_voucher(session: Session, data: dict[str, Any], tenant_guid: str) -> Voucher:
    ledger_rows = data.pop("ledger_entries", [])
    inventory_rows = data.pop("inventory_entries", [])
    master_id = data["master_id"]

    _delete_entries(session, master_id, tenant_guid)

    # merge() replaces by primary key: last ingestion wins, alter_id is not compared
    voucher = session.merge(Voucher(**data, tenant_guid=tenant_guid))

    for row in ledger_rows:
        session.add(LedgerEntry(**row, voucher_master_id=master_id, tenant_guid=tenant_guid))
    for row in inventory_rows:
        session.add(InventoryEntry(**row, voucher_master_id=master_id, tenant_guid=tenant_guid))
    session.flush()
    return voucher


# ── main entry point ──────────────────────────────────────────────────────────


def ingest(engine: Engine, vouchers: Iterable[dict], tenant_guid: str) -> int:
    """
    Write a batch of raw voucher payloads for one tenant.

    Returns the number of vouchers written.  Raises IngestionError (with the
    underlying exception chained) after rolling back if anything fails.
    """
    vouchers = list(vouchers or [])
    if not vouchers:
        return 0
    if not tenant_guid:
        raise IngestionError("Cannot ingest vouchers without a tenant GUID")

    written = 0
    try:
        with Session(engine) as session:
            for payload in vouchers:
                _replace_voucher(session, parse_voucher(payload), tenant_guid)
                written += 1
            session.commit()
    except Exception as exc:
        logger.error(f"Ingestion rolled back for {tenant_guid} after {written} voucher(s): {exc}")
        raise IngestionError(f"Failed to write voucher batch: {exc}") from exc

    logger.debug(f"Ingested {written} voucher(s) for {tenant_guid}")
    return written
