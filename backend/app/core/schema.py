"""
Schema manager: creates tables and indexes, applies additive column
migrations, and bootstraps missing rollups on open.

This is the only module that alters physical schema.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

import app.core.database  # noqa: F401  registers all table models
from app.analytics.aggregates import AggregateMaintainer

# (table, column, SQLite column DDL).  Columns added after a store was first
# created; each is applied once and skipped when already present.
ADDITIVE_COLUMNS: list[tuple[str, str, str]] = [
    ("vouchers", "salesperson", "TEXT NOT NULL DEFAULT ''"),
]


@dataclass
class SchemaReport:
    created_tables: list[str] = field(default_factory=list)
    added_columns: list[str] = field(default_factory=list)
    bootstrapped_tenants: list[str] = field(default_factory=list)


def _apply_additive_columns(engine: Engine) -> list[str]:
    added: list[str] = []
    with engine.begin() as conn:
        insp = inspect(conn)
        tables = set(insp.get_table_names())
        for table, column, ddl in ADDITIVE_COLUMNS:
            if table not in tables:
                continue
            existing = {c["name"] for c in insp.get_columns(table)}
            if column in existing:
                continue
            conn.execute(text(f'ALTER TABLE "{table}" ADD COLUMN "{column}" {ddl}'))
            added.append(f"{table}.{column}")
            logger.info(f"Migrated: added column {table}.{column}")
    return added


def _ensure_indexes(engine: Engine) -> None:
    # create_all() skips the indexes of tables that already exist
    with engine.begin() as conn:
        for table in SQLModel.metadata.sorted_tables:
            for index in table.indexes:
                index.create(conn, checkfirst=True)


def init_schema(engine: Engine, bootstrap: bool = True) -> SchemaReport:
    """
    Idempotently bring a store up to the current schema.

    With ``bootstrap`` set, every tenant that has vouchers but no rollups
    gets one full aggregate rebuild.
    """
    report = SchemaReport()
    before = set(inspect(engine).get_table_names())

    SQLModel.metadata.create_all(engine)
    report.created_tables = sorted(set(SQLModel.metadata.tables) - before)

    report.added_columns = _apply_additive_columns(engine)
    _ensure_indexes(engine)

    if bootstrap:
        maintainer = AggregateMaintainer(engine)
        for tenant_guid in maintainer.tenants_without_aggregates():
            logger.info(f"Bootstrapping rollups for existing tenant {tenant_guid}")
            maintainer.rebuild(tenant_guid)
            report.bootstrapped_tenants.append(tenant_guid)

    logger.info(
        f"Schema ready: {len(report.created_tables)} table(s) created, "
        f"{len(report.added_columns)} column(s) added, "
        f"{len(report.bootstrapped_tenants)} tenant(s) bootstrapped"
    )
    return report
