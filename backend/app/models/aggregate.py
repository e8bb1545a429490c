"""SQLModel models for derived rollups. Rebuilt from base tables, never hand-edited."""
from datetime import datetime, timezone
from sqlalchemy import Index
from sqlmodel import SQLModel, Field

DIMENSION_TYPES = ("stockGroup", "ledgerGroup", "country", "salesperson", "item")


class DailyAggregate(SQLModel, table=True):
    """Per-day KPI rollup over live vouchers."""

    __tablename__ = "daily_aggregates"

    tenant_guid: str = Field(primary_key=True)
    date: str = Field(primary_key=True)
    total_sales: float = Field(default=0.0)
    total_txns: int = Field(default=0)
    max_sale: float = Field(default=0.0)


class DimensionalAggregate(SQLModel, table=True):
    """Per-day rollup along one dimension (stock group, ledger group, country …)."""

    __tablename__ = "dimensional_aggregates"
    __table_args__ = (
        Index("idx_dim_guid_type_date", "tenant_guid", "dimension_type", "date"),
    )

    tenant_guid: str = Field(primary_key=True)
    date: str = Field(primary_key=True)
    dimension_type: str = Field(primary_key=True)
    dimension_name: str = Field(primary_key=True)
    amount: float = Field(default=0.0)
    profit: float = Field(default=0.0)
    qty: float = Field(default=0.0)


class AggregateState(SQLModel, table=True):
    """Fingerprint of the base data the tenant's rollups were last built from."""

    __tablename__ = "aggregate_state"

    tenant_guid: str = Field(primary_key=True)
    fingerprint: str
    built_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
