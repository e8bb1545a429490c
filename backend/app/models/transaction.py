"""SQLModel models for replicated Tally sales data (vouchers and their entries)."""
from typing import Optional
from sqlalchemy import Index
from sqlmodel import SQLModel, Field


class Voucher(SQLModel, table=True):
    """A sales or credit-note voucher, one row per (master_id, tenant_guid)."""

    __tablename__ = "vouchers"
    __table_args__ = (
        Index("idx_vouchers_guid_cancel_date", "tenant_guid", "is_cancelled", "date"),
    )

    master_id: str = Field(primary_key=True)
    tenant_guid: str = Field(primary_key=True, index=True)

    # Revision counter from Tally; incremental sync asks for rows above MAX(alter_id)
    alter_id: int = Field(default=0)

    voucher_type: str = Field(default="")
    voucher_type_reserved_name: str = Field(default="")
    voucher_number: str = Field(default="")
    date: str = Field(default="", index=True)  # YYYYMMDD

    # Party info
    party_ledger_name: str = Field(default="", index=True)
    party_ledger_name_id: str = Field(default="")
    state: str = Field(default="")
    country: str = Field(default="")
    gstin: str = Field(default="")
    pincode: str = Field(default="")
    address: str = Field(default="")

    # Decimal kept as text, cast at query time
    amount: str = Field(default="")
    is_cancelled: str = Field(default="No")
    is_optional: str = Field(default="No")

    salesperson: str = Field(default="")


class LedgerEntry(SQLModel, table=True):
    """Ledger posting of a voucher; replaced wholesale when the voucher is re-ingested."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("idx_le_voucher", "voucher_master_id", "tenant_guid"),
        Index(
            "idx_le_voucher_group",
            "voucher_master_id", "tenant_guid", "is_party_ledger", "group_name",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    voucher_master_id: str
    tenant_guid: str

    ledger_name: str = Field(default="")
    ledger_name_id: str = Field(default="")
    amount: str = Field(default="")
    is_deemed_positive: str = Field(default="")
    is_party_ledger: str = Field(default="No")
    group_name: str = Field(default="", index=True)
    group_of_group: str = Field(default="")
    group_list: str = Field(default="")
    ledger_group_identify: str = Field(default="")


class InventoryEntry(SQLModel, table=True):
    """Stock item line of a voucher; same replace-wholesale discipline as LedgerEntry."""

    __tablename__ = "inventory_entries"
    __table_args__ = (
        Index("idx_ie_voucher", "voucher_master_id", "tenant_guid"),
        Index("idx_ie_voucher_stock", "voucher_master_id", "tenant_guid", "stock_item_name"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    voucher_master_id: str
    tenant_guid: str

    stock_item_name: str = Field(default="", index=True)
    stock_item_name_id: str = Field(default="")
    uom: str = Field(default="")
    actual_qty: str = Field(default="")
    billed_qty: str = Field(default="")
    rate: str = Field(default="")
    discount: str = Field(default="")
    amount: str = Field(default="")
    stock_item_group: str = Field(default="", index=True)
    stock_item_group_of_group: str = Field(default="")
    stock_item_group_list: str = Field(default="")
    gross_cost: str = Field(default="")
    gross_expense: str = Field(default="")
    profit: str = Field(default="")
