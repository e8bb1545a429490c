"""
SQL expression helpers shared by rollups, the dashboard planner and the card
compiler.

The credit-note sign flip lives here and nowhere else, so daily rollups,
dimensional rollups, scratch fact sets and card queries all agree on what a
credit note contributes.
"""
from __future__ import annotations

from sqlalchemy import Float, and_, case, cast, func, literal
from sqlalchemy.sql.elements import ColumnElement

from app.core.config import settings
from app.models.transaction import InventoryEntry, LedgerEntry, Voucher

vouchers = Voucher.__table__
ledger_entries = LedgerEntry.__table__
inventory_entries = InventoryEntry.__table__

UNKNOWN = "Unknown"

# open-range bounds for YYYYMMDD text comparisons
DATE_FLOOR = "00000000"
DATE_CEILING = "99999999"


def as_real(column) -> ColumnElement:
    """Decimal-as-text → REAL (SQLite yields 0.0 for non-numeric text)."""
    return cast(column, Float)


def is_credit_note(reserved_name=None) -> ColumnElement:
    if reserved_name is None:
        reserved_name = vouchers.c.voucher_type_reserved_name
    return reserved_name.like(f"%{settings.CREDIT_NOTE_MARKER}%")


def signed(value, reserved_name=None) -> ColumnElement:
    """``value`` negated for credit notes, as-is otherwise."""
    return case((is_credit_note(reserved_name), -value), else_=value)


def signed_amount() -> ColumnElement:
    return signed(as_real(vouchers.c.amount))


def unknown_if_blank(column) -> ColumnElement:
    return func.coalesce(func.nullif(column, ""), UNKNOWN)


def live_vouchers(tenant_guid: str, from_date: str | None = None, to_date: str | None = None):
    """Tenant predicate plus not-cancelled plus optional inclusive date range."""
    conds = [vouchers.c.tenant_guid == tenant_guid, vouchers.c.is_cancelled == "No"]
    if from_date:
        conds.append(vouchers.c.date >= from_date)
    if to_date:
        conds.append(vouchers.c.date <= to_date)
    return and_(*conds)


def inventory_join_on():
    return and_(
        inventory_entries.c.voucher_master_id == vouchers.c.master_id,
        inventory_entries.c.tenant_guid == vouchers.c.tenant_guid,
    )


def ledger_join_on():
    return and_(
        ledger_entries.c.voucher_master_id == vouchers.c.master_id,
        ledger_entries.c.tenant_guid == vouchers.c.tenant_guid,
    )


# ── date labels over a YYYYMMDD text column ───────────────────────────────────


def month_of(date_col) -> ColumnElement:
    """YYYYMM"""
    return func.substr(date_col, 1, 6)


def quarter_of(date_col) -> ColumnElement:
    """YYYY-Qn (calendar quarters)"""
    month = cast(func.substr(date_col, 5, 2), Float)
    quarter = case((month <= 3, "1"), (month <= 6, "2"), (month <= 9, "3"), else_="4")
    return func.substr(date_col, 1, 4).op("||")(literal("-Q")).op("||")(quarter)


def week_of(date_col) -> ColumnElement:
    """YYYY-Www using SQLite's %W (Monday-based week of year)."""
    iso = (
        func.substr(date_col, 1, 4).op("||")(literal("-"))
        .op("||")(func.substr(date_col, 5, 2)).op("||")(literal("-"))
        .op("||")(func.substr(date_col, 7, 2))
    )
    return func.substr(date_col, 1, 4).op("||")(literal("-W")).op("||")(
        func.strftime("%W", iso)
    )
