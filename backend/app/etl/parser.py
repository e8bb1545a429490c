"""
Sales-extract payload parser.

Turns the JSON vouchers returned by the portal's ``salesextract`` report into
flat Python dicts ready for DB insertion.  Everything crossing this boundary is
coerced to a scalar: the replica never stores a nested object.

Payload shape assumed (keys are lower-case, as the portal emits them):
  {
    "masterid": "123", "alterid": "456", "date": "10-Apr-25",
    "vouchertypename": "Sales", "vouchertypereservedname": "Sales",
    "partyledgername": "ABC Corp", "amount": "11800.00", ...
    "ledgerentries":       [{"ledgername": ..., "ispartyledger": "Yes", "group": ...}],
    "allinventoryentries": [{"stockitemname": ..., "amount": ..., "profit": ...}]
  }
"""

from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger

# ── helpers ──────────────────────────────────────────────────────────────────

_MONTHS: dict[str, str] = {
    "Jan": "01", "Feb": "02", "Mar": "03", "Apr": "04", "May": "05", "Jun": "06",
    "Jul": "07", "Aug": "08", "Sep": "09", "Oct": "10", "Nov": "11", "Dec": "12",
}

_COMPACT_DATE_RE = re.compile(r"^\d{8}$")
_TEXT_DATE_RE = re.compile(r"^(\d{1,2})-([A-Za-z]{3})-(\d{2}|\d{4})$")


def _text(value: Any) -> str:
    """Coerce any payload value to a storable string ('' for null)."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _txt(payload: dict, key: str, default: str = "") -> str:
    """Return the coerced text of ``payload[key]``, or default when blank."""
    return _text(payload.get(key)) or default


def _flag(payload: dict, key: str, default: str = "No") -> str:
    """Normalise Tally Yes/No style flags (also accepts booleans and 1/0)."""
    raw = payload.get(key)
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return "Yes" if raw else "No"
    return "Yes" if _text(raw).upper() in ("YES", "TRUE", "1") else "No"


def _int(value: Any, default: int = 0) -> int:
    """Parse an integer counter, falling back to ``default``."""
    if isinstance(value, bool):
        return default
    try:
        return int(float(_text(value).replace(",", "")))
    except (ValueError, OverflowError):
        return default


def _as_list(value: Any) -> list[dict]:
    """Tally JSON sometimes sends a single entry as an object instead of a list."""
    if value is None or value == "":
        return []
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, dict)]
    logger.warning(f"Ignoring non-list entry collection: {type(value).__name__}")
    return []


def parse_tally_date(raw: Any) -> str:
    """
    Normalise a Tally date to YYYYMMDD.

    Accepts '20250410', '10-Apr-25' and '10-Apr-2025'.  Anything else is
    returned unchanged.
    """
    text = _text(raw)
    if not text or _COMPACT_DATE_RE.match(text):
        return text
    m = _TEXT_DATE_RE.match(text)
    if not m:
        return text
    day, mon, year = m.groups()
    month = _MONTHS.get(mon.capitalize())
    if month is None:
        return text
    if len(year) == 2:
        year = "20" + year
    return f"{year}{month}{day.zfill(2)}"


def derive_salesperson(payload: dict) -> str:
    """
    Salesperson for a voucher.

    An explicit ``salesperson`` field wins.  Otherwise the accounting group of
    the party-ledger entry matching ``partyledgername`` stands in for it.
    """
    explicit = _txt(payload, "salesperson")
    if explicit:
        return explicit
    party = _txt(payload, "partyledgername")
    for entry in _as_list(payload.get("ledgerentries")):
        if _flag(entry, "ispartyledger") == "Yes" and _txt(entry, "ledgername") == party:
            return _txt(entry, "group")
    return ""


# ── entry parsers ─────────────────────────────────────────────────────────────


def parse_ledger_entry(entry: dict) -> dict[str, Any]:
    return {
        "ledger_name": _txt(entry, "ledgername"),
        "ledger_name_id": _txt(entry, "ledgernameid"),
        "amount": _txt(entry, "amount"),
        "is_deemed_positive": _txt(entry, "isdeemedpositive"),
        "is_party_ledger": _flag(entry, "ispartyledger"),
        "group_name": _txt(entry, "group"),
        "group_of_group": _txt(entry, "groupofgroup"),
        "group_list": _txt(entry, "grouplist"),
        "ledger_group_identify": _txt(entry, "ledgergroupidentify"),
    }


def parse_inventory_entry(entry: dict) -> dict[str, Any]:
    return {
        "stock_item_name": _txt(entry, "stockitemname"),
        "stock_item_name_id": _txt(entry, "stockitemnameid"),
        "uom": _txt(entry, "uom"),
        "actual_qty": _txt(entry, "actualqty"),
        "billed_qty": _txt(entry, "billedqty"),
        "rate": _txt(entry, "rate"),
        "discount": _txt(entry, "discount"),
        "amount": _txt(entry, "amount"),
        "stock_item_group": _txt(entry, "stockitemgroup"),
        "stock_item_group_of_group": _txt(entry, "stockitemgroupofgroup"),
        "stock_item_group_list": _txt(entry, "stockitemgrouplist"),
        "gross_cost": _txt(entry, "grosscost"),
        "gross_expense": _txt(entry, "grossexpense"),
        "profit": _txt(entry, "profit"),
    }


# ── Voucher parser ────────────────────────────────────────────────────────────


def parse_voucher(payload: dict) -> dict[str, Any]:
    """
    Parse one voucher payload.

    Returns a dict with keys matching the Voucher model plus
    'ledger_entries' and 'inventory_entries' lists of child-row dicts.
    Raises ValueError when the voucher has no master id.
    """
    if not isinstance(payload, dict):
        raise TypeError(f"Voucher payload must be an object, got {type(payload).__name__}")

    master_id = _txt(payload, "masterid")
    if not master_id:
        raise ValueError(
            f"Voucher {_txt(payload, 'vouchernumber') or '?'} has no masterid"
        )

    return {
        "master_id": master_id,
        "alter_id": _int(payload.get("alterid")),
        "voucher_type": _txt(payload, "vouchertypename"),
        "voucher_type_reserved_name": _txt(payload, "vouchertypereservedname"),
        "voucher_number": _txt(payload, "vouchernumber"),
        "date": parse_tally_date(payload.get("date")),
        "party_ledger_name": _txt(payload, "partyledgername"),
        "party_ledger_name_id": _txt(payload, "partyledgernameid"),
        "state": _txt(payload, "state"),
        "country": _txt(payload, "country"),
        "gstin": _txt(payload, "partygstin") or _txt(payload, "gstin"),
        "pincode": _txt(payload, "pincode"),
        "address": _txt(payload, "address"),
        "amount": _txt(payload, "amount"),
        "is_cancelled": _flag(payload, "iscancelled"),
        "is_optional": _flag(payload, "isoptional"),
        "salesperson": derive_salesperson(payload),
        "ledger_entries": [
            parse_ledger_entry(e) for e in _as_list(payload.get("ledgerentries"))
        ],
        "inventory_entries": [
            parse_inventory_entry(e) for e in _as_list(payload.get("allinventoryentries"))
        ],
    }
