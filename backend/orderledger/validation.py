from __future__ import annotations

from datetime import date
from typing import Any

from orderledger.time_utils import parse_iso_date


# Largest amount accepted on any money input: 9,999,999.99 in major units
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


def parse_int(value: Any, field: str, *, required: bool = True, allow_negative: bool = True) -> int | None:
    """
    Strict integer parsing for JSON inputs.

    Accepts ints and plain digit strings; rejects bools, floats, decimals and
    scientific notation.
    """
    if value is None:
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            parsed = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if not allow_negative and parsed < 0:
        raise ValidationError(f"{field} must be >= 0")
    return parsed


def parse_cents(value: Any, field: str, *, required: bool = True, allow_negative: bool = False) -> int | None:
    """Integer cents, range checked. Ledger amounts arrive as strings."""
    cents = parse_int(value, field, required=required, allow_negative=allow_negative)
    if cents is not None and abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}")
    return cents


def parse_date(value: Any, field: str, *, required: bool = True) -> date | None:
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required")
        return None
    try:
        return parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date")


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")


def parse_line_selection(items: Any, field: str = "lines") -> list[dict] | None:
    """[{orderLineId, quantity}] -> [{"order_line_id", "quantity"}]."""
    if items is None:
        return None
    if not isinstance(items, list):
        raise ValidationError(f"{field} must be a list")
    parsed = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError(f"{field} entries must be objects")
        parsed.append({
            "order_line_id": parse_int(item.get("orderLineId"), "orderLineId"),
            "quantity": parse_int(item.get("quantity"), "quantity"),
        })
    return parsed


def parse_account_amounts(items: Any, field: str) -> list[dict]:
    """[{accountCode, amountCents}] -> [{"account_code", "amount_cents"}]."""
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError(f"{field} must be a list")
    parsed = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError(f"{field} entries must be objects")
        code = (item.get("accountCode") or "").strip()
        if not code:
            raise ValidationError(f"accountCode is required in {field}")
        parsed.append({
            "account_code": code,
            "amount_cents": parse_cents(item.get("amountCents"), "amountCents"),
        })
    return parsed


def parse_id_list(items: Any, field: str) -> list[int] | None:
    if items is None:
        return None
    if not isinstance(items, list):
        raise ValidationError(f"{field} must be a list")
    return [parse_int(item, field, allow_negative=False) for item in items]
