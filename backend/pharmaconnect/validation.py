from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pharmaconnect.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text, DateTime

from .errors import ValidationError


# Maximum money value accepted from clients: 9,999,999,999.99
MAX_AMOUNT = Decimal("9999999999.99")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    - choices: allowed values per field
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore
    choices: dict[str, set[str]] | None = None


def _columns_by_key(model) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


# =============================================================================
# SCALAR PARSERS
# =============================================================================

def is_ascii_integer(text: str) -> bool:
    # str.isdigit also accepts superscripts and other non-ASCII digits
    digits = text[1:] if text.startswith("-") else text
    return digits.isascii() and digits.isdigit()


def parse_positive_int(value: Any, field: str) -> int:
    """Strict positive integer: rejects bools, floats, decimals and blanks."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer", field=field)
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and is_ascii_integer(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError(f"{field} must be a positive integer", field=field)
    if parsed <= 0:
        raise ValidationError(f"{field} must be a positive integer", field=field)
    return parsed


def parse_amount(value: Any, field: str, *, allow_zero: bool = False) -> Decimal:
    """Parse a money amount into a Decimal with at most two decimal places."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number", field=field)
    if amount < 0 or (amount == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ValidationError(f"{field} must be {bound}", field=field)
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}", field=field)
    if amount != amount.quantize(Decimal("0.01")):
        raise ValidationError(f"{field} must have at most two decimal places", field=field)
    return amount


def parse_optional_datetime(value: Any, field: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field)
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field)


def require_text(value: Any, field: str, max_length: int | None = None) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{field} is required", field=field)
    if max_length and len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}", field=field)
    return text


# =============================================================================
# MODEL-DRIVEN PAYLOADS
# =============================================================================

def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Numeric before Integer: money columns are Numeric, never floats
    if isinstance(coltype, Numeric):
        return parse_amount(value, col.key, allow_zero=True)

    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if 'e' in stripped.lower() or '.' in stripped:
                raise ValidationError(f"{col.key} must be a plain integer", field=col.key)
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer", field=col.key)
        raise ValidationError(f"{col.key} must be an integer", field=col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        dt = parse_optional_datetime(value, col.key)
        if dt is None:
            raise ValidationError(f"{col.key} must be an ISO-8601 datetime", field=col.key)
        return dt

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields) and optional value choices
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = [f for f in required if f not in payload]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0])

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}", field=k)
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}", field=k)

    patch: dict = {}
    choices = policy.choices or {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null", field=k)
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank", field=k)

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}", field=k)

        if k in choices and val not in choices[k]:
            raise ValidationError(
                f"{k} must be one of: {', '.join(sorted(choices[k]))}",
                field=k,
            )

        patch[k] = val

    return patch
