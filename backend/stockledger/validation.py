from __future__ import annotations

from datetime import date
from typing import Any

from .errors import ValidationError
from .services.operation_service import Operation, OperationLine
from .services.sync_service import InvalidSyncItem, SyncItem
from .time_utils import parse_iso_datetime


# Maximum price: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

LINE_FIELDS = {
    "product_id",
    "quantity",
    "unit_cost_cents",
    "unit_price_cents",
    "batch_number",
    "expiry_date",
}

OPERATION_FIELDS = {
    "kind",
    "lines",
    "reference_id",
    "reference_kind",
    "created_by",
    "customer_id",
    "due_cents",
    "document_total_cents",
    "client_recorded_at",
    "note",
}


def coerce_int(value: Any, name: str, *, required: bool = False):
    """
    Strict integer coercion for JSON input.

    Rejects booleans, floats, decimals and scientific notation.
    """
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return None

    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    raise ValidationError(f"{name} must be an integer")


def _coerce_cents(value: Any, name: str):
    cents = coerce_int(value, name)
    if cents is not None and not (0 <= cents <= MAX_PRICE_CENTS):
        raise ValidationError(f"{name} must be between 0 and {MAX_PRICE_CENTS}")
    return cents


def _coerce_str(value: Any, name: str, *, max_len: int, required: bool = False):
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    value = value.strip()
    if not value:
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if len(value) > max_len:
        raise ValidationError(f"{name} must be at most {max_len} characters")
    return value


def _coerce_bool(value: Any, name: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise ValidationError(f"{name} must be a boolean")


def _coerce_date(value: Any, name: str):
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be an ISO-8601 date")
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date")


def _coerce_datetime(value: Any, name: str):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be an ISO-8601 datetime")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


def _reject_unknown(payload: dict, allowed: set[str], where: str) -> None:
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise ValidationError(f"Unknown fields in {where}: {', '.join(unknown)}")


def parse_line(payload: Any, index: int) -> OperationLine:
    if not isinstance(payload, dict):
        raise ValidationError(f"lines[{index}] must be an object")
    _reject_unknown(payload, LINE_FIELDS, f"lines[{index}]")
    return OperationLine(
        product_id=coerce_int(payload.get("product_id"), f"lines[{index}].product_id", required=True),
        quantity=coerce_int(payload.get("quantity"), f"lines[{index}].quantity", required=True),
        unit_cost_cents=_coerce_cents(payload.get("unit_cost_cents"), f"lines[{index}].unit_cost_cents"),
        unit_price_cents=_coerce_cents(payload.get("unit_price_cents"), f"lines[{index}].unit_price_cents"),
        batch_number=_coerce_str(payload.get("batch_number"), f"lines[{index}].batch_number", max_len=64),
        expiry_date=_coerce_date(payload.get("expiry_date"), f"lines[{index}].expiry_date"),
    )


def parse_operation(payload: Any) -> Operation:
    """Build an Operation from its JSON form."""
    if not isinstance(payload, dict):
        raise ValidationError("operation must be an object")
    _reject_unknown(payload, OPERATION_FIELDS, "operation")

    lines = payload.get("lines")
    if not isinstance(lines, list) or not lines:
        raise ValidationError("lines must be a non-empty list")

    return Operation(
        kind=_coerce_str(payload.get("kind"), "kind", max_len=32, required=True),
        lines=tuple(parse_line(line, i) for i, line in enumerate(lines)),
        reference_id=_coerce_str(payload.get("reference_id"), "reference_id", max_len=64, required=True),
        reference_kind=_coerce_str(payload.get("reference_kind"), "reference_kind", max_len=32),
        created_by=_coerce_str(payload.get("created_by"), "created_by", max_len=64),
        customer_id=coerce_int(payload.get("customer_id"), "customer_id"),
        due_cents=_coerce_cents(payload.get("due_cents"), "due_cents") or 0,
        document_total_cents=_coerce_cents(payload.get("document_total_cents"), "document_total_cents"),
        client_recorded_at=_coerce_datetime(payload.get("client_recorded_at"), "client_recorded_at"),
        note=_coerce_str(payload.get("note"), "note", max_len=255),
    )


def parse_operation_request(payload: Any) -> tuple[int, Operation, bool]:
    """POST /api/operations body: {"tenant_id", "allow_negative"?, "operation": {...}}."""
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    _reject_unknown(payload, {"tenant_id", "allow_negative", "operation"}, "request")
    tenant_id = coerce_int(payload.get("tenant_id"), "tenant_id", required=True)
    allow_negative = _coerce_bool(payload.get("allow_negative"), "allow_negative")
    return tenant_id, parse_operation(payload.get("operation")), allow_negative


def parse_sync_batch(payload: Any) -> tuple[int, list[SyncItem]]:
    """POST /api/sync/batch body: {"tenant_id", "items": [{"client_origin_id", "allow_negative"?, "operation"}]}."""
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    _reject_unknown(payload, {"tenant_id", "items"}, "request")
    tenant_id = coerce_int(payload.get("tenant_id"), "tenant_id", required=True)

    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")

    # A malformed item becomes a per-item rejection; the rest of the batch still runs.
    items = []
    for index, raw in enumerate(raw_items):
        client_origin_id = raw.get("client_origin_id") if isinstance(raw, dict) else None
        try:
            if not isinstance(raw, dict):
                raise ValidationError(f"items[{index}] must be an object")
            _reject_unknown(raw, {"client_origin_id", "allow_negative", "operation"}, f"items[{index}]")
            items.append(SyncItem(
                client_origin_id=_coerce_str(
                    client_origin_id, f"items[{index}].client_origin_id", max_len=128, required=True
                ),
                operation=parse_operation(raw.get("operation")),
                allow_negative=_coerce_bool(raw.get("allow_negative"), f"items[{index}].allow_negative"),
            ))
        except ValidationError as exc:
            items.append(InvalidSyncItem(client_origin_id=client_origin_id, error=exc))
    return tenant_id, items
