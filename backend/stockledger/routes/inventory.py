# backend/stockledger/routes/inventory.py
"""
Inventory read and repair routes.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start/end filtering on ledger entries is inclusive.
"""
from flask import Blueprint, current_app, request

from ..errors import LedgerCoreError, ValidationError
from ..services import audit_service, ledger_service, summary_service
from ..time_utils import parse_iso_datetime
from ..validation import coerce_int


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _tenant_and_product(source) -> tuple[int, int]:
    tenant_id = coerce_int(source.get("tenant_id"), "tenant_id", required=True)
    product_id = coerce_int(source.get("product_id"), "product_id", required=True)
    return tenant_id, product_id


@inventory_bp.get("/summary")
def get_summary_route():
    try:
        tenant_id, product_id = _tenant_and_product(request.args)
    except ValidationError as e:
        return e.to_dict(), 400

    summary = summary_service.read(tenant_id, product_id)
    if summary is None:
        return {"error": "summary not found"}, 404
    return {"summary": summary.to_dict()}, 200


@inventory_bp.get("/entries")
def list_entries_route():
    try:
        tenant_id, product_id = _tenant_and_product(request.args)
        start = parse_iso_datetime(request.args.get("start"))
        end = parse_iso_datetime(request.args.get("end"))
    except ValidationError as e:
        return e.to_dict(), 400
    except ValueError:
        return {"error": "start and end must be ISO-8601 datetimes"}, 400

    limit = request.args.get("limit", default=200, type=int)
    limit = max(1, min(limit, 1000))

    entries = ledger_service.list_entries(
        tenant_id=tenant_id,
        product_id=product_id,
        start=start,
        end=end,
        limit=limit,
    )
    return {"items": [e.to_dict() for e in entries], "limit": limit}, 200


@inventory_bp.post("/rebuild")
def rebuild_route():
    """Rebuild one product's summary from the ledger. Drift is corrected, not reported as an error."""
    payload = request.get_json(silent=True) or {}
    try:
        tenant_id, product_id = _tenant_and_product(payload)
        summary, drift = summary_service.rebuild_with_report(tenant_id, product_id)
    except LedgerCoreError as e:
        return e.to_dict(), e.http_status
    except Exception:
        current_app.logger.exception("Failed to rebuild summary")
        return {"error": "Internal server error", "kind": "internal_error"}, 500

    return {"summary": summary.to_dict(), "drift_corrected": drift is not None}, 200


@inventory_bp.get("/low-stock")
def low_stock_route():
    try:
        tenant_id = coerce_int(request.args.get("tenant_id"), "tenant_id", required=True)
    except ValidationError as e:
        return e.to_dict(), 400

    summaries = summary_service.list_below_reorder_threshold(tenant_id)
    return {
        "items": [
            {**s.to_dict(), "reorder_threshold": s.product.reorder_threshold, "sku": s.product.sku}
            for s in summaries
        ],
    }, 200


@inventory_bp.get("/review-events")
def review_events_route():
    """Drift corrections, price discrepancies, credit flags and negative overrides, newest first."""
    try:
        tenant_id = coerce_int(request.args.get("tenant_id"), "tenant_id", required=True)
    except ValidationError as e:
        return e.to_dict(), 400

    limit = request.args.get("limit", default=100, type=int)
    limit = max(1, min(limit, 500))

    events = audit_service.list_review_events(
        tenant_id=tenant_id,
        event_type=request.args.get("event_type"),
        limit=limit,
    )
    return {"items": [ev.to_dict() for ev in events], "limit": limit}, 200
