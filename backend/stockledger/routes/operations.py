# Overview: Flask API routes for executing operations through the transaction coordinator.

from flask import Blueprint, current_app, request

from ..errors import LedgerCoreError, ValidationError
from ..services import operation_service, sync_service
from ..validation import coerce_int, parse_operation_request

operations_bp = Blueprint("operations", __name__, url_prefix="/api/operations")


@operations_bp.post("")
def execute_operation_route():
    """
    Execute one operation (apply-invoice, create-sale, process-return, manual-adjust).

    400 on validation errors, 409 on stock shortage, 503 on storage failure.
    Nothing is written unless the response is 201. due_cents is charged to
    the customer's account in the same unit, under the sync conflict rules.
    """
    payload = request.get_json(silent=True) or {}

    try:
        tenant_id, operation, allow_negative = parse_operation_request(payload)
    except ValidationError as e:
        return e.to_dict(), 400

    try:
        result = operation_service.execute(
            tenant_id,
            operation,
            allow_negative=allow_negative,
            side_effects=sync_service.apply_conflict_rules,
        )
    except LedgerCoreError as e:
        if e.http_status >= 500:
            current_app.logger.warning("Operation failed tenant=%s kind=%s: %s", tenant_id, operation.kind, e)
        return e.to_dict(), e.http_status
    except Exception:
        current_app.logger.exception("Failed to execute operation")
        return {"error": "Internal server error", "kind": "internal_error"}, 500

    return result.to_dict(), 201


@operations_bp.get("/<operation_number>")
def get_operation_route(operation_number: str):
    try:
        tenant_id = coerce_int(request.args.get("tenant_id"), "tenant_id", required=True)
    except ValidationError as e:
        return e.to_dict(), 400

    record = operation_service.get_operation(tenant_id, operation_number)
    if record is None:
        return {"error": "operation not found"}, 404
    return {"operation": record.to_dict()}, 200
