# Overview: Flask API route for offline batch submission.

from flask import Blueprint, current_app, request

from ..errors import ValidationError
from ..services import sync_service
from ..validation import parse_sync_batch

sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.post("/batch")
def submit_batch_route():
    """
    Submit a batch of offline operations.

    Always 200 once the batch is well-formed: each item carries its own
    outcome (applied, duplicate, conflict, rejected), in input order.
    """
    payload = request.get_json(silent=True) or {}

    try:
        tenant_id, items = parse_sync_batch(payload)
        outcomes = sync_service.submit_batch(tenant_id, items)
    except ValidationError as e:
        return e.to_dict(), 400
    except Exception:
        current_app.logger.exception("Failed to submit sync batch")
        return {"error": "Internal server error", "kind": "internal_error"}, 500

    return {
        "tenant_id": tenant_id,
        "outcomes": [o.to_dict() for o in outcomes],
    }, 200
