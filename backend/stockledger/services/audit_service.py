# Overview: Append-only audit writes (operation records and review events).

from __future__ import annotations

import json
from typing import Optional

from ..extensions import db
from ..models import OperationRecord, ReviewEvent
from ..time_utils import utcnow
"""
Audit Invariants (authoritative)

- No domain logic here.
- No deletes/updates of existing records.
- Records are written inside the same DB transaction as the change they describe.
"""

REVIEW_DRIFT_CORRECTED = "summary.drift_corrected"
REVIEW_PRICE_DISCREPANCY = "sync.price_discrepancy"
REVIEW_CREDIT_LIMIT_EXCEEDED = "customer.credit_limit_exceeded"
REVIEW_NEGATIVE_OVERRIDE = "stock.negative_override"


def record_operation(
    *,
    tenant_id: int,
    operation_number: str,
    kind: str,
    state: str,
    reference_kind: str,
    reference_id: str,
    entries: list,
    allow_negative: bool = False,
    client_origin_id: Optional[str] = None,
    customer_id: Optional[int] = None,
    created_by: Optional[str] = None,
    note: Optional[str] = None,
) -> OperationRecord:
    record = OperationRecord(
        tenant_id=tenant_id,
        operation_number=operation_number,
        kind=kind,
        state=state,
        reference_kind=reference_kind,
        reference_id=reference_id,
        entry_count=len(entries),
        first_sequence=entries[0].sequence,
        last_sequence=entries[-1].sequence,
        allow_negative=allow_negative,
        client_origin_id=client_origin_id,
        customer_id=customer_id,
        created_by=created_by,
        note=note,
        committed_at=utcnow(),
    )
    db.session.add(record)
    db.session.flush()  # ensures record.id is assigned without committing
    return record


def append_review_event(
    *,
    tenant_id: int,
    event_type: str,
    entity_type: str,
    entity_id,
    operation_number: Optional[str] = None,
    payload: Optional[dict] = None,
) -> ReviewEvent:
    ev = ReviewEvent(
        tenant_id=tenant_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        operation_number=operation_number,
        payload=json.dumps(payload, sort_keys=True, default=str) if payload else None,
        created_at=utcnow(),
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_review_events(*, tenant_id: int, event_type: Optional[str] = None, limit: int = 100) -> list[ReviewEvent]:
    q = ReviewEvent.query.filter_by(tenant_id=tenant_id)
    if event_type:
        q = q.filter_by(event_type=event_type)
    return q.order_by(ReviewEvent.created_at.desc(), ReviewEvent.id.desc()).limit(limit).all()
