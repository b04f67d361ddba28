"""
Idempotency/Sync Gateway

WHY: Offline point-of-sale clients queue operations while disconnected and
submit them in batches once they reconnect, often more than once. Each queued
operation carries a client-generated client_origin_id; its effect must land
at most once no matter how many times the batch is retried.

PER ITEM:
1. Unexpired 'applied' SyncRecord for (tenant, client_origin_id) -> 'duplicate'
   with the prior operation number. Nothing is executed. Once that record has
   expired or been purged, the committed OperationRecord carrying the same id
   is checked instead.
2. Otherwise execute through the transaction coordinator. The 'applied'
   SyncRecord is written inside the same atomic unit as the ledger entries,
   after repeating the lookup there so racing submissions of one id cannot
   both apply.
3. InsufficientStockError -> 'conflict' (stock_shortage). The client decides:
   adjust quantity, cancel, or resubmit with allow_negative.
4. Any other failure -> 'rejected' with the error kind. No 'applied' record is
   written, so a corrected resubmission with the same id proceeds.

CONFLICT POLICY: an explicit rule table, one rule per field. The server is the
source of truth except for the unit price of a completed point-of-sale
transaction.

ORDERING: items are applied in submitted order; across batches, server arrival
order wins. Client timestamps are stored for audit and never reorder anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    DuplicateSubmissionError,
    InsufficientStockError,
    LedgerCoreError,
    ValidationError,
)
from ..extensions import db
from ..models import CustomerAccount, OperationRecord, Product, SyncRecord
from ..models.sync import (
    SYNC_OUTCOME_APPLIED,
    SYNC_OUTCOME_CONFLICT,
    SYNC_OUTCOME_DUPLICATE,
    SYNC_OUTCOME_REJECTED,
)
from ..time_utils import utcnow
from . import operation_service
from .audit_service import (
    append_review_event,
    REVIEW_CREDIT_LIMIT_EXCEEDED,
    REVIEW_PRICE_DISCREPANCY,
)
from .concurrency import lock_for_update
from .operation_service import KIND_CREATE_SALE, Operation, OperationContext

logger = logging.getLogger(__name__)

CONFLICT_STOCK_SHORTAGE = "stock_shortage"


@dataclass(frozen=True)
class SyncItem:
    client_origin_id: str
    operation: Operation
    allow_negative: bool = False


@dataclass(frozen=True)
class InvalidSyncItem:
    """A batch item that could not be parsed; reported as rejected, never executed."""
    client_origin_id: Optional[str]
    error: ValidationError


@dataclass
class SyncOutcome:
    client_origin_id: str
    outcome: str
    operation_number: Optional[str] = None
    conflict_kind: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "client_origin_id": self.client_origin_id,
            "outcome": self.outcome,
            "operation_number": self.operation_number,
            "conflict_kind": self.conflict_kind,
            "error_kind": self.error_kind,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# CONFLICT RULE TABLE
# =============================================================================

AUTHORITY_SERVER = "server"
AUTHORITY_CLIENT = "client"


def _resolve_unit_price(context: OperationContext) -> None:
    """Client price stands; disagreement with the catalog is logged for review."""
    if context.operation.kind != KIND_CREATE_SALE:
        return
    product_ids = {e.product_id for e in context.entries if e.unit_price_cents is not None}
    if not product_ids:
        return
    catalog = {
        p.id: p.price_cents
        for p in Product.query.filter(Product.id.in_(product_ids)).all()
    }
    for entry in context.entries:
        catalog_price = catalog.get(entry.product_id)
        if entry.unit_price_cents is None or catalog_price is None:
            continue
        if entry.unit_price_cents == catalog_price:
            continue
        logger.warning(
            "Price discrepancy tenant=%s product=%s client_price=%s catalog_price=%s operation=%s",
            context.tenant_id, entry.product_id, entry.unit_price_cents, catalog_price,
            context.operation_number,
        )
        append_review_event(
            tenant_id=context.tenant_id,
            event_type=REVIEW_PRICE_DISCREPANCY,
            entity_type="product",
            entity_id=entry.product_id,
            operation_number=context.operation_number,
            payload={
                "client_price_cents": entry.unit_price_cents,
                "catalog_price_cents": catalog_price,
                "applied_price_cents": entry.unit_price_cents,
                "client_origin_id": context.operation.client_origin_id,
            },
        )


def _resolve_credit_limit(context: OperationContext) -> None:
    """Sale is kept; a balance past the server-side limit flags the account."""
    operation = context.operation
    if operation.customer_id is None or not operation.due_cents:
        return

    customer = lock_for_update(
        db.session.query(CustomerAccount).filter_by(id=operation.customer_id)
    ).first()
    customer.outstanding_balance_cents = (customer.outstanding_balance_cents or 0) + operation.due_cents

    limit = customer.credit_limit_cents
    if limit is not None and customer.outstanding_balance_cents > limit:
        if not customer.flagged_for_review:
            customer.flagged_for_review = True
            customer.flagged_at = utcnow()
        logger.warning(
            "Credit limit exceeded tenant=%s customer=%s balance=%s limit=%s operation=%s",
            context.tenant_id, customer.id, customer.outstanding_balance_cents, limit,
            context.operation_number,
        )
        append_review_event(
            tenant_id=context.tenant_id,
            event_type=REVIEW_CREDIT_LIMIT_EXCEEDED,
            entity_type="customer_account",
            entity_id=customer.id,
            operation_number=context.operation_number,
            payload={
                "outstanding_balance_cents": customer.outstanding_balance_cents,
                "credit_limit_cents": limit,
                "due_cents": operation.due_cents,
            },
        )
    db.session.flush()


@dataclass(frozen=True)
class ConflictRule:
    field: str
    authority: str
    # Blocking rules reject the item; non-blocking rules resolve inside the unit.
    blocking: bool
    resolve: Optional[Callable[[OperationContext], None]] = None


CONFLICT_RULES = {
    # Enforced by the coordinator's read-check; surfaces as a conflict outcome.
    "stock": ConflictRule("stock", AUTHORITY_SERVER, blocking=True),
    "unit_price": ConflictRule("unit_price", AUTHORITY_CLIENT, blocking=False, resolve=_resolve_unit_price),
    "credit_limit": ConflictRule("credit_limit", AUTHORITY_SERVER, blocking=False, resolve=_resolve_credit_limit),
}


# =============================================================================
# SYNC RECORDS
# =============================================================================

def _retention() -> timedelta:
    return timedelta(days=int(current_app.config.get("SYNC_RETENTION_DAYS", 30)))


def find_applied(
    tenant_id: int,
    client_origin_id: str,
    *,
    now=None,
    exclude_operation_number: Optional[str] = None,
) -> SyncRecord | OperationRecord | None:
    """
    Prior applied submission of client_origin_id, or None.

    The unexpired SyncRecord answers first. Past the retention window the
    committed OperationRecord carrying the same id still counts, so a late
    retry never applies twice.
    """
    now = now or utcnow()
    record = SyncRecord.query.filter(
        SyncRecord.tenant_id == tenant_id,
        SyncRecord.client_origin_id == client_origin_id,
        SyncRecord.outcome == SYNC_OUTCOME_APPLIED,
        SyncRecord.expires_at > now,
    ).first()
    if record is not None:
        return record

    q = OperationRecord.query.filter(
        OperationRecord.tenant_id == tenant_id,
        OperationRecord.client_origin_id == client_origin_id,
    )
    if exclude_operation_number is not None:
        q = q.filter(OperationRecord.operation_number != exclude_operation_number)
    return q.order_by(OperationRecord.id.asc()).first()


def _upsert_record(
    *,
    tenant_id: int,
    client_origin_id: str,
    outcome: str,
    operation_number: Optional[str] = None,
    conflict_kind: Optional[str] = None,
    error_kind: Optional[str] = None,
    message: Optional[str] = None,
    client_recorded_at=None,
) -> SyncRecord:
    now = utcnow()
    record = SyncRecord.query.filter_by(tenant_id=tenant_id, client_origin_id=client_origin_id).first()
    if record is None:
        record = SyncRecord(tenant_id=tenant_id, client_origin_id=client_origin_id)
        db.session.add(record)

    record.outcome = outcome
    record.operation_number = operation_number
    record.conflict_kind = conflict_kind
    record.error_kind = error_kind
    record.message = message[:255] if message else None
    record.client_recorded_at = client_recorded_at
    record.created_at = now
    record.expires_at = now + _retention()
    db.session.flush()
    return record


def _record_failure(tenant_id: int, item: SyncItem, outcome: SyncOutcome) -> None:
    """Persist a conflict/rejected outcome in its own short transaction."""
    try:
        _upsert_record(
            tenant_id=tenant_id,
            client_origin_id=item.client_origin_id,
            outcome=outcome.outcome,
            conflict_kind=outcome.conflict_kind,
            error_kind=outcome.error_kind,
            message=outcome.message,
            client_recorded_at=item.operation.client_recorded_at,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(
            "Could not record sync outcome tenant=%s client_origin_id=%s outcome=%s",
            tenant_id, item.client_origin_id, outcome.outcome,
        )


def apply_conflict_rules(context: OperationContext) -> None:
    """Run every non-blocking rule inside the unit; used for direct and synced operations."""
    for rule in CONFLICT_RULES.values():
        if rule.resolve is not None:
            rule.resolve(context)


def _applied_side_effects(item: SyncItem) -> Callable[[OperationContext], None]:
    def _hook(context: OperationContext) -> None:
        # Re-checked under the product locks: a racing submission may have committed first.
        prior = find_applied(
            context.tenant_id,
            item.client_origin_id,
            exclude_operation_number=context.operation_number,
        )
        if prior is not None:
            raise DuplicateSubmissionError(
                "client_origin_id already applied",
                operation_number=prior.operation_number,
                details={"client_origin_id": item.client_origin_id},
            )
        apply_conflict_rules(context)
        _upsert_record(
            tenant_id=context.tenant_id,
            client_origin_id=item.client_origin_id,
            outcome=SYNC_OUTCOME_APPLIED,
            operation_number=context.operation_number,
            client_recorded_at=context.operation.client_recorded_at,
        )
    return _hook


# =============================================================================
# BATCH SUBMISSION
# =============================================================================

def _duplicate(item: SyncItem, record: SyncRecord | OperationRecord) -> SyncOutcome:
    return SyncOutcome(
        client_origin_id=item.client_origin_id,
        outcome=SYNC_OUTCOME_DUPLICATE,
        operation_number=record.operation_number,
    )


def _submit_one(tenant_id: int, item: SyncItem) -> SyncOutcome:
    if isinstance(item, InvalidSyncItem):
        return SyncOutcome(
            client_origin_id=item.client_origin_id,
            outcome=SYNC_OUTCOME_REJECTED,
            error_kind=item.error.kind,
            message=item.error.message,
            details=item.error.details,
        )
    if not isinstance(item.client_origin_id, str) or not item.client_origin_id.strip():
        return SyncOutcome(
            client_origin_id=item.client_origin_id,
            outcome=SYNC_OUTCOME_REJECTED,
            error_kind=ValidationError.kind,
            message="client_origin_id is required",
        )

    prior = find_applied(tenant_id, item.client_origin_id)
    if prior is not None:
        return _duplicate(item, prior)

    operation = replace(item.operation, client_origin_id=item.client_origin_id)
    try:
        result = operation_service.execute(
            tenant_id,
            operation,
            allow_negative=item.allow_negative,
            side_effects=_applied_side_effects(item),
        )
    except DuplicateSubmissionError as exc:
        return SyncOutcome(
            client_origin_id=item.client_origin_id,
            outcome=SYNC_OUTCOME_DUPLICATE,
            operation_number=exc.operation_number,
        )
    except LedgerCoreError as exc:
        # A concurrent submission of the same id may have been applied meanwhile.
        prior = find_applied(tenant_id, item.client_origin_id)
        if prior is not None:
            return _duplicate(item, prior)

        if isinstance(exc, InsufficientStockError):
            outcome = SyncOutcome(
                client_origin_id=item.client_origin_id,
                outcome=SYNC_OUTCOME_CONFLICT,
                conflict_kind=CONFLICT_STOCK_SHORTAGE,
                error_kind=exc.kind,
                message=exc.message,
                details=exc.details,
            )
        else:
            outcome = SyncOutcome(
                client_origin_id=item.client_origin_id,
                outcome=SYNC_OUTCOME_REJECTED,
                error_kind=exc.kind,
                message=exc.message,
                details=exc.details,
            )
        _record_failure(tenant_id, item, outcome)
        return outcome

    return SyncOutcome(
        client_origin_id=item.client_origin_id,
        outcome=SYNC_OUTCOME_APPLIED,
        operation_number=result.operation_number,
    )


def submit_batch(tenant_id: int, items: list[SyncItem]) -> list[SyncOutcome]:
    """
    Apply a batch of offline submissions, one outcome per item, in input order.

    One failing item never aborts the rest of the batch.
    """
    max_batch = int(current_app.config.get("MAX_BATCH_SIZE", 500))
    if len(items) > max_batch:
        raise ValidationError(
            "batch too large",
            details={"max_batch_size": max_batch, "received": len(items)},
        )

    outcomes = []
    for item in items:
        try:
            outcome = _submit_one(tenant_id, item)
        except Exception as exc:
            db.session.rollback()
            logger.exception(
                "Unexpected failure applying sync item tenant=%s client_origin_id=%s",
                tenant_id, item.client_origin_id,
            )
            outcome = SyncOutcome(
                client_origin_id=item.client_origin_id,
                outcome=SYNC_OUTCOME_REJECTED,
                error_kind="internal_error",
                message=str(exc)[:255],
            )
        outcomes.append(outcome)

    applied = sum(1 for o in outcomes if o.outcome == SYNC_OUTCOME_APPLIED)
    logger.info(
        "Sync batch tenant=%s items=%s applied=%s other=%s",
        tenant_id, len(outcomes), applied, len(outcomes) - applied,
    )
    return outcomes


def purge_expired_records(*, now=None) -> int:
    """Delete sync records past their retention window."""
    now = now or utcnow()
    deleted = db.session.query(SyncRecord).filter(SyncRecord.expires_at <= now).delete()
    db.session.commit()
    return deleted
