"""
Transaction Coordinator

WHY: A business operation (invoice application, sale, return, manual
adjustment) touches several products at once. Either every line becomes a
ledger entry, every affected summary is updated and one audit record is
written, or nothing happens at all.

DESIGN PRINCIPLES:
- Validate every line before touching anything (fail fast)
- Take per-product locks in sorted order with a bounded wait
- Read-check all lines against current summaries before the first write
- Ledger append + summary deltas + audit record + caller side-effects share
  one database transaction; any failure rolls the whole unit back
- allow_negative is an explicit parameter, never an exception-driven retry

LIFECYCLE (per operation instance):
    VALIDATING -> APPLYING -> COMMITTED
    VALIDATING -> REJECTED
    APPLYING   -> ROLLED_BACK
Terminal states are never re-entered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    InsufficientStockError,
    LedgerCoreError,
    OperationStateError,
    StorageFailure,
    ValidationError,
)
from ..extensions import db
from ..models import CustomerAccount, LedgerEntry, OperationRecord, Product, StockSummary
from ..models.ledger import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_RETURN,
    MOVEMENT_STOCK_IN,
    MOVEMENT_STOCK_OUT,
)
from . import summary_service
from .audit_service import append_review_event, record_operation, REVIEW_NEGATIVE_OVERRIDE
from .concurrency import get_product_locks, lock_timeout, run_with_retry
from .ledger_service import LedgerDraft, append_entries

logger = logging.getLogger(__name__)


# =============================================================================
# OPERATION KINDS
# =============================================================================

KIND_APPLY_INVOICE = "apply-invoice"
KIND_CREATE_SALE = "create-sale"
KIND_PROCESS_RETURN = "process-return"
KIND_MANUAL_ADJUST = "manual-adjust"


@dataclass(frozen=True)
class KindRule:
    movement_kind: str
    reference_kind: str
    # +1: lines must be positive, -1: recorded as stock-out, 0: any non-zero delta
    direction: int
    requires_unit_cost: bool = False


KIND_RULES = {
    KIND_APPLY_INVOICE: KindRule(MOVEMENT_STOCK_IN, "invoice", +1, requires_unit_cost=True),
    KIND_CREATE_SALE: KindRule(MOVEMENT_STOCK_OUT, "sale", -1),
    KIND_PROCESS_RETURN: KindRule(MOVEMENT_RETURN, "return", +1),
    KIND_MANUAL_ADJUST: KindRule(MOVEMENT_ADJUSTMENT, "adjustment", 0),
}


# =============================================================================
# STATE MACHINE
# =============================================================================

STATE_VALIDATING = "VALIDATING"
STATE_APPLYING = "APPLYING"
STATE_COMMITTED = "COMMITTED"
STATE_REJECTED = "REJECTED"
STATE_ROLLED_BACK = "ROLLED_BACK"

TERMINAL_STATES = frozenset({STATE_COMMITTED, STATE_REJECTED, STATE_ROLLED_BACK})

_TRANSITIONS = {
    STATE_VALIDATING: {STATE_APPLYING, STATE_REJECTED},
    STATE_APPLYING: {STATE_COMMITTED, STATE_ROLLED_BACK},
}


class OperationExecution:
    """Tracks the lifecycle of one operation instance."""

    def __init__(self, tenant_id: int, operation: "Operation"):
        self.tenant_id = tenant_id
        self.operation = operation
        self.state = STATE_VALIDATING
        self.history = [STATE_VALIDATING]
        self.error: Optional[Exception] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: str, error: Optional[Exception] = None) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise OperationStateError(
                f"cannot move operation from {self.state} to {new_state}",
                details={"from": self.state, "to": new_state},
            )
        self.state = new_state
        self.history.append(new_state)
        if error is not None:
            self.error = error


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class OperationLine:
    product_id: int
    quantity: int
    unit_cost_cents: Optional[int] = None
    unit_price_cents: Optional[int] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None


@dataclass(frozen=True)
class Operation:
    kind: str
    lines: tuple
    reference_id: str
    reference_kind: Optional[str] = None
    created_by: Optional[str] = None
    customer_id: Optional[int] = None
    due_cents: int = 0
    document_total_cents: Optional[int] = None
    client_origin_id: Optional[str] = None
    client_recorded_at: Optional[datetime] = None
    note: Optional[str] = None


@dataclass
class OperationContext:
    """What side-effect hooks see: the unit in flight, before commit."""
    tenant_id: int
    operation: Operation
    operation_number: str
    entries: list
    summaries: dict
    audit_record: OperationRecord


@dataclass
class OperationResult:
    operation_number: str
    state: str
    entries: list = field(default_factory=list)
    summaries: dict = field(default_factory=dict)
    audit_record: Optional[OperationRecord] = None
    history: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "operation_number": self.operation_number,
            "state": self.state,
            "entries": [e.to_dict() for e in self.entries],
            "summaries": [s.to_dict() for s in self.summaries.values()],
            "audit_record": self.audit_record.to_dict() if self.audit_record else None,
        }


SideEffect = Callable[[OperationContext], None]


# =============================================================================
# VALIDATION
# =============================================================================

def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _signed_delta(rule: KindRule, quantity: int, index: int) -> int:
    if quantity == 0:
        raise ValidationError("quantity must be non-zero", details={"line": index})
    if rule.direction > 0 and quantity < 0:
        raise ValidationError("quantity must be positive for this operation kind", details={"line": index})
    if rule.direction < 0:
        return -abs(quantity)
    return quantity


def validate_operation(tenant_id: int, operation: Operation) -> list[LedgerDraft]:
    """
    Check an operation and turn its lines into ledger drafts.

    Reads master data (products, customer) but never writes.
    """
    rule = KIND_RULES.get(operation.kind)
    if rule is None:
        raise ValidationError(
            f"unknown operation kind {operation.kind!r}",
            details={"allowed": sorted(KIND_RULES)},
        )
    if not operation.lines:
        raise ValidationError("operation must have at least one line")
    if not operation.reference_id or not str(operation.reference_id).strip():
        raise ValidationError("reference_id is required")
    if not _is_int(operation.due_cents) or operation.due_cents < 0:
        raise ValidationError("due_cents must be a non-negative integer")

    if operation.customer_id is not None:
        customer = CustomerAccount.query.filter_by(id=operation.customer_id).first()
        if customer is None or customer.tenant_id != tenant_id:
            raise ValidationError("customer not found", details={"customer_id": operation.customer_id})

    product_ids = {line.product_id for line in operation.lines if _is_int(line.product_id)}
    products = {
        p.id: p
        for p in Product.query.filter(Product.id.in_(product_ids), Product.tenant_id == tenant_id).all()
    } if product_ids else {}

    reference_kind = operation.reference_kind or rule.reference_kind
    drafts = []
    for index, line in enumerate(operation.lines):
        if not _is_int(line.product_id):
            raise ValidationError("product_id must be an integer", details={"line": index})
        if not _is_int(line.quantity):
            raise ValidationError("quantity must be an integer", details={"line": index})

        product = products.get(line.product_id)
        if product is None:
            raise ValidationError("product not found", details={"line": index, "product_id": line.product_id})
        if not product.is_active:
            raise ValidationError("product is inactive", details={"line": index, "product_id": line.product_id})

        delta = _signed_delta(rule, line.quantity, index)

        for name in ("unit_cost_cents", "unit_price_cents"):
            value = getattr(line, name)
            if value is not None and (not _is_int(value) or value < 0):
                raise ValidationError(f"{name} must be a non-negative integer", details={"line": index})
        if rule.requires_unit_cost and line.unit_cost_cents is None:
            raise ValidationError("unit_cost_cents is required", details={"line": index})

        drafts.append(LedgerDraft(
            product_id=line.product_id,
            movement_kind=rule.movement_kind,
            quantity_delta=delta,
            reference_kind=reference_kind,
            reference_id=str(operation.reference_id),
            unit_cost_cents=line.unit_cost_cents,
            unit_price_cents=line.unit_price_cents,
            batch_number=line.batch_number,
            expiry_date=line.expiry_date,
            created_by=operation.created_by,
            client_origin_id=operation.client_origin_id,
            client_recorded_at=operation.client_recorded_at,
        ))

    if operation.kind == KIND_APPLY_INVOICE and operation.document_total_cents is not None:
        _check_invoice_total(operation, drafts)

    return drafts


def _check_invoice_total(operation: Operation, drafts: list[LedgerDraft]) -> None:
    document_total = operation.document_total_cents
    if not _is_int(document_total) or document_total < 0:
        raise ValidationError("document_total_cents must be a non-negative integer")

    lines_total = sum(d.quantity_delta * d.unit_cost_cents for d in drafts)
    tolerance_bps = int(current_app.config.get("INVOICE_TOTAL_TOLERANCE_BPS", 100))
    if abs(lines_total - document_total) * 10_000 > tolerance_bps * document_total:
        raise ValidationError(
            "invoice lines do not reconcile with document total",
            details={
                "lines_total_cents": lines_total,
                "document_total_cents": document_total,
                "tolerance_bps": tolerance_bps,
            },
        )


def _read_check(tenant_id: int, drafts: list[LedgerDraft]) -> None:
    """Fail with InsufficientStockError before any write if a product would go short."""
    net: dict[int, int] = {}
    for draft in drafts:
        net[draft.product_id] = net.get(draft.product_id, 0) + draft.quantity_delta

    summaries = summary_service.read_many(tenant_id, net.keys())
    insufficient = []
    for product_id, delta in sorted(net.items()):
        if delta >= 0:
            continue
        summary = summaries.get(product_id)
        available = summary.quantity_available if summary is not None else 0
        if available + delta < 0:
            insufficient.append({
                "product_id": product_id,
                "requested_quantity": -delta,
                "available": available,
            })

    if insufficient:
        raise InsufficientStockError(
            "Insufficient stock to apply operation",
            details={"items": insufficient},
        )


def _check_net_on_hand(summaries: dict[int, StockSummary], net: dict[int, int]) -> None:
    """Refuse the unit if a product whose net change is negative ended below zero."""
    short = [
        {
            "product_id": product_id,
            "requested_quantity": -delta,
            "available": summaries[product_id].quantity_on_hand - delta,
        }
        for product_id, delta in sorted(net.items())
        if delta < 0 and summaries[product_id].quantity_on_hand < 0
    ]
    if short:
        raise InsufficientStockError(
            "Insufficient stock to apply operation",
            details={"items": short},
        )


# =============================================================================
# EXECUTION
# =============================================================================

def _apply_unit(
    tenant_id: int,
    operation: Operation,
    drafts: list[LedgerDraft],
    allow_negative: bool,
    side_effects: Optional[SideEffect],
) -> OperationResult:
    entries: list[LedgerEntry] = append_entries(tenant_id=tenant_id, drafts=drafts)
    operation_number = entries[0].operation_number

    # Stock is guarded on each product's net change, so line order never matters.
    summaries: dict[int, StockSummary] = {}
    net: dict[int, int] = {}
    for entry in entries:
        net[entry.product_id] = net.get(entry.product_id, 0) + entry.quantity_delta
        summaries[entry.product_id] = summary_service.apply_delta(
            tenant_id,
            entry.product_id,
            entry.quantity_delta,
            entry.unit_cost_cents,
            movement_kind=entry.movement_kind,
            recorded_at=entry.recorded_at,
            sequence=entry.sequence,
            allow_negative=True,
        )

    if not allow_negative:
        _check_net_on_hand(summaries, net)

    if allow_negative:
        for product_id, summary in summaries.items():
            if summary.quantity_on_hand < 0:
                logger.warning(
                    "Negative stock override tenant=%s product=%s on_hand=%s operation=%s",
                    tenant_id, product_id, summary.quantity_on_hand, operation_number,
                )
                append_review_event(
                    tenant_id=tenant_id,
                    event_type=REVIEW_NEGATIVE_OVERRIDE,
                    entity_type="stock_summary",
                    entity_id=product_id,
                    operation_number=operation_number,
                    payload={"quantity_on_hand": summary.quantity_on_hand, "created_by": operation.created_by},
                )

    audit_record = record_operation(
        tenant_id=tenant_id,
        operation_number=operation_number,
        kind=operation.kind,
        state=STATE_COMMITTED,
        reference_kind=entries[0].reference_kind,
        reference_id=entries[0].reference_id,
        entries=entries,
        allow_negative=allow_negative,
        client_origin_id=operation.client_origin_id,
        customer_id=operation.customer_id,
        created_by=operation.created_by,
        note=operation.note,
    )

    if side_effects is not None:
        side_effects(OperationContext(
            tenant_id=tenant_id,
            operation=operation,
            operation_number=operation_number,
            entries=entries,
            summaries=summaries,
            audit_record=audit_record,
        ))

    db.session.commit()
    return OperationResult(
        operation_number=operation_number,
        state=STATE_COMMITTED,
        entries=entries,
        summaries=summaries,
        audit_record=audit_record,
    )


def execute(
    tenant_id: int,
    operation: Operation,
    *,
    allow_negative: bool = False,
    side_effects: Optional[SideEffect] = None,
) -> OperationResult:
    """
    Execute one operation as an atomic unit.

    Args:
        tenant_id: Tenant whose ledger is written
        operation: What to apply
        allow_negative: Permit stock to go below zero (user override; logged for review)
        side_effects: Optional hook run inside the unit just before commit, e.g.
            billing's due/payment creation. If it raises, the unit rolls back.

    Raises:
        ValidationError: malformed operation (nothing written)
        InsufficientStockError: a stock-out exceeds available stock (nothing written)
        StorageFailure: store unavailable or lock wait exceeded (nothing written)
    """
    execution = OperationExecution(tenant_id, operation)

    try:
        drafts = validate_operation(tenant_id, operation)
    except ValidationError as exc:
        execution.transition(STATE_REJECTED, exc)
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        failure = StorageFailure("operation could not be validated", details={"tenant_id": tenant_id})
        execution.transition(STATE_REJECTED, failure)
        raise failure from exc

    keys = [(tenant_id, product_id) for product_id in {d.product_id for d in drafts}]
    try:
        with get_product_locks().hold(keys, timeout=lock_timeout()):
            if not allow_negative:
                try:
                    _read_check(tenant_id, drafts)
                except InsufficientStockError as exc:
                    db.session.rollback()
                    execution.transition(STATE_REJECTED, exc)
                    raise
                except SQLAlchemyError as exc:
                    db.session.rollback()
                    raise StorageFailure(
                        "stock position could not be read",
                        details={"tenant_id": tenant_id},
                    ) from exc

            execution.transition(STATE_APPLYING)
            try:
                result = run_with_retry(
                    lambda: _apply_unit(tenant_id, operation, drafts, allow_negative, side_effects)
                )
            except LedgerCoreError as exc:
                db.session.rollback()
                execution.transition(STATE_ROLLED_BACK, exc)
                raise
            except SQLAlchemyError as exc:
                db.session.rollback()
                failure = StorageFailure(
                    "operation could not be persisted",
                    details={"tenant_id": tenant_id, "kind": operation.kind},
                )
                execution.transition(STATE_ROLLED_BACK, failure)
                raise failure from exc
            except Exception as exc:
                db.session.rollback()
                execution.transition(STATE_ROLLED_BACK, exc)
                raise
    except StorageFailure as exc:
        # Lock wait exceeded before anything was written
        if not execution.is_terminal:
            execution.transition(STATE_REJECTED, exc)
        raise

    execution.transition(STATE_COMMITTED)
    result.history = list(execution.history)
    _rebuild_if_due(tenant_id, result)
    return result


def _rebuild_if_due(tenant_id: int, result: OperationResult) -> None:
    """On-demand drift correction once a summary has absorbed enough incremental applies."""
    for product_id, summary in list(result.summaries.items()):
        if not summary_service.needs_rebuild(summary):
            continue
        try:
            result.summaries[product_id] = summary_service.rebuild(tenant_id, product_id)
        except StorageFailure:
            # The operation is committed; the scheduled reconcile will pick this product up.
            logger.warning(
                "On-demand rebuild deferred tenant=%s product=%s operation=%s",
                tenant_id, product_id, result.operation_number,
                exc_info=True,
            )


def get_operation(tenant_id: int, operation_number: str) -> OperationRecord | None:
    return OperationRecord.query.filter_by(tenant_id=tenant_id, operation_number=operation_number).first()
