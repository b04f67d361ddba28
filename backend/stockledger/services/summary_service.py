# Overview: Summary projector; sole writer of StockSummary rows.

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import NegativeStockError, StorageFailure, ValidationError
from ..extensions import db
from ..models import Product, StockSummary
from ..models.ledger import MOVEMENT_STOCK_IN, MOVEMENT_STOCK_OUT, MOVEMENT_ADJUSTMENT
from ..time_utils import to_utc_z
from .audit_service import append_review_event, REVIEW_DRIFT_CORRECTED
from .concurrency import get_product_locks, lock_for_update, lock_timeout, run_with_retry
from .ledger_service import entries_for
"""
Summary Invariants (authoritative)

- quantity_on_hand == SUM(quantity_delta) over the product's ledger entries.
- quantity_available == quantity_on_hand - quantity_reserved.
- Weighted average cost moves only on STOCK_IN entries that carry a unit cost:
    avg = (old_avg * old_qty + unit_cost * qty_in) / (old_qty + qty_in)
  rounded to the nearest cent (half-up). When old_qty <= 0 the incoming cost
  becomes the average. Every other movement changes quantity and valuation
  (quantity * avg) but not the average.
- The incremental path (apply_delta) and the rebuild path share one fold, so
  replaying the ledger reproduces exactly what incremental applies produced.
"""

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Position:
    """The ledger-derived part of a summary row."""
    quantity_on_hand: int = 0
    average_cost_cents: Optional[int] = None
    latest_unit_cost_cents: Optional[int] = None
    total_valuation_cents: int = 0
    last_stock_in_at: Optional[datetime] = None
    last_stock_out_at: Optional[datetime] = None
    last_sequence: Optional[int] = None


def _div_half_up(numerator: int, denominator: int) -> int:
    return (numerator + (denominator // 2)) // denominator


def _valuation(quantity: int, average_cost_cents: Optional[int]) -> int:
    return quantity * average_cost_cents if average_cost_cents is not None else 0


def fold_movement(
    position: Position,
    *,
    quantity_delta: int,
    unit_cost_cents: Optional[int] = None,
    movement_kind: str,
    recorded_at: Optional[datetime] = None,
    sequence: Optional[int] = None,
) -> Position:
    """Apply one movement to a position. Pure; used by both update paths."""
    old_qty = position.quantity_on_hand
    new_qty = old_qty + quantity_delta

    average = position.average_cost_cents
    latest = position.latest_unit_cost_cents
    if movement_kind == MOVEMENT_STOCK_IN and unit_cost_cents is not None and quantity_delta > 0:
        if old_qty <= 0 or average is None:
            average = unit_cost_cents
        else:
            average = _div_half_up(average * old_qty + unit_cost_cents * quantity_delta, new_qty)
        latest = unit_cost_cents

    last_in = position.last_stock_in_at
    last_out = position.last_stock_out_at
    if quantity_delta > 0:
        last_in = recorded_at or last_in
    elif quantity_delta < 0:
        last_out = recorded_at or last_out

    return Position(
        quantity_on_hand=new_qty,
        average_cost_cents=average,
        latest_unit_cost_cents=latest,
        total_valuation_cents=_valuation(new_qty, average),
        last_stock_in_at=last_in,
        last_stock_out_at=last_out,
        last_sequence=sequence if sequence is not None else position.last_sequence,
    )


def _infer_movement_kind(quantity_delta: int, unit_cost_cents: Optional[int]) -> str:
    if quantity_delta > 0 and unit_cost_cents is not None:
        return MOVEMENT_STOCK_IN
    if quantity_delta < 0:
        return MOVEMENT_STOCK_OUT
    return MOVEMENT_ADJUSTMENT


def _position_of(summary: StockSummary) -> Position:
    return Position(
        quantity_on_hand=summary.quantity_on_hand or 0,
        average_cost_cents=summary.average_cost_cents,
        latest_unit_cost_cents=summary.latest_unit_cost_cents,
        total_valuation_cents=summary.total_valuation_cents or 0,
        last_stock_in_at=summary.last_stock_in_at,
        last_stock_out_at=summary.last_stock_out_at,
        last_sequence=summary.last_sequence,
    )


def _write_position(summary: StockSummary, position: Position) -> None:
    summary.quantity_on_hand = position.quantity_on_hand
    summary.quantity_available = position.quantity_on_hand - (summary.quantity_reserved or 0)
    summary.average_cost_cents = position.average_cost_cents
    summary.latest_unit_cost_cents = position.latest_unit_cost_cents
    summary.total_valuation_cents = position.total_valuation_cents
    summary.last_stock_in_at = position.last_stock_in_at
    summary.last_stock_out_at = position.last_stock_out_at
    summary.last_sequence = position.last_sequence


def _position_payload(position: Position) -> dict:
    payload = asdict(position)
    payload["last_stock_in_at"] = to_utc_z(position.last_stock_in_at)
    payload["last_stock_out_at"] = to_utc_z(position.last_stock_out_at)
    return payload


def projection_snapshot(summary: StockSummary) -> dict:
    """Ledger-derived fields plus availability, for comparing two summaries."""
    payload = _position_payload(_position_of(summary))
    payload["quantity_reserved"] = summary.quantity_reserved
    payload["quantity_available"] = summary.quantity_available
    return payload


def _get_or_create_locked(tenant_id: int, product_id: int) -> StockSummary:
    summary = lock_for_update(
        db.session.query(StockSummary).filter_by(tenant_id=tenant_id, product_id=product_id)
    ).first()
    if summary is None:
        summary = StockSummary(
            tenant_id=tenant_id,
            product_id=product_id,
            quantity_on_hand=0,
            quantity_reserved=0,
            quantity_available=0,
            total_valuation_cents=0,
            applies_since_rebuild=0,
        )
        db.session.add(summary)
        db.session.flush()
    return summary


def apply_delta(
    tenant_id: int,
    product_id: int,
    quantity_delta: int,
    unit_cost_cents: Optional[int] = None,
    *,
    movement_kind: Optional[str] = None,
    recorded_at: Optional[datetime] = None,
    sequence: Optional[int] = None,
    allow_negative: bool = False,
) -> StockSummary:
    """
    Incrementally fold one movement into the product's summary.

    Must run inside a transaction coordinator unit that holds the product
    lock; does not commit. Raises NegativeStockError when the delta would take
    quantity_on_hand below zero and allow_negative is not set.
    """
    summary = _get_or_create_locked(tenant_id, product_id)
    current = _position_of(summary)

    if quantity_delta < 0 and not allow_negative and current.quantity_on_hand + quantity_delta < 0:
        raise NegativeStockError(
            "delta would make on-hand negative",
            details={
                "product_id": product_id,
                "quantity_on_hand": current.quantity_on_hand,
                "quantity_delta": quantity_delta,
            },
        )

    updated = fold_movement(
        current,
        quantity_delta=quantity_delta,
        unit_cost_cents=unit_cost_cents,
        movement_kind=movement_kind or _infer_movement_kind(quantity_delta, unit_cost_cents),
        recorded_at=recorded_at,
        sequence=sequence,
    )
    _write_position(summary, updated)
    summary.applies_since_rebuild = (summary.applies_since_rebuild or 0) + 1
    db.session.flush()
    return summary


def replay(tenant_id: int, product_id: int) -> Position:
    """Fold the product's full ledger, oldest-first."""
    position = Position()
    for entry in entries_for(tenant_id=tenant_id, product_id=product_id):
        position = fold_movement(
            position,
            quantity_delta=entry.quantity_delta,
            unit_cost_cents=entry.unit_cost_cents,
            movement_kind=entry.movement_kind,
            recorded_at=entry.recorded_at,
            sequence=entry.sequence,
        )
    return position


def _ensure_product(tenant_id: int, product_id: int) -> Product:
    product = Product.query.filter_by(id=product_id).first()
    if product is None or product.tenant_id != tenant_id:
        raise ValidationError("product not found", details={"product_id": product_id})
    return product


def _rebuild_locked(tenant_id: int, product_id: int) -> tuple[StockSummary, Optional[dict]]:
    position = replay(tenant_id, product_id)

    summary = lock_for_update(
        db.session.query(StockSummary).filter_by(tenant_id=tenant_id, product_id=product_id)
    ).first()

    drift = None
    if summary is None:
        summary = StockSummary(tenant_id=tenant_id, product_id=product_id, quantity_reserved=0)
        db.session.add(summary)
    else:
        cached = _position_of(summary)
        if cached != position:
            drift = {"cached": _position_payload(cached), "rebuilt": _position_payload(position)}

    _write_position(summary, position)
    summary.applies_since_rebuild = 0

    if drift is not None:
        logger.warning(
            "Summary drift corrected tenant=%s product=%s cached_on_hand=%s rebuilt_on_hand=%s",
            tenant_id,
            product_id,
            drift["cached"]["quantity_on_hand"],
            drift["rebuilt"]["quantity_on_hand"],
        )
        append_review_event(
            tenant_id=tenant_id,
            event_type=REVIEW_DRIFT_CORRECTED,
            entity_type="stock_summary",
            entity_id=product_id,
            payload=drift,
        )

    db.session.commit()
    return summary, drift


def rebuild_with_report(tenant_id: int, product_id: int) -> tuple[StockSummary, Optional[dict]]:
    """Rebuild and also return the drift that was corrected (None when the cache matched)."""
    _ensure_product(tenant_id, product_id)
    with get_product_locks().hold([(tenant_id, product_id)], timeout=lock_timeout()):
        try:
            return run_with_retry(lambda: _rebuild_locked(tenant_id, product_id))
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageFailure(
                "summary rebuild failed",
                details={"tenant_id": tenant_id, "product_id": product_id},
            ) from exc


def rebuild(tenant_id: int, product_id: int) -> StockSummary:
    """
    Recompute a product's summary from the full ledger.

    Excludes concurrent apply_delta calls for the product; readers are not
    blocked. Drift is corrected quietly: logged, recorded as a review event,
    never raised.
    """
    summary, _ = rebuild_with_report(tenant_id, product_id)
    return summary


def read(tenant_id: int, product_id: int) -> StockSummary | None:
    return StockSummary.query.filter_by(tenant_id=tenant_id, product_id=product_id).first()


def read_many(tenant_id: int, product_ids) -> dict[int, StockSummary]:
    ids = list(set(product_ids))
    if not ids:
        return {}
    rows = StockSummary.query.filter(
        StockSummary.tenant_id == tenant_id,
        StockSummary.product_id.in_(ids),
    ).all()
    return {row.product_id: row for row in rows}


def list_below_reorder_threshold(tenant_id: int, limit: int = 500) -> list[StockSummary]:
    q = (
        db.session.query(StockSummary)
        .join(Product, Product.id == StockSummary.product_id)
        .filter(
            StockSummary.tenant_id == tenant_id,
            Product.is_active.is_(True),
            Product.reorder_threshold.isnot(None),
            StockSummary.quantity_available < Product.reorder_threshold,
        )
        .order_by(StockSummary.quantity_available.asc(), StockSummary.product_id.asc())
    )
    return q.limit(limit).all()


def needs_rebuild(summary: StockSummary) -> bool:
    threshold = int(current_app.config.get("REBUILD_AFTER_APPLIES", 0) or 0)
    if threshold <= 0:
        return False
    return (summary.applies_since_rebuild or 0) >= threshold
