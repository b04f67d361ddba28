from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z


MOVEMENT_STOCK_IN = "STOCK_IN"
MOVEMENT_STOCK_OUT = "STOCK_OUT"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_RETURN = "RETURN"

MOVEMENT_KINDS = (MOVEMENT_STOCK_IN, MOVEMENT_STOCK_OUT, MOVEMENT_ADJUSTMENT, MOVEMENT_RETURN)


class LedgerEntry(db.Model):
    """
    One signed stock movement. Append-only.

    sequence and recorded_at are assigned by the ledger store and are strictly
    increasing per tenant. Corrections are new ADJUSTMENT rows; the mapper
    refuses to flush an UPDATE or DELETE for a persisted entry.

    client_recorded_at is kept for audit only and never used for ordering.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "sequence", name="uq_ledger_tenant_sequence"),
        db.Index("ix_ledger_tenant_product_sequence", "tenant_id", "product_id", "sequence"),
        db.Index("ix_ledger_tenant_product_recorded", "tenant_id", "product_id", "recorded_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    sequence = db.Column(db.Integer, nullable=False)
    movement_kind = db.Column(db.String(16), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=True)
    unit_price_cents = db.Column(db.Integer, nullable=True)

    # Business document that caused the movement (invoice, sale, return, adjustment)
    reference_kind = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.String(64), nullable=False, index=True)
    operation_number = db.Column(db.String(32), nullable=False, index=True)

    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False)

    client_origin_id = db.Column(db.String(128), nullable=True, index=True)
    client_recorded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry tenant={self.tenant_id} seq={self.sequence} "
            f"product={self.product_id} {self.movement_kind} {self.quantity_delta:+d}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "sequence": self.sequence,
            "movement_kind": self.movement_kind,
            "quantity_delta": self.quantity_delta,
            "unit_cost_cents": self.unit_cost_cents,
            "unit_price_cents": self.unit_price_cents,
            "reference_kind": self.reference_kind,
            "reference_id": self.reference_id,
            "operation_number": self.operation_number,
            "batch_number": self.batch_number,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "created_by": self.created_by,
            "recorded_at": to_utc_z(self.recorded_at),
            "client_origin_id": self.client_origin_id,
            "client_recorded_at": to_utc_z(self.client_recorded_at),
        }


@event.listens_for(LedgerEntry, "before_update")
def _refuse_ledger_update(mapper, connection, target):
    raise RuntimeError(f"ledger entries are append-only (sequence={target.sequence})")


@event.listens_for(LedgerEntry, "before_delete")
def _refuse_ledger_delete(mapper, connection, target):
    raise RuntimeError(f"ledger entries are append-only (sequence={target.sequence})")
