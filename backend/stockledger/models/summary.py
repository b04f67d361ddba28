from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class StockSummary(db.Model):
    """
    Derived per-(tenant, product) stock position. A cache over the ledger.

    quantity_on_hand always equals the signed sum of the product's ledger
    entries; the row can be rebuilt from the ledger at any time. The summary
    projector is its only writer.

    quantity_reserved is not ledger-derived and survives a rebuild.
    version_id gives compare-and-swap semantics for concurrent writers.
    """
    __tablename__ = "stock_summaries"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "product_id", name="uq_stock_summaries_tenant_product"),
        db.Index("ix_stock_summaries_tenant_available", "tenant_id", "quantity_available"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    quantity_reserved = db.Column(db.Integer, nullable=False, default=0)
    quantity_available = db.Column(db.Integer, nullable=False, default=0)

    last_stock_in_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_stock_out_at = db.Column(db.DateTime(timezone=True), nullable=True)

    latest_unit_cost_cents = db.Column(db.Integer, nullable=True)
    average_cost_cents = db.Column(db.Integer, nullable=True)
    total_valuation_cents = db.Column(db.Integer, nullable=False, default=0)

    # Ledger sequence of the last entry folded into this row
    last_sequence = db.Column(db.Integer, nullable=True)
    applies_since_rebuild = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<StockSummary tenant={self.tenant_id} product={self.product_id} "
            f"on_hand={self.quantity_on_hand} avg={self.average_cost_cents}>"
        )

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "quantity_on_hand": self.quantity_on_hand,
            "quantity_reserved": self.quantity_reserved,
            "quantity_available": self.quantity_available,
            "last_stock_in_at": to_utc_z(self.last_stock_in_at),
            "last_stock_out_at": to_utc_z(self.last_stock_out_at),
            "latest_unit_cost_cents": self.latest_unit_cost_cents,
            "average_cost_cents": self.average_cost_cents,
            "total_valuation_cents": self.total_valuation_cents,
            "last_sequence": self.last_sequence,
        }
