from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z


class OperationRecord(db.Model):
    """
    Audit record of one committed operation.

    Written in the same database transaction as the operation's ledger
    entries and summary updates, so it exists if and only if they do.
    """
    __tablename__ = "operation_records"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "operation_number", name="uq_operation_records_tenant_number"),
        db.Index("ix_operation_records_tenant_reference", "tenant_id", "reference_kind", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)

    operation_number = db.Column(db.String(32), nullable=False)
    kind = db.Column(db.String(32), nullable=False, index=True)
    state = db.Column(db.String(16), nullable=False)

    reference_kind = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.String(64), nullable=False)

    entry_count = db.Column(db.Integer, nullable=False)
    first_sequence = db.Column(db.Integer, nullable=False)
    last_sequence = db.Column(db.Integer, nullable=False)

    allow_negative = db.Column(db.Boolean, nullable=False, default=False)
    client_origin_id = db.Column(db.String(128), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customer_accounts.id"), nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    committed_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "operation_number": self.operation_number,
            "kind": self.kind,
            "state": self.state,
            "reference_kind": self.reference_kind,
            "reference_id": self.reference_id,
            "entry_count": self.entry_count,
            "first_sequence": self.first_sequence,
            "last_sequence": self.last_sequence,
            "allow_negative": self.allow_negative,
            "client_origin_id": self.client_origin_id,
            "customer_id": self.customer_id,
            "created_by": self.created_by,
            "note": self.note,
            "committed_at": to_utc_z(self.committed_at),
        }


class ReviewEvent(db.Model):
    """Append-only log of events a human should look at (drift, overrides, discrepancies)."""
    __tablename__ = "review_events"
    __table_args__ = (
        db.Index("ix_review_events_tenant_created", "tenant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)

    operation_number = db.Column(db.String(32), nullable=True, index=True)
    payload = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def payload_dict(self) -> dict:
        return json.loads(self.payload) if self.payload else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "operation_number": self.operation_number,
            "payload": self.payload_dict(),
            "created_at": to_utc_z(self.created_at),
        }
