from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


SYNC_OUTCOME_APPLIED = "applied"
SYNC_OUTCOME_DUPLICATE = "duplicate"
SYNC_OUTCOME_CONFLICT = "conflict"
SYNC_OUTCOME_REJECTED = "rejected"


class SyncRecord(db.Model):
    """
    Deduplication state for offline submissions.

    Keyed by (tenant_id, client_origin_id). Only an unexpired row with
    outcome 'applied' makes a resubmission a duplicate; conflict and
    rejected rows are overwritten by the next attempt.
    """
    __tablename__ = "sync_records"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "client_origin_id", name="uq_sync_records_tenant_client_origin"),
        db.Index("ix_sync_records_expires", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    client_origin_id = db.Column(db.String(128), nullable=False)

    operation_number = db.Column(db.String(32), nullable=True)
    outcome = db.Column(db.String(16), nullable=False, index=True)
    conflict_kind = db.Column(db.String(32), nullable=True)
    error_kind = db.Column(db.String(32), nullable=True)
    message = db.Column(db.String(255), nullable=True)

    client_recorded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "client_origin_id": self.client_origin_id,
            "operation_number": self.operation_number,
            "outcome": self.outcome,
            "conflict_kind": self.conflict_kind,
            "error_kind": self.error_kind,
            "message": self.message,
            "client_recorded_at": to_utc_z(self.client_recorded_at),
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
        }
