# Overview: Ledger store; the only code that persists LedgerEntry rows.

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import StorageFailure
from ..extensions import db
from ..models import LedgerEntry
from ..models.ledger import MOVEMENT_KINDS
from ..time_utils import utcnow
"""
Ledger Invariants (authoritative)

- Append-only: no update or delete exists here, and the mapper refuses both.
- sequence and recorded_at are server-assigned and strictly increasing per tenant.
- All entries from one append_entries() call are flushed together inside the
  caller's transaction: visible together on commit, absent together on rollback.
- Reads are ordered oldest-first by sequence. Client timestamps never reorder.
"""

_ONE_TICK = timedelta(microseconds=1)


class LedgerSequencer:
    """
    Per-tenant atomic counter and monotonic clock.

    Initialized on a tenant's first write from what the database already
    holds, never reset. Callers hold the product lock while allocating, so a
    later commit on a product always receives a later sequence.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._next_sequence: dict[int, int] = {}
        self._last_recorded_at: dict[int, datetime] = {}

    def allocate(
        self,
        tenant_id: int,
        count: int,
        *,
        floor_sequence: int,
        floor_recorded_at: Optional[datetime],
    ) -> tuple[int, list[datetime]]:
        """Reserve count sequences; returns (first_sequence, recorded_at per entry)."""
        with self._lock:
            start = max(self._next_sequence.get(tenant_id, 1), floor_sequence)
            self._next_sequence[tenant_id] = start + count

            last = self._last_recorded_at.get(tenant_id)
            if floor_recorded_at is not None and (last is None or floor_recorded_at > last):
                last = floor_recorded_at

            stamps = []
            now = utcnow()
            for _ in range(count):
                stamp = now if last is None or now > last else last + _ONE_TICK
                stamps.append(stamp)
                last = stamp
            self._last_recorded_at[tenant_id] = last
            return start, stamps

    def forget(self, tenant_id: int) -> None:
        """Drop cached state so the next allocation re-reads the database floor."""
        with self._lock:
            self._next_sequence.pop(tenant_id, None)
            self._last_recorded_at.pop(tenant_id, None)


def get_sequencer() -> LedgerSequencer:
    return current_app.extensions["stockledger"]["sequencer"]


@dataclass(frozen=True)
class LedgerDraft:
    """An entry not yet persisted; sequence and recorded_at are assigned on append."""
    product_id: int
    movement_kind: str
    quantity_delta: int
    reference_kind: str
    reference_id: str
    unit_cost_cents: Optional[int] = None
    unit_price_cents: Optional[int] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    created_by: Optional[str] = None
    client_origin_id: Optional[str] = None
    client_recorded_at: Optional[datetime] = None


def format_operation_number(tenant_id: int, first_sequence: int) -> str:
    return f"OP-{tenant_id:03d}-{first_sequence:06d}"


def _database_floor(tenant_id: int) -> tuple[int, Optional[datetime]]:
    row = db.session.query(
        func.max(LedgerEntry.sequence),
        func.max(LedgerEntry.recorded_at),
    ).filter(LedgerEntry.tenant_id == tenant_id).one()
    max_sequence, max_recorded_at = row
    return (int(max_sequence or 0) + 1), max_recorded_at


def append_entries(*, tenant_id: int, drafts: list[LedgerDraft]) -> list[LedgerEntry]:
    """
    Persist drafts as one unit and return the entries in input order.

    Does not commit: the transaction coordinator owns the commit so that the
    ledger append, summary updates and audit record land together.
    """
    if not drafts:
        raise ValueError("append_entries requires at least one draft")
    for draft in drafts:
        if draft.movement_kind not in MOVEMENT_KINDS:
            raise ValueError(f"unknown movement kind {draft.movement_kind!r}")

    floor_sequence, floor_recorded_at = _database_floor(tenant_id)
    sequencer = get_sequencer()
    first_sequence, stamps = sequencer.allocate(
        tenant_id,
        len(drafts),
        floor_sequence=floor_sequence,
        floor_recorded_at=floor_recorded_at,
    )
    operation_number = format_operation_number(tenant_id, first_sequence)

    entries = []
    for offset, (draft, recorded_at) in enumerate(zip(drafts, stamps)):
        entry = LedgerEntry(
            tenant_id=tenant_id,
            product_id=draft.product_id,
            sequence=first_sequence + offset,
            movement_kind=draft.movement_kind,
            quantity_delta=draft.quantity_delta,
            unit_cost_cents=draft.unit_cost_cents,
            unit_price_cents=draft.unit_price_cents,
            reference_kind=draft.reference_kind,
            reference_id=draft.reference_id,
            operation_number=operation_number,
            batch_number=draft.batch_number,
            expiry_date=draft.expiry_date,
            created_by=draft.created_by,
            recorded_at=recorded_at,
            client_origin_id=draft.client_origin_id,
            client_recorded_at=draft.client_recorded_at,
        )
        db.session.add(entry)
        entries.append(entry)

    try:
        db.session.flush()
    except IntegrityError as exc:
        # Another process allocated the same sequence; re-seed from the database next time.
        sequencer.forget(tenant_id)
        raise StorageFailure(
            "ledger sequence collision",
            details={"tenant_id": tenant_id, "first_sequence": first_sequence},
        ) from exc
    return entries


def entries_for(
    *,
    tenant_id: int,
    product_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    batch_size: int = 500,
) -> Iterator[LedgerEntry]:
    """
    Lazily yield a product's entries oldest-first.

    Time bounds are inclusive on recorded_at. Each call starts a fresh
    iteration, so the sequence is restartable.
    """
    q = _entries_query(tenant_id=tenant_id, product_id=product_id, start=start, end=end)
    for entry in q.yield_per(batch_size):
        yield entry


def _entries_query(*, tenant_id: int, product_id: int, start=None, end=None):
    q = LedgerEntry.query.filter_by(tenant_id=tenant_id, product_id=product_id)
    if start is not None:
        q = q.filter(LedgerEntry.recorded_at >= start)
    if end is not None:
        q = q.filter(LedgerEntry.recorded_at <= end)
    return q.order_by(LedgerEntry.sequence.asc())


def signed_quantity_sum(*, tenant_id: int, product_id: int) -> int:
    q = db.session.query(
        func.coalesce(func.sum(LedgerEntry.quantity_delta), 0)
    ).filter(
        LedgerEntry.tenant_id == tenant_id,
        LedgerEntry.product_id == product_id,
    )
    return int(q.scalar() or 0)


def list_entries(*, tenant_id: int, product_id: int, start=None, end=None, limit: int = 200) -> list[LedgerEntry]:
    q = _entries_query(tenant_id=tenant_id, product_id=product_id, start=start, end=end)
    return q.limit(limit).all()


def products_with_entries(tenant_id: Optional[int] = None) -> list[tuple[int, int]]:
    """Distinct (tenant_id, product_id) pairs present in the ledger."""
    q = db.session.query(LedgerEntry.tenant_id, LedgerEntry.product_id).distinct()
    if tenant_id is not None:
        q = q.filter(LedgerEntry.tenant_id == tenant_id)
    return [(row[0], row[1]) for row in q.order_by(LedgerEntry.tenant_id, LedgerEntry.product_id).all()]
