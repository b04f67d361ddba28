# Overview: Scheduled maintenance: drift correction over all summaries, sync-record retention.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..errors import StorageFailure
from ..extensions import db
from ..models import StockSummary
from . import summary_service, sync_service
from .ledger_service import products_with_entries

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    checked: int = 0
    drifted: list = field(default_factory=list)
    # Products skipped because their lock or the store was unavailable; the next run retries them.
    deferred: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"checked": self.checked, "drifted": self.drifted, "deferred": self.deferred}


def reconcile_summaries(*, tenant_id: Optional[int] = None) -> ReconcileReport:
    """
    Rebuild every summary (and every ledger product lacking one) from the ledger.

    Intended to run daily. Drift is corrected and recorded, never raised. A
    product that cannot be rebuilt right now is deferred and the run goes on.
    """
    q = db.session.query(StockSummary.tenant_id, StockSummary.product_id)
    if tenant_id is not None:
        q = q.filter(StockSummary.tenant_id == tenant_id)
    targets = {(row[0], row[1]) for row in q.all()}
    targets.update(products_with_entries(tenant_id))

    report = ReconcileReport()
    for target_tenant_id, product_id in sorted(targets):
        try:
            _, drift = summary_service.rebuild_with_report(target_tenant_id, product_id)
        except StorageFailure as exc:
            logger.warning(
                "Reconcile deferred tenant=%s product=%s: %s",
                target_tenant_id, product_id, exc,
            )
            report.deferred.append({
                "tenant_id": target_tenant_id,
                "product_id": product_id,
                "kind": exc.kind,
                "message": exc.message,
            })
            continue
        report.checked += 1
        if drift is not None:
            report.drifted.append({"tenant_id": target_tenant_id, "product_id": product_id, **drift})

    logger.info(
        "Reconciled %s summaries, %s drifted, %s deferred",
        report.checked, len(report.drifted), len(report.deferred),
    )
    return report


def cleanup_sync_records() -> int:
    """
    Delete sync records older than the retention window.

    Ledger entries and operation records are preserved.
    """
    deleted = sync_service.purge_expired_records()
    logger.info("Purged %s expired sync records", deleted)
    return deleted
