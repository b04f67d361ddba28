# Overview: Pytest coverage for scheduled maintenance and CLI commands.

from datetime import timedelta

from stockledger.models import Product, ReviewEvent, StockSummary, SyncRecord, Tenant
from stockledger.services import maintenance_service, summary_service
from stockledger.services.audit_service import REVIEW_DRIFT_CORRECTED
from stockledger.services.concurrency import get_product_locks
from stockledger.services.operation_service import (
    KIND_APPLY_INVOICE,
    Operation,
    OperationLine,
    execute,
)
from stockledger.time_utils import utcnow


def _stock(tenant, product, qty=10, ref="INV-1"):
    return execute(tenant.id, Operation(
        kind=KIND_APPLY_INVOICE,
        lines=(OperationLine(product_id=product.id, quantity=qty, unit_cost_cents=100),),
        reference_id=ref,
    ))


class TestReconcile:

    def test_reconcile_reports_and_fixes_drift(self, db_session, tenant, product, second_product):
        _stock(tenant, product)
        _stock(tenant, second_product, ref="INV-2")

        broken = summary_service.read(tenant.id, second_product.id)
        broken.quantity_on_hand = 1
        broken.quantity_available = 1
        db_session.commit()

        report = maintenance_service.reconcile_summaries(tenant_id=tenant.id)

        assert report.checked == 2
        assert [d["product_id"] for d in report.drifted] == [second_product.id]
        assert summary_service.read(tenant.id, second_product.id).quantity_on_hand == 10
        assert db_session.query(ReviewEvent).filter_by(event_type=REVIEW_DRIFT_CORRECTED).count() == 1

    def test_busy_product_is_deferred_and_run_continues(
        self, app, db_session, tenant, product, second_product, monkeypatch,
    ):
        _stock(tenant, product)
        _stock(tenant, second_product, ref="INV-2")

        broken = summary_service.read(tenant.id, second_product.id)
        broken.quantity_on_hand = 999
        broken.quantity_available = 999
        db_session.commit()

        monkeypatch.setitem(app.config, "LOCK_TIMEOUT_SECONDS", 0.05)
        with get_product_locks().hold([(tenant.id, product.id)], timeout=1):
            report = maintenance_service.reconcile_summaries(tenant_id=tenant.id)

        assert report.checked == 1
        assert [d["product_id"] for d in report.deferred] == [product.id]
        assert report.deferred[0]["kind"] == "storage_failure"
        assert [d["product_id"] for d in report.drifted] == [second_product.id]
        assert summary_service.read(tenant.id, second_product.id).quantity_on_hand == 10

    def test_reconcile_restores_missing_summary(self, db_session, tenant, product):
        _stock(tenant, product)
        db_session.query(StockSummary).delete()
        db_session.commit()

        report = maintenance_service.reconcile_summaries()
        assert report.checked == 1
        assert report.drifted == []
        assert summary_service.read(tenant.id, product.id).quantity_on_hand == 10

    def test_cleanup_sync_records(self, db_session, tenant):
        now = utcnow()
        db_session.add(SyncRecord(
            tenant_id=tenant.id,
            client_origin_id="old",
            outcome="applied",
            created_at=now - timedelta(days=40),
            expires_at=now - timedelta(days=10),
        ))
        db_session.add(SyncRecord(
            tenant_id=tenant.id,
            client_origin_id="fresh",
            outcome="applied",
            created_at=now,
            expires_at=now + timedelta(days=30),
        ))
        db_session.commit()

        assert maintenance_service.cleanup_sync_records() == 1
        assert [r.client_origin_id for r in db_session.query(SyncRecord).all()] == ["fresh"]


class TestCli:

    def test_create_tenant_and_product(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["tenants", "create", "--name", "Gamma", "--code", "GAMMA"])
        assert "PASS" in result.output
        tenant = db_session.query(Tenant).filter_by(code="GAMMA").one()

        result = runner.invoke(args=[
            "products", "create",
            "--tenant-id", str(tenant.id),
            "--sku", "G-1",
            "--name", "Gamma Widget",
            "--reorder-threshold", "5",
        ])
        assert "PASS" in result.output
        assert db_session.query(Product).filter_by(tenant_id=tenant.id, sku="G-1").count() == 1

    def test_duplicate_tenant_code(self, app, db_session, tenant):
        result = app.test_cli_runner().invoke(args=["tenants", "create", "--name", "Again", "--code", tenant.code])
        assert "FAIL" in result.output

    def test_rebuild_and_reconcile_commands(self, app, db_session, tenant, product):
        _stock(tenant, product)
        runner = app.test_cli_runner()

        result = runner.invoke(args=["inventory", "rebuild", "--tenant-id", str(tenant.id), "--product-id", str(product.id)])
        assert "PASS" in result.output
        assert "no drift" in result.output

        result = runner.invoke(args=["inventory", "reconcile"])
        assert "PASS Checked 1 summaries; 0 drifted" in result.output

    def test_sync_purge_command(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["sync", "purge"])
        assert "PASS Purged 0" in result.output
