# Overview: Pytest coverage for the transaction coordinator.

"""
Transaction Coordinator Tests

Proves that an operation either lands completely (ledger entries, summary
updates, audit record, side-effects) or not at all, and that the lifecycle
never leaves a terminal state.
"""

import pytest

from stockledger.errors import (
    InsufficientStockError,
    OperationStateError,
    StorageFailure,
    ValidationError,
)
from stockledger.models import LedgerEntry, OperationRecord, ReviewEvent, StockSummary
from stockledger.models.ledger import MOVEMENT_RETURN, MOVEMENT_STOCK_OUT
from stockledger.services import operation_service, summary_service
from stockledger.services.audit_service import REVIEW_NEGATIVE_OVERRIDE
from stockledger.services.concurrency import get_product_locks
from stockledger.services.operation_service import (
    KIND_APPLY_INVOICE,
    KIND_CREATE_SALE,
    KIND_MANUAL_ADJUST,
    KIND_PROCESS_RETURN,
    STATE_APPLYING,
    STATE_COMMITTED,
    STATE_REJECTED,
    STATE_VALIDATING,
    Operation,
    OperationExecution,
    OperationLine,
    execute,
    get_operation,
)


def _op(kind, *lines, ref="DOC-1", **kwargs):
    return Operation(kind=kind, lines=tuple(lines), reference_id=ref, **kwargs)


def _stock(tenant, product, qty=100, cost=10, ref="INV-0"):
    return execute(tenant.id, _op(
        KIND_APPLY_INVOICE,
        OperationLine(product_id=product.id, quantity=qty, unit_cost_cents=cost),
        ref=ref,
    ))


class TestExecuteCommits:

    def test_invoice_produces_entries_summary_and_audit(self, db_session, tenant, product, second_product):
        result = execute(tenant.id, _op(
            KIND_APPLY_INVOICE,
            OperationLine(product_id=product.id, quantity=100, unit_cost_cents=10),
            OperationLine(product_id=second_product.id, quantity=5, unit_cost_cents=200),
            ref="INV-1",
            created_by="clerk",
        ))

        assert result.state == STATE_COMMITTED
        assert result.history == [STATE_VALIDATING, STATE_APPLYING, STATE_COMMITTED]
        assert len(result.entries) == 2
        assert {e.operation_number for e in result.entries} == {result.operation_number}
        assert result.summaries[product.id].quantity_on_hand == 100
        assert result.summaries[second_product.id].average_cost_cents == 200

        record = get_operation(tenant.id, result.operation_number)
        assert record is not None
        assert record.entry_count == 2
        assert record.reference_kind == "invoice"
        assert record.reference_id == "INV-1"
        assert record.created_by == "clerk"
        assert record.first_sequence == result.entries[0].sequence
        assert record.last_sequence == result.entries[1].sequence

    def test_sale_quantity_recorded_as_stock_out(self, db_session, tenant, product):
        _stock(tenant, product)
        result = execute(tenant.id, _op(
            KIND_CREATE_SALE,
            OperationLine(product_id=product.id, quantity=30, unit_price_cents=15),
        ))

        entry = result.entries[0]
        assert entry.movement_kind == MOVEMENT_STOCK_OUT
        assert entry.quantity_delta == -30
        assert entry.unit_price_cents == 15
        assert result.summaries[product.id].quantity_on_hand == 70
        assert result.summaries[product.id].average_cost_cents == 10

    def test_return_adds_stock(self, db_session, tenant, product):
        _stock(tenant, product, qty=10)
        result = execute(tenant.id, _op(
            KIND_PROCESS_RETURN,
            OperationLine(product_id=product.id, quantity=2),
        ))
        assert result.entries[0].movement_kind == MOVEMENT_RETURN
        assert result.summaries[product.id].quantity_on_hand == 12

    def test_adjustment_accepts_either_sign(self, db_session, tenant, product):
        _stock(tenant, product, qty=10)
        down = execute(tenant.id, _op(KIND_MANUAL_ADJUST, OperationLine(product_id=product.id, quantity=-4)))
        up = execute(tenant.id, _op(KIND_MANUAL_ADJUST, OperationLine(product_id=product.id, quantity=1), ref="DOC-2"))
        assert down.entries[0].quantity_delta == -4
        assert up.summaries[product.id].quantity_on_hand == 7

    def test_ledger_sum_matches_summary(self, db_session, tenant, product):
        _stock(tenant, product, qty=50)
        execute(tenant.id, _op(KIND_CREATE_SALE, OperationLine(product_id=product.id, quantity=20)))
        execute(tenant.id, _op(KIND_PROCESS_RETURN, OperationLine(product_id=product.id, quantity=3), ref="R-1"))

        total = sum(e.quantity_delta for e in db_session.query(LedgerEntry).filter_by(product_id=product.id))
        assert total == summary_service.read(tenant.id, product.id).quantity_on_hand == 33

    def test_result_serializes(self, db_session, tenant, product):
        result = _stock(tenant, product)
        payload = result.to_dict()
        assert payload["state"] == STATE_COMMITTED
        assert payload["operation_number"] == result.operation_number
        assert payload["entries"][0]["quantity_delta"] == 100
        assert payload["audit_record"]["operation_number"] == result.operation_number


class TestValidation:

    @pytest.mark.parametrize("kind,quantity", [
        (KIND_APPLY_INVOICE, -5),
        (KIND_APPLY_INVOICE, 0),
        (KIND_PROCESS_RETURN, -1),
        (KIND_MANUAL_ADJUST, 0),
        (KIND_CREATE_SALE, 0),
    ])
    def test_bad_quantity_rejected(self, db_session, tenant, product, kind, quantity):
        with pytest.raises(ValidationError):
            execute(tenant.id, _op(kind, OperationLine(product_id=product.id, quantity=quantity, unit_cost_cents=10)))
        assert db_session.query(LedgerEntry).count() == 0

    def test_invoice_requires_unit_cost(self, db_session, tenant, product):
        with pytest.raises(ValidationError):
            execute(tenant.id, _op(KIND_APPLY_INVOICE, OperationLine(product_id=product.id, quantity=5)))

    def test_unknown_kind(self, db_session, tenant, product):
        with pytest.raises(ValidationError) as exc_info:
            execute(tenant.id, _op("transfer", OperationLine(product_id=product.id, quantity=5)))
        assert "allowed" in exc_info.value.details

    def test_empty_lines(self, db_session, tenant):
        with pytest.raises(ValidationError):
            execute(tenant.id, _op(KIND_MANUAL_ADJUST))

    def test_missing_reference(self, db_session, tenant, product):
        with pytest.raises(ValidationError):
            execute(tenant.id, _op(KIND_MANUAL_ADJUST, OperationLine(product_id=product.id, quantity=1), ref=" "))

    def test_foreign_product_rejected(self, db_session, tenant, foreign_product):
        with pytest.raises(ValidationError):
            execute(tenant.id, _op(
                KIND_APPLY_INVOICE,
                OperationLine(product_id=foreign_product.id, quantity=5, unit_cost_cents=10),
            ))

    def test_inactive_product_rejected(self, db_session, tenant, product):
        product.is_active = False
        db_session.commit()
        with pytest.raises(ValidationError):
            _stock(tenant, product)

    def test_foreign_customer_rejected(self, db_session, tenant, other_tenant, product, customer):
        with pytest.raises(ValidationError):
            execute(other_tenant.id, _op(
                KIND_MANUAL_ADJUST,
                OperationLine(product_id=product.id, quantity=1),
                customer_id=customer.id,
            ))

    def test_one_bad_line_rejects_whole_operation(self, db_session, tenant, product, second_product):
        with pytest.raises(ValidationError):
            execute(tenant.id, _op(
                KIND_APPLY_INVOICE,
                OperationLine(product_id=product.id, quantity=5, unit_cost_cents=10),
                OperationLine(product_id=second_product.id, quantity=-5, unit_cost_cents=10),
            ))
        assert db_session.query(LedgerEntry).count() == 0
        assert db_session.query(StockSummary).count() == 0

    def test_invoice_total_within_tolerance(self, db_session, tenant, product):
        # Lines total 1000; 1005 is within 1%
        result = execute(tenant.id, _op(
            KIND_APPLY_INVOICE,
            OperationLine(product_id=product.id, quantity=100, unit_cost_cents=10),
            document_total_cents=1005,
        ))
        assert result.state == STATE_COMMITTED

    def test_invoice_total_outside_tolerance(self, db_session, tenant, product):
        with pytest.raises(ValidationError) as exc_info:
            execute(tenant.id, _op(
                KIND_APPLY_INVOICE,
                OperationLine(product_id=product.id, quantity=100, unit_cost_cents=10),
                document_total_cents=1100,
            ))
        assert exc_info.value.details["lines_total_cents"] == 1000
        assert db_session.query(LedgerEntry).count() == 0


class TestStockChecks:

    def test_shortage_rejected_before_any_write(self, db_session, tenant, product):
        _stock(tenant, product, qty=70)
        entries_before = db_session.query(LedgerEntry).count()

        with pytest.raises(InsufficientStockError) as exc_info:
            execute(tenant.id, _op(KIND_CREATE_SALE, OperationLine(product_id=product.id, quantity=100)))

        item = exc_info.value.details["items"][0]
        assert item == {"product_id": product.id, "requested_quantity": 100, "available": 70}
        assert db_session.query(LedgerEntry).count() == entries_before
        assert summary_service.read(tenant.id, product.id).quantity_on_hand == 70

    def test_lines_for_same_product_are_netted(self, db_session, tenant, product):
        _stock(tenant, product, qty=70)
        with pytest.raises(InsufficientStockError) as exc_info:
            execute(tenant.id, _op(
                KIND_CREATE_SALE,
                OperationLine(product_id=product.id, quantity=40),
                OperationLine(product_id=product.id, quantity=40),
            ))
        assert exc_info.value.details["items"][0]["requested_quantity"] == 80

    @pytest.mark.parametrize("quantities", [(-10, 5), (5, -10)])
    def test_mixed_sign_lines_commit_in_any_order(self, db_session, tenant, product, quantities):
        _stock(tenant, product, qty=6)
        result = execute(tenant.id, _op(
            KIND_MANUAL_ADJUST,
            *[OperationLine(product_id=product.id, quantity=q) for q in quantities],
        ))

        assert result.state == STATE_COMMITTED
        assert result.summaries[product.id].quantity_on_hand == 1
        assert [e.quantity_delta for e in result.entries] == list(quantities)
        assert db_session.query(ReviewEvent).filter_by(event_type=REVIEW_NEGATIVE_OVERRIDE).count() == 0

    def test_mixed_sign_lines_short_on_net(self, db_session, tenant, product):
        _stock(tenant, product, qty=6)
        with pytest.raises(InsufficientStockError) as exc_info:
            execute(tenant.id, _op(
                KIND_MANUAL_ADJUST,
                OperationLine(product_id=product.id, quantity=3),
                OperationLine(product_id=product.id, quantity=-10),
            ))
        assert exc_info.value.details["items"][0]["requested_quantity"] == 7
        assert summary_service.read(tenant.id, product.id).quantity_on_hand == 6

    def test_net_on_hand_guard(self):
        summaries = {
            1: StockSummary(quantity_on_hand=-2),
            2: StockSummary(quantity_on_hand=-1),
        }
        # Product 2 was already negative and only received stock
        with pytest.raises(InsufficientStockError) as exc_info:
            operation_service._check_net_on_hand(summaries, {1: -5, 2: 3})
        assert exc_info.value.kind == "stock_shortage"
        assert exc_info.value.details["items"] == [
            {"product_id": 1, "requested_quantity": 5, "available": 3},
        ]
        operation_service._check_net_on_hand(summaries, {1: 4, 2: 3})

    def test_shortage_on_one_line_blocks_all_lines(self, db_session, tenant, product, second_product):
        _stock(tenant, product, qty=10)
        with pytest.raises(InsufficientStockError):
            execute(tenant.id, _op(
                KIND_CREATE_SALE,
                OperationLine(product_id=product.id, quantity=5),
                OperationLine(product_id=second_product.id, quantity=1),
            ))
        assert summary_service.read(tenant.id, product.id).quantity_on_hand == 10

    def test_negative_override_is_applied_and_flagged(self, db_session, tenant, product):
        result = execute(
            tenant.id,
            _op(KIND_CREATE_SALE, OperationLine(product_id=product.id, quantity=5), created_by="manager"),
            allow_negative=True,
        )

        assert result.summaries[product.id].quantity_on_hand == -5
        assert get_operation(tenant.id, result.operation_number).allow_negative is True
        event = db_session.query(ReviewEvent).filter_by(event_type=REVIEW_NEGATIVE_OVERRIDE).one()
        assert event.operation_number == result.operation_number
        assert event.payload_dict()["created_by"] == "manager"


class TestAtomicity:

    def test_side_effect_failure_rolls_back_everything(self, db_session, tenant, product):
        def failing_hook(context):
            assert context.entries
            raise RuntimeError("billing unavailable")

        with pytest.raises(RuntimeError):
            execute(tenant.id, _op(
                KIND_APPLY_INVOICE,
                OperationLine(product_id=product.id, quantity=10, unit_cost_cents=10),
            ), side_effects=failing_hook)

        assert db_session.query(LedgerEntry).count() == 0
        assert db_session.query(StockSummary).count() == 0
        assert db_session.query(OperationRecord).count() == 0

    def test_side_effect_sees_unit_before_commit(self, db_session, tenant, product):
        seen = {}

        def hook(context):
            seen["number"] = context.operation_number
            seen["on_hand"] = context.summaries[product.id].quantity_on_hand
            seen["audit"] = context.audit_record.operation_number

        result = _stock_with_hook(tenant, product, hook)
        assert seen == {"number": result.operation_number, "on_hand": 10, "audit": result.operation_number}

    def test_lock_timeout_is_storage_failure(self, app, db_session, tenant, product, monkeypatch):
        monkeypatch.setitem(app.config, "LOCK_TIMEOUT_SECONDS", 0.05)
        with get_product_locks().hold([(tenant.id, product.id)], timeout=1):
            with pytest.raises(StorageFailure) as exc_info:
                _stock(tenant, product)
        assert exc_info.value.retryable is True
        assert db_session.query(LedgerEntry).count() == 0

    def test_failed_operation_leaves_later_operations_working(self, db_session, tenant, product):
        with pytest.raises(ValidationError):
            execute(tenant.id, _op(KIND_APPLY_INVOICE, OperationLine(product_id=product.id, quantity=-1)))
        result = _stock(tenant, product, qty=3)
        assert result.summaries[product.id].quantity_on_hand == 3


def _stock_with_hook(tenant, product, hook):
    return execute(tenant.id, _op(
        KIND_APPLY_INVOICE,
        OperationLine(product_id=product.id, quantity=10, unit_cost_cents=10),
    ), side_effects=hook)


class TestLifecycle:

    def test_terminal_state_cannot_be_left(self):
        execution = OperationExecution(1, None)
        execution.transition(STATE_APPLYING)
        execution.transition(STATE_COMMITTED)
        assert execution.is_terminal
        with pytest.raises(OperationStateError):
            execution.transition(STATE_APPLYING)

    def test_validating_cannot_commit_directly(self):
        execution = OperationExecution(1, None)
        with pytest.raises(OperationStateError):
            execution.transition(STATE_COMMITTED)

    def test_rejected_is_terminal(self):
        execution = OperationExecution(1, None)
        execution.transition(STATE_REJECTED, ValidationError("bad"))
        assert execution.is_terminal
        assert isinstance(execution.error, ValidationError)
        with pytest.raises(OperationStateError):
            execution.transition(STATE_APPLYING)


class TestOnDemandRebuild:

    def test_rebuild_runs_after_threshold(self, app, db_session, tenant, product, monkeypatch):
        monkeypatch.setitem(app.config, "REBUILD_AFTER_APPLIES", 2)
        _stock(tenant, product, qty=5)
        assert summary_service.read(tenant.id, product.id).applies_since_rebuild == 1

        _stock(tenant, product, qty=5, ref="INV-1")
        summary = summary_service.read(tenant.id, product.id)
        assert summary.applies_since_rebuild == 0
        assert summary.quantity_on_hand == 10
