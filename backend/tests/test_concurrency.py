# Overview: Threaded concurrency coverage against a file-backed SQLite database.

"""
Concurrency Tests

Each worker runs in its own thread with its own app context and session,
the way concurrent requests would. Uses a temporary SQLite file so
connections are genuinely separate.
"""

import threading

import pytest

from stockledger import create_app
from stockledger.errors import InsufficientStockError, StorageFailure
from stockledger.extensions import db
from stockledger.models import LedgerEntry, Product, Tenant
from stockledger.services import summary_service, sync_service
from stockledger.services.concurrency import RowLockRegistry
from stockledger.services.ledger_service import signed_quantity_sum
from stockledger.services.operation_service import (
    KIND_APPLY_INVOICE,
    KIND_CREATE_SALE,
    Operation,
    OperationLine,
    execute,
)
from stockledger.services.sync_service import SyncItem


@pytest.fixture
def file_app(tmp_path):
    db_path = tmp_path / "concurrency.db"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{db_path}",
        'REBUILD_AFTER_APPLIES': 0,
        'LOCK_TIMEOUT_SECONDS': 30,
    })
    with app.app_context():
        db.create_all()
        tenant = Tenant(name="Concurrency Tenant", code="CONC")
        db.session.add(tenant)
        db.session.commit()
        products = []
        for i in range(2):
            p = Product(tenant_id=tenant.id, sku=f"CONCUR-{i}", name=f"Concurrent Product {i}")
            db.session.add(p)
            products.append(p)
        db.session.commit()
        app.config["TEST_IDS"] = {"tenant": tenant.id, "products": [p.id for p in products]}

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.session.remove()
        db.engine.dispose()


def _run_threads(app, targets):
    results = []
    lock = threading.Lock()

    def runner(target):
        with app.app_context():
            try:
                value = target()
                with lock:
                    results.append(value)
            except Exception as exc:
                with lock:
                    results.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=runner, args=(t,)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def _seed(app, product_id, qty):
    ids = app.config["TEST_IDS"]
    with app.app_context():
        execute(ids["tenant"], Operation(
            kind=KIND_APPLY_INVOICE,
            lines=(OperationLine(product_id=product_id, quantity=qty, unit_cost_cents=100),),
            reference_id="SEED",
        ))
        db.session.remove()


def _sale(tenant_id, product_id, qty, ref):
    return lambda: execute(tenant_id, Operation(
        kind=KIND_CREATE_SALE,
        lines=(OperationLine(product_id=product_id, quantity=qty),),
        reference_id=ref,
    ))


def test_concurrent_sales_never_oversell(file_app):
    ids = file_app.config["TEST_IDS"]
    product_id = ids["products"][0]
    _seed(file_app, product_id, 20)

    results = _run_threads(file_app, [
        _sale(ids["tenant"], product_id, 3, f"S-{i}") for i in range(10)
    ])

    committed = [r for r in results if not isinstance(r, Exception)]
    shortages = [r for r in results if isinstance(r, InsufficientStockError)]
    assert len(committed) == 6
    assert len(shortages) == 4

    with file_app.app_context():
        summary = summary_service.read(ids["tenant"], product_id)
        assert summary.quantity_on_hand == 2
        assert signed_quantity_sum(tenant_id=ids["tenant"], product_id=product_id) == 2


def test_concurrent_appends_are_strictly_ordered(file_app):
    ids = file_app.config["TEST_IDS"]
    product_id = ids["products"][0]
    _seed(file_app, product_id, 100)

    results = _run_threads(file_app, [
        _sale(ids["tenant"], product_id, 1, f"S-{i}") for i in range(10)
    ])
    assert not [r for r in results if isinstance(r, Exception)]

    with file_app.app_context():
        entries = (
            LedgerEntry.query
            .filter_by(tenant_id=ids["tenant"])
            .order_by(LedgerEntry.sequence)
            .all()
        )
        sequences = [e.sequence for e in entries]
        stamps = [e.recorded_at for e in entries]
        assert len(set(sequences)) == len(sequences) == 11
        assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))
        assert len({r.operation_number for r in results}) == 10

        summary, drift = summary_service.rebuild_with_report(ids["tenant"], product_id)
        assert drift is None
        assert summary.quantity_on_hand == 90


def test_disjoint_products_proceed_independently(file_app):
    ids = file_app.config["TEST_IDS"]
    first, second = ids["products"]
    _seed(file_app, first, 10)
    _seed(file_app, second, 10)

    results = _run_threads(file_app, [
        _sale(ids["tenant"], first, 1, "A-1"),
        _sale(ids["tenant"], second, 1, "B-1"),
        _sale(ids["tenant"], first, 1, "A-2"),
        _sale(ids["tenant"], second, 1, "B-2"),
    ])
    assert not [r for r in results if isinstance(r, Exception)]

    with file_app.app_context():
        assert summary_service.read(ids["tenant"], first).quantity_on_hand == 8
        assert summary_service.read(ids["tenant"], second).quantity_on_hand == 8


def test_racing_resubmissions_apply_once(file_app):
    ids = file_app.config["TEST_IDS"]
    product_id = ids["products"][0]
    _seed(file_app, product_id, 50)

    def submit():
        item = SyncItem(
            client_origin_id="offline-sale-1",
            operation=Operation(
                kind=KIND_CREATE_SALE,
                lines=(OperationLine(product_id=product_id, quantity=5),),
                reference_id="SALE-OFFLINE-1",
            ),
        )
        return sync_service.submit_batch(ids["tenant"], [item])[0]

    results = _run_threads(file_app, [submit for _ in range(5)])
    assert not [r for r in results if isinstance(r, Exception)]

    outcomes = sorted(r.outcome for r in results)
    assert outcomes == ["applied", "duplicate", "duplicate", "duplicate", "duplicate"]
    assert len({r.operation_number for r in results}) == 1

    with file_app.app_context():
        assert summary_service.read(ids["tenant"], product_id).quantity_on_hand == 45


def test_lock_registry_releases_idle_keys():
    registry = RowLockRegistry()

    with registry.hold([(1, 10), (1, 11)], timeout=1):
        assert len(registry) == 2
    assert len(registry) == 0

    with registry.hold([(1, 10)], timeout=1):
        with pytest.raises(StorageFailure):
            with registry.hold([(1, 10), (1, 9)], timeout=0.05):
                pass
        # The timed-out attempt released what it took and left no waiter behind
        assert len(registry) == 1
    assert len(registry) == 0


def test_lock_registry_keeps_lock_while_waiter_queued():
    registry = RowLockRegistry()
    entered = threading.Event()
    release = threading.Event()
    done = []

    def holder():
        with registry.hold([(1, 10)], timeout=1):
            entered.set()
            release.wait(5)

    def waiter():
        with registry.hold([(1, 10)], timeout=5):
            done.append(True)

    first = threading.Thread(target=holder)
    first.start()
    entered.wait(5)
    second = threading.Thread(target=waiter)
    second.start()
    release.set()
    first.join(5)
    second.join(5)

    assert done == [True]
    assert len(registry) == 0
