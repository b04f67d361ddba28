"""
Pytest fixtures for stock ledger backend tests.

Provides test database setup, tenant/product/customer fixtures, and test client.
"""

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Tenant, Product, CustomerAccount


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        # Individual tests opt in to on-demand rebuilds
        'REBUILD_AFTER_APPLIES': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def tenant(db_session):
    """Create Tenant A."""
    t = Tenant(name="Tenant A - Acme Corp", code="ACME", is_active=True)
    db_session.add(t)
    db_session.commit()
    return t


@pytest.fixture(scope='function')
def other_tenant(db_session):
    """Create Tenant B."""
    t = Tenant(name="Tenant B - Beta Inc", code="BETA", is_active=True)
    db_session.add(t)
    db_session.commit()
    return t


@pytest.fixture(scope='function')
def product(db_session, tenant):
    """Create a product in Tenant A with a catalog price and reorder threshold."""
    p = Product(
        tenant_id=tenant.id,
        sku="PROD-A-001",
        name="Product A",
        price_cents=1500,
        reorder_threshold=10,
    )
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture(scope='function')
def second_product(db_session, tenant):
    """Create a second product in Tenant A."""
    p = Product(
        tenant_id=tenant.id,
        sku="PROD-A-002",
        name="Product A2",
        price_cents=800,
    )
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture(scope='function')
def foreign_product(db_session, other_tenant):
    """Create a product in Tenant B."""
    p = Product(
        tenant_id=other_tenant.id,
        sku="PROD-B-001",
        name="Product B",
        price_cents=2000,
    )
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture(scope='function')
def customer(db_session, tenant):
    """Create a customer account in Tenant A with a 1000-cent credit limit."""
    c = CustomerAccount(
        tenant_id=tenant.id,
        name="Corner Shop",
        credit_limit_cents=1000,
        outstanding_balance_cents=0,
    )
    db_session.add(c)
    db_session.commit()
    return c
