# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
#
# Tenant and master data:
# - python -m flask tenants list
# - python -m flask tenants create --name "Acme Corp" --code "ACME"
# - python -m flask products create --tenant-id 1 --sku "P-001" --name "Widget" --price-cents 1500 --reorder-threshold 10
# - python -m flask customers create --tenant-id 1 --name "Corner Shop" --credit-limit-cents 50000
#
# Inventory maintenance:
# - python -m flask inventory rebuild --tenant-id 1 --product-id 3
#   Rebuild one product's summary from the ledger.
# - python -m flask inventory reconcile [--tenant-id 1]
#   Daily drift correction: rebuild every summary and report drift.
# - python -m flask inventory low-stock --tenant-id 1
#
# Sync maintenance:
# - python -m flask sync purge
#   Delete sync records past the retention window.

import click
from flask.cli import with_appcontext

from .errors import LedgerCoreError
from .extensions import db
from .models import Tenant, Product, CustomerAccount, StockSummary
from .services import maintenance_service, summary_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Database tables created")


# =============================================================================
# TENANT / MASTER DATA COMMANDS
# =============================================================================

@click.group('tenants')
def tenants_group():
    """Tenant management commands."""


@tenants_group.command('list')
@with_appcontext
def list_tenants():
    """List all tenants."""
    tenants = db.session.query(Tenant).order_by(Tenant.id).all()

    if not tenants:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Products'}")
    click.echo("="*70)
    for tenant in tenants:
        product_count = db.session.query(Product).filter_by(tenant_id=tenant.id).count()
        click.echo(f"{tenant.id:<5} {tenant.name:<30} {tenant.code:<15} {product_count}")
    click.echo("="*70 + "\n")


@tenants_group.command('create')
@click.option('--name', required=True, help='Tenant name')
@click.option('--code', required=True, help='Short code (unique)')
@with_appcontext
def create_tenant_cli(name, code):
    """Create a new tenant."""
    existing = db.session.query(Tenant).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Tenant with code '{code}' already exists")
        return

    tenant = Tenant(name=name, code=code, is_active=True)
    db.session.add(tenant)
    db.session.commit()

    click.echo(f"PASS Created tenant: {tenant.name} (ID: {tenant.id}, Code: {tenant.code})")


@click.group('products')
def products_group():
    """Product master data commands."""


@products_group.command('create')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@click.option('--sku', required=True, help='SKU (unique within tenant)')
@click.option('--name', required=True, help='Product name')
@click.option('--price-cents', type=int, default=None, help='Catalog price in cents')
@click.option('--reorder-threshold', type=int, default=None, help='Low-stock threshold')
@with_appcontext
def create_product_cli(tenant_id, sku, name, price_cents, reorder_threshold):
    """Create a product for a tenant."""
    if db.session.query(Tenant).filter_by(id=tenant_id).first() is None:
        click.echo(f"FAIL Tenant ID {tenant_id} not found")
        return
    if db.session.query(Product).filter_by(tenant_id=tenant_id, sku=sku).first():
        click.echo(f"FAIL SKU '{sku}' already exists for tenant {tenant_id}")
        return

    product = Product(
        tenant_id=tenant_id,
        sku=sku,
        name=name,
        price_cents=price_cents,
        reorder_threshold=reorder_threshold,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product: {product.sku} (ID: {product.id})")


@click.group('customers')
def customers_group():
    """Customer credit account commands."""


@customers_group.command('create')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@click.option('--name', required=True, help='Customer name')
@click.option('--credit-limit-cents', type=int, default=None, help='Credit limit in cents (advisory)')
@with_appcontext
def create_customer_cli(tenant_id, name, credit_limit_cents):
    """Create a customer credit account."""
    if db.session.query(Tenant).filter_by(id=tenant_id).first() is None:
        click.echo(f"FAIL Tenant ID {tenant_id} not found")
        return

    customer = CustomerAccount(
        tenant_id=tenant_id,
        name=name,
        credit_limit_cents=credit_limit_cents,
        outstanding_balance_cents=0,
    )
    db.session.add(customer)
    db.session.commit()
    click.echo(f"PASS Created customer account: {customer.name} (ID: {customer.id})")


# =============================================================================
# INVENTORY MAINTENANCE COMMANDS
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Summary rebuild and drift correction commands."""


@inventory_group.command('rebuild')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@click.option('--product-id', type=int, required=True, help='Product ID')
@with_appcontext
def rebuild_cli(tenant_id, product_id):
    """Rebuild one product's summary from the ledger."""
    try:
        summary, drift = summary_service.rebuild_with_report(tenant_id, product_id)
    except LedgerCoreError as exc:
        click.echo(f"FAIL {exc.kind}: {exc.message}")
        raise SystemExit(1)

    state = "drift corrected" if drift else "no drift"
    click.echo(
        f"PASS Rebuilt product {product_id}: on_hand={summary.quantity_on_hand} "
        f"avg_cost_cents={summary.average_cost_cents} ({state})"
    )


@inventory_group.command('reconcile')
@click.option('--tenant-id', type=int, default=None, help='Limit to one tenant')
@with_appcontext
def reconcile_cli(tenant_id):
    """Rebuild every summary from the ledger (scheduled drift correction)."""
    report = maintenance_service.reconcile_summaries(tenant_id=tenant_id)
    click.echo(f"PASS Checked {report.checked} summaries; {len(report.drifted)} drifted")
    for item in report.drifted:
        click.echo(
            f"  tenant={item['tenant_id']} product={item['product_id']} "
            f"cached_on_hand={item['cached']['quantity_on_hand']} "
            f"rebuilt_on_hand={item['rebuilt']['quantity_on_hand']}"
        )
    for item in report.deferred:
        click.echo(f"  deferred tenant={item['tenant_id']} product={item['product_id']}: {item['message']}")


@inventory_group.command('low-stock')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@with_appcontext
def low_stock_cli(tenant_id):
    """List products whose available quantity is below their reorder threshold."""
    summaries: list[StockSummary] = summary_service.list_below_reorder_threshold(tenant_id)
    if not summaries:
        click.echo("No products below reorder threshold.")
        return
    for s in summaries:
        click.echo(
            f"{s.product.sku:<20} available={s.quantity_available:<8} "
            f"threshold={s.product.reorder_threshold}"
        )


# =============================================================================
# SYNC MAINTENANCE COMMANDS
# =============================================================================

@click.group('sync')
def sync_group():
    """Offline sync maintenance commands."""


@sync_group.command('purge')
@with_appcontext
def purge_sync_cli():
    """Delete sync records past the retention window."""
    deleted = maintenance_service.cleanup_sync_records()
    click.echo(f"PASS Purged {deleted} expired sync records")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tenants_group)
    app.cli.add_command(products_group)
    app.cli.add_command(customers_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(sync_group)
