"""initial ledger schema

Revision ID: sl001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the stock ledger schema:
- tenants, products, customer_accounts: master data read by the core
- ledger_entries: append-only signed stock movements, sequenced per tenant
- stock_summaries: derived per-product position (rebuildable from the ledger)
- operation_records, review_events: audit spine
- sync_records: offline submission deduplication state
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'sl001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # tenants
    # ============================================================================
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_tenants_code', 'tenants', ['code'], unique=True)

    # ============================================================================
    # products
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('reorder_threshold', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'sku', name='uq_products_tenant_sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_tenant_id', 'products', ['tenant_id'])
    op.create_index('ix_products_tenant_active', 'products', ['tenant_id', 'is_active'])

    # ============================================================================
    # customer_accounts
    # ============================================================================
    op.create_table(
        'customer_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('credit_limit_cents', sa.Integer(), nullable=True),
        sa.Column('outstanding_balance_cents', sa.Integer(), nullable=False),
        sa.Column('flagged_for_review', sa.Boolean(), nullable=False),
        sa.Column('flagged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_customer_accounts_tenant_id', 'customer_accounts', ['tenant_id'])
    op.create_index('ix_customer_accounts_flagged_for_review', 'customer_accounts', ['flagged_for_review'])

    # ============================================================================
    # ledger_entries: append-only, one row per signed movement
    # ============================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('movement_kind', sa.String(length=16), nullable=False),
        sa.Column('quantity_delta', sa.Integer(), nullable=False),
        sa.Column('unit_cost_cents', sa.Integer(), nullable=True),
        sa.Column('unit_price_cents', sa.Integer(), nullable=True),
        sa.Column('reference_kind', sa.String(length=32), nullable=False),
        sa.Column('reference_id', sa.String(length=64), nullable=False),
        sa.Column('operation_number', sa.String(length=32), nullable=False),
        sa.Column('batch_number', sa.String(length=64), nullable=True),
        sa.Column('expiry_date', sa.Date(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('client_origin_id', sa.String(length=128), nullable=True),
        sa.Column('client_recorded_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'sequence', name='uq_ledger_tenant_sequence'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_ledger_entries_tenant_id', 'ledger_entries', ['tenant_id'])
    op.create_index('ix_ledger_entries_product_id', 'ledger_entries', ['product_id'])
    op.create_index('ix_ledger_entries_movement_kind', 'ledger_entries', ['movement_kind'])
    op.create_index('ix_ledger_entries_reference_id', 'ledger_entries', ['reference_id'])
    op.create_index('ix_ledger_entries_operation_number', 'ledger_entries', ['operation_number'])
    op.create_index('ix_ledger_entries_client_origin_id', 'ledger_entries', ['client_origin_id'])
    op.create_index('ix_ledger_tenant_product_sequence', 'ledger_entries',
                    ['tenant_id', 'product_id', 'sequence'])
    op.create_index('ix_ledger_tenant_product_recorded', 'ledger_entries',
                    ['tenant_id', 'product_id', 'recorded_at'])

    # ============================================================================
    # stock_summaries: derived cache, one row per (tenant, product)
    # ============================================================================
    op.create_table(
        'stock_summaries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity_on_hand', sa.Integer(), nullable=False),
        sa.Column('quantity_reserved', sa.Integer(), nullable=False),
        sa.Column('quantity_available', sa.Integer(), nullable=False),
        sa.Column('last_stock_in_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_stock_out_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('latest_unit_cost_cents', sa.Integer(), nullable=True),
        sa.Column('average_cost_cents', sa.Integer(), nullable=True),
        sa.Column('total_valuation_cents', sa.Integer(), nullable=False),
        sa.Column('last_sequence', sa.Integer(), nullable=True),
        sa.Column('applies_since_rebuild', sa.Integer(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'product_id', name='uq_stock_summaries_tenant_product'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_summaries_tenant_id', 'stock_summaries', ['tenant_id'])
    op.create_index('ix_stock_summaries_product_id', 'stock_summaries', ['product_id'])
    op.create_index('ix_stock_summaries_tenant_available', 'stock_summaries',
                    ['tenant_id', 'quantity_available'])

    # ============================================================================
    # operation_records / review_events: audit spine
    # ============================================================================
    op.create_table(
        'operation_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('operation_number', sa.String(length=32), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('state', sa.String(length=16), nullable=False),
        sa.Column('reference_kind', sa.String(length=32), nullable=False),
        sa.Column('reference_id', sa.String(length=64), nullable=False),
        sa.Column('entry_count', sa.Integer(), nullable=False),
        sa.Column('first_sequence', sa.Integer(), nullable=False),
        sa.Column('last_sequence', sa.Integer(), nullable=False),
        sa.Column('allow_negative', sa.Boolean(), nullable=False),
        sa.Column('client_origin_id', sa.String(length=128), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('committed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customer_accounts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'operation_number', name='uq_operation_records_tenant_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_operation_records_tenant_id', 'operation_records', ['tenant_id'])
    op.create_index('ix_operation_records_kind', 'operation_records', ['kind'])
    op.create_index('ix_operation_records_client_origin_id', 'operation_records', ['client_origin_id'])
    op.create_index('ix_operation_records_tenant_reference', 'operation_records',
                    ['tenant_id', 'reference_kind', 'reference_id'])

    op.create_table(
        'review_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('operation_number', sa.String(length=32), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_review_events_tenant_id', 'review_events', ['tenant_id'])
    op.create_index('ix_review_events_event_type', 'review_events', ['event_type'])
    op.create_index('ix_review_events_operation_number', 'review_events', ['operation_number'])
    op.create_index('ix_review_events_tenant_created', 'review_events', ['tenant_id', 'created_at'])

    # ============================================================================
    # sync_records: offline deduplication state with retention
    # ============================================================================
    op.create_table(
        'sync_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('client_origin_id', sa.String(length=128), nullable=False),
        sa.Column('operation_number', sa.String(length=32), nullable=True),
        sa.Column('outcome', sa.String(length=16), nullable=False),
        sa.Column('conflict_kind', sa.String(length=32), nullable=True),
        sa.Column('error_kind', sa.String(length=32), nullable=True),
        sa.Column('message', sa.String(length=255), nullable=True),
        sa.Column('client_recorded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'client_origin_id', name='uq_sync_records_tenant_client_origin'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sync_records_tenant_id', 'sync_records', ['tenant_id'])
    op.create_index('ix_sync_records_outcome', 'sync_records', ['outcome'])
    op.create_index('ix_sync_records_expires', 'sync_records', ['expires_at'])


def downgrade():
    op.drop_table('sync_records')
    op.drop_table('review_events')
    op.drop_table('operation_records')
    op.drop_table('stock_summaries')
    op.drop_table('ledger_entries')
    op.drop_table('customer_accounts')
    op.drop_table('products')
    op.drop_table('tenants')
