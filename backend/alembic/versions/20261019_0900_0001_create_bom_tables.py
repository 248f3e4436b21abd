"""Create BOM catalog and deduction ledger tables

Revision ID: 0001_create_bom_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_create_bom_tables'
down_revision = None
branch_labels = None
depends_on = None

component_type = sa.Enum(
    'COMMERCE_PRODUCT', 'PRODUCT_VARIATION', 'INTERNAL_PRODUCT', name='componenttype'
)
ledger_status = sa.Enum(
    'EXECUTED', 'COMPLETED', 'ROLLED_BACK', 'REVERSED', name='ledgerstatus'
)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade():
    op.create_table('commerce_store_credentials',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('store_url', sa.String(length=255), nullable=False),
        sa.Column('consumer_key', sa.String(length=255), nullable=False),
        sa.Column('consumer_secret', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_verified_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_commerce_store_credentials_account_id', 'commerce_store_credentials', ['account_id'], unique=True)

    op.create_table('commerce_products',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('woo_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('product_type', sa.String(length=30), nullable=False, server_default='simple'),
        sa.Column('stock_quantity', sa.Float(), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'woo_id', name='uq_commerce_product_account_woo')
    )
    op.create_index('ix_commerce_products_account_id', 'commerce_products', ['account_id'])

    op.create_table('product_variations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=36), nullable=False),
        sa.Column('woo_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('stock_quantity', sa.Float(), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['product_id'], ['commerce_products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'woo_id', name='uq_variation_product_woo')
    )

    op.create_table('internal_products',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('stock_quantity', sa.Float(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_internal_products_account_id', 'internal_products', ['account_id'])

    op.create_table('boms',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=36), nullable=False),
        sa.Column('variation_id', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['product_id'], ['commerce_products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'variation_id', name='uq_bom_product_variation')
    )
    op.create_index('ix_boms_product_id', 'boms', ['product_id'])

    op.create_table('bom_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('bom_id', sa.Integer(), nullable=False),
        sa.Column('child_product_id', sa.String(length=36), nullable=True),
        sa.Column('child_variation_id', sa.Integer(), nullable=True),
        sa.Column('internal_product_id', sa.String(length=36), nullable=True),
        sa.Column('quantity', sa.Numeric(precision=12, scale=4), nullable=False, server_default='1'),
        sa.Column('waste_factor', sa.Numeric(precision=6, scale=4), nullable=False, server_default='0'),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('deactivated_reason', sa.String(length=50), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            '(child_product_id IS NULL) <> (internal_product_id IS NULL)',
            name='ck_bom_item_single_component'
        ),
        sa.CheckConstraint(
            'child_variation_id IS NULL OR child_product_id IS NOT NULL',
            name='ck_bom_item_variation_has_parent'
        ),
        sa.ForeignKeyConstraint(['bom_id'], ['boms.id']),
        sa.ForeignKeyConstraint(['child_product_id'], ['commerce_products.id']),
        sa.ForeignKeyConstraint(['child_variation_id'], ['product_variations.id']),
        sa.ForeignKeyConstraint(['internal_product_id'], ['internal_products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bom_items_bom_id', 'bom_items', ['bom_id'])
    op.create_index('ix_bom_items_child_product', 'bom_items', ['child_product_id', 'child_variation_id'])
    op.create_index('ix_bom_items_internal_product_id', 'bom_items', ['internal_product_id'])

    op.create_table('bom_deduction_ledger',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('component_type', component_type, nullable=False),
        sa.Column('component_id', sa.String(length=36), nullable=False),
        sa.Column('component_name', sa.String(length=255), nullable=False),
        sa.Column('woo_id', sa.Integer(), nullable=True),
        sa.Column('parent_woo_id', sa.Integer(), nullable=True),
        sa.Column('quantity_deducted', sa.Float(), nullable=False),
        sa.Column('previous_stock', sa.Float(), nullable=False),
        sa.Column('new_stock', sa.Float(), nullable=False),
        sa.Column('status', ledger_status, nullable=False, server_default='EXECUTED'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('rolled_back_at', sa.DateTime(), nullable=True),
        sa.Column('reversed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bom_ledger_account_order_status', 'bom_deduction_ledger', ['account_id', 'order_id', 'status'])
    op.create_index('ix_bom_ledger_status_created', 'bom_deduction_ledger', ['status', 'created_at'])


def downgrade():
    op.drop_index('ix_bom_ledger_status_created', table_name='bom_deduction_ledger')
    op.drop_index('ix_bom_ledger_account_order_status', table_name='bom_deduction_ledger')
    op.drop_table('bom_deduction_ledger')
    op.drop_index('ix_bom_items_internal_product_id', table_name='bom_items')
    op.drop_index('ix_bom_items_child_product', table_name='bom_items')
    op.drop_index('ix_bom_items_bom_id', table_name='bom_items')
    op.drop_table('bom_items')
    op.drop_index('ix_boms_product_id', table_name='boms')
    op.drop_table('boms')
    op.drop_index('ix_internal_products_account_id', table_name='internal_products')
    op.drop_table('internal_products')
    op.drop_table('product_variations')
    op.drop_index('ix_commerce_products_account_id', table_name='commerce_products')
    op.drop_table('commerce_products')
    op.drop_index('ix_commerce_store_credentials_account_id', table_name='commerce_store_credentials')
    op.drop_table('commerce_store_credentials')

    ledger_status.drop(op.get_bind(), checkfirst=True)
    component_type.drop(op.get_bind(), checkfirst=True)
