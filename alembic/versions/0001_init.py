from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'locations',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('is_default', sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_locations_code', 'locations', ['code'], unique=True)

    op.create_table(
        'product_variants',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('sku', sa.String(100), nullable=False),
        sa.Column('title', sa.String(200), nullable=True),
    )
    op.create_index('ix_product_variants_sku', 'product_variants', ['sku'], unique=True)

    op.create_table(
        'stock_levels',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('variant_id', sa.Integer, sa.ForeignKey('product_variants.id'), nullable=False),
        sa.Column('location_id', sa.Integer, sa.ForeignKey('locations.id'), nullable=False),
        sa.Column('on_hand', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('variant_id', 'location_id', name='ux_stock_levels_variant_location'),
    )
    op.create_index('ix_stock_levels_variant_id', 'stock_levels', ['variant_id'])
    op.create_index('ix_stock_levels_location_id', 'stock_levels', ['location_id'])

    op.create_table(
        'inventory_movements',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('variant_id', sa.Integer, sa.ForeignKey('product_variants.id'), nullable=False),
        sa.Column('location_id', sa.Integer, sa.ForeignKey('locations.id'), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('quantity_delta', sa.Integer, nullable=False),
        sa.Column('quantity_before', sa.Integer, nullable=False),
        sa.Column('quantity_after', sa.Integer, nullable=False),
        sa.Column('reference_type', sa.String(50), nullable=True),
        sa.Column('reference_id', sa.String(100), nullable=True),
        sa.Column('note', sa.Text, nullable=True),
        sa.Column('occurred_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint(
            'reference_type', 'reference_id', 'type', 'variant_id', 'location_id',
            name='ux_inventory_movements_reference',
        ),
    )
    op.create_index('ix_inventory_movements_type', 'inventory_movements', ['type'])
    op.create_index('ix_inventory_movements_occurred_at', 'inventory_movements', ['occurred_at'])
    op.create_index('ix_inventory_movements_variant_location', 'inventory_movements', ['variant_id', 'location_id'])

    op.create_table(
        'failed_inventory_events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON, nullable=False),
        sa.Column('error_type', sa.String(100), nullable=False),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('resolved_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_failed_inventory_events_event_type', 'failed_inventory_events', ['event_type'])
    op.create_index('ix_failed_inventory_events_status', 'failed_inventory_events', ['status'])

    op.create_table(
        'integrations',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('settings', sa.JSON, nullable=False),
    )
    op.create_index('ix_integrations_provider', 'integrations', ['provider'])

def downgrade():
    op.drop_table('integrations')
    op.drop_table('failed_inventory_events')
    op.drop_table('inventory_movements')
    op.drop_table('stock_levels')
    op.drop_table('product_variants')
    op.drop_table('locations')
