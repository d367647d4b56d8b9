from alembic import op
import sqlalchemy as sa

revision = "20261019093000"
down_revision = None

NOW_UTC = sa.text("(now() at time zone 'utc')")

def upgrade():
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('custom_id', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Pending'),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='KES'),
        sa.Column('payment_provider', sa.String(length=32), nullable=True),
        sa.Column('provider_reference', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW_UTC),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW_UTC),
    )
    op.create_index('ix_orders_custom_id', 'orders', ['custom_id'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('book_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('author', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price_at_purchase', sa.BigInteger(), nullable=False),
        sa.Column('cover_image', sa.String(length=1024), nullable=False, server_default=''),
        sa.Column('download_url', sa.String(length=1024), nullable=True),
    )
    op.create_table(
        'order_sequences',
        sa.Column('month_key', sa.String(length=6), primary_key=True),
        sa.Column('last_value', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_table(
        'payout_configs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('phone', sa.String(length=16), nullable=False),
        sa.Column('payout_percentage', sa.Float(), nullable=False),
        sa.Column('payout_frequency', sa.String(length=16), nullable=False, server_default='monthly'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_payout_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW_UTC),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW_UTC),
    )
    op.create_index('ix_payout_configs_is_active', 'payout_configs', ['is_active'])
    op.create_table(
        'payout_attempts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('config_id', sa.Integer(), nullable=False),
        sa.Column('external_reference', sa.String(length=128), nullable=False, unique=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('fee', sa.BigInteger(), nullable=False),
        sa.Column('balance_before', sa.Float(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('provider_response', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW_UTC),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW_UTC),
    )
    op.create_index('ix_payout_attempts_config_id', 'payout_attempts', ['config_id'])

def downgrade():
    op.drop_table('payout_attempts')
    op.drop_table('payout_configs')
    op.drop_table('order_sequences')
    op.drop_table('order_items')
    op.drop_table('orders')
