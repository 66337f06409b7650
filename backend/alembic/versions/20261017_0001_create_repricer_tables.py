"""create users, marketplace_accounts, listings and price_reduction_log

Revision ID: repricer_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'repricer_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('vacation_mode', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'marketplace_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('app_id', sa.Text(), nullable=True),
        sa.Column('cert_id', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('connection_status', sa.String(20), nullable=False, server_default='disconnected'),
        sa.Column('connected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ebay_user_id', sa.Text(), nullable=True),
        sa.Column('last_error_code', sa.String(64), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('last_error_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        # refresh token present iff connected
        sa.CheckConstraint(
            "(connection_status = 'connected') = (refresh_token IS NOT NULL)",
            name='ck_marketplace_accounts_token_status',
        ),
    )
    op.create_index('idx_marketplace_accounts_status', 'marketplace_accounts', ['connection_status'])

    op.create_table(
        'listings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('ebay_item_id', sa.String(64), nullable=True),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('offer_id', sa.String(64), nullable=True),
        sa.Column('source', sa.String(20), nullable=True),
        sa.Column('listing_status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('category_id', sa.String(32), nullable=True),
        sa.Column('gtin', sa.String(32), nullable=True),
        sa.Column('current_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('original_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('minimum_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('quantity_available', sa.Integer(), nullable=True),
        sa.Column('reduction_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('strategy', sa.String(32), nullable=False, server_default='fixed_percentage'),
        sa.Column('reduction_amount', sa.Numeric(10, 2), nullable=False, server_default='5'),
        sa.Column('interval_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('time_trigger_days', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('watch_count_threshold', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('watch_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_reduction_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_reduction_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_reductions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_listings_user_id', 'listings', ['user_id'])
    op.create_index('idx_listings_reduction_due', 'listings', ['reduction_enabled', 'next_reduction_at'])

    op.create_table(
        'price_reduction_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('listing_id', sa.String(36), sa.ForeignKey('listings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('ebay_item_id', sa.String(64), nullable=True),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('original_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('reduced_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('reduction_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('reduction_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('reduction_type', sa.String(20), nullable=False, server_default='scheduled'),
        sa.Column('strategy', sa.String(32), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('match_tier', sa.String(32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_price_reduction_log_user_id', 'price_reduction_log', ['user_id'])
    op.create_index('idx_price_reduction_log_created_at', 'price_reduction_log', ['created_at'])


def downgrade():
    op.drop_index('idx_price_reduction_log_created_at', table_name='price_reduction_log')
    op.drop_index('idx_price_reduction_log_user_id', table_name='price_reduction_log')
    op.drop_table('price_reduction_log')
    op.drop_index('idx_listings_reduction_due', table_name='listings')
    op.drop_index('idx_listings_user_id', table_name='listings')
    op.drop_table('listings')
    op.drop_index('idx_marketplace_accounts_status', table_name='marketplace_accounts')
    op.drop_table('marketplace_accounts')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
