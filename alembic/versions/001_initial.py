"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('tier', sa.String(length=32), nullable=False, server_default='free'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.CheckConstraint("tier IN ('free', 'premium', 'premium_plus')", name='ck_users_tier'),
    )

    # Stores table
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('domain', sa.String(length=255), nullable=False),
        sa.Column('selector_hints', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('domain'),
    )

    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_products_user_id', 'products', ['user_id'])

    # Product listings table
    op.create_table(
        'product_listings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('next_check_at', sa.DateTime(), nullable=False),
        sa.Column('check_interval_hours', sa.Integer(), nullable=False, server_default='24'),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'store_id', name='uq_listing_product_store'),
        sa.CheckConstraint('consecutive_failures >= 0', name='ck_listing_failures_non_negative'),
    )
    op.create_index('ix_product_listings_user_id', 'product_listings', ['user_id'])
    op.create_index(
        'ix_product_listings_due',
        'product_listings',
        ['next_check_at'],
        postgresql_where=sa.text('is_active'),
    )

    # Scrape queue table
    op.create_table(
        'scrape_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('tier', sa.String(length=32), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_until', sa.DateTime(), nullable=True),
        sa.Column('locked_by', sa.String(length=64), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('priority BETWEEN 1 AND 10', name='ck_queue_priority_range'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_queue_status',
        ),
    )
    op.create_index('ix_scrape_queue_listing_id', 'scrape_queue', ['listing_id'])
    op.create_index(
        'ix_scrape_queue_claim', 'scrape_queue', ['status', 'scheduled_for', 'locked_until']
    )
    op.create_index(
        'uq_scrape_queue_open_listing',
        'scrape_queue',
        ['listing_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )

    # Price history table
    op.create_table(
        'price_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('raw_price', sa.String(length=64), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('availability', sa.String(length=32), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('scraped_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['listing_id'], ['product_listings.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_price_history_user_id', 'price_history', ['user_id'])
    op.create_index(
        'ix_price_history_listing_scraped', 'price_history', ['listing_id', 'scraped_at']
    )

    # User watchlists table
    op.create_table(
        'user_watchlists',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('target_price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('notify_on_drop', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_notified_at', sa.DateTime(), nullable=True),
        sa.Column('last_notified_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'product_id', name='uq_watchlist_user_product'),
    )

    # Usage tracking table
    op.create_table(
        'usage_tracking',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('usage_date', sa.Date(), nullable=False),
        sa.Column('scrapes_performed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notifications_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'usage_date', name='uq_usage_user_date'),
    )


def downgrade() -> None:
    op.drop_table('usage_tracking')
    op.drop_table('user_watchlists')
    op.drop_index('ix_price_history_listing_scraped', table_name='price_history')
    op.drop_index('ix_price_history_user_id', table_name='price_history')
    op.drop_table('price_history')
    op.drop_index('uq_scrape_queue_open_listing', table_name='scrape_queue')
    op.drop_index('ix_scrape_queue_claim', table_name='scrape_queue')
    op.drop_index('ix_scrape_queue_listing_id', table_name='scrape_queue')
    op.drop_table('scrape_queue')
    op.drop_index('ix_product_listings_due', table_name='product_listings')
    op.drop_index('ix_product_listings_user_id', table_name='product_listings')
    op.drop_table('product_listings')
    op.drop_index('ix_products_user_id', table_name='products')
    op.drop_table('products')
    op.drop_table('stores')
    op.drop_table('users')
