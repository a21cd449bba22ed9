"""Initial schema for competitor price sync

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-16 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Stores (billing plan source)
    op.create_table(
        'stores',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('plan', sa.String(length=32), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_stores_user_id', 'stores', ['user_id'])

    # Local catalog
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('sku', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_products_store_id', 'products', ['store_id'])

    # Scrape budget
    op.create_table(
        'scrape_budget',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('daily_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('daily_date', sa.Date(), nullable=False),
        sa.Column('monthly_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('month_period_start', sa.Date(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id')
    )

    # Competitor product links
    op.create_table(
        'competitor_product_links',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('store_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.String(length=64), nullable=False),
        sa.Column('competitor_product_id', sa.Text(), nullable=True),
        sa.Column('competitor_product_url', sa.Text(), nullable=True),
        sa.Column('competitor_product_name', sa.Text(), nullable=True),
        sa.Column('similarity', sa.Integer(), nullable=True),
        sa.Column('last_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('last_currency', sa.String(length=8), nullable=True),
        sa.Column('last_availability', sa.Boolean(), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('last_changed_at', sa.DateTime(), nullable=True),
        sa.Column('no_change_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_allowed_check_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('needs_attention', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error_at', sa.DateTime(), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'competitor_id', name='uq_link_product_competitor')
    )
    op.create_index('ix_competitor_product_links_user_id', 'competitor_product_links', ['user_id'])
    op.create_index('ix_competitor_product_links_store_id', 'competitor_product_links', ['store_id'])
    op.create_index('ix_links_due', 'competitor_product_links', ['is_active', 'next_allowed_check_at'])

    # Competitor price history
    op.create_table(
        'competitor_price_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('link_id', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('availability', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['link_id'], ['competitor_product_links.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_competitor_price_history_link_id', 'competitor_price_history', ['link_id'])

    # Matching rate limit
    op.create_table(
        'matching_rate_limit',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('run_date', sa.Date(), nullable=False),
        sa.Column('heavy_matching_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('competitor_stores_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('urls_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'run_date', name='uq_rate_limit_user_day')
    )

    # Scrape jobs (also the delayed matching queue)
    op.create_table(
        'scrape_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('store_id', sa.String(length=64), nullable=False),
        sa.Column('competitor_id', sa.String(length=64), nullable=True),
        sa.Column('competitor_url', sa.Text(), nullable=True),
        sa.Column('batch_number', sa.Integer(), nullable=True),
        sa.Column('total_batches', sa.Integer(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('items_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scrape_jobs_user_id', 'scrape_jobs', ['user_id'])
    op.create_index('ix_scrape_jobs_queue', 'scrape_jobs', ['job_type', 'status', 'scheduled_for'])

    # Discovery quota
    op.create_table(
        'discovery_quota',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.String(length=64), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('limit_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'period_start', name='uq_discovery_store_period')
    )


def downgrade() -> None:
    op.drop_table('discovery_quota')
    op.drop_index('ix_scrape_jobs_queue', table_name='scrape_jobs')
    op.drop_index('ix_scrape_jobs_user_id', table_name='scrape_jobs')
    op.drop_table('scrape_jobs')
    op.drop_table('matching_rate_limit')
    op.drop_index('ix_competitor_price_history_link_id', table_name='competitor_price_history')
    op.drop_table('competitor_price_history')
    op.drop_index('ix_links_due', table_name='competitor_product_links')
    op.drop_index('ix_competitor_product_links_store_id', table_name='competitor_product_links')
    op.drop_index('ix_competitor_product_links_user_id', table_name='competitor_product_links')
    op.drop_table('competitor_product_links')
    op.drop_table('scrape_budget')
    op.drop_index('ix_products_store_id', table_name='products')
    op.drop_table('products')
    op.drop_index('ix_stores_user_id', table_name='stores')
    op.drop_table('stores')
