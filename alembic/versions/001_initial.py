"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Products table (reference catalog and competitor listings)
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.String(length=128), nullable=False),
        sa.Column('source', sa.String(length=64), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('vendor', sa.String(length=128), nullable=True),
        sa.Column('product_type', sa.String(length=128), nullable=True),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('compare_at_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('available', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('handle', sa.String(length=255), nullable=True),
        sa.Column('sku', sa.String(length=128), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('title_embedding', sa.Text(), nullable=True),
        sa.Column('features_embedding', sa.Text(), nullable=True),
        sa.Column('features', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('last_scraped_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id', 'source', name='uq_product_external_id_source')
    )
    op.create_index('ix_products_source', 'products', ['source'])
    op.create_index('ix_products_vendor', 'products', ['vendor'])

    # Product matches table
    op.create_table(
        'product_matches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('idc_product_id', sa.Integer(), nullable=False),
        sa.Column('competitor_product_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=64), nullable=False),
        sa.Column('overall_score', sa.Float(), nullable=False),
        sa.Column('title_similarity', sa.Float(), nullable=False),
        sa.Column('brand_similarity', sa.Float(), nullable=False),
        sa.Column('type_similarity', sa.Float(), nullable=False),
        sa.Column('price_similarity', sa.Float(), nullable=False),
        sa.Column('embedding_similarity', sa.Float(), nullable=True),
        sa.Column('confidence', sa.String(length=16), nullable=False),
        sa.Column('price_difference', sa.Float(), nullable=False),
        sa.Column('price_difference_percent', sa.Float(), nullable=False),
        sa.Column('is_map_violation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('violation_amount', sa.Float(), nullable=True),
        sa.Column('violation_severity', sa.Float(), nullable=True),
        sa.Column('is_manual_match', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_rejected', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('first_violation_date', sa.DateTime(), nullable=True),
        sa.Column('last_checked', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['idc_product_id'], ['products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['competitor_product_id'], ['products.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('idc_product_id', 'competitor_product_id', name='uq_product_match')
    )
    op.create_index('ix_product_matches_is_manual_match', 'product_matches', ['is_manual_match'])
    op.create_index('ix_product_matches_is_map_violation', 'product_matches', ['is_map_violation'])

    # MAP violation history table
    op.create_table(
        'map_violation_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_match_id', sa.Integer(), nullable=True),
        sa.Column('idc_product_id', sa.Integer(), nullable=False),
        sa.Column('competitor_product_id', sa.Integer(), nullable=False),
        sa.Column('violation_type', sa.String(length=32), nullable=False),
        sa.Column('competitor_price', sa.Float(), nullable=False),
        sa.Column('idc_price', sa.Float(), nullable=False),
        sa.Column('violation_amount', sa.Float(), nullable=False),
        sa.Column('violation_percent', sa.Float(), nullable=False),
        sa.Column('competitor_url', sa.Text(), nullable=True),
        sa.Column('source', sa.String(length=64), nullable=False),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_match_id'], ['product_matches.id'], ondelete='SET NULL')
    )
    op.create_index(
        'ix_map_violation_history_pair',
        'map_violation_history',
        ['idc_product_id', 'competitor_product_id'],
    )


def downgrade() -> None:
    op.drop_index('ix_map_violation_history_pair', table_name='map_violation_history')
    op.drop_table('map_violation_history')
    op.drop_index('ix_product_matches_is_map_violation', table_name='product_matches')
    op.drop_index('ix_product_matches_is_manual_match', table_name='product_matches')
    op.drop_table('product_matches')
    op.drop_index('ix_products_vendor', table_name='products')
    op.drop_index('ix_products_source', table_name='products')
    op.drop_table('products')
