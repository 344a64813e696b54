"""create catalog, reader and derived signal tables

Revision ID: 4c7e2a91d0b3
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '4c7e2a91d0b3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS pg_trgm')

    op.create_table(
        'catalog_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('work_key', sa.String(), nullable=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('subtitle', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('publish_year', sa.Integer(), nullable=True),
        sa.Column('series', sa.Text(), nullable=True),
        sa.Column('source', sa.String(), nullable=True),
        sa.Column('embedding', postgresql.ARRAY(sa.Float()), nullable=True),
        sa.Column('is_stub', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('stub_reason', sa.Text(), nullable=True),
        sa.Column('community_id', sa.Integer(), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_catalog_items')),
        sa.UniqueConstraint('work_key', name=op.f('uq_catalog_items_work_key')),
    )
    op.create_index('ix_catalog_items_community', 'catalog_items', ['community_id'])
    op.create_index(
        'ix_catalog_items_title_trgm', 'catalog_items', ['title'],
        postgresql_using='gin', postgresql_ops={'title': 'gin_trgm_ops'},
    )

    op.create_table(
        'catalog_editions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('edition_key', sa.String(), nullable=True),
        sa.Column('isbn13', sa.String(), nullable=True),
        sa.Column('isbn10', sa.String(), nullable=True),
        sa.Column('google_volume_id', sa.String(), nullable=True),
        sa.Column('asin', sa.String(), nullable=True),
        sa.Column('publisher', sa.Text(), nullable=True),
        _ts('created_at'),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_catalog_editions_item_id_catalog_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_catalog_editions')),
        sa.UniqueConstraint('edition_key', name=op.f('uq_catalog_editions_edition_key')),
    )
    op.create_index('ix_catalog_editions_item_id', 'catalog_editions', ['item_id'])
    for col in ('isbn13', 'isbn10', 'google_volume_id', 'asin'):
        op.create_index(op.f(f'ix_catalog_editions_{col}'), 'catalog_editions', [col])

    op.create_table(
        'authors',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('author_key', sa.String(), nullable=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_authors')),
        sa.UniqueConstraint('author_key', name=op.f('uq_authors_author_key')),
    )
    op.create_table(
        'subjects',
        sa.Column('subject', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('subject', name=op.f('pk_subjects')),
    )
    op.create_table(
        'item_authors',
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('author_id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(), server_default='author', nullable=False),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_item_authors_item_id_catalog_items'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['author_id'], ['authors.id'], name=op.f('fk_item_authors_author_id_authors'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('item_id', 'author_id', 'role', name=op.f('pk_item_authors')),
    )
    op.create_index('ix_item_authors_author_item', 'item_authors', ['author_id', 'item_id'])
    op.create_table(
        'item_subjects',
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('subject', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_item_subjects_item_id_catalog_items'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subject'], ['subjects.subject'], name=op.f('fk_item_subjects_subject_subjects'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('item_id', 'subject', name=op.f('pk_item_subjects')),
    )
    op.create_table(
        'rating_stats',
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('avg', sa.Float(), nullable=True),
        sa.Column('count', sa.Integer(), nullable=True),
        _ts('last_updated'),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_rating_stats_item_id_catalog_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('item_id', 'source', name=op.f('pk_rating_stats')),
    )

    op.create_table(
        'user_events',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('shelf', sa.String(), nullable=True),
        sa.Column('rating', sa.Float(), nullable=True),
        sa.Column('finished_at', sa.Date(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _ts('created_at'),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_user_events_item_id_catalog_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('user_id', 'item_id', 'source', name=op.f('pk_user_events')),
    )
    op.create_index('ix_user_events_user_shelf', 'user_events', ['user_id', 'shelf'])
    op.create_table(
        'blocks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=True),
        sa.Column('author_id', sa.Integer(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        _ts('created_at'),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_blocks_item_id_catalog_items'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['author_id'], ['authors.id'], name=op.f('fk_blocks_author_id_authors'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_blocks')),
        sa.UniqueConstraint('user_id', 'item_id', name='uq_blocks_user_item'),
        sa.UniqueConstraint('user_id', 'author_id', name='uq_blocks_user_author'),
    )

    op.create_table(
        'reading_sessions',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('asin', sa.String(), nullable=False),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('user_id', 'asin', 'start_at', 'source', name=op.f('pk_reading_sessions')),
    )
    op.create_table(
        'reading_days',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'day', 'source', name=op.f('pk_reading_days')),
    )
    op.create_table(
        'reading_aggregates',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('asin', sa.String(), nullable=False),
        sa.Column('total_ms', sa.Float(), nullable=False),
        sa.Column('sessions', sa.Integer(), nullable=False),
        sa.Column('last_read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('avg_session_ms', sa.Float(), nullable=True),
        sa.Column('max_session_ms', sa.Float(), nullable=True),
        sa.Column('last_30d_ms', sa.Float(), nullable=False),
        sa.Column('streak_days', sa.Integer(), nullable=False),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('user_id', 'asin', name=op.f('pk_reading_aggregates')),
    )

    op.create_table(
        'curated_lists',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('list_key', sa.String(), nullable=False),
        sa.Column('owner_key', sa.String(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_curated_lists')),
        sa.UniqueConstraint('list_key', name=op.f('uq_curated_lists_list_key')),
    )
    op.create_table(
        'curated_list_entries',
        sa.Column('list_id', sa.Integer(), nullable=False),
        sa.Column('item_key', sa.String(), nullable=False),
        sa.ForeignKeyConstraint(['list_id'], ['curated_lists.id'], name=op.f('fk_curated_list_entries_list_id_curated_lists'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('list_id', 'item_key', name=op.f('pk_curated_list_entries')),
    )
    op.create_index('ix_curated_list_entries_item', 'curated_list_entries', ['item_key'])
    op.create_table(
        'reading_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('item_key', sa.String(), nullable=False),
        sa.Column('reader_key', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('logged_date', sa.Date(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_reading_logs')),
    )
    op.create_index('ix_reading_logs_item', 'reading_logs', ['item_key'])
    op.create_index('ix_reading_logs_reader', 'reading_logs', ['reader_key'])

    op.create_table(
        'resolver_cache',
        sa.Column('lookup_key', sa.String(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        _ts('created_at'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_resolver_cache_item_id_catalog_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('lookup_key', name=op.f('pk_resolver_cache')),
    )
    op.create_table(
        'resolver_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('input_key', sa.String(), nullable=False),
        sa.Column('path_taken', sa.String(), nullable=True),
        sa.Column('item_id', sa.Integer(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('created', sa.Boolean(), nullable=False),
        _ts('created_at'),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_resolver_log_item_id_catalog_items'), ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_resolver_log')),
    )

    op.create_table(
        'work_quality',
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('blended_avg', sa.Float(), nullable=False),
        sa.Column('blended_wilson', sa.Float(), nullable=False),
        sa.Column('total_ratings', sa.Integer(), nullable=False),
        _ts('updated_at'),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_work_quality_item_id_catalog_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('item_id', name=op.f('pk_work_quality')),
    )
    op.create_table(
        'graph_features',
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('author_affinity', sa.Float(), nullable=False),
        sa.Column('subject_overlap', sa.Float(), nullable=False),
        sa.Column('same_series', sa.Boolean(), nullable=False),
        sa.Column('community_id', sa.Integer(), nullable=True),
        sa.Column('prox_score', sa.Float(), nullable=False),
        _ts('updated_at'),
        sa.ForeignKeyConstraint(['item_id'], ['catalog_items.id'], name=op.f('fk_graph_features_item_id_catalog_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('item_id', name=op.f('pk_graph_features')),
    )
    op.create_index('ix_graph_features_prox', 'graph_features', ['prox_score'])
    op.create_table(
        'cooccurrence',
        sa.Column('item_key_a', sa.String(), nullable=False),
        sa.Column('item_key_b', sa.String(), nullable=False),
        sa.Column('overlap', sa.Integer(), nullable=False),
        sa.Column('jaccard', sa.Float(), nullable=False),
        sa.Column('readers_a', sa.Integer(), nullable=True),
        sa.Column('readers_b', sa.Integer(), nullable=True),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('item_key_a', 'item_key_b', name=op.f('pk_cooccurrence')),
    )
    op.create_index('ix_cooccurrence_a_jaccard', 'cooccurrence', ['item_key_a', 'jaccard'])
    op.create_index('ix_cooccurrence_b_jaccard', 'cooccurrence', ['item_key_b', 'jaccard'])
    op.create_table(
        'user_profiles',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('profile_vec', postgresql.ARRAY(sa.Float()), nullable=True),
        sa.Column('anchors', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _ts('updated_at'),
        sa.PrimaryKeyConstraint('user_id', name=op.f('pk_user_profiles')),
    )
    op.create_table(
        'merge_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('item_id_from', sa.Integer(), nullable=False),
        sa.Column('item_id_to', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('editions_moved', sa.Integer(), nullable=False),
        _ts('merged_at'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_merge_log')),
    )
    op.create_index('ix_merge_log_to', 'merge_log', ['item_id_to'])


def downgrade() -> None:
    for table in (
        'merge_log', 'user_profiles', 'cooccurrence', 'graph_features', 'work_quality',
        'resolver_log', 'resolver_cache', 'reading_logs', 'curated_list_entries',
        'curated_lists', 'reading_aggregates', 'reading_days', 'reading_sessions',
        'blocks', 'user_events', 'rating_stats', 'item_subjects', 'item_authors',
        'subjects', 'authors', 'catalog_editions', 'catalog_items',
    ):
        op.drop_table(table)
