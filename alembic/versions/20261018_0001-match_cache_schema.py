"""Match cache schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261018_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create cached_matches and player_cache_meta."""
    op.create_table(
        'cached_matches',
        sa.Column('match_id', sa.String(), nullable=False),
        sa.Column('puuid', sa.String(), nullable=False),
        sa.Column('region', sa.String(), nullable=False),
        sa.Column('champion_id', sa.Integer(), nullable=False),
        sa.Column('champion_name', sa.String(), nullable=False),
        sa.Column('kills', sa.Integer(), nullable=False),
        sa.Column('deaths', sa.Integer(), nullable=False),
        sa.Column('assists', sa.Integer(), nullable=False),
        sa.Column('win', sa.Boolean(), nullable=False),
        sa.Column('game_date', sa.DateTime(), nullable=False),
        sa.Column('queue_id', sa.Integer(), nullable=False),
        sa.Column('fetched_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('match_id', 'puuid')
    )
    op.create_index('ix_cached_matches_scope', 'cached_matches', ['puuid', 'region', 'queue_id', 'game_date'])
    op.create_index('ix_cached_matches_fetched_at', 'cached_matches', ['fetched_at'])

    op.create_table(
        'player_cache_meta',
        sa.Column('puuid', sa.String(), nullable=False),
        sa.Column('game_name', sa.String(), nullable=True),
        sa.Column('tag_line', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=False),
        sa.Column('summoner_level', sa.Integer(), nullable=True),
        sa.Column('last_fetch_at', sa.DateTime(), nullable=False),
        sa.Column('total_matches_cached', sa.Integer(), nullable=False),
        sa.Column('mastery', sa.JSON(), nullable=True),
        sa.Column('mastery_fetched_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('puuid'),
        sa.UniqueConstraint('game_name', 'tag_line', 'region', name='uq_player_name_region')
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('player_cache_meta')
    op.drop_index('ix_cached_matches_fetched_at', 'cached_matches')
    op.drop_index('ix_cached_matches_scope', 'cached_matches')
    op.drop_table('cached_matches')
