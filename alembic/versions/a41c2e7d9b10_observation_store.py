"""observation store and collection runs

Revision ID: a41c2e7d9b10
Revises:
Create Date: 2026-10-18 09:12:44.301552

Creates the single envelope table for every hazard domain plus the
collection run log. New databases may also use create_all() (see
app/main.py lifespan) and then be stamped with:

    alembic stamp head
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'a41c2e7d9b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'hazard_observations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('natural_key', sa.String(length=255), nullable=False),
        sa.Column('domain', sa.String(length=20), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.Column('collected_at', sa.DateTime(), nullable=False),
        sa.Column('station_id', sa.String(length=50), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('magnitude', sa.Float(), nullable=True),
        sa.Column('attributes', sa.JSON(), nullable=False),
        sa.Column('raw_payload', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('domain', 'natural_key', name='uq_observation_natural_key'),
    )
    op.create_index(
        'ix_observation_domain_observed', 'hazard_observations',
        ['domain', 'observed_at'],
    )
    op.create_index(
        'ix_observation_station_observed', 'hazard_observations',
        ['domain', 'station_id', 'observed_at'],
    )
    op.create_index(
        'ix_observation_coordinates', 'hazard_observations',
        ['domain', 'latitude', 'longitude'],
    )

    op.create_table(
        'collection_runs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('domain', sa.String(length=20), nullable=False),
        sa.Column('trigger', sa.String(length=20), nullable=False),
        sa.Column('params', sa.JSON(), nullable=True),
        sa.Column(
            'status',
            sa.Enum('RUNNING', 'SUCCESS', 'PARTIAL', 'FAILED',
                    name='runstatus', native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('records_fetched', sa.Integer(), nullable=True),
        sa.Column('records_new', sa.Integer(), nullable=True),
        sa.Column('records_duplicate', sa.Integer(), nullable=True),
        sa.Column('events_published', sa.Integer(), nullable=True),
        sa.Column('fallback_scopes', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id'),
    )
    op.create_index('ix_collection_runs_domain', 'collection_runs', ['domain'])
    op.create_index('ix_collection_runs_status', 'collection_runs', ['status'])


def downgrade() -> None:
    op.drop_index('ix_collection_runs_status', table_name='collection_runs')
    op.drop_index('ix_collection_runs_domain', table_name='collection_runs')
    op.drop_table('collection_runs')
    op.drop_index('ix_observation_coordinates', table_name='hazard_observations')
    op.drop_index('ix_observation_station_observed', table_name='hazard_observations')
    op.drop_index('ix_observation_domain_observed', table_name='hazard_observations')
    op.drop_table('hazard_observations')
