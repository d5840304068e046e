"""Create rate_counters and payout_events tables

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19

rate_counters holds one fixed-window counter per bucket key; payout_events
records every processed PayPal webhook event id so replays are dropped.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261019_000002'
down_revision: Union[str, None] = '20261019_000001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the rate_counters and payout_events tables."""
    op.create_table(
        'rate_counters',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('bucket_key', sa.String(length=255), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
    )
    # One row per bucket; concurrent first inserts collide here
    op.create_index('ix_rate_counters_bucket_key', 'rate_counters', ['bucket_key'], unique=True)

    op.create_table(
        'payout_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=128), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('outcome', sa.String(length=32), nullable=False),
        sa.Column('payout_reference', sa.String(length=128), nullable=True),
        sa.Column('receipt_id', sa.Integer(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payout_events_event_id', 'payout_events', ['event_id'], unique=True)
    op.create_index('ix_payout_events_payout_reference', 'payout_events', ['payout_reference'])
    op.create_index('ix_payout_events_receipt_id', 'payout_events', ['receipt_id'])


def downgrade() -> None:
    """Drop the payout_events and rate_counters tables."""
    op.drop_index('ix_payout_events_receipt_id', table_name='payout_events')
    op.drop_index('ix_payout_events_payout_reference', table_name='payout_events')
    op.drop_index('ix_payout_events_event_id', table_name='payout_events')
    op.drop_table('payout_events')

    op.drop_index('ix_rate_counters_bucket_key', table_name='rate_counters')
    op.drop_table('rate_counters')
