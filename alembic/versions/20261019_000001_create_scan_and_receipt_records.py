"""Create scan_records and receipt_records tables

Revision ID: 20261019_000001
Revises: None
Create Date: 2026-10-19

Scans and receipts, with the storage-level guards the engine relies on:
- content_hash unique among non-rejected rows (partial unique indexes)
- one receipt per session (unique receipt_records.session_id)
- a payout reference exists exactly when the receipt is paid
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261019_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE = sa.text("status <> 'rejected'")


def upgrade() -> None:
    """Create the scan_records and receipt_records tables."""
    op.create_table(
        'scan_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('session_id', sa.String(length=64), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('source_address', sa.String(length=64), nullable=False),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('detected_label', sa.String(length=255), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('bounding_box', sa.JSON(), nullable=True),
        sa.Column('image_url', sa.String(length=500), nullable=True),
        sa.Column(
            'status',
            sa.Enum('awaiting_receipt', 'completed', 'rejected', name='scan_status', create_constraint=True),
            nullable=False,
        ),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_scan_records_session_id', 'scan_records', ['session_id'], unique=True)
    op.create_index('ix_scan_records_content_hash', 'scan_records', ['content_hash'])
    op.create_index('ix_scan_records_source_address', 'scan_records', ['source_address'])
    op.create_index('ix_scan_records_status', 'scan_records', ['status'])
    op.create_index('ix_scan_records_created_at', 'scan_records', ['created_at'])
    op.create_index(
        'uq_scan_records_active_content_hash',
        'scan_records',
        ['content_hash'],
        unique=True,
        sqlite_where=ACTIVE,
        postgresql_where=ACTIVE,
        mssql_where=ACTIVE,
    )

    op.create_table(
        'receipt_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('session_id', sa.String(length=64), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('recipient_identity', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('image_url', sa.String(length=500), nullable=True),
        sa.Column(
            'status',
            sa.Enum('submitted', 'approved', 'rejected', 'paid', name='receipt_status', create_constraint=True),
            nullable=False,
        ),
        sa.Column('review_reason', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('auto_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_approved_at', sa.DateTime(), nullable=True),
        sa.Column('payout_reference', sa.String(length=128), nullable=True),
        sa.Column('payout_idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('payout_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payout_claimed_at', sa.DateTime(), nullable=True),
        sa.Column('payout_confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['session_id'],
            ['scan_records.session_id'],
            name='fk_receipt_records_session_id',
            ondelete='RESTRICT',
        ),
        sa.CheckConstraint(
            "(status = 'paid' AND payout_reference IS NOT NULL) "
            "OR (status <> 'paid' AND payout_reference IS NULL)",
            name='ck_receipt_records_reference_only_when_paid',
        ),
    )
    op.create_index('ix_receipt_records_session_id', 'receipt_records', ['session_id'], unique=True)
    op.create_index('ix_receipt_records_content_hash', 'receipt_records', ['content_hash'])
    op.create_index('ix_receipt_records_recipient_identity', 'receipt_records', ['recipient_identity'])
    op.create_index('ix_receipt_records_status', 'receipt_records', ['status'])
    op.create_index('ix_receipt_records_payout_reference', 'receipt_records', ['payout_reference'])
    op.create_index('ix_receipt_records_created_at', 'receipt_records', ['created_at'])
    op.create_index(
        'uq_receipt_records_active_content_hash',
        'receipt_records',
        ['content_hash'],
        unique=True,
        sqlite_where=ACTIVE,
        postgresql_where=ACTIVE,
        mssql_where=ACTIVE,
    )


def downgrade() -> None:
    """Drop the receipt_records and scan_records tables."""
    op.drop_index('uq_receipt_records_active_content_hash', table_name='receipt_records')
    op.drop_index('ix_receipt_records_created_at', table_name='receipt_records')
    op.drop_index('ix_receipt_records_payout_reference', table_name='receipt_records')
    op.drop_index('ix_receipt_records_status', table_name='receipt_records')
    op.drop_index('ix_receipt_records_recipient_identity', table_name='receipt_records')
    op.drop_index('ix_receipt_records_content_hash', table_name='receipt_records')
    op.drop_index('ix_receipt_records_session_id', table_name='receipt_records')
    op.drop_table('receipt_records')

    op.drop_index('uq_scan_records_active_content_hash', table_name='scan_records')
    op.drop_index('ix_scan_records_created_at', table_name='scan_records')
    op.drop_index('ix_scan_records_status', table_name='scan_records')
    op.drop_index('ix_scan_records_source_address', table_name='scan_records')
    op.drop_index('ix_scan_records_content_hash', table_name='scan_records')
    op.drop_index('ix_scan_records_session_id', table_name='scan_records')
    op.drop_table('scan_records')
