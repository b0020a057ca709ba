"""Add label tracking to cached messages and the snoozes table

Revision ID: 002_labels_and_snoozes
Revises: 001_initial
Create Date: 2026-10-17

- cached_messages.labels: comma-delimited label set for label-based
  backends (Gmail). NULL means the row belongs to `folder` alone.
- snoozes: messages hidden from the inbox until a given time, kept as
  history once resumed or cancelled.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '002_labels_and_snoozes'
down_revision: Union[str, Sequence[str], None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add the labels column and create snoozes."""
    op.add_column('cached_messages', sa.Column('labels', sa.Text(), nullable=True))
    op.execute("CREATE INDEX idx_cached_messages_labels_trgm ON cached_messages USING gin (labels gin_trgm_ops)")

    op.create_table('snoozes',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('message_id', sa.String(64), nullable=False),
        sa.Column('remote_id', sa.String(255), nullable=True),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='snoozed'),
        sa.Column('snooze_until', sa.DateTime(), nullable=False),
        sa.Column('reason', sa.String(500), nullable=True),
        sa.Column('original_folder', sa.String(200), nullable=True),
        sa.Column('original_labels', postgresql.JSON(), nullable=True),
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('recurrence_pattern', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('resumed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("status IN ('snoozed', 'resumed', 'cancelled')", name='ck_snoozes_status'),
    )
    op.create_index('ix_snoozes_account_status', 'snoozes', ['account_id', 'status'])
    op.create_index('ix_snoozes_due', 'snoozes', ['status', 'snooze_until'])


def downgrade() -> None:
    """Drop snoozes and the labels column."""
    op.drop_index('ix_snoozes_due', table_name='snoozes')
    op.drop_index('ix_snoozes_account_status', table_name='snoozes')
    op.drop_table('snoozes')

    op.execute("DROP INDEX IF EXISTS idx_cached_messages_labels_trgm")
    op.drop_column('cached_messages', 'labels')
