"""Initial schema - accounts, credentials and the message cache.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

Requires the pg_trgm, fuzzystrmatch and vector extensions (created here
when missing).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables and indexes."""
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")
    op.execute("CREATE EXTENSION IF NOT EXISTS fuzzystrmatch")
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # ==========================================================================
    # Accounts
    # ==========================================================================

    op.create_table('accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('display_name', sa.String(200), nullable=True),
        sa.Column('backend', sa.String(20), nullable=False, server_default='remote-api'),
        sa.Column('oauth_access_token', sa.Text(), nullable=True),
        sa.Column('oauth_refresh_token', sa.Text(), nullable=True),
        sa.Column('oauth_token_expiry', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.CheckConstraint("backend IN ('remote-api', 'imap-smtp')", name='ck_accounts_backend'),
    )

    # mail_credentials - IMAP/SMTP credential sets (passwords Fernet-encrypted)
    op.create_table('mail_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email_address', sa.String(320), nullable=False),
        sa.Column('display_name', sa.String(200), nullable=True),
        sa.Column('imap_host', sa.String(255), nullable=True),
        sa.Column('imap_port', sa.Integer(), server_default='993'),
        sa.Column('imap_use_ssl', sa.Boolean(), server_default='true'),
        sa.Column('imap_username', sa.String(320), nullable=True),
        sa.Column('imap_password', sa.Text(), nullable=True),  # Encrypted
        sa.Column('smtp_host', sa.String(255), nullable=True),
        sa.Column('smtp_port', sa.Integer(), server_default='587'),
        sa.Column('smtp_use_tls', sa.Boolean(), server_default='true'),
        sa.Column('smtp_username', sa.String(320), nullable=True),
        sa.Column('smtp_password', sa.Text(), nullable=True),  # Encrypted
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_mail_credentials_account_id', 'mail_credentials', ['account_id'])

    # ==========================================================================
    # Message cache
    # ==========================================================================

    op.create_table('cached_messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('remote_id', sa.String(255), nullable=True),
        sa.Column('thread_id', sa.String(255), nullable=True),
        sa.Column('internet_message_id', sa.String(500), nullable=True),
        sa.Column('folder', sa.String(200), nullable=False, server_default='INBOX'),
        sa.Column('from_name', sa.String(500), nullable=True),
        sa.Column('from_address', sa.String(500), nullable=False, server_default=''),
        sa.Column('to_addresses', postgresql.JSON(), nullable=True),
        sa.Column('cc_addresses', postgresql.JSON(), nullable=True),
        sa.Column('subject', sa.Text(), nullable=False, server_default=''),
        sa.Column('date', sa.DateTime(), nullable=False),
        sa.Column('body_text', sa.Text(), nullable=True),
        sa.Column('body_html', sa.Text(), nullable=True),
        sa.Column('preview', sa.String(500), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_starred', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('has_attachments', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('attachment_info', postgresql.JSON(), nullable=True),
        sa.Column('embedded_at', sa.DateTime(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('summary_generated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_cached_messages_dedup', 'cached_messages', ['account_id', 'from_address', 'subject', 'date'])
    op.create_index('ix_cached_messages_folder_date', 'cached_messages', ['account_id', 'folder', 'date'])
    op.create_index('ix_cached_messages_remote_id', 'cached_messages', ['account_id', 'remote_id'])

    # Trigram indexes for similarity() over subject and sender
    op.execute("CREATE INDEX idx_cached_messages_subject_trgm ON cached_messages USING gin (subject gin_trgm_ops)")
    op.execute("CREATE INDEX idx_cached_messages_from_trgm ON cached_messages USING gin (from_address gin_trgm_ops)")

    # Add vector column using raw SQL (pgvector), text-embedding-3-small dimensions
    op.execute("ALTER TABLE cached_messages ADD COLUMN embedding vector(1536)")
    op.execute("CREATE INDEX idx_cached_messages_embedding_hnsw ON cached_messages "
               "USING hnsw (embedding vector_cosine_ops)")


def downgrade() -> None:
    """Drop all tables (extensions are left installed)."""
    op.drop_table('cached_messages')
    op.drop_table('mail_credentials')
    op.drop_table('accounts')
