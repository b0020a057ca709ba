"""
SQLAlchemy Database Models

Stores:
- Accounts and which mail backend each one uses
- IMAP/SMTP credential sets (passwords encrypted at rest)
- Cached messages synced from the remote backends, with optional
  embeddings and AI summaries
- Snoozes hiding a message from the inbox until a given time

Encryption:
- Only credential passwords are encrypted (see encryption.py)
- Message envelopes and bodies stay plain for trigram/substring search
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, JSON, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base
from typing import Optional
from pgvector.sqlalchemy import Vector
from datetime import datetime
import uuid

from mailbridge.core.database.encryption import EncryptedText

Base = declarative_base()

# Dimension of text-embedding-3-small; enforced by the migration's vector(1536)
EMBEDDING_DIMENSIONS = 1536


class Account(Base):
    """
    A mailbox owner. Exactly one backend is active at a time and switching
    it is an explicit update of `backend`.
    """
    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(320), nullable=False, unique=True)
    display_name = Column(String(200))
    backend = Column(String(20), nullable=False, default="remote-api")  # remote-api | imap-smtp

    # Gmail OAuth tokens (issued elsewhere, refreshed by TokenRefresher)
    oauth_access_token = Column(Text)
    oauth_refresh_token = Column(Text)
    oauth_token_expiry = Column(DateTime)  # naive UTC

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MailCredential(Base):
    """IMAP/SMTP credential set for an account."""
    __tablename__ = "mail_credentials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    email_address = Column(String(320), nullable=False)
    display_name = Column(String(200))

    imap_host = Column(String(255))
    imap_port = Column(Integer, default=993)
    imap_use_ssl = Column(Boolean, default=True)
    imap_username = Column(String(320))
    imap_password = Column(EncryptedText)

    smtp_host = Column(String(255))
    smtp_port = Column(Integer, default=587)
    smtp_use_tls = Column(Boolean, default=True)
    smtp_username = Column(String(320))
    smtp_password = Column(EncryptedText)

    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CachedMessage(Base):
    """
    Normalized message cached from a remote backend.

    (account_id, from_address, subject, date) identifies a message for
    deduplication. The dedup index is non-unique: two concurrent refreshes
    may both pass the existence check and insert the same tuple.
    """
    __tablename__ = "cached_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)

    # Remote identifiers: Gmail message id, or IMAP UID (session-scoped)
    remote_id = Column(String(255))
    thread_id = Column(String(255))
    internet_message_id = Column(String(500))  # RFC822 Message-ID header
    folder = Column(String(200), nullable=False, default="INBOX")
    # Label-based backends only (Gmail): ",INBOX,STARRED,". NULL means the
    # message lives in `folder` alone (IMAP).
    labels = Column(Text)

    # Envelope
    from_name = Column(String(500))
    from_address = Column(String(500), nullable=False, default="")
    to_addresses = Column(JSON, default=list)  # [{"name": ..., "address": ...}]
    cc_addresses = Column(JSON, default=list)
    subject = Column(Text, nullable=False, default="")
    date = Column(DateTime, nullable=False)  # naive UTC

    # Content
    body_text = Column(Text)
    body_html = Column(Text)
    preview = Column(String(500))

    # Flags
    is_read = Column(Boolean, default=False, nullable=False)
    is_starred = Column(Boolean, default=False, nullable=False)

    # Attachment metadata only; content is fetched on demand
    has_attachments = Column(Boolean, default=False, nullable=False)
    attachment_info = Column(JSON, default=list)  # [{"id", "filename", "mime_type", "size"}]

    # Semantic search (filled by the background indexer)
    embedding = Column(Vector(), nullable=True)
    embedded_at = Column(DateTime)

    # AI summary
    summary = Column(Text)
    summary_generated_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_cached_messages_dedup', 'account_id', 'from_address', 'subject', 'date'),
        Index('ix_cached_messages_folder_date', 'account_id', 'folder', 'date'),
        Index('ix_cached_messages_remote_id', 'account_id', 'remote_id'),
    )


class Snooze(Base):
    """
    A message hidden from the inbox until `snooze_until`.

    Rows are never deleted: resuming or cancelling only changes `status`,
    so the table doubles as snooze history. A recurring snooze spawns a new
    row for its next occurrence when it resumes.
    """
    __tablename__ = "snoozes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)

    # Cached message id plus the backend id, which survives a destructive resync
    message_id = Column(String(64), nullable=False)
    remote_id = Column(String(255))
    subject = Column(Text)

    status = Column(String(20), nullable=False, default="snoozed")  # snoozed | resumed | cancelled
    snooze_until = Column(DateTime, nullable=False)  # naive UTC
    reason = Column(String(500))
    original_folder = Column(String(200))
    original_labels = Column(JSON, default=list)  # labels removed while snoozed, restored on resume

    is_recurring = Column(Boolean, default=False, nullable=False)
    recurrence_pattern = Column(String(20))  # DAILY | WEEKLY | MONTHLY

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    resumed_at = Column(DateTime)
    cancelled_at = Column(DateTime)

    __table_args__ = (
        Index('ix_snoozes_account_status', 'account_id', 'status'),
        Index('ix_snoozes_due', 'status', 'snooze_until'),
    )


def to_uuid(value) -> Optional[uuid.UUID]:
    """Coerce a UUID or string to UUID, None when it is not a valid UUID."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None
