"""
Shared fixtures: in-memory SQLite database, stores and sample messages.
"""
# Environment must be in place before any mailbridge import (settings are read once)
import os

from cryptography.fernet import Fernet

os.environ.setdefault("DB_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")

import pytest
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from mailbridge.core.accounts.store import AccountStore
from mailbridge.core.config import Settings
from mailbridge.core.database.connection import make_session_factory
from mailbridge.core.database.models import Base
from mailbridge.core.email.models import AttachmentInfo, Backend, EmailAddress, NormalizedMessage
from mailbridge.core.sync.cache import SyncCache


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", api_key="test-api-key", openai_api_key=None)


@pytest.fixture
def accounts(session_factory):
    return AccountStore(session_factory)


@pytest.fixture
def cache(session_factory):
    return SyncCache(session_factory)


@pytest.fixture
def gmail_account(accounts):
    account = accounts.create_account("me@gmail.com", "Me", Backend.REMOTE_API)
    return accounts.save_oauth_tokens(account.id, "ya29.access", "refresh-token", None)


@pytest.fixture
def imap_account(accounts):
    account = accounts.create_account("me@example.org", "Me", Backend.IMAP_SMTP)
    accounts.add_credential(
        account.id,
        email_address="me@example.org",
        imap_host="imap.example.org",
        imap_username="me@example.org",
        imap_password="imap-secret",
        smtp_host="smtp.example.org",
        smtp_username="me@example.org",
        smtp_password="smtp-secret",
        is_default=True,
    )
    return account


def make_message(
    subject="Test Subject",
    sender="alice@example.com",
    sender_name=None,
    date=None,
    body="Hello there",
    folder="INBOX",
    remote_id=None,
    **extra
) -> NormalizedMessage:
    """Build a NormalizedMessage with sensible defaults."""
    return NormalizedMessage(
        remote_id=remote_id,
        folder=folder,
        sender=EmailAddress(name=sender_name, address=sender),
        to=extra.pop('to', [EmailAddress(address="me@example.org")]),
        subject=subject,
        date=date or datetime(2024, 3, 1, 12, 0, 0),
        body_text=body,
        preview=body[:200] if body else "",
        **extra
    )


@pytest.fixture
def sample_messages():
    """Five INBOX messages, newest first by index."""
    base = datetime(2024, 3, 10, 9, 0, 0)
    return [
        make_message("Invoice for March", "billing@acme.com", "Acme Billing", base,
                     "Your invoice total is due next week.", remote_id="101"),
        make_message("Team meeting tomorrow", "bob@example.com", "Bob", base - timedelta(hours=1),
                     "Reminder about the planning meeting.", remote_id="102"),
        make_message("Quarterly report", "carol@example.com", "Carol", base - timedelta(hours=2),
                     "Attached is the quarterly report.", remote_id="103",
                     attachments=[AttachmentInfo(id="103-0", filename="report.pdf", size=10)]),
        make_message("Lunch?", "dave@example.com", None, base - timedelta(hours=3),
                     "Want to grab lunch on Friday?", remote_id="104", is_read=True),
        make_message("Server alert", "alerts@monitoring.io", "Monitoring", base - timedelta(hours=4),
                     "CPU usage exceeded the threshold.", remote_id="105", is_starred=True),
    ]


@pytest.fixture
def message_factory():
    return make_message
