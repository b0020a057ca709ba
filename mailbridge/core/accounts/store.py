"""
Account and credential store.

Read-mostly access to accounts, their selected backend and their IMAP/SMTP
credential sets. Methods are synchronous; async callers go through
asyncio.to_thread.
"""
import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from mailbridge.core.database.connection import SessionFactory, session_scope
from mailbridge.core.database.models import Account, MailCredential, to_uuid
from mailbridge.core.email.models import Backend
from mailbridge.core.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

CREDENTIAL_FIELDS = (
    'email_address', 'display_name',
    'imap_host', 'imap_port', 'imap_use_ssl', 'imap_username', 'imap_password',
    'smtp_host', 'smtp_port', 'smtp_use_tls', 'smtp_username', 'smtp_password',
    'is_active', 'is_default',
)


def _require_uuid(account_id) -> UUID:
    value = to_uuid(account_id)
    if value is None:
        raise ValidationError(f"Invalid account id: {account_id}")
    return value


class AccountStore:
    """Accounts, backend selection and credential sets."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def get_account(self, account_id) -> Account:
        account_uuid = _require_uuid(account_id)
        with session_scope(self.session_factory) as session:
            account = session.get(Account, account_uuid)
            if account is None:
                raise NotFound(f"Account {account_id} not found")
            return account

    def list_account_ids(self) -> List[UUID]:
        with session_scope(self.session_factory) as session:
            return [row[0] for row in session.query(Account.id).all()]

    def create_account(self, email: str, display_name: Optional[str] = None,
                       backend: Backend = Backend.REMOTE_API) -> Account:
        account = Account(email=email.strip(), display_name=display_name, backend=Backend(backend).value)
        try:
            with session_scope(self.session_factory) as session:
                session.add(account)
        except IntegrityError as e:
            raise ValidationError(f"Account {email} already exists") from e
        logger.info(f"Created account {account.id} ({account.email}, backend={account.backend})")
        return account

    def set_backend(self, account_id, backend: Backend) -> Account:
        """Explicitly switch the account's active backend."""
        backend = Backend(backend)
        with session_scope(self.session_factory) as session:
            account = session.get(Account, _require_uuid(account_id))
            if account is None:
                raise NotFound(f"Account {account_id} not found")
            account.backend = backend.value
            account.updated_at = datetime.utcnow()
        logger.info(f"Account {account_id} switched to backend {backend.value}")
        return account

    def save_oauth_tokens(self, account_id, access_token: str, refresh_token: Optional[str] = None,
                          expiry: Optional[datetime] = None) -> Account:
        """Store OAuth tokens; a missing refresh token keeps the previous one."""
        with session_scope(self.session_factory) as session:
            account = session.get(Account, _require_uuid(account_id))
            if account is None:
                raise NotFound(f"Account {account_id} not found")
            account.oauth_access_token = access_token
            if refresh_token:
                account.oauth_refresh_token = refresh_token
            account.oauth_token_expiry = expiry
            account.updated_at = datetime.utcnow()
            return account

    def add_credential(self, account_id, **fields) -> MailCredential:
        """
        Store an IMAP/SMTP credential set. A default credential clears the
        default flag on the account's other rows.
        """
        account_uuid = _require_uuid(account_id)
        unknown = set(fields) - set(CREDENTIAL_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown credential fields: {', '.join(sorted(unknown))}")

        with session_scope(self.session_factory) as session:
            if session.get(Account, account_uuid) is None:
                raise NotFound(f"Account {account_id} not found")
            if fields.get('is_default'):
                session.query(MailCredential).filter(
                    MailCredential.account_id == account_uuid
                ).update({MailCredential.is_default: False})
            credential = MailCredential(account_id=account_uuid, **fields)
            session.add(credential)
        logger.info(f"Stored mail credentials for account {account_id} ({credential.email_address})")
        return credential

    def get_active_credential(self, account_id) -> Optional[MailCredential]:
        """The active default credential set, else the newest active one."""
        account_uuid = _require_uuid(account_id)
        with session_scope(self.session_factory) as session:
            query = session.query(MailCredential).filter(
                MailCredential.account_id == account_uuid,
                MailCredential.is_active.is_(True),
            )
            return query.order_by(MailCredential.is_default.desc(), MailCredential.created_at.desc()).first()
