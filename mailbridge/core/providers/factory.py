"""
Provider Factory

Builds the EmailProvider for an account from its stored configuration.
The account's backend column selects the adapter; switching backends is
an explicit account mutation (AccountStore.set_backend), never a fallback.
"""
import asyncio
import logging
from functools import partial
from typing import Callable, List, Optional

from mailbridge.core.accounts.store import AccountStore
from mailbridge.core.auth.token_refresher import TokenRefresher
from mailbridge.core.config import Settings, get_settings
from mailbridge.core.database.models import Account, MailCredential
from mailbridge.core.email.imap_client import IMAPConfig, IMAPMailClient
from mailbridge.core.email.models import Backend
from mailbridge.core.email.smtp_sender import SMTPSender
from mailbridge.core.errors import ConfigurationError
from mailbridge.core.sync.cache import SyncCache
from .base import EmailProvider
from .gmail_provider import GmailClientFactory, GmailProvider
from .imap_provider import ImapSmtpProvider

logger = logging.getLogger(__name__)

REQUIRED_IMAP_FIELDS = ('imap_host', 'imap_username', 'imap_password')
REQUIRED_SMTP_FIELDS = ('smtp_host', 'smtp_username', 'smtp_password')


def missing_credential_fields(credential: MailCredential) -> List[str]:
    """Credential fields that are empty (or undecryptable) on a stored row."""
    return [name for name in REQUIRED_IMAP_FIELDS + REQUIRED_SMTP_FIELDS if not getattr(credential, name, None)]


class ProviderFactory:
    """Chooses and wires the adapter for an account's active backend."""

    def __init__(
        self,
        accounts: AccountStore,
        cache: SyncCache,
        token_refresher: TokenRefresher,
        settings: Optional[Settings] = None,
        imap_client_factory: Callable[..., IMAPMailClient] = IMAPMailClient,
        smtp_sender_factory: Callable[..., SMTPSender] = SMTPSender,
        gmail_client_factory: Optional[GmailClientFactory] = None
    ):
        self.accounts = accounts
        self.cache = cache
        self.token_refresher = token_refresher
        self.settings = settings or get_settings()
        self._imap_client_factory = imap_client_factory
        self._smtp_sender_factory = smtp_sender_factory
        self._gmail_client_factory = gmail_client_factory

    async def create_provider(self, account_id) -> EmailProvider:
        """
        Build the provider for an account.

        Raises:
            NotFound: Unknown account
            ConfigurationError: The selected backend has no usable credentials
        """
        account = await asyncio.to_thread(self.accounts.get_account, account_id)
        try:
            backend = Backend(account.backend)
        except ValueError:
            raise ConfigurationError(f"Account {account_id} has unknown backend '{account.backend}'")

        if backend is Backend.IMAP_SMTP:
            credential = await asyncio.to_thread(self.accounts.get_active_credential, account.id)
            return self._imap_provider(account, credential)
        elif backend is Backend.REMOTE_API:
            return self._gmail_provider(account)
        raise ConfigurationError(f"Account {account_id} has unsupported backend '{backend.value}'")

    def _imap_provider(self, account: Account, credential: Optional[MailCredential]) -> ImapSmtpProvider:
        if credential is None:
            raise ConfigurationError(
                f"Account {account.email} uses imap-smtp but has no active IMAP/SMTP credentials",
                missing=list(REQUIRED_IMAP_FIELDS + REQUIRED_SMTP_FIELDS),
            )
        missing = missing_credential_fields(credential)
        if missing:
            raise ConfigurationError(
                f"Account {account.email} is missing IMAP/SMTP credentials: {', '.join(missing)}",
                missing=missing,
            )

        imap = self._imap_client_factory(
            IMAPConfig(
                host=credential.imap_host,
                username=credential.imap_username,
                password=credential.imap_password,
                port=credential.imap_port or 993,
                use_ssl=credential.imap_use_ssl if credential.imap_use_ssl is not None else True,
            ),
            timeout=self.settings.imap_timeout,
        )
        smtp = self._smtp_sender_factory(
            smtp_host=credential.smtp_host,
            smtp_port=credential.smtp_port or 587,
            smtp_username=credential.smtp_username,
            smtp_password=credential.smtp_password,
            from_email=credential.email_address or account.email,
            from_name=credential.display_name or account.display_name or "",
            use_tls=credential.smtp_use_tls if credential.smtp_use_tls is not None else True,
            timeout=self.settings.smtp_timeout,
        )
        logger.debug(f"Built IMAP/SMTP provider for account {account.id} ({credential.imap_host})")
        return ImapSmtpProvider(
            account.id,
            self.cache,
            imap,
            smtp,
            persist=self.cache.upsert,
            trash_folder=self.settings.imap_trash_folder,
        )

    def _gmail_provider(self, account: Account) -> GmailProvider:
        if not account.oauth_access_token and not account.oauth_refresh_token:
            raise ConfigurationError(
                f"Account {account.email} uses remote-api but has no OAuth tokens",
                missing=['oauth_access_token', 'oauth_refresh_token'],
            )
        logger.debug(f"Built Gmail provider for account {account.id}")
        return GmailProvider(
            account.id,
            self.cache,
            token_supplier=partial(self.token_refresher.get_valid_access_token, account.id),
            email_address=account.email,
            display_name=account.display_name,
            persist=self.cache.upsert,
            client_factory=self._gmail_client_factory,
            timeout=self.settings.gmail_timeout,
        )
