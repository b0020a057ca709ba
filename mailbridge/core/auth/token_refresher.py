"""
Gmail access-token refresh.

Providers call get_valid_access_token() before every Gmail operation; the
refresher returns the stored token while it is valid and otherwise
refreshes it with google-auth, persisting the new token and expiry.
"""
import asyncio
import logging
from typing import Callable, Optional, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailbridge.core.accounts.store import AccountStore
from mailbridge.core.config import Settings, get_settings
from mailbridge.core.errors import AuthExpired, ConfigurationError, ProviderUnavailable

logger = logging.getLogger(__name__)


class TokenRefresher:
    """Supplies valid (access_token, refresh_token) pairs for remote-api accounts."""

    def __init__(self, accounts: AccountStore, settings: Optional[Settings] = None,
                 request_factory: Callable = Request):
        self.accounts = accounts
        self.settings = settings or get_settings()
        self._request_factory = request_factory

    async def get_valid_access_token(self, account_id) -> Tuple[str, Optional[str]]:
        return await asyncio.to_thread(self.refresh_if_needed, account_id)

    def refresh_if_needed(self, account_id) -> Tuple[str, Optional[str]]:
        """
        Return a usable token pair, refreshing when the stored token is
        missing or expired.

        Raises:
            ConfigurationError: Account has no OAuth tokens on file
            AuthExpired: Token expired and cannot be refreshed (revoked grant)
        """
        account = self.accounts.get_account(account_id)
        if not account.oauth_access_token and not account.oauth_refresh_token:
            raise ConfigurationError(
                f"Account {account_id} has no Gmail OAuth tokens",
                missing=['oauth_access_token', 'oauth_refresh_token'],
            )

        credentials = Credentials(
            token=account.oauth_access_token,
            refresh_token=account.oauth_refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            expiry=account.oauth_token_expiry,
        )
        if credentials.valid:
            return credentials.token, credentials.refresh_token

        if not credentials.refresh_token:
            raise AuthExpired("Gmail access token expired and no refresh token is stored", backend="gmail")
        if not self.settings.google_client_id or not self.settings.google_client_secret:
            raise ConfigurationError(
                "Gmail token refresh needs GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET",
                missing=['google_client_id', 'google_client_secret'],
            )

        try:
            credentials.refresh(self._request_factory())
        except RefreshError as e:
            # invalid_grant: user revoked access or the refresh token expired
            logger.warning(f"Gmail token refresh rejected for account {account_id}: {e}")
            raise AuthExpired(f"Gmail authorization expired: {e}", backend="gmail") from e
        except TransportError as e:
            raise ProviderUnavailable(f"Gmail token endpoint unreachable: {e}", backend="gmail") from e

        self.accounts.save_oauth_tokens(
            account_id,
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expiry=credentials.expiry,
        )
        logger.info(f"Refreshed Gmail access token for account {account_id}")
        return credentials.token, credentials.refresh_token
