"""
Error taxonomy shared by providers, the sync cache, search and the API.

Remote clients translate library exceptions into these types at the seam so
callers only ever branch on MailBridge errors.
"""
from typing import List, Optional


class MailBridgeError(Exception):
    """Base class for all MailBridge errors."""

    code = "MAILBRIDGE_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class AuthExpired(MailBridgeError):
    """Remote credentials are invalid or expired; reconnect instead of retrying."""

    code = "AUTH_EXPIRED"

    def __init__(self, message: str = "Authentication expired, reconnect the account", backend: Optional[str] = None):
        super().__init__(message)
        self.backend = backend


class RemoteBackendError(MailBridgeError):
    """The remote mail backend rejected or failed a request."""

    code = "REMOTE_BACKEND_ERROR"

    def __init__(self, message: str = "", backend: Optional[str] = None):
        super().__init__(message)
        self.backend = backend


class ProviderUnavailable(RemoteBackendError):
    """The remote backend could not be reached (network, timeout)."""

    code = "PROVIDER_UNAVAILABLE"


class ConfigurationError(MailBridgeError):
    """The selected backend has no usable credentials."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str = "", missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class NotFound(MailBridgeError):
    """Message, mailbox, attachment or account is absent."""

    code = "NOT_FOUND"


class ValidationError(MailBridgeError):
    """Malformed search query or pagination parameters."""

    code = "VALIDATION_ERROR"
