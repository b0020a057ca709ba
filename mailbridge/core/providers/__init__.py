"""EmailProvider interface, the Gmail and IMAP/SMTP adapters, and the factory."""
from .base import EmailProvider, RemotePage
from .gmail_provider import GmailProvider
from .imap_provider import ImapSmtpProvider
from .factory import ProviderFactory

__all__ = [
    'EmailProvider',
    'RemotePage',
    'GmailProvider',
    'ImapSmtpProvider',
    'ProviderFactory',
]
