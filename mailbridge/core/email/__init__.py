"""Normalized message types and the remote mail clients."""
from .models import (
    Backend, Mailbox, MailboxType, NormalizedFlag, EmailAddress, AttachmentInfo,
    NormalizedMessage, MessagePage, OutgoingMessage, SendResult, AttachmentContent,
)

__all__ = [
    'Backend',
    'Mailbox',
    'MailboxType',
    'NormalizedFlag',
    'EmailAddress',
    'AttachmentInfo',
    'NormalizedMessage',
    'MessagePage',
    'OutgoingMessage',
    'SendResult',
    'AttachmentContent',
]
