"""
Provider-agnostic message types.

Both adapters normalize their backend's message shape into these models;
the sync cache and search only ever see NormalizedMessage.
"""
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime
from typing import Optional, List, Tuple


class Backend(str, Enum):
    """Mail backend selected for an account."""
    REMOTE_API = "remote-api"
    IMAP_SMTP = "imap-smtp"


class MailboxType(str, Enum):
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    STARRED = "starred"
    IMPORTANT = "important"
    CUSTOM = "custom"


class NormalizedFlag(str, Enum):
    """Flag vocabulary shared by all backends; adapters translate to native flags/labels."""
    READ = "read"
    UNREAD = "unread"
    STARRED = "starred"
    IMPORTANT = "important"

    @classmethod
    def parse_many(cls, values: Optional[List[str]]) -> List["NormalizedFlag"]:
        """Known flags only; unknown names are dropped, not rejected."""
        flags = []
        for value in values or []:
            try:
                flags.append(cls(str(value).lower()))
            except ValueError:
                continue
        return flags


class Mailbox(BaseModel):
    id: str
    name: str
    type: MailboxType = MailboxType.CUSTOM
    total_count: int = 0
    unread_count: int = 0


class EmailAddress(BaseModel):
    name: Optional[str] = None
    address: str = ""

    def formatted(self) -> str:
        return f"{self.name} <{self.address}>" if self.name else self.address


class AttachmentInfo(BaseModel):
    """Attachment metadata; content is fetched on demand and never cached."""
    id: str
    filename: str
    mime_type: str = "application/octet-stream"
    size: int = 0


class NormalizedMessage(BaseModel):
    """One email in the provider-agnostic shape."""
    id: Optional[str] = None  # local cache key, set once persisted
    remote_id: Optional[str] = None
    thread_id: Optional[str] = None
    internet_message_id: Optional[str] = None
    folder: str = "INBOX"

    sender: EmailAddress = Field(default_factory=EmailAddress)
    to: List[EmailAddress] = Field(default_factory=list)
    cc: List[EmailAddress] = Field(default_factory=list)
    subject: str = "(No Subject)"
    date: datetime  # naive UTC

    body_text: Optional[str] = None
    body_html: Optional[str] = None
    preview: str = ""

    is_read: bool = False
    is_starred: bool = False
    labels: List[str] = Field(default_factory=list)
    attachments: List[AttachmentInfo] = Field(default_factory=list)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)

    def dedup_key(self) -> Tuple[str, str, datetime]:
        """(sender address, subject, timestamp); combined with the account it identifies a message."""
        return (self.sender.address, self.subject, self.date)


class MessagePage(BaseModel):
    messages: List[NormalizedMessage] = Field(default_factory=list)
    next_token: Optional[str] = None
    total_estimate: int = 0
    page: Optional[int] = 1  # None when the page a continuation token leads to is unknown
    from_cache: bool = False


class OutgoingMessage(BaseModel):
    to: List[str]
    subject: str
    body: str
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    thread_id: Optional[str] = None
    is_html: bool = False


class SendResult(BaseModel):
    remote_id: str
    thread_id: Optional[str] = None


class AttachmentContent(BaseModel):
    filename: str
    mime_type: str
    data: str  # standard base64
    size: int
