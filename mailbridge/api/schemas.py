"""
Pydantic schemas for FastAPI endpoints
"""
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field
from uuid import UUID

from mailbridge.core.email.models import Backend, NormalizedMessage
from mailbridge.core.snoozes import SnoozeRecord
from mailbridge.core.summaries import SummaryLength, SummaryTone


class AccountCreateRequest(BaseModel):
    """Create account request"""
    email: str = Field(..., min_length=3, max_length=320)
    display_name: Optional[str] = None
    backend: Backend = Backend.REMOTE_API


class AccountResponse(BaseModel):
    """Account response (tokens and credentials are never returned)"""
    id: UUID
    email: str
    display_name: Optional[str] = None
    backend: str
    has_oauth_tokens: bool = False
    oauth_token_expiry: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BackendUpdateRequest(BaseModel):
    backend: Backend


class OAuthTokensRequest(BaseModel):
    """Tokens obtained by an external OAuth flow"""
    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None


class CredentialCreateRequest(BaseModel):
    """IMAP/SMTP credential set"""
    email_address: str
    display_name: Optional[str] = None
    imap_host: str
    imap_port: int = Field(993, ge=1, le=65535)
    imap_use_ssl: bool = True
    imap_username: str
    imap_password: str
    smtp_host: str
    smtp_port: int = Field(587, ge=1, le=65535)
    smtp_use_tls: bool = True
    smtp_username: str
    smtp_password: str
    is_active: bool = True
    is_default: bool = True


class CredentialResponse(BaseModel):
    """Stored credential set (passwords omitted)"""
    id: UUID
    email_address: str
    imap_host: str
    imap_port: int
    smtp_host: str
    smtp_port: int
    is_active: bool
    is_default: bool

    class Config:
        from_attributes = True


class VerifyResponse(BaseModel):
    verified: bool


class SyncResponse(BaseModel):
    synced: int


class SendRequest(BaseModel):
    to: List[str] = Field(..., min_length=1)
    subject: str
    body: str
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    is_html: bool = False


class ReplyRequest(BaseModel):
    body: str = Field(..., min_length=1)
    cc: List[str] = Field(default_factory=list)
    reply_all: bool = False
    is_html: bool = False


class ModifyFlagsRequest(BaseModel):
    """Normalized flags: read, unread, starred, important (others are ignored)"""
    add_flags: List[str] = Field(default_factory=list)
    remove_flags: List[str] = Field(default_factory=list)


class ReadRequest(BaseModel):
    read: bool = True


class StarResponse(BaseModel):
    starred: bool


class ActionResponse(BaseModel):
    status: str = "ok"


class SummaryRequest(BaseModel):
    length: SummaryLength = SummaryLength.MEDIUM
    tone: SummaryTone = SummaryTone.FORMAL
    instructions: Optional[str] = Field(None, max_length=1000)
    regenerate: bool = False


class SummaryResponse(BaseModel):
    message_id: str
    summary: str
    generated_at: datetime
    cached: bool
    model: Optional[str] = None


class SearchHitResponse(BaseModel):
    message: NormalizedMessage
    score: float
    sources: List[str]


class SearchResponse(BaseModel):
    query: str
    count: int
    results: List[SearchHitResponse]


class AdvancedSearchResponse(BaseModel):
    query: str
    normalized_query: str
    total: int
    page: int
    page_size: int
    messages: List[NormalizedMessage]


class SuggestionsResponse(BaseModel):
    kind: str
    suggestions: List[str]


class SnoozeRequest(BaseModel):
    """Hide a message until a time (naive UTC); recurrence is DAILY, WEEKLY or MONTHLY"""
    message_id: str
    until: datetime
    reason: Optional[str] = Field(None, max_length=500)
    recurrence: Optional[str] = None


class SnoozeUpdateRequest(BaseModel):
    until: datetime


class SnoozeListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    snoozes: List[SnoozeRecord]
