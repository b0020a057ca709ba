"""
MIME parsing and building shared by the IMAP and Gmail clients.

Part trees are walked with an explicit stack rather than recursion so a
deeply nested or malformed message cannot exhaust the interpreter stack.
The first text/plain and first text/html bodies win; every part with a
filename (or an attachment disposition) is collected as an attachment.
"""
import base64
import email
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.message import Message
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, getaddresses, make_msgid, parsedate_to_datetime, formatdate
from typing import List, Optional, Tuple

from .models import EmailAddress, NormalizedMessage, OutgoingMessage

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200
NO_SUBJECT = "(No Subject)"

_TAG_RE = re.compile(r'<[^>]+>')
_SCRIPT_RE = re.compile(r'<(script|style)[^>]*>.*?</\1>', re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r'\s+')


@dataclass
class PartAttachment:
    filename: str
    mime_type: str
    size: int = 0
    data: Optional[bytes] = None  # raw MIME parts only
    remote_id: Optional[str] = None  # Gmail attachmentId


@dataclass
class MessageParts:
    text: Optional[str] = None
    html: Optional[str] = None
    attachments: List[PartAttachment] = field(default_factory=list)


def decode_header_value(value: Optional[str]) -> str:
    """Decode an RFC 2047 header into text."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, ValueError):
        return value


def parse_address(value: Optional[str]) -> EmailAddress:
    addresses = parse_address_list(value)
    return addresses[0] if addresses else EmailAddress()


def parse_address_list(value: Optional[str]) -> List[EmailAddress]:
    if not value:
        return []
    result = []
    for name, address in getaddresses([decode_header_value(value)]):
        if address:
            result.append(EmailAddress(name=name or None, address=address.strip()))
    return result


def to_naive_utc(dt: datetime) -> datetime:
    """Naive UTC with second precision, the form every cached timestamp uses."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0)


def parse_date(value: Optional[str], fallback: Optional[datetime] = None) -> datetime:
    if value:
        try:
            return to_naive_utc(parsedate_to_datetime(value))
        except (TypeError, ValueError, IndexError):
            logger.debug(f"Unparseable Date header: {value!r}")
    return to_naive_utc(fallback or datetime.utcnow())


def html_to_text(markup: Optional[str]) -> str:
    if not markup:
        return ""
    stripped = _TAG_RE.sub(' ', _SCRIPT_RE.sub(' ', markup))
    return _WS_RE.sub(' ', html.unescape(stripped)).strip()


def make_preview(text: Optional[str], markup: Optional[str] = None) -> str:
    source = text if text and text.strip() else html_to_text(markup)
    return _WS_RE.sub(' ', source or '').strip()[:PREVIEW_LENGTH]


def _decode_text(part: Message) -> str:
    payload = part.get_payload(decode=True) or b''
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        return payload.decode('utf-8', errors='replace')


def walk_mime(message: Message) -> MessageParts:
    """Collect bodies and attachments from a parsed RFC822 message."""
    parts = MessageParts()
    stack = [message]
    while stack:
        part = stack.pop()
        if part.is_multipart():
            children = part.get_payload()
            if isinstance(children, list):
                stack.extend(reversed(children))
            continue

        content_type = part.get_content_type()
        filename = part.get_filename()
        if filename or part.get_content_disposition() == 'attachment':
            payload = part.get_payload(decode=True) or b''
            parts.attachments.append(PartAttachment(
                filename=decode_header_value(filename) or f"attachment-{len(parts.attachments) + 1}",
                mime_type=content_type,
                size=len(payload),
                data=payload,
            ))
        elif content_type == 'text/plain' and parts.text is None:
            parts.text = _decode_text(part)
        elif content_type == 'text/html' and parts.html is None:
            parts.html = _decode_text(part)
    return parts


def decode_base64url(data: Optional[str]) -> bytes:
    if not data:
        return b''
    return base64.urlsafe_b64decode(data + '=' * (-len(data) % 4))


def walk_gmail_payload(payload: dict) -> MessageParts:
    """Collect bodies and attachment metadata from a Gmail `format=full` payload."""
    parts = MessageParts()
    stack = [payload or {}]
    while stack:
        part = stack.pop()
        children = part.get('parts') or []
        if children:
            stack.extend(reversed(children))
            continue

        mime_type = part.get('mimeType', '')
        body = part.get('body') or {}
        filename = part.get('filename')
        if filename or body.get('attachmentId'):
            parts.attachments.append(PartAttachment(
                filename=filename or f"attachment-{len(parts.attachments) + 1}",
                mime_type=mime_type or 'application/octet-stream',
                size=int(body.get('size') or 0),
                remote_id=body.get('attachmentId'),
            ))
        elif mime_type == 'text/plain' and parts.text is None:
            parts.text = decode_base64url(body.get('data')).decode('utf-8', errors='replace')
        elif mime_type == 'text/html' and parts.html is None:
            parts.html = decode_base64url(body.get('data')).decode('utf-8', errors='replace')
    return parts


def parse_rfc822(raw: bytes, fallback_date: Optional[datetime] = None) -> Tuple[NormalizedMessage, MessageParts]:
    """
    Parse raw message bytes into a NormalizedMessage (without remote ids,
    flags or attachment ids, which the caller fills in) plus the walked parts.
    """
    message = email.message_from_bytes(raw or b'')
    parts = walk_mime(message)
    subject = decode_header_value(message.get('Subject')).strip() or NO_SUBJECT

    normalized = NormalizedMessage(
        internet_message_id=(message.get('Message-ID') or '').strip() or None,
        sender=parse_address(message.get('From')),
        to=parse_address_list(message.get('To')),
        cc=parse_address_list(message.get('Cc')),
        subject=subject,
        date=parse_date(message.get('Date'), fallback_date),
        body_text=parts.text,
        body_html=parts.html,
        preview=make_preview(parts.text, parts.html),
    )
    return normalized, parts


def build_mime_message(
    outgoing: OutgoingMessage,
    from_email: str,
    from_name: Optional[str] = None,
) -> Tuple[Message, str]:
    """
    Build the MIME message for sending.

    Returns:
        (message, Message-ID)
    """
    if outgoing.is_html:
        msg = MIMEMultipart('alternative')
        msg.attach(MIMEText(html_to_text(outgoing.body), 'plain', 'utf-8'))
        msg.attach(MIMEText(outgoing.body, 'html', 'utf-8'))
    else:
        msg = MIMEText(outgoing.body, 'plain', 'utf-8')

    msg['From'] = formataddr((from_name or '', from_email))
    msg['To'] = ', '.join(outgoing.to)
    msg['Subject'] = outgoing.subject

    domain = from_email.split('@')[1] if '@' in from_email else None
    message_id = make_msgid(domain=domain)
    msg['Message-ID'] = message_id
    msg['Date'] = formatdate(usegmt=True)

    if outgoing.cc:
        msg['Cc'] = ', '.join(outgoing.cc)
    if outgoing.bcc:
        msg['Bcc'] = ', '.join(outgoing.bcc)

    # Threading headers (for replies)
    if outgoing.in_reply_to:
        msg['In-Reply-To'] = outgoing.in_reply_to
    if outgoing.references:
        msg['References'] = outgoing.references
    elif outgoing.in_reply_to:
        msg['References'] = outgoing.in_reply_to

    return msg, message_id


def sent_copy(outgoing: OutgoingMessage, from_email: str, from_name: Optional[str], folder: str,
              remote_id: Optional[str] = None, thread_id: Optional[str] = None,
              internet_message_id: Optional[str] = None) -> NormalizedMessage:
    """Normalized form of a message we just sent, for appending to the cache."""
    text = html_to_text(outgoing.body) if outgoing.is_html else outgoing.body
    return NormalizedMessage(
        remote_id=remote_id,
        thread_id=thread_id,
        internet_message_id=internet_message_id,
        folder=folder,
        sender=EmailAddress(name=from_name or None, address=from_email),
        to=[EmailAddress(address=a) for a in outgoing.to],
        cc=[EmailAddress(address=a) for a in outgoing.cc],
        subject=outgoing.subject or NO_SUBJECT,
        date=to_naive_utc(datetime.utcnow()),
        body_text=text,
        body_html=outgoing.body if outgoing.is_html else None,
        preview=make_preview(text),
        is_read=True,
    )
