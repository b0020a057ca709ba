"""
Gmail REST API client.

Wraps the Gmail v1 discovery client for one account. Access tokens come
from TokenRefresher; this client never refreshes on its own. All
googleapiclient/google-auth failures are translated into MailBridge errors.
"""
import base64
import logging
import socket
from datetime import datetime
from typing import Callable, List, Optional, Tuple

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailbridge.core.errors import AuthExpired, NotFound, ProviderUnavailable, RemoteBackendError
from .mime import (
    NO_SUBJECT, decode_base64url, make_preview, parse_address, parse_address_list,
    parse_date, to_naive_utc, walk_gmail_payload,
)
from .models import AttachmentContent, AttachmentInfo, Mailbox, MailboxType, NormalizedMessage, SendResult

logger = logging.getLogger(__name__)

BACKEND = "gmail"

SYSTEM_LABEL_TYPES = {
    'INBOX': MailboxType.INBOX,
    'SENT': MailboxType.SENT,
    'DRAFT': MailboxType.DRAFTS,
    'TRASH': MailboxType.TRASH,
    'SPAM': MailboxType.SPAM,
    'STARRED': MailboxType.STARRED,
    'IMPORTANT': MailboxType.IMPORTANT,
}

# Label vocabulary for normalized flags: (label, add label when flag is added)
FLAG_LABELS = {
    'read': ('UNREAD', False),
    'unread': ('UNREAD', True),
    'starred': ('STARRED', True),
    'important': ('IMPORTANT', True),
}


def label_changes(add: List[str], remove: List[str]) -> Tuple[List[str], List[str]]:
    """Translate normalized flags into Gmail addLabelIds/removeLabelIds."""
    add_labels, remove_labels = [], []
    for names, adding in ((add, True), (remove, False)):
        for name in names:
            if name not in FLAG_LABELS:
                continue
            label, positive = FLAG_LABELS[name]
            target = add_labels if positive == adding else remove_labels
            if label not in target:
                target.append(label)
    return add_labels, remove_labels


def _header(headers: List[dict], name: str) -> Optional[str]:
    lowered = name.lower()
    for header in headers or []:
        if header.get('name', '').lower() == lowered:
            return header.get('value')
    return None


def normalize_gmail_message(data: dict, folder: Optional[str] = None) -> NormalizedMessage:
    """Convert a `format=full` Gmail message resource to a NormalizedMessage."""
    payload = data.get('payload') or {}
    headers = payload.get('headers') or []
    labels = list(data.get('labelIds') or [])
    parts = walk_gmail_payload(payload)

    internal_date = None
    if data.get('internalDate'):
        internal_date = datetime.utcfromtimestamp(int(data['internalDate']) / 1000)

    if folder is None:
        folder = next((label for label in ('INBOX', 'SENT', 'DRAFT', 'TRASH', 'SPAM') if label in labels), 'INBOX')

    return NormalizedMessage(
        remote_id=data.get('id'),
        thread_id=data.get('threadId'),
        internet_message_id=_header(headers, 'Message-ID'),
        folder=folder,
        sender=parse_address(_header(headers, 'From')),
        to=parse_address_list(_header(headers, 'To')),
        cc=parse_address_list(_header(headers, 'Cc')),
        subject=(_header(headers, 'Subject') or '').strip() or NO_SUBJECT,
        date=parse_date(_header(headers, 'Date'), internal_date),
        body_text=parts.text,
        body_html=parts.html,
        preview=make_preview(parts.text, parts.html) or (data.get('snippet') or '')[:200],
        is_read='UNREAD' not in labels,
        is_starred='STARRED' in labels,
        labels=labels,
        attachments=[
            AttachmentInfo(id=att.remote_id, filename=att.filename, mime_type=att.mime_type, size=att.size)
            for att in parts.attachments if att.remote_id
        ],
    )


class GmailClient:
    """Gmail v1 API operations for a single authorized account."""

    def __init__(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        timeout: int = 10,
        service_factory: Optional[Callable] = None
    ):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.timeout = timeout
        self._service_factory = service_factory or self._build_service
        self._service = None

    def _build_service(self):
        credentials = Credentials(token=self.access_token, refresh_token=self.refresh_token)
        http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=self.timeout))
        return build('gmail', 'v1', http=http, cache_discovery=False)

    @property
    def service(self):
        if self._service is None:
            self._service = self._service_factory()
        return self._service

    def _execute(self, request):
        """Run a request, translating transport and HTTP errors."""
        try:
            return request.execute()
        except HttpError as e:
            status = getattr(e.resp, 'status', None)
            reason = getattr(e, 'reason', None) or str(e)
            if status == 401:
                raise AuthExpired(f"Gmail rejected the access token: {reason}", backend=BACKEND) from e
            if status == 404:
                raise NotFound(f"Gmail resource not found: {reason}") from e
            logger.error(f"Gmail API error {status}: {reason}")
            raise RemoteBackendError(f"Gmail API error {status}: {reason}", backend=BACKEND) from e
        except RefreshError as e:
            raise AuthExpired(f"Gmail token refresh failed: {e}", backend=BACKEND) from e
        except (TransportError, socket.timeout, OSError) as e:
            logger.error(f"Gmail API unreachable: {e}")
            raise ProviderUnavailable(f"Gmail API unreachable: {e}", backend=BACKEND) from e

    def get_profile(self) -> dict:
        """emailAddress and message counters of the authorized mailbox."""
        return self._execute(self.service.users().getProfile(userId='me'))

    def list_labels(self) -> List[Mailbox]:
        """System labels plus user labels not hidden from the label list."""
        labels = self._execute(self.service.users().labels().list(userId='me')).get('labels', [])
        mailboxes = []
        for label in labels:
            is_system = label.get('type') == 'system'
            if not is_system and label.get('labelListVisibility') == 'labelHide':
                continue
            details = self._execute(self.service.users().labels().get(userId='me', id=label['id']))
            mailboxes.append(Mailbox(
                id=label['id'],
                name=label.get('name', label['id']),
                type=SYSTEM_LABEL_TYPES.get(label['id'], MailboxType.CUSTOM),
                total_count=int(details.get('messagesTotal', 0)),
                unread_count=int(details.get('messagesUnread', 0)),
            ))
        return mailboxes

    def list_messages(
        self,
        label_id: str,
        page_size: int = 20,
        page_token: Optional[str] = None,
        query: Optional[str] = None
    ) -> Tuple[List[NormalizedMessage], Optional[str], int]:
        """
        List one page of a label.

        Returns:
            (messages, nextPageToken or None, resultSizeEstimate)
        """
        params = {'userId': 'me', 'labelIds': [label_id], 'maxResults': page_size}
        if page_token:
            params['pageToken'] = page_token
        if query:
            params['q'] = query
        response = self._execute(self.service.users().messages().list(**params))

        messages = []
        for ref in response.get('messages', []):
            data = self._execute(self.service.users().messages().get(userId='me', id=ref['id'], format='full'))
            messages.append(normalize_gmail_message(data, folder=label_id))

        logger.info(f"Listed {len(messages)} Gmail messages from {label_id}")
        return messages, response.get('nextPageToken'), int(response.get('resultSizeEstimate', len(messages)))

    def get_message(self, message_id: str) -> NormalizedMessage:
        data = self._execute(self.service.users().messages().get(userId='me', id=message_id, format='full'))
        return normalize_gmail_message(data)

    def send_raw(self, raw_message: bytes, thread_id: Optional[str] = None) -> SendResult:
        body = {'raw': base64.urlsafe_b64encode(raw_message).decode('ascii')}
        if thread_id:
            body['threadId'] = thread_id
        response = self._execute(self.service.users().messages().send(userId='me', body=body))
        logger.info(f"Gmail message sent: {response.get('id')}")
        return SendResult(remote_id=response['id'], thread_id=response.get('threadId'))

    def modify_labels(self, message_id: str, add: List[str], remove: List[str]):
        body = {'addLabelIds': add, 'removeLabelIds': remove}
        self._execute(self.service.users().messages().modify(userId='me', id=message_id, body=body))

    def trash(self, message_id: str):
        self._execute(self.service.users().messages().trash(userId='me', id=message_id))

    def delete(self, message_id: str):
        self._execute(self.service.users().messages().delete(userId='me', id=message_id))

    def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent:
        message = self.get_message(message_id)
        info = next((att for att in message.attachments if att.id == attachment_id), None)
        if info is None:
            raise NotFound(f"Attachment {attachment_id} not found on message {message_id}")

        response = self._execute(
            self.service.users().messages().attachments().get(userId='me', messageId=message_id, id=attachment_id)
        )
        content = decode_base64url(response.get('data'))
        return AttachmentContent(
            filename=info.filename,
            mime_type=info.mime_type,
            data=base64.b64encode(content).decode('ascii'),
            size=int(response.get('size', len(content))),
        )
