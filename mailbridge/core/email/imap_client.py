"""
IMAP client for IMAP/SMTP accounts.

Every public method opens a short-lived authenticated connection, performs
one operation and logs out. Connections use a bounded timeout so an
unreachable server fails fast instead of stalling the caller.
"""
from contextlib import contextmanager
from dataclasses import dataclass
import base64
import logging
import socket
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from imapclient import IMAPClient, SEEN, FLAGGED, DELETED
from imapclient.exceptions import IMAPClientError, LoginError

from mailbridge.core.errors import AuthExpired, NotFound, ProviderUnavailable, RemoteBackendError
from .mime import parse_rfc822
from .models import AttachmentContent, AttachmentInfo, Mailbox, MailboxType, NormalizedMessage

logger = logging.getLogger(__name__)

BACKEND = "imap"
PAGE_TOKEN_PREFIX = "page-"

# Special-use flags (RFC 6154) take precedence over name heuristics
_SPECIAL_USE = {
    b'\\Sent': MailboxType.SENT,
    b'\\Drafts': MailboxType.DRAFTS,
    b'\\Trash': MailboxType.TRASH,
    b'\\Junk': MailboxType.SPAM,
    b'\\Flagged': MailboxType.STARRED,
}


@dataclass
class IMAPConfig:
    """IMAP connection configuration"""
    host: str
    username: str
    password: str
    port: int = 993
    use_ssl: bool = True


def page_token(page: int) -> str:
    return f"{PAGE_TOKEN_PREFIX}{page}"


def parse_page_token(token: Optional[str]) -> Optional[int]:
    """Page number encoded in a `page-N` token, None for anything else."""
    if not token or not token.startswith(PAGE_TOKEN_PREFIX):
        return None
    try:
        page = int(token[len(PAGE_TOKEN_PREFIX):])
    except ValueError:
        return None
    return page if page >= 1 else None


def detect_mailbox_type(name: str, flags: Sequence[bytes] = ()) -> MailboxType:
    for flag in flags or ():
        if flag in _SPECIAL_USE:
            return _SPECIAL_USE[flag]

    lowered = name.lower()
    if lowered == 'inbox':
        return MailboxType.INBOX
    if 'sent' in lowered:
        return MailboxType.SENT
    if 'draft' in lowered:
        return MailboxType.DRAFTS
    if 'trash' in lowered or 'deleted' in lowered or lowered.endswith('bin'):
        return MailboxType.TRASH
    if 'spam' in lowered or 'junk' in lowered:
        return MailboxType.SPAM
    return MailboxType.CUSTOM


def build_search_criteria(search_text: Optional[str]) -> List:
    """ALL, or OR over SUBJECT/FROM/BODY for free text."""
    if not search_text:
        return ['ALL']
    return ['OR', 'SUBJECT', search_text, 'OR', 'FROM', search_text, 'BODY', search_text]


class IMAPMailClient:
    """Short-lived IMAP sessions for listing, fetching and mutating messages."""

    def __init__(self, config: IMAPConfig, timeout: int = 10, client_class=IMAPClient):
        self.config = config
        self.timeout = timeout
        self._client_class = client_class

    def connect(self) -> IMAPClient:
        """
        Open and authenticate a connection.

        Raises:
            AuthExpired: Credentials rejected
            ProviderUnavailable: Server unreachable or timed out
        """
        logger.debug(f"Connecting to IMAP server {self.config.host}:{self.config.port} (timeout: {self.timeout}s)")
        try:
            client = self._client_class(
                host=self.config.host,
                port=self.config.port,
                ssl=self.config.use_ssl,
                timeout=self.timeout
            )
        except (socket.timeout, OSError) as e:
            logger.error(f"IMAP connection to {self.config.host} failed: {e}")
            raise ProviderUnavailable(f"Cannot reach IMAP server {self.config.host}: {e}", backend=BACKEND) from e

        try:
            client.login(self.config.username, self.config.password)
        except LoginError as e:
            self._safe_logout(client)
            logger.warning(f"IMAP login rejected for {self.config.username}")
            raise AuthExpired(f"IMAP login failed for {self.config.username}", backend=BACKEND) from e
        except (socket.timeout, OSError) as e:
            self._safe_logout(client)
            raise ProviderUnavailable(f"IMAP login timed out: {e}", backend=BACKEND) from e
        return client

    @staticmethod
    def _safe_logout(client):
        try:
            client.logout()
        except (IMAPClientError, OSError) as e:
            logger.debug(f"Error during IMAP logout: {e}")

    @contextmanager
    def session(self) -> Iterator[IMAPClient]:
        """Authenticated connection; protocol errors surface as RemoteBackendError."""
        client = self.connect()
        try:
            yield client
        except IMAPClientError as e:
            logger.error(f"IMAP error on {self.config.host}: {e}")
            raise RemoteBackendError(str(e), backend=BACKEND) from e
        except (socket.timeout, OSError) as e:
            logger.error(f"IMAP connection lost on {self.config.host}: {e}")
            raise ProviderUnavailable(str(e), backend=BACKEND) from e
        finally:
            self._safe_logout(client)

    def verify(self) -> bool:
        """Log in and out; raises on failure."""
        with self.session() as client:
            client.noop()
        return True

    def list_mailboxes(self) -> List[Mailbox]:
        mailboxes = []
        with self.session() as client:
            for flags, _delimiter, name in client.list_folders():
                if b'\\Noselect' in (flags or ()) or b'\\NoSelect' in (flags or ()):
                    continue
                try:
                    status = client.folder_status(name, ['MESSAGES', 'UNSEEN'])
                except IMAPClientError as e:
                    logger.warning(f"STATUS failed for folder {name}: {e}")
                    status = {}
                mailboxes.append(Mailbox(
                    id=name,
                    name=name,
                    type=detect_mailbox_type(name, flags),
                    total_count=int(status.get(b'MESSAGES', 0)),
                    unread_count=int(status.get(b'UNSEEN', 0)),
                ))
        return mailboxes

    def list_messages(
        self,
        folder: str,
        page: int = 1,
        page_size: int = 20,
        search_text: Optional[str] = None
    ) -> Tuple[List[NormalizedMessage], Optional[str], int]:
        """
        List one page of a folder, newest first.

        Returns:
            (messages, next page token or None, total matching messages)
        """
        with self.session() as client:
            client.select_folder(folder, readonly=True)
            criteria = build_search_criteria(search_text)
            charset = 'UTF-8' if search_text and not search_text.isascii() else None
            uids = sorted(client.search(criteria, charset=charset), reverse=True)

            total = len(uids)
            start = (page - 1) * page_size
            page_uids = uids[start:start + page_size]
            messages = self._fetch_normalized(client, folder, page_uids)

        next_token = page_token(page + 1) if page * page_size < total else None
        logger.info(f"Listed {len(messages)} messages from {folder} (page {page}, total {total})")
        return messages, next_token, total

    def fetch_message(self, folder: str, uid: int) -> Optional[NormalizedMessage]:
        with self.session() as client:
            client.select_folder(folder, readonly=True)
            messages = self._fetch_normalized(client, folder, [uid])
        return messages[0] if messages else None

    def _fetch_normalized(self, client, folder: str, uids: List[int]) -> List[NormalizedMessage]:
        if not uids:
            return []
        fetched = client.fetch(uids, ['BODY.PEEK[]', 'FLAGS', 'INTERNALDATE'])
        messages = []
        for uid in uids:
            data = fetched.get(uid)
            if not data:
                logger.warning(f"No data returned for message {uid} in {folder}")
                continue
            raw = data.get(b'BODY[]') or data.get(b'RFC822') or b''
            flags = data.get(b'FLAGS') or ()
            message, parts = parse_rfc822(raw, fallback_date=data.get(b'INTERNALDATE'))
            message.remote_id = str(uid)
            message.folder = folder
            message.is_read = SEEN in flags
            message.is_starred = FLAGGED in flags
            message.attachments = [
                AttachmentInfo(id=f"{uid}-{index}", filename=att.filename, mime_type=att.mime_type, size=att.size)
                for index, att in enumerate(parts.attachments)
            ]
            messages.append(message)
        return messages

    def fetch_attachment(self, folder: str, uid: int, attachment_id: str) -> AttachmentContent:
        """Attachment ids are `<uid>-<index>` over the message's walked attachment parts."""
        prefix, _, index_text = attachment_id.rpartition('-')
        if prefix != str(uid) or not index_text.isdigit():
            raise NotFound(f"Attachment {attachment_id} not found")

        with self.session() as client:
            client.select_folder(folder, readonly=True)
            fetched = client.fetch([uid], ['BODY.PEEK[]'])
        data = fetched.get(uid)
        if not data:
            raise NotFound(f"Message {uid} not found in {folder}")

        _, parts = parse_rfc822(data.get(b'BODY[]') or b'')
        index = int(index_text)
        if index >= len(parts.attachments):
            raise NotFound(f"Attachment {attachment_id} not found")
        attachment = parts.attachments[index]
        return AttachmentContent(
            filename=attachment.filename,
            mime_type=attachment.mime_type,
            data=base64.b64encode(attachment.data or b'').decode('ascii'),
            size=attachment.size,
        )

    def set_flags(self, folder: str, uid: int, add: Sequence[bytes] = (), remove: Sequence[bytes] = ()):
        with self.session() as client:
            client.select_folder(folder)
            if add:
                client.add_flags([uid], list(add))
            if remove:
                client.remove_flags([uid], list(remove))

    def move(self, folder: str, uid: int, target: str):
        with self.session() as client:
            client.select_folder(folder)
            if client.has_capability('MOVE'):
                client.move([uid], target)
            else:
                client.copy([uid], target)
                client.add_flags([uid], [DELETED])
                client.expunge()
        logger.info(f"Moved message {uid} from {folder} to {target}")

    def delete(self, folder: str, uid: int):
        """Permanently delete: flag \\Deleted and expunge."""
        with self.session() as client:
            client.select_folder(folder)
            client.add_flags([uid], [DELETED])
            client.expunge()
        logger.info(f"Permanently deleted message {uid} from {folder}")


def flag_changes(add: Sequence[str], remove: Sequence[str]) -> Tuple[List[bytes], List[bytes]]:
    """
    Translate normalized flags to IMAP flags.

    read/unread map to \\Seen in opposite directions; starred and important
    both map to \\Flagged.
    """
    native: Dict[str, Tuple[bytes, bool]] = {
        'read': (SEEN, True),
        'unread': (SEEN, False),
        'starred': (FLAGGED, True),
        'important': (FLAGGED, True),
    }
    to_add, to_remove = [], []
    for names, adding in ((add, True), (remove, False)):
        for name in names:
            if name not in native:
                continue
            flag, positive = native[name]
            target = to_add if positive == adding else to_remove
            if flag not in target:
                target.append(flag)
    return to_add, to_remove
