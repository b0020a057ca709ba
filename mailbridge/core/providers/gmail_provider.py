"""
Gmail REST adapter.

Obtains a valid access token from the token supplier before every backend
call. Message ids may be local cache ids or native Gmail ids; cache ids
are resolved to the Gmail id first.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from mailbridge.core.email.gmail_client import GmailClient, label_changes
from mailbridge.core.email.mime import build_mime_message, sent_copy
from mailbridge.core.email.models import (
    AttachmentContent, Backend, Mailbox, NormalizedFlag, NormalizedMessage, OutgoingMessage, SendResult,
)
from mailbridge.core.sync.cache import SyncCache
from .base import EmailProvider, PersistCallback, RemotePage

logger = logging.getLogger(__name__)

TokenSupplier = Callable[[], Awaitable[Tuple[str, Optional[str]]]]
GmailClientFactory = Callable[[str, Optional[str]], GmailClient]

# Folder names accepted case-insensitively for Gmail system labels
SYSTEM_LABELS = {'INBOX', 'SENT', 'DRAFT', 'TRASH', 'SPAM', 'STARRED', 'IMPORTANT', 'UNREAD'}
LABEL_ALIASES = {'DRAFTS': 'DRAFT', 'JUNK': 'SPAM'}
# Removed while a message is snoozed
SNOOZE_LABELS = ('INBOX', 'UNREAD')


def normalize_label(mailbox: str) -> str:
    upper = mailbox.upper()
    upper = LABEL_ALIASES.get(upper, upper)
    return upper if upper in SYSTEM_LABELS else mailbox


class GmailProvider(EmailProvider):
    """EmailProvider over the Gmail v1 REST API."""

    backend = Backend.REMOTE_API
    single_folder = False

    def __init__(
        self,
        account_id,
        cache: SyncCache,
        token_supplier: TokenSupplier,
        email_address: str,
        display_name: Optional[str] = None,
        persist: Optional[PersistCallback] = None,
        client_factory: Optional[GmailClientFactory] = None,
        timeout: int = 10
    ):
        super().__init__(account_id, cache, persist)
        self.token_supplier = token_supplier
        self.email_address = email_address
        self.display_name = display_name
        self.timeout = timeout
        self._client_factory = client_factory or (
            lambda access, refresh: GmailClient(access, refresh, timeout=self.timeout)
        )

    async def _client(self) -> GmailClient:
        access_token, refresh_token = await self.token_supplier()
        return self._client_factory(access_token, refresh_token)

    async def _remote_id(self, message_id: str) -> str:
        cached = await self.cache.get_by_id(self.account_id, message_id)
        if cached is not None and cached.remote_id:
            return cached.remote_id
        return message_id

    def normalize_mailbox(self, mailbox: str) -> str:
        return normalize_label(mailbox)

    async def fetch_remote_page(self, mailbox: str, page_size: int, continuation_token: Optional[str],
                                search_text: Optional[str], page_number: Optional[int]) -> RemotePage:
        if not continuation_token and page_number > 1:
            # Gmail cannot seek without its opaque pageToken
            return RemotePage()
        client = await self._client()
        messages, next_token, total = await asyncio.to_thread(
            client.list_messages, mailbox, page_size, continuation_token, search_text
        )
        return RemotePage(messages=messages, next_token=next_token, total_estimate=total)

    async def list_mailboxes(self) -> List[Mailbox]:
        client = await self._client()
        return await asyncio.to_thread(client.list_labels)

    async def get_message_by_id(self, message_id: str) -> NormalizedMessage:
        remote_id = await self._remote_id(message_id)
        client = await self._client()
        message = await asyncio.to_thread(client.get_message, remote_id)
        cached = await self.cache.get_by_remote_id(self.account_id, remote_id)
        return message.model_copy(update={'id': cached.id if cached else None})

    async def send_message(self, outgoing: OutgoingMessage) -> SendResult:
        msg, header_id = build_mime_message(outgoing, self.email_address, self.display_name)
        client = await self._client()
        result = await asyncio.to_thread(client.send_raw, msg.as_bytes(), outgoing.thread_id)
        await self._record_sent(sent_copy(
            outgoing, self.email_address, self.display_name, 'SENT',
            remote_id=result.remote_id, thread_id=result.thread_id, internet_message_id=header_id,
        ))
        return result

    async def modify_flags(self, message_id: str, add_flags: Sequence[str], remove_flags: Sequence[str]):
        add = NormalizedFlag.parse_many(add_flags)
        remove = NormalizedFlag.parse_many(remove_flags)
        add_labels, remove_labels = label_changes([f.value for f in add], [f.value for f in remove])
        if not add_labels and not remove_labels:
            return

        remote_id = await self._remote_id(message_id)
        client = await self._client()
        await asyncio.to_thread(client.modify_labels, remote_id, add_labels, remove_labels)
        cached = await self.cache.get_by_remote_id(self.account_id, remote_id)
        if cached:
            await self._apply_cached_flags(cached.id, add, remove, add_labels, remove_labels)

    async def trash(self, message_id: str):
        remote_id = await self._remote_id(message_id)
        client = await self._client()
        await asyncio.to_thread(client.trash, remote_id)
        cached = await self.cache.get_by_remote_id(self.account_id, remote_id)
        if cached:
            await self.cache.update_flags(
                self.account_id, cached.id, folder='TRASH', add_labels=['TRASH'], remove_labels=['INBOX']
            )

    async def hide_from_inbox(self, message_id: str) -> List[str]:
        """Archive while snoozed: drop INBOX and UNREAD, returning the labels actually removed."""
        remote_id = await self._remote_id(message_id)
        cached = await self.cache.get_by_remote_id(self.account_id, remote_id)
        current = cached.labels if cached and cached.labels else list(SNOOZE_LABELS)
        removed = [label for label in SNOOZE_LABELS if label in current]
        if not removed:
            return []
        client = await self._client()
        await asyncio.to_thread(client.modify_labels, remote_id, [], removed)
        if cached:
            await self.cache.update_flags(
                self.account_id, cached.id,
                is_read=True if 'UNREAD' in removed else None,
                remove_labels=removed,
            )
        return removed

    async def restore_to_inbox(self, message_id: str, labels: Sequence[str]):
        labels = list(labels) or ['INBOX']
        remote_id = await self._remote_id(message_id)
        client = await self._client()
        await asyncio.to_thread(client.modify_labels, remote_id, labels, [])
        cached = await self.cache.get_by_remote_id(self.account_id, remote_id)
        if cached:
            await self.cache.update_flags(
                self.account_id, cached.id,
                is_read=False if 'UNREAD' in labels else None,
                add_labels=labels,
            )

    async def delete(self, message_id: str):
        remote_id = await self._remote_id(message_id)
        client = await self._client()
        await asyncio.to_thread(client.delete, remote_id)
        cached = await self.cache.get_by_remote_id(self.account_id, remote_id)
        if cached:
            await self.cache.remove(self.account_id, cached.id)

    async def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent:
        remote_id = await self._remote_id(message_id)
        client = await self._client()
        return await asyncio.to_thread(client.get_attachment, remote_id, attachment_id)

    async def verify(self) -> bool:
        client = await self._client()
        await asyncio.to_thread(client.get_profile)
        return True
