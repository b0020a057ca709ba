"""
Mailbox Service

Request-path facade over ProviderFactory, SyncCache and PageTokenIndex.
Resolves the provider for each call, validates paging parameters, keeps
the page-token index current and runs the destructive initial sync.
"""
import logging
from typing import List, Optional, Sequence

from mailbridge.core.config import Settings, get_settings
from mailbridge.core.email.models import (
    AttachmentContent, Mailbox, MessagePage, NormalizedFlag, NormalizedMessage, OutgoingMessage, SendResult,
)
from mailbridge.core.errors import ValidationError
from mailbridge.core.providers.base import EmailProvider
from mailbridge.core.providers.factory import ProviderFactory
from .cache import SyncCache
from .page_tokens import PageTokenIndex

logger = logging.getLogger(__name__)

INBOX = "INBOX"


def normalize_mailbox(mailbox: Optional[str]) -> str:
    """Blank means INBOX; 'inbox' in any case is the canonical INBOX."""
    mailbox = (mailbox or "").strip()
    if not mailbox or mailbox.upper() == INBOX:
        return INBOX
    return mailbox


def reply_subject(subject: str) -> str:
    if subject[:3].lower() == 're:':
        return subject
    return f"Re: {subject}"


class MailboxService:
    """One entry point per mailbox operation, independent of the backend."""

    def __init__(
        self,
        factory: ProviderFactory,
        cache: SyncCache,
        token_index: Optional[PageTokenIndex] = None,
        settings: Optional[Settings] = None
    ):
        self.factory = factory
        self.cache = cache
        self.token_index = token_index if token_index is not None else PageTokenIndex()
        self.settings = settings or get_settings()

    async def provider(self, account_id) -> EmailProvider:
        return await self.factory.create_provider(account_id)

    def _validate_paging(self, page: int, page_size: int):
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        if page_size < 1 or page_size > self.settings.max_page_size:
            raise ValidationError(f"page_size must be between 1 and {self.settings.max_page_size}, got {page_size}")

    async def list_mailboxes(self, account_id) -> List[Mailbox]:
        provider = await self.provider(account_id)
        return await provider.list_mailboxes()

    async def list_messages(
        self,
        account_id,
        mailbox: str = INBOX,
        page: int = 1,
        page_size: Optional[int] = None,
        token: Optional[str] = None,
        search_text: Optional[str] = None,
        force_refresh: bool = False
    ) -> MessagePage:
        """
        List one page of a mailbox.

        A continuation token takes precedence over `page`: its page comes
        from the index when the token was recorded here. For page > 1
        without an explicit token the index is consulted; when no token is
        known for that page the result is empty rather than a guessed page.
        """
        if page_size is None:
            page_size = self.settings.default_page_size
        self._validate_paging(page, page_size)
        mailbox = normalize_mailbox(mailbox)
        search_text = (search_text or "").strip() or None

        key = self.token_index.key(account_id, mailbox, page_size)
        if token:
            page = self.token_index.page_for_token(key, token)
        elif page > 1:
            token = self.token_index.lookup(key, page)
            if not token:
                logger.info(f"No continuation token for {account_id}/{mailbox} page {page} (size {page_size})")
                return MessagePage(page=page)

        provider = await self.provider(account_id)
        result = await provider.list_messages(
            mailbox, page_size,
            continuation_token=token,
            search_text=search_text,
            force_refresh=force_refresh,
            page=page,
        )

        # Search results page differently from the plain listing
        if not search_text and result.page is not None:
            if result.next_token:
                self.token_index.record_next_token(key, result.page, result.next_token)
            else:
                result.next_token = self.token_index.lookup(key, result.page + 1)
        return result

    async def get_message(self, account_id, message_id: str) -> NormalizedMessage:
        provider = await self.provider(account_id)
        return await provider.get_message_by_id(message_id)

    async def send(self, account_id, outgoing: OutgoingMessage) -> SendResult:
        if not outgoing.to:
            raise ValidationError("At least one recipient is required")
        provider = await self.provider(account_id)
        result = await provider.send_message(outgoing)
        logger.info(f"Sent message for account {account_id} to {len(outgoing.to)} recipient(s)")
        return result

    async def reply(
        self,
        account_id,
        message_id: str,
        body: str,
        cc: Optional[Sequence[str]] = None,
        reply_all: bool = False,
        is_html: bool = False
    ) -> SendResult:
        """Reply to the original sender (and its recipients with reply_all) in the same thread."""
        provider = await self.provider(account_id)
        original = await provider.get_message_by_id(message_id)

        sender = original.sender.address
        to = [sender]
        if reply_all:
            to += [a.address for a in original.to if a.address and a.address != sender]
            cc = [a.address for a in original.cc if a.address]
        reference = original.internet_message_id or f"<{original.remote_id or message_id}>"

        outgoing = OutgoingMessage(
            to=to,
            subject=reply_subject(original.subject),
            body=body,
            cc=list(cc or []),
            in_reply_to=reference,
            references=reference,
            thread_id=original.thread_id,
            is_html=is_html,
        )
        return await provider.send_message(outgoing)

    async def modify_flags(self, account_id, message_id: str, add_flags: Sequence[str] = (),
                           remove_flags: Sequence[str] = ()):
        provider = await self.provider(account_id)
        await provider.modify_flags(message_id, list(add_flags), list(remove_flags))

    async def mark_read(self, account_id, message_id: str, read: bool = True):
        if read:
            await self.modify_flags(account_id, message_id, [NormalizedFlag.READ.value], [])
        else:
            await self.modify_flags(account_id, message_id, [NormalizedFlag.UNREAD.value], [])

    async def toggle_star(self, account_id, message_id: str) -> bool:
        """Flip the starred flag; returns the new state."""
        provider = await self.provider(account_id)
        message = await self.cache.get_by_id(account_id, message_id)
        if message is None:
            message = await provider.get_message_by_id(message_id)
        starred = not message.is_starred
        if starred:
            await provider.modify_flags(message_id, [NormalizedFlag.STARRED.value], [])
        else:
            await provider.modify_flags(message_id, [], [NormalizedFlag.STARRED.value])
        return starred

    async def trash(self, account_id, message_id: str):
        provider = await self.provider(account_id)
        await provider.trash(message_id)

    async def delete(self, account_id, message_id: str):
        provider = await self.provider(account_id)
        await provider.delete(message_id)

    async def get_attachment(self, account_id, message_id: str, attachment_id: str) -> AttachmentContent:
        provider = await self.provider(account_id)
        return await provider.get_attachment(message_id, attachment_id)

    async def verify(self, account_id) -> bool:
        provider = await self.provider(account_id)
        return await provider.verify()

    async def initial_sync(self, account_id) -> List[NormalizedMessage]:
        """
        Destructive full resync of an account.

        Fetches the newest messages of INBOX, then clears the account's cache
        and inserts them without existence checks. Anything cached before and
        not in this batch is discarded. Page tokens of the account are
        forgotten since cached page boundaries change.
        """
        provider = await self.provider(account_id)
        remote = await provider.fetch_remote_page(INBOX, self.settings.initial_sync_batch, None, None, 1)
        saved = await self.cache.replace_all(account_id, remote.messages)
        self.token_index.clear(account_id)
        logger.info(f"Initial sync for account {account_id}: {len(saved)} messages cached")
        return saved
