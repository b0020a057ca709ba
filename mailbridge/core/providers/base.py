"""
EmailProvider capability interface.

Adapters normalize one backend's paging tokens, flag vocabulary and message
shape. They hold no persistent state of their own: cached reads go through
the SyncCache, and fetched messages are handed to the persist callback
(SyncCache.upsert) before being returned.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from mailbridge.core.email.models import (
    AttachmentContent, Backend, Mailbox, MessagePage, NormalizedFlag, NormalizedMessage,
    OutgoingMessage, SendResult,
)
from mailbridge.core.sync.cache import CacheStatus, SyncCache

logger = logging.getLogger(__name__)

PersistCallback = Callable[[object, Sequence[NormalizedMessage]], Awaitable[List[NormalizedMessage]]]


@dataclass
class RemotePage:
    messages: List[NormalizedMessage] = field(default_factory=list)
    next_token: Optional[str] = None
    total_estimate: int = 0


class EmailProvider(ABC):
    """One mailbox interface over a remote backend plus the local cache."""

    backend: Backend
    # Each message lives in exactly one folder (IMAP) rather than under several labels
    single_folder: bool = True

    def __init__(self, account_id, cache: SyncCache, persist: Optional[PersistCallback] = None):
        self.account_id = account_id
        self.cache = cache
        self.persist = persist or cache.upsert

    # ------------------------------------------------------------------
    # Paging
    # ------------------------------------------------------------------

    def normalize_mailbox(self, mailbox: str) -> str:
        """Canonical mailbox name; cached rows are stored and looked up under it."""
        return mailbox

    def page_number_for_token(self, token: Optional[str]) -> Optional[int]:
        """Page a continuation token leads to, when the backend encodes it."""
        return None

    def token_for_page(self, page_number: int) -> Optional[str]:
        """Continuation token for a page, when the backend can derive it."""
        return None

    async def list_messages(
        self,
        mailbox: str,
        page_size: int,
        continuation_token: Optional[str] = None,
        search_text: Optional[str] = None,
        force_refresh: bool = False,
        page: Optional[int] = None
    ) -> MessagePage:
        """
        List one page of a mailbox.

        Without force_refresh a cached page is served without contacting the
        backend. A cache miss, a cache error (logged) or force_refresh fetches
        from the backend, persists the page and returns it.

        A continuation token decides the page over `page`. When neither the
        token nor `page` places the request, cached pages cannot be matched
        to it, so the backend is asked directly and the result has page None.
        """
        mailbox = self.normalize_mailbox(mailbox)
        if continuation_token:
            page_number = self.page_number_for_token(continuation_token) or page
        else:
            page_number = page or 1

        if not force_refresh and page_number is not None:
            lookup = await self.cache.lookup_page(self.account_id, mailbox, page_size, page_number, search_text)
            if lookup.status == CacheStatus.ERROR:
                logger.warning(f"Cache read failed for {self.account_id}/{mailbox} page {page_number}, "
                               f"fetching from {self.backend.value}: {lookup.error}")
            elif lookup.status == CacheStatus.HIT and self._page_is_complete(lookup.page.messages, page_size, continuation_token):
                cached = lookup.page
                has_more = page_number * page_size < cached.total
                return MessagePage(
                    messages=cached.messages,
                    next_token=self.token_for_page(page_number + 1) if has_more else None,
                    total_estimate=cached.total,
                    page=page_number,
                    from_cache=True,
                )

        remote = await self.fetch_remote_page(mailbox, page_size, continuation_token, search_text, page_number)
        saved = await self.persist(self.account_id, remote.messages)
        messages = await self.cache.resolve(self.account_id, remote.messages, single_folder=self.single_folder)
        logger.info(f"Fetched {len(remote.messages)} messages from {self.backend.value} "
                    f"({mailbox}, page {page_number}), {len(saved)} new")
        return MessagePage(
            messages=messages,
            next_token=remote.next_token,
            total_estimate=remote.total_estimate,
            page=page_number,
            from_cache=False,
        )

    @staticmethod
    def _page_is_complete(messages: List[NormalizedMessage], page_size: int, continuation_token: Optional[str]) -> bool:
        # A short cached page only counts when no remote continuation is pending for it
        return len(messages) >= page_size or not continuation_token

    @abstractmethod
    async def fetch_remote_page(self, mailbox: str, page_size: int, continuation_token: Optional[str],
                                search_text: Optional[str], page_number: Optional[int]) -> RemotePage:
        """Fetch and normalize one page from the backend (no caching)."""

    # ------------------------------------------------------------------
    # Capability set
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_mailboxes(self) -> List[Mailbox]:
        ...

    @abstractmethod
    async def get_message_by_id(self, message_id: str) -> NormalizedMessage:
        """Raises NotFound when the message does not exist."""

    @abstractmethod
    async def send_message(self, outgoing: OutgoingMessage) -> SendResult:
        ...

    @abstractmethod
    async def modify_flags(self, message_id: str, add_flags: Sequence[str], remove_flags: Sequence[str]):
        """Normalized flags {read, unread, starred, important}; unknown flags are ignored."""

    @abstractmethod
    async def trash(self, message_id: str):
        """Reversible: move to the trash container."""

    @abstractmethod
    async def delete(self, message_id: str):
        """Permanent."""

    @abstractmethod
    async def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent:
        ...

    @abstractmethod
    async def verify(self) -> bool:
        """Check the stored credentials against the backend."""

    async def hide_from_inbox(self, message_id: str) -> List[str]:
        """
        Take a snoozed message out of the inbox. Returns what restore_to_inbox
        needs to undo it. Backends without labels only record the snooze.
        """
        return []

    async def restore_to_inbox(self, message_id: str, labels: Sequence[str]):
        """Undo hide_from_inbox when a snooze ends."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _record_sent(self, message: NormalizedMessage):
        """Append a send-derived copy to the cache; the send already succeeded."""
        try:
            await self.persist(self.account_id, [message])
        except Exception as e:
            logger.warning(f"Sent message not cached for account {self.account_id}: {e}")

    async def _apply_cached_flags(self, message_id: str, add: List[NormalizedFlag], remove: List[NormalizedFlag],
                                  add_labels: Sequence[str] = (), remove_labels: Sequence[str] = ()):
        is_read = None
        is_starred = None
        if NormalizedFlag.READ in add or NormalizedFlag.UNREAD in remove:
            is_read = True
        if NormalizedFlag.UNREAD in add or NormalizedFlag.READ in remove:
            is_read = False
        if NormalizedFlag.STARRED in add:
            is_starred = True
        if NormalizedFlag.STARRED in remove:
            is_starred = False
        if is_read is None and is_starred is None and not add_labels and not remove_labels:
            return
        await self.cache.update_flags(
            self.account_id, message_id, is_read=is_read, is_starred=is_starred,
            add_labels=add_labels, remove_labels=remove_labels,
        )
