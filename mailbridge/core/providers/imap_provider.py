"""
IMAP/SMTP adapter.

IMAP UIDs are only meaningful together with their folder, so every message
id this adapter accepts is a local cache id that resolves to
(folder, UID) through the SyncCache.
"""
import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from mailbridge.core.email.imap_client import IMAPMailClient, flag_changes, page_token, parse_page_token
from mailbridge.core.email.mime import sent_copy
from mailbridge.core.email.models import (
    AttachmentContent, Backend, Mailbox, NormalizedFlag, NormalizedMessage, OutgoingMessage, SendResult,
)
from mailbridge.core.email.smtp_sender import SMTPSender
from mailbridge.core.errors import NotFound
from mailbridge.core.sync.cache import SyncCache
from .base import EmailProvider, PersistCallback, RemotePage

logger = logging.getLogger(__name__)

SENT_FOLDER = "Sent"


def flagged_as_starred(flags: List[NormalizedFlag]) -> List[NormalizedFlag]:
    """starred and important share \\Flagged, so either one sets the cached star."""
    if NormalizedFlag.IMPORTANT in flags and NormalizedFlag.STARRED not in flags:
        return flags + [NormalizedFlag.STARRED]
    return flags


class ImapSmtpProvider(EmailProvider):
    """EmailProvider over an IMAP mailbox and an SMTP relay."""

    backend = Backend.IMAP_SMTP

    def __init__(
        self,
        account_id,
        cache: SyncCache,
        imap: IMAPMailClient,
        smtp: SMTPSender,
        persist: Optional[PersistCallback] = None,
        trash_folder: str = "Trash",
        sent_folder: str = SENT_FOLDER
    ):
        super().__init__(account_id, cache, persist)
        self.imap = imap
        self.smtp = smtp
        self.trash_folder = trash_folder
        self.sent_folder = sent_folder

    def page_number_for_token(self, token: Optional[str]) -> Optional[int]:
        return parse_page_token(token)

    def token_for_page(self, page_number: int) -> Optional[str]:
        return page_token(page_number)

    async def fetch_remote_page(self, mailbox: str, page_size: int, continuation_token: Optional[str],
                                search_text: Optional[str], page_number: Optional[int]) -> RemotePage:
        page = parse_page_token(continuation_token) or page_number
        messages, next_token, total = await asyncio.to_thread(
            self.imap.list_messages, mailbox, page, page_size, search_text
        )
        return RemotePage(messages=messages, next_token=next_token, total_estimate=total)

    async def list_mailboxes(self) -> List[Mailbox]:
        return await asyncio.to_thread(self.imap.list_mailboxes)

    async def _locate(self, message_id: str) -> Tuple[NormalizedMessage, str, int]:
        """Resolve a local id to (cached message, folder, UID)."""
        cached = await self.cache.get_by_id(self.account_id, message_id)
        if cached is None or not cached.remote_id or not cached.remote_id.isdigit():
            raise NotFound(f"Message {message_id} not found")
        return cached, cached.folder, int(cached.remote_id)

    async def get_message_by_id(self, message_id: str) -> NormalizedMessage:
        cached, folder, uid = await self._locate(message_id)
        message = await asyncio.to_thread(self.imap.fetch_message, folder, uid)
        if message is None:
            raise NotFound(f"Message {message_id} no longer exists on the server")
        return message.model_copy(update={'id': cached.id})

    async def send_message(self, outgoing: OutgoingMessage) -> SendResult:
        message_id = await asyncio.to_thread(self.smtp.send, outgoing)
        await self._record_sent(sent_copy(
            outgoing, self.smtp.from_email, self.smtp.from_name, self.sent_folder,
            internet_message_id=message_id,
        ))
        return SendResult(remote_id=message_id)

    async def modify_flags(self, message_id: str, add_flags: Sequence[str], remove_flags: Sequence[str]):
        add = NormalizedFlag.parse_many(add_flags)
        remove = NormalizedFlag.parse_many(remove_flags)
        native_add, native_remove = flag_changes([f.value for f in add], [f.value for f in remove])
        if not native_add and not native_remove:
            return

        _, folder, uid = await self._locate(message_id)
        await asyncio.to_thread(self.imap.set_flags, folder, uid, native_add, native_remove)
        await self._apply_cached_flags(message_id, flagged_as_starred(add), flagged_as_starred(remove))

    async def trash(self, message_id: str):
        _, folder, uid = await self._locate(message_id)
        await asyncio.to_thread(self.imap.move, folder, uid, self.trash_folder)
        await self.cache.update_flags(self.account_id, message_id, folder=self.trash_folder, clear_remote_id=True)

    async def delete(self, message_id: str):
        _, folder, uid = await self._locate(message_id)
        await asyncio.to_thread(self.imap.delete, folder, uid)
        await self.cache.remove(self.account_id, message_id)

    async def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent:
        _, folder, uid = await self._locate(message_id)
        return await asyncio.to_thread(self.imap.fetch_attachment, folder, uid, attachment_id)

    async def verify(self) -> bool:
        await asyncio.to_thread(self.imap.verify)
        await asyncio.to_thread(self.smtp.verify)
        return True
