"""
Sync Cache

Relational cache of normalized messages. Only this module writes
cached_messages rows. Incremental syncs go through upsert(), which skips
messages whose (account, sender address, subject, timestamp) tuple is
already stored; the initial sync uses replace_all(), which clears the
account and inserts unconditionally.

All public methods are coroutines that run their session work in a
worker thread.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import and_, or_, func

from mailbridge.core.database.connection import SessionFactory, session_scope
from mailbridge.core.database.models import CachedMessage, to_uuid
from mailbridge.core.email.models import AttachmentInfo, EmailAddress, NormalizedMessage

logger = logging.getLogger(__name__)


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    ERROR = "error"


@dataclass
class CacheFilters:
    is_read: Optional[bool] = None
    is_starred: Optional[bool] = None
    has_attachments: Optional[bool] = None


@dataclass
class CachedPage:
    messages: List[NormalizedMessage] = field(default_factory=list)
    total: int = 0


@dataclass
class CacheLookup:
    """Outcome of a read-path cache query; ERROR is handled like MISS by callers."""
    status: CacheStatus
    page: Optional[CachedPage] = None
    error: Optional[Exception] = None


DedupKey = Tuple[str, str, datetime]


def _addresses_to_json(addresses: Sequence[EmailAddress]) -> List[dict]:
    return [{'name': a.name, 'address': a.address} for a in addresses]


def _addresses_from_json(values) -> List[EmailAddress]:
    return [EmailAddress(name=v.get('name'), address=v.get('address') or '') for v in values or []]


def encode_labels(labels: Sequence[str]) -> Optional[str]:
    """Delimited form searchable with LIKE; None for messages without labels."""
    if not labels:
        return None
    return ',' + ','.join(labels) + ','


def decode_labels(value: Optional[str]) -> List[str]:
    return [label for label in (value or '').split(',') if label]


def mailbox_clause(mailbox: str):
    """Rows of a mailbox: by label membership when labelled, else by folder."""
    return or_(
        and_(CachedMessage.labels.is_(None), CachedMessage.folder == mailbox),
        CachedMessage.labels.contains(f",{mailbox},", autoescape=True),
    )


def message_to_row(account_id: UUID, message: NormalizedMessage) -> CachedMessage:
    return CachedMessage(
        account_id=account_id,
        remote_id=message.remote_id,
        thread_id=message.thread_id,
        internet_message_id=message.internet_message_id,
        folder=message.folder,
        labels=encode_labels(message.labels),
        from_name=message.sender.name,
        from_address=message.sender.address,
        to_addresses=_addresses_to_json(message.to),
        cc_addresses=_addresses_to_json(message.cc),
        subject=message.subject,
        date=message.date,
        body_text=message.body_text,
        body_html=message.body_html,
        preview=message.preview,
        is_read=message.is_read,
        is_starred=message.is_starred,
        has_attachments=message.has_attachments,
        attachment_info=[a.model_dump() for a in message.attachments],
    )


def row_to_message(row: CachedMessage) -> NormalizedMessage:
    return NormalizedMessage(
        id=str(row.id),
        remote_id=row.remote_id,
        thread_id=row.thread_id,
        internet_message_id=row.internet_message_id,
        folder=row.folder,
        labels=decode_labels(row.labels),
        sender=EmailAddress(name=row.from_name, address=row.from_address or ''),
        to=_addresses_from_json(row.to_addresses),
        cc=_addresses_from_json(row.cc_addresses),
        subject=row.subject,
        date=row.date,
        body_text=row.body_text,
        body_html=row.body_html,
        preview=row.preview or '',
        is_read=bool(row.is_read),
        is_starred=bool(row.is_starred),
        attachments=[AttachmentInfo(**a) for a in row.attachment_info or []],
    )


def _dedup_clause(account_id: UUID, key: DedupKey):
    address, subject, date = key
    return and_(
        CachedMessage.account_id == account_id,
        CachedMessage.from_address == address,
        CachedMessage.subject == subject,
        CachedMessage.date == date,
    )


def text_filter(search_text: str):
    """Case-insensitive substring match on subject, sender and body."""
    pattern = f"%{search_text}%"
    return or_(
        CachedMessage.subject.ilike(pattern),
        CachedMessage.from_address.ilike(pattern),
        CachedMessage.from_name.ilike(pattern),
        CachedMessage.body_text.ilike(pattern),
    )


class SyncCache:
    """Persistence and deduplication for normalized messages."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, account_id, messages: Sequence[NormalizedMessage]) -> List[NormalizedMessage]:
        """
        Insert messages whose dedup tuple is not stored yet.

        Returns:
            Only the messages persisted by this call, with local ids set.
            Already-cached duplicates are not returned.
        """
        return await asyncio.to_thread(self._upsert, to_uuid(account_id), list(messages))

    def _upsert(self, account_id: UUID, messages: List[NormalizedMessage]) -> List[NormalizedMessage]:
        saved: List[Tuple[NormalizedMessage, CachedMessage]] = []
        seen: set = set()
        with session_scope(self.session_factory) as session:
            for message in messages:
                key = message.dedup_key()
                if key in seen:
                    continue
                seen.add(key)
                exists = session.query(CachedMessage.id).filter(_dedup_clause(account_id, key)).first()
                if exists:
                    continue
                row = message_to_row(account_id, message)
                session.add(row)
                saved.append((message, row))
            session.flush()
            result = [m.model_copy(update={'id': str(row.id)}) for m, row in saved]

        if result:
            logger.info(f"Cached {len(result)} new messages for account {account_id} ({len(messages) - len(result)} already present)")
        return result

    async def replace_all(self, account_id, messages: Sequence[NormalizedMessage]) -> List[NormalizedMessage]:
        """
        Destructive resync: delete every cached message of the account and
        insert the given messages without existence checks, in one transaction.
        """
        return await asyncio.to_thread(self._replace_all, to_uuid(account_id), list(messages))

    def _replace_all(self, account_id: UUID, messages: List[NormalizedMessage]) -> List[NormalizedMessage]:
        with session_scope(self.session_factory) as session:
            deleted = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id
            ).delete(synchronize_session=False)
            rows = [message_to_row(account_id, m) for m in messages]
            session.add_all(rows)
            session.flush()
            result = [m.model_copy(update={'id': str(row.id)}) for m, row in zip(messages, rows)]
        logger.info(f"Full resync for account {account_id}: removed {deleted}, inserted {len(result)}")
        return result

    async def delete(self, account_id) -> int:
        """Bulk-purge every cached message of an account."""
        return await asyncio.to_thread(self._delete, to_uuid(account_id))

    def _delete(self, account_id: UUID) -> int:
        with session_scope(self.session_factory) as session:
            deleted = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id
            ).delete(synchronize_session=False)
        logger.info(f"Purged {deleted} cached messages for account {account_id}")
        return deleted

    async def resolve(self, account_id, messages: Sequence[NormalizedMessage],
                      single_folder: bool = True) -> List[NormalizedMessage]:
        """
        Attach local ids to freshly fetched messages by dedup tuple and bring
        cached flags, labels and location in line with the remote state.
        Bodies are never rewritten. Messages with no cached row are returned
        unchanged.

        single_folder: the backend keeps each message in exactly one folder
        (IMAP), so a listing from another folder means the message moved.
        Label-based backends list one message under several labels; there
        the row's labels are replaced and its folder is left alone.
        """
        return await asyncio.to_thread(self._resolve, to_uuid(account_id), list(messages), single_folder)

    def _resolve(self, account_id: UUID, messages: List[NormalizedMessage], single_folder: bool) -> List[NormalizedMessage]:
        resolved = []
        with session_scope(self.session_factory) as session:
            for message in messages:
                row = session.query(CachedMessage).filter(
                    _dedup_clause(account_id, message.dedup_key())
                ).order_by(CachedMessage.created_at).first()
                if row is None:
                    resolved.append(message)
                    continue
                if (row.is_read, row.is_starred) != (message.is_read, message.is_starred):
                    row.is_read = message.is_read
                    row.is_starred = message.is_starred
                if single_folder:
                    if message.remote_id and (row.remote_id, row.folder) != (message.remote_id, message.folder):
                        row.remote_id = message.remote_id
                        row.folder = message.folder
                else:
                    if message.remote_id and row.remote_id != message.remote_id:
                        row.remote_id = message.remote_id
                    labels = encode_labels(message.labels)
                    if labels and row.labels != labels:
                        row.labels = labels
                resolved.append(message.model_copy(update={'id': str(row.id)}))
        return resolved

    async def update_flags(self, account_id, message_id, is_read: Optional[bool] = None,
                           is_starred: Optional[bool] = None, folder: Optional[str] = None,
                           clear_remote_id: bool = False, add_labels: Sequence[str] = (),
                           remove_labels: Sequence[str] = ()) -> bool:
        """
        Update flags, folder and/or labels. Moving an IMAP message invalidates
        its UID, hence clear_remote_id. Label changes only apply to rows that
        track labels.
        """
        return await asyncio.to_thread(
            self._update_flags, to_uuid(account_id), message_id, is_read, is_starred, folder, clear_remote_id,
            list(add_labels), list(remove_labels),
        )

    def _update_flags(self, account_id, message_id, is_read, is_starred, folder, clear_remote_id,
                      add_labels, remove_labels) -> bool:
        message_uuid = to_uuid(message_id)
        if message_uuid is None:
            return False
        with session_scope(self.session_factory) as session:
            row = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id, CachedMessage.id == message_uuid
            ).first()
            if row is None:
                return False
            if is_read is not None:
                row.is_read = is_read
            if is_starred is not None:
                row.is_starred = is_starred
            if folder is not None:
                row.folder = folder
            if clear_remote_id:
                row.remote_id = None
            if row.labels is not None and (add_labels or remove_labels):
                labels = [label for label in decode_labels(row.labels) if label not in remove_labels]
                labels += [label for label in add_labels if label not in labels]
                # "," keeps a row with no labels left out of folder-based matching
                row.labels = encode_labels(labels) or ','
            row.updated_at = datetime.utcnow()
        return True

    async def remove(self, account_id, message_id) -> bool:
        return await asyncio.to_thread(self._remove, to_uuid(account_id), message_id)

    def _remove(self, account_id, message_id) -> bool:
        message_uuid = to_uuid(message_id)
        if message_uuid is None:
            return False
        with session_scope(self.session_factory) as session:
            deleted = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id, CachedMessage.id == message_uuid
            ).delete(synchronize_session=False)
        return deleted > 0

    async def set_summary(self, account_id, message_id, summary: str) -> Optional[datetime]:
        return await asyncio.to_thread(self._set_summary, to_uuid(account_id), message_id, summary)

    def _set_summary(self, account_id, message_id, summary: str) -> Optional[datetime]:
        message_uuid = to_uuid(message_id)
        if message_uuid is None:
            return None
        generated_at = datetime.utcnow()
        with session_scope(self.session_factory) as session:
            updated = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id, CachedMessage.id == message_uuid
            ).update({CachedMessage.summary: summary, CachedMessage.summary_generated_at: generated_at},
                     synchronize_session=False)
        return generated_at if updated else None

    async def set_embeddings(self, account_id, embeddings: Iterable[Tuple[str, List[float]]]) -> int:
        return await asyncio.to_thread(self._set_embeddings, to_uuid(account_id), list(embeddings))

    def _set_embeddings(self, account_id, embeddings) -> int:
        now = datetime.utcnow()
        count = 0
        with session_scope(self.session_factory) as session:
            for message_id, vector in embeddings:
                count += session.query(CachedMessage).filter(
                    CachedMessage.account_id == account_id, CachedMessage.id == to_uuid(message_id)
                ).update({CachedMessage.embedding: list(vector), CachedMessage.embedded_at: now},
                         synchronize_session=False)
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def lookup_page(self, account_id, mailbox: str, page_size: int, page_number: int,
                          search_text: Optional[str] = None,
                          filters: Optional[CacheFilters] = None) -> CacheLookup:
        """
        Read path for providers: never raises. An empty page is a MISS; a
        failing query is an ERROR carrying the exception.
        """
        try:
            page = await self.query_page(account_id, mailbox, page_size, page_number, search_text, filters)
        except Exception as e:
            return CacheLookup(status=CacheStatus.ERROR, error=e)
        if not page.messages:
            return CacheLookup(status=CacheStatus.MISS, page=page)
        return CacheLookup(status=CacheStatus.HIT, page=page)

    async def query_page(self, account_id, mailbox: str, page_size: int, page_number: int,
                         search_text: Optional[str] = None,
                         filters: Optional[CacheFilters] = None) -> CachedPage:
        """Filtered page of one mailbox, newest first, with the total match count."""
        return await asyncio.to_thread(
            self._query_page, to_uuid(account_id), mailbox, page_size, page_number, search_text, filters
        )

    def _query_page(self, account_id, mailbox, page_size, page_number, search_text, filters) -> CachedPage:
        with session_scope(self.session_factory) as session:
            query = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id,
                mailbox_clause(mailbox),
            )
            if search_text:
                query = query.filter(text_filter(search_text))
            if filters:
                if filters.is_read is not None:
                    query = query.filter(CachedMessage.is_read.is_(filters.is_read))
                if filters.is_starred is not None:
                    query = query.filter(CachedMessage.is_starred.is_(filters.is_starred))
                if filters.has_attachments is not None:
                    query = query.filter(CachedMessage.has_attachments.is_(filters.has_attachments))

            total = query.order_by(None).count()
            rows = (
                query.order_by(CachedMessage.date.desc(), CachedMessage.id)
                .offset((page_number - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return CachedPage(messages=[row_to_message(r) for r in rows], total=total)

    async def get_by_id(self, account_id, message_id) -> Optional[NormalizedMessage]:
        return await asyncio.to_thread(self._get_by_id, to_uuid(account_id), message_id)

    def _get_by_id(self, account_id, message_id) -> Optional[NormalizedMessage]:
        message_uuid = to_uuid(message_id)
        if message_uuid is None:
            return None
        with session_scope(self.session_factory) as session:
            row = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id, CachedMessage.id == message_uuid
            ).first()
            return row_to_message(row) if row else None

    async def get_by_remote_id(self, account_id, remote_id: str) -> Optional[NormalizedMessage]:
        return await asyncio.to_thread(self._get_by_remote_id, to_uuid(account_id), remote_id)

    def _get_by_remote_id(self, account_id, remote_id: str) -> Optional[NormalizedMessage]:
        with session_scope(self.session_factory) as session:
            row = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id, CachedMessage.remote_id == remote_id
            ).order_by(CachedMessage.created_at.desc()).first()
            return row_to_message(row) if row else None

    async def get_summary(self, account_id, message_id) -> Optional[Tuple[str, datetime]]:
        return await asyncio.to_thread(self._get_summary, to_uuid(account_id), message_id)

    def _get_summary(self, account_id, message_id) -> Optional[Tuple[str, datetime]]:
        message_uuid = to_uuid(message_id)
        if message_uuid is None:
            return None
        with session_scope(self.session_factory) as session:
            row = session.query(CachedMessage.summary, CachedMessage.summary_generated_at).filter(
                CachedMessage.account_id == account_id, CachedMessage.id == message_uuid
            ).first()
            if row is None or not row.summary:
                return None
            return row.summary, row.summary_generated_at

    async def accounts_missing_embeddings(self) -> List[UUID]:
        return await asyncio.to_thread(self._accounts_missing_embeddings)

    def _accounts_missing_embeddings(self) -> List[UUID]:
        with session_scope(self.session_factory) as session:
            rows = session.query(CachedMessage.account_id).filter(
                CachedMessage.embedding.is_(None)
            ).distinct().all()
            return [r[0] for r in rows]

    async def messages_missing_embeddings(self, account_id, limit: int) -> List[NormalizedMessage]:
        return await asyncio.to_thread(self._messages_missing_embeddings, to_uuid(account_id), limit)

    def _messages_missing_embeddings(self, account_id, limit: int) -> List[NormalizedMessage]:
        with session_scope(self.session_factory) as session:
            rows = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id,
                CachedMessage.embedding.is_(None),
            ).order_by(CachedMessage.date.desc()).limit(limit).all()
            return [row_to_message(r) for r in rows]

    async def count(self, account_id) -> int:
        return await asyncio.to_thread(self._count, to_uuid(account_id))

    def _count(self, account_id) -> int:
        with session_scope(self.session_factory) as session:
            return session.query(func.count(CachedMessage.id)).filter(
                CachedMessage.account_id == account_id
            ).scalar()
