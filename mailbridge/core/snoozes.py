"""
Message snoozing.

A snooze hides a cached message from the inbox until a given time. On
Gmail the message is archived (INBOX and UNREAD removed) and the removed
labels are restored when the snooze ends; IMAP accounts only record the
snooze. A background sweep resumes due snoozes. Recurring snoozes are
re-armed for their next occurrence when they resume.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Tuple

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel

from mailbridge.core.database.connection import SessionFactory, session_scope
from mailbridge.core.database.models import Snooze, to_uuid
from mailbridge.core.email.mime import to_naive_utc
from mailbridge.core.errors import NotFound, ValidationError
from mailbridge.core.sync.service import MailboxService

logger = logging.getLogger(__name__)


class SnoozeStatus(str, Enum):
    SNOOZED = "snoozed"
    RESUMED = "resumed"
    CANCELLED = "cancelled"


class RecurrencePattern(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


RECURRENCE_STEPS = {
    RecurrencePattern.DAILY: relativedelta(days=1),
    RecurrencePattern.WEEKLY: relativedelta(weeks=1),
    RecurrencePattern.MONTHLY: relativedelta(months=1),
}


class SnoozeRecord(BaseModel):
    id: str
    account_id: str
    message_id: str
    remote_id: Optional[str] = None
    subject: Optional[str] = None
    status: SnoozeStatus
    snooze_until: datetime
    reason: Optional[str] = None
    original_folder: Optional[str] = None
    original_labels: List[str] = []
    is_recurring: bool = False
    recurrence_pattern: Optional[RecurrencePattern] = None
    created_at: datetime
    resumed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


def to_record(row: Snooze) -> SnoozeRecord:
    return SnoozeRecord(
        id=str(row.id),
        account_id=str(row.account_id),
        message_id=row.message_id,
        remote_id=row.remote_id,
        subject=row.subject,
        status=SnoozeStatus(row.status),
        snooze_until=row.snooze_until,
        reason=row.reason,
        original_folder=row.original_folder,
        original_labels=list(row.original_labels or []),
        is_recurring=bool(row.is_recurring),
        recurrence_pattern=row.recurrence_pattern,
        created_at=row.created_at,
        resumed_at=row.resumed_at,
        cancelled_at=row.cancelled_at,
    )


def parse_recurrence(value: Optional[str]) -> Optional[RecurrencePattern]:
    if not value:
        return None
    try:
        return RecurrencePattern(value.upper())
    except ValueError:
        raise ValidationError(f"recurrence must be one of DAILY, WEEKLY, MONTHLY, got '{value}'")


def next_occurrence(current: datetime, pattern: RecurrencePattern) -> datetime:
    return current + RECURRENCE_STEPS[pattern]


class SnoozeService:
    """Snooze, resume and list snoozed messages of an account."""

    def __init__(self, session_factory: SessionFactory, mailbox: MailboxService, interval: float = 60):
        self.session_factory = session_factory
        self.mailbox = mailbox
        self.interval = interval

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def snooze(
        self,
        account_id,
        message_id: str,
        until: datetime,
        reason: Optional[str] = None,
        recurrence: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SnoozeRecord:
        """
        Hide a cached message until `until` (naive UTC).

        Raises:
            ValidationError: `until` is not in the future, unknown recurrence,
                or the message is already snoozed
            NotFound: Message is not in the cache
        """
        until = to_naive_utc(until)
        now = now or datetime.utcnow()
        if until <= now:
            raise ValidationError("Snooze time must be in the future")
        pattern = parse_recurrence(recurrence)

        message = await self.mailbox.cache.get_by_id(account_id, message_id)
        if message is None:
            raise NotFound(f"Message {message_id} not found")
        if await asyncio.to_thread(self._active_for_message, to_uuid(account_id), message.id):
            raise ValidationError(f"Message {message_id} is already snoozed")

        provider = await self.mailbox.provider(account_id)
        removed = await provider.hide_from_inbox(message.id)

        row = Snooze(
            account_id=to_uuid(account_id),
            message_id=message.id,
            remote_id=message.remote_id,
            subject=message.subject,
            status=SnoozeStatus.SNOOZED.value,
            snooze_until=until,
            reason=reason,
            original_folder=message.folder,
            original_labels=removed,
            is_recurring=pattern is not None,
            recurrence_pattern=pattern.value if pattern else None,
        )
        record = await asyncio.to_thread(self._insert, row)
        logger.info(f"Snoozed message {message.id} of account {account_id} until {until.isoformat()}")
        return record

    def _insert(self, row: Snooze) -> SnoozeRecord:
        with session_scope(self.session_factory) as session:
            session.add(row)
            session.flush()
            return to_record(row)

    def _active_for_message(self, account_id, message_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            return session.query(Snooze.id).filter(
                Snooze.account_id == account_id,
                Snooze.message_id == message_id,
                Snooze.status == SnoozeStatus.SNOOZED.value,
            ).first() is not None

    async def resume(self, account_id, snooze_id: str, now: Optional[datetime] = None) -> SnoozeRecord:
        """
        End a snooze early or on time: restore the message to the inbox and
        mark the snooze resumed. A recurring snooze is re-armed for its next
        occurrence.
        """
        now = now or datetime.utcnow()
        current = await self._active(account_id, snooze_id, "resume")
        provider = await self.mailbox.provider(account_id)
        target = current.remote_id or current.message_id
        await provider.restore_to_inbox(target, current.original_labels)
        record = await asyncio.to_thread(self._finish, current.id, SnoozeStatus.RESUMED, now)

        if current.is_recurring and current.recurrence_pattern:
            until = next_occurrence(current.snooze_until, current.recurrence_pattern)
            while until <= now:
                until = next_occurrence(until, current.recurrence_pattern)
            removed = await provider.hide_from_inbox(target)
            await asyncio.to_thread(self._insert, Snooze(
                account_id=to_uuid(account_id),
                message_id=current.message_id,
                remote_id=current.remote_id,
                subject=current.subject,
                status=SnoozeStatus.SNOOZED.value,
                snooze_until=until,
                reason=current.reason,
                original_folder=current.original_folder,
                original_labels=removed,
                is_recurring=True,
                recurrence_pattern=current.recurrence_pattern.value,
            ))
            logger.info(f"Recurring snooze {current.id} re-armed until {until.isoformat()}")

        logger.info(f"Resumed snooze {current.id} for message {current.message_id}")
        return record

    async def cancel(self, account_id, snooze_id: str) -> SnoozeRecord:
        """Unsnooze: restore the message and stop any recurrence."""
        current = await self._active(account_id, snooze_id, "cancel")
        provider = await self.mailbox.provider(account_id)
        await provider.restore_to_inbox(current.remote_id or current.message_id, current.original_labels)
        record = await asyncio.to_thread(self._finish, current.id, SnoozeStatus.CANCELLED, datetime.utcnow())
        logger.info(f"Cancelled snooze {current.id} for message {current.message_id}")
        return record

    async def update_time(self, account_id, snooze_id: str, until: datetime,
                          now: Optional[datetime] = None) -> SnoozeRecord:
        until = to_naive_utc(until)
        now = now or datetime.utcnow()
        if until <= now:
            raise ValidationError("New snooze time must be in the future")
        current = await self._active(account_id, snooze_id, "update")
        return await asyncio.to_thread(self._set_until, current.id, until)

    async def _active(self, account_id, snooze_id: str, action: str) -> SnoozeRecord:
        current = await self.get(account_id, snooze_id)
        if current.status != SnoozeStatus.SNOOZED:
            raise ValidationError(f"Cannot {action} snooze with status: {current.status.value}")
        return current

    def _finish(self, snooze_id: str, status: SnoozeStatus, when: datetime) -> SnoozeRecord:
        with session_scope(self.session_factory) as session:
            row = session.get(Snooze, to_uuid(snooze_id))
            row.status = status.value
            if status == SnoozeStatus.RESUMED:
                row.resumed_at = when
            else:
                row.cancelled_at = when
            session.flush()
            return to_record(row)

    def _set_until(self, snooze_id: str, until: datetime) -> SnoozeRecord:
        with session_scope(self.session_factory) as session:
            row = session.get(Snooze, to_uuid(snooze_id))
            row.snooze_until = until
            session.flush()
            return to_record(row)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, account_id, snooze_id: str) -> SnoozeRecord:
        record = await asyncio.to_thread(self._get, to_uuid(account_id), to_uuid(snooze_id))
        if record is None:
            raise NotFound(f"Snooze {snooze_id} not found")
        return record

    def _get(self, account_id, snooze_id) -> Optional[SnoozeRecord]:
        if account_id is None or snooze_id is None:
            return None
        with session_scope(self.session_factory) as session:
            row = session.query(Snooze).filter(Snooze.account_id == account_id, Snooze.id == snooze_id).first()
            return to_record(row) if row else None

    async def list_snoozed(self, account_id, page: int = 1, page_size: int = 20) -> Tuple[List[SnoozeRecord], int]:
        """Active snoozes, soonest first."""
        return await asyncio.to_thread(self._list, to_uuid(account_id), page, page_size, True)

    async def history(self, account_id, page: int = 1, page_size: int = 20) -> Tuple[List[SnoozeRecord], int]:
        """All snoozes in any status, most recently changed first."""
        return await asyncio.to_thread(self._list, to_uuid(account_id), page, page_size, False)

    def _list(self, account_id, page: int, page_size: int, active_only: bool) -> Tuple[List[SnoozeRecord], int]:
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be >= 1")
        with session_scope(self.session_factory) as session:
            query = session.query(Snooze).filter(Snooze.account_id == account_id)
            if active_only:
                query = query.filter(Snooze.status == SnoozeStatus.SNOOZED.value)
                query = query.order_by(Snooze.snooze_until.asc())
            else:
                query = query.order_by(Snooze.updated_at.desc(), Snooze.created_at.desc())
            total = query.order_by(None).count()
            rows = query.offset((page - 1) * page_size).limit(page_size).all()
            return [to_record(r) for r in rows], total

    async def upcoming(self, account_id, days_ahead: int = 7, now: Optional[datetime] = None) -> List[SnoozeRecord]:
        """Active snoozes ending within the next `days_ahead` days."""
        horizon = (now or datetime.utcnow()) + timedelta(days=days_ahead)
        return await asyncio.to_thread(self._due, to_uuid(account_id), horizon)

    async def count(self, account_id) -> int:
        records, total = await self.list_snoozed(account_id, 1, 1)
        return total

    def _due(self, account_id, horizon: datetime) -> List[SnoozeRecord]:
        with session_scope(self.session_factory) as session:
            query = session.query(Snooze).filter(
                Snooze.status == SnoozeStatus.SNOOZED.value,
                Snooze.snooze_until <= horizon,
            )
            if account_id is not None:
                query = query.filter(Snooze.account_id == account_id)
            return [to_record(r) for r in query.order_by(Snooze.snooze_until.asc()).all()]

    # ------------------------------------------------------------------
    # Wake-up sweep
    # ------------------------------------------------------------------

    async def resume_due(self, now: Optional[datetime] = None) -> List[SnoozeRecord]:
        """Resume every snooze whose time has come; one failure does not stop the rest."""
        now = now or datetime.utcnow()
        resumed = []
        for due in await asyncio.to_thread(self._due, None, now):
            try:
                resumed.append(await self.resume(due.account_id, due.id, now=now))
            except Exception as e:
                logger.error(f"Failed to resume snooze {due.id} for account {due.account_id}: {e}")
        if resumed:
            logger.info(f"Resumed {len(resumed)} snoozed messages")
        return resumed

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """Sweep every `interval` seconds until cancelled or stop_event is set."""
        logger.info(f"Snooze scheduler started (every {self.interval}s)")
        while stop_event is None or not stop_event.is_set():
            try:
                await self.resume_due()
            except Exception as e:
                logger.error(f"Snooze sweep failed: {e}", exc_info=True)
            if stop_event is None:
                await asyncio.sleep(self.interval)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Snooze scheduler stopped")
