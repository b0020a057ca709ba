"""
Unit tests for SnoozeService with a Gmail adapter over a fake GmailClient.
"""
import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

from mailbridge.core.email.gmail_client import GmailClient
from mailbridge.core.errors import NotFound, ValidationError
from mailbridge.core.providers import GmailProvider
from mailbridge.core.snoozes import RecurrencePattern, SnoozeService, SnoozeStatus, next_occurrence
from mailbridge.core.sync.page_tokens import PageTokenIndex
from mailbridge.core.sync.service import MailboxService

NOW = datetime(2024, 3, 10, 12, 0, 0)


@pytest.fixture
def gmail():
    return Mock(spec=GmailClient)


@pytest.fixture
def service(gmail_account, cache, session_factory, settings, gmail):
    provider = GmailProvider(
        gmail_account.id, cache,
        token_supplier=AsyncMock(return_value=("ya29.fresh", "refresh-token")),
        email_address="me@gmail.com",
        client_factory=Mock(return_value=gmail),
    )
    factory = Mock()
    factory.create_provider = AsyncMock(return_value=provider)
    mailbox = MailboxService(factory, cache, PageTokenIndex(), settings)
    return SnoozeService(session_factory, mailbox, interval=0.01)


@pytest.fixture
def message(cache, gmail_account, sample_messages):
    unread = sample_messages[0].model_copy(update={'labels': ["INBOX", "UNREAD"], 'is_read': False})
    return cache._upsert(gmail_account.id, [unread])[0]


class TestRecurrence:

    @pytest.mark.parametrize("pattern,expected", [
        (RecurrencePattern.DAILY, datetime(2024, 1, 31, 9, 0)),
        (RecurrencePattern.WEEKLY, datetime(2024, 2, 6, 9, 0)),
        (RecurrencePattern.MONTHLY, datetime(2024, 2, 29, 9, 0)),
    ])
    def test_next_occurrence(self, pattern, expected):
        assert next_occurrence(datetime(2024, 1, 30, 9, 0), pattern) == expected


@pytest.mark.asyncio
class TestSnooze:

    async def test_snooze_archives_on_gmail(self, service, gmail, cache, gmail_account, message):
        record = await service.snooze(gmail_account.id, message.id, NOW + timedelta(hours=2),
                                      reason="after lunch", now=NOW)

        gmail.modify_labels.assert_called_once_with("101", [], ["INBOX", "UNREAD"])
        assert record.status == SnoozeStatus.SNOOZED
        assert record.original_labels == ["INBOX", "UNREAD"]
        inbox = await cache.query_page(gmail_account.id, "INBOX", 20, 1)
        assert inbox.messages == []

    async def test_past_time_rejected(self, service, gmail_account, message):
        with pytest.raises(ValidationError):
            await service.snooze(gmail_account.id, message.id, NOW - timedelta(minutes=1), now=NOW)

    async def test_unknown_recurrence_rejected(self, service, gmail_account, message):
        with pytest.raises(ValidationError):
            await service.snooze(gmail_account.id, message.id, NOW + timedelta(days=1),
                                 recurrence="HOURLY", now=NOW)

    async def test_uncached_message_not_found(self, service, gmail_account):
        with pytest.raises(NotFound):
            await service.snooze(gmail_account.id, "00000000-0000-0000-0000-000000000000",
                                 NOW + timedelta(days=1), now=NOW)

    async def test_cannot_snooze_twice(self, service, gmail_account, message):
        await service.snooze(gmail_account.id, message.id, NOW + timedelta(days=1), now=NOW)

        with pytest.raises(ValidationError):
            await service.snooze(gmail_account.id, message.id, NOW + timedelta(days=2), now=NOW)

    async def test_timezone_aware_time_is_stored_as_utc(self, service, gmail_account, message):
        from datetime import timezone
        until = datetime(2099, 1, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))

        record = await service.snooze(gmail_account.id, message.id, until)

        assert record.snooze_until == datetime(2099, 1, 1, 8, 0)


@pytest.mark.asyncio
class TestResume:

    async def test_resume_restores_labels(self, service, gmail, cache, gmail_account, message):
        snoozed = await service.snooze(gmail_account.id, message.id, NOW + timedelta(hours=1), now=NOW)
        gmail.modify_labels.reset_mock()

        record = await service.resume(gmail_account.id, snoozed.id, now=NOW)

        gmail.modify_labels.assert_called_once_with("101", ["INBOX", "UNREAD"], [])
        assert record.status == SnoozeStatus.RESUMED
        assert record.resumed_at == NOW
        restored = await cache.get_by_id(gmail_account.id, message.id)
        assert "INBOX" in restored.labels
        assert restored.is_read is False

    async def test_cancelled_snooze_cannot_resume(self, service, gmail_account, message):
        snoozed = await service.snooze(gmail_account.id, message.id, NOW + timedelta(hours=1), now=NOW)
        await service.cancel(gmail_account.id, snoozed.id)

        with pytest.raises(ValidationError):
            await service.resume(gmail_account.id, snoozed.id, now=NOW)

    async def test_recurring_snooze_is_rearmed(self, service, gmail_account, message):
        snoozed = await service.snooze(gmail_account.id, message.id, NOW + timedelta(hours=1),
                                       recurrence="daily", now=NOW)

        await service.resume(gmail_account.id, snoozed.id, now=NOW + timedelta(hours=1))

        active, total = await service.list_snoozed(gmail_account.id)
        assert total == 1
        assert active[0].id != snoozed.id
        assert active[0].snooze_until == NOW + timedelta(days=1, hours=1)
        assert active[0].recurrence_pattern == RecurrencePattern.DAILY

    async def test_resume_due_only_touches_due_snoozes(self, service, gmail_account, cache, sample_messages):
        saved = cache._upsert(gmail_account.id, sample_messages[1:3])
        soon = await service.snooze(gmail_account.id, saved[0].id, NOW + timedelta(minutes=5), now=NOW)
        later = await service.snooze(gmail_account.id, saved[1].id, NOW + timedelta(days=3), now=NOW)

        resumed = await service.resume_due(now=NOW + timedelta(minutes=10))

        assert [r.id for r in resumed] == [soon.id]
        assert (await service.get(gmail_account.id, later.id)).status == SnoozeStatus.SNOOZED

    async def test_resume_due_continues_after_failure(self, service, gmail, gmail_account, cache, sample_messages):
        saved = cache._upsert(gmail_account.id, sample_messages[1:3])
        first = await service.snooze(gmail_account.id, saved[0].id, NOW + timedelta(minutes=1), now=NOW)
        second = await service.snooze(gmail_account.id, saved[1].id, NOW + timedelta(minutes=2), now=NOW)
        gmail.modify_labels.side_effect = [RuntimeError("backend down"), None]

        resumed = await service.resume_due(now=NOW + timedelta(minutes=5))

        assert [r.id for r in resumed] == [second.id]
        assert (await service.get(gmail_account.id, first.id)).status == SnoozeStatus.SNOOZED


@pytest.mark.asyncio
class TestListing:

    async def test_upcoming_window(self, service, gmail_account, cache, sample_messages):
        saved = cache._upsert(gmail_account.id, sample_messages[1:3])
        await service.snooze(gmail_account.id, saved[0].id, NOW + timedelta(days=2), now=NOW)
        await service.snooze(gmail_account.id, saved[1].id, NOW + timedelta(days=30), now=NOW)

        upcoming = await service.upcoming(gmail_account.id, days_ahead=7, now=NOW)

        assert [r.message_id for r in upcoming] == [saved[0].id]

    async def test_history_includes_cancelled(self, service, gmail_account, message):
        snoozed = await service.snooze(gmail_account.id, message.id, NOW + timedelta(hours=1), now=NOW)
        await service.cancel(gmail_account.id, snoozed.id)

        active, active_total = await service.list_snoozed(gmail_account.id)
        history, history_total = await service.history(gmail_account.id)

        assert active_total == 0
        assert history_total == 1
        assert history[0].status == SnoozeStatus.CANCELLED

    async def test_update_time(self, service, gmail_account, message):
        snoozed = await service.snooze(gmail_account.id, message.id, NOW + timedelta(hours=1), now=NOW)

        updated = await service.update_time(gmail_account.id, snoozed.id, NOW + timedelta(hours=5), now=NOW)

        assert updated.snooze_until == NOW + timedelta(hours=5)

    async def test_other_account_cannot_see_snooze(self, service, accounts, gmail_account, message):
        snoozed = await service.snooze(gmail_account.id, message.id, NOW + timedelta(hours=1), now=NOW)
        other = accounts.create_account("other@gmail.com")

        with pytest.raises(NotFound):
            await service.get(other.id, snoozed.id)


@pytest.mark.asyncio
class TestScheduler:

    async def test_run_forever_stops_on_event(self, service):
        stop = asyncio.Event()
        service.resume_due = AsyncMock(return_value=[])

        task = asyncio.create_task(service.run_forever(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert service.resume_due.await_count >= 1
