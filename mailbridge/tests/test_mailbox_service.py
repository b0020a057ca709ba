"""
Unit tests for MailboxService: paging, the token index, replies and the
destructive initial sync.
"""
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, Mock

from mailbridge.core.email.imap_client import IMAPMailClient, page_token
from mailbridge.core.email.models import EmailAddress, OutgoingMessage, SendResult
from mailbridge.core.email.smtp_sender import SMTPSender
from mailbridge.core.errors import ValidationError
from mailbridge.core.providers import ImapSmtpProvider
from mailbridge.core.sync.page_tokens import PageTokenIndex
from mailbridge.core.sync.service import MailboxService, normalize_mailbox, reply_subject


def remote_list(messages):
    def list_messages(folder, page=1, page_size=20, search_text=None):
        start = (page - 1) * page_size
        chunk = [m.model_copy() for m in messages[start:start + page_size]]
        next_token = page_token(page + 1) if page * page_size < len(messages) else None
        return chunk, next_token, len(messages)
    return list_messages


@pytest.fixture
def imap(sample_messages):
    client = Mock(spec=IMAPMailClient)
    client.list_messages.side_effect = remote_list(sample_messages)
    return client


@pytest.fixture
def imap_provider(imap_account, cache, imap):
    smtp = Mock(spec=SMTPSender)
    smtp.from_email = "me@example.org"
    smtp.from_name = ""
    return ImapSmtpProvider(imap_account.id, cache, imap, smtp)


@pytest.fixture
def factory(imap_provider):
    factory = Mock()
    factory.create_provider = AsyncMock(return_value=imap_provider)
    return factory


@pytest.fixture
def service(factory, cache, settings):
    return MailboxService(factory, cache, PageTokenIndex(), settings)


class TestHelpers:

    @pytest.mark.parametrize("value,expected", [
        (None, "INBOX"), ("", "INBOX"), ("inbox", "INBOX"), (" Inbox ", "INBOX"), ("Archive", "Archive"),
    ])
    def test_normalize_mailbox(self, value, expected):
        assert normalize_mailbox(value) == expected

    def test_reply_subject(self):
        assert reply_subject("Hello") == "Re: Hello"
        assert reply_subject("RE: Hello") == "RE: Hello"


@pytest.mark.asyncio
class TestListMessages:

    async def test_later_page_without_token_is_empty(self, service, factory):
        page = await service.list_messages("acct", "INBOX", page=2, page_size=2)

        assert page.messages == []
        assert page.page == 2
        assert page.next_token is None
        factory.create_provider.assert_not_called()

    @pytest.mark.parametrize("page,page_size", [(0, 20), (1, 0), (1, 101)])
    async def test_invalid_paging(self, service, page, page_size):
        with pytest.raises(ValidationError):
            await service.list_messages("acct", "INBOX", page=page, page_size=page_size)

    async def test_cached_page_is_served_without_remote_call(self, service, imap, imap_account):
        first = await service.list_messages(imap_account.id, "INBOX", page=1, page_size=2)
        again = await service.list_messages(imap_account.id, "inbox", page=1, page_size=2)

        assert imap.list_messages.call_count == 1
        assert first.from_cache is False
        assert again.from_cache is True
        assert [m.id for m in again.messages] == [m.id for m in first.messages]

    async def test_pagination_continuity(self, service, imap, imap_account, sample_messages):
        page1 = await service.list_messages(imap_account.id, "INBOX", page=1, page_size=2)
        page2 = await service.list_messages(imap_account.id, "INBOX", page=2, page_size=2)
        page3 = await service.list_messages(imap_account.id, "INBOX", page=3, page_size=2)

        subjects = [m.subject for p in (page1, page2, page3) for m in p.messages]
        assert subjects == [m.subject for m in sample_messages]
        assert page1.next_token == "page-2"
        assert page2.next_token == "page-3"
        assert page3.next_token is None
        assert imap.list_messages.call_count == 3

    async def test_token_decides_page_over_default(self, service, imap, imap_account):
        page = await service.list_messages(imap_account.id, "INBOX", page_size=2, token="page-3")

        imap.list_messages.assert_called_once_with("INBOX", 3, 2, None)
        assert page.page == 3
        assert [m.subject for m in page.messages] == ["Server alert"]

    async def test_cached_page_reports_known_next_token(self, service, imap_account):
        await service.list_messages(imap_account.id, "INBOX", page=1, page_size=2)
        cached = await service.list_messages(imap_account.id, "INBOX", page=1, page_size=2)

        # Only two rows are cached, but the index knows the token for page 2
        assert cached.from_cache is True
        assert cached.next_token == "page-2"

    async def test_search_does_not_record_tokens(self, service, imap_account):
        await service.list_messages(imap_account.id, "INBOX", page=1, page_size=2, search_text="invoice")

        assert len(service.token_index) == 0


@pytest.mark.asyncio
class TestInitialSync:

    async def test_replaces_cache_with_inbox_batch(self, service, imap, cache, imap_account, message_factory):
        await cache.upsert(imap_account.id, [message_factory("Stale", folder="Archive")])
        service.token_index.record_next_token(service.token_index.key(imap_account.id, "INBOX", 2), 1, "page-2")

        saved = await service.initial_sync(imap_account.id)

        imap.list_messages.assert_called_once_with("INBOX", 1, 100, None)
        assert len(saved) == 5
        assert await cache.count(imap_account.id) == 5
        assert len(service.token_index) == 0


@pytest.fixture
def original(message_factory):
    return message_factory(
        "Project kickoff",
        sender="alice@example.com",
        sender_name="Alice",
        remote_id="remote-7",
        thread_id="thread-7",
        internet_message_id="<kickoff@example.com>",
        to=[EmailAddress(address="me@example.org"), EmailAddress(address="bob@example.com")],
        cc=[EmailAddress(address="carol@example.com")],
    )


@pytest.fixture
def mock_provider(original):
    provider = AsyncMock()
    provider.get_message_by_id.return_value = original
    provider.send_message.return_value = SendResult(remote_id="sent-1", thread_id="thread-7")
    return provider


@pytest.fixture
def mock_service(cache, settings, mock_provider):
    factory = Mock()
    factory.create_provider = AsyncMock(return_value=mock_provider)
    return MailboxService(factory, cache, PageTokenIndex(), settings)


@pytest.mark.asyncio
class TestMessageActions:

    async def test_reply_goes_to_sender_in_thread(self, mock_service, mock_provider):
        await mock_service.reply("acct", "msg-1", "Sounds good")

        outgoing = mock_provider.send_message.call_args.args[0]
        assert outgoing.to == ["alice@example.com"]
        assert outgoing.cc == []
        assert outgoing.subject == "Re: Project kickoff"
        assert outgoing.in_reply_to == "<kickoff@example.com>"
        assert outgoing.references == "<kickoff@example.com>"
        assert outgoing.thread_id == "thread-7"

    async def test_reply_all(self, mock_service, mock_provider):
        await mock_service.reply("acct", "msg-1", "Thanks all", reply_all=True)

        outgoing = mock_provider.send_message.call_args.args[0]
        assert outgoing.to == ["alice@example.com", "me@example.org", "bob@example.com"]
        assert outgoing.cc == ["carol@example.com"]

    async def test_reply_without_message_id_header(self, mock_service, mock_provider, original):
        mock_provider.get_message_by_id.return_value = original.model_copy(update={'internet_message_id': None})

        await mock_service.reply("acct", "msg-1", "Hi")

        assert mock_provider.send_message.call_args.args[0].in_reply_to == "<remote-7>"

    async def test_send_requires_recipients(self, mock_service):
        with pytest.raises(ValidationError):
            await mock_service.send("acct", OutgoingMessage(to=[], subject="x", body="y"))

    async def test_mark_unread(self, mock_service, mock_provider):
        await mock_service.mark_read("acct", "msg-1", read=False)

        mock_provider.modify_flags.assert_awaited_once_with("msg-1", ["unread"], [])

    async def test_toggle_star_flips_cached_state(self, mock_service, mock_provider, cache, gmail_account,
                                                  message_factory):
        saved = await cache.upsert(gmail_account.id, [message_factory(is_starred=True)])

        starred = await mock_service.toggle_star(gmail_account.id, saved[0].id)

        assert starred is False
        mock_provider.modify_flags.assert_awaited_once_with(saved[0].id, [], ["starred"])
        mock_provider.get_message_by_id.assert_not_called()

    async def test_toggle_star_uncached_reads_provider(self, mock_service, mock_provider):
        starred = await mock_service.toggle_star("acct", "remote-only")

        assert starred is True
        mock_provider.modify_flags.assert_awaited_once_with("remote-only", ["starred"], [])
