"""
Unit tests for the SyncCache (deduplication, resync and cached reads).
"""
import pytest
from datetime import datetime, timedelta
from uuid import uuid4

from mailbridge.core.sync.cache import CacheFilters, CacheStatus, SyncCache


@pytest.mark.asyncio
class TestUpsert:

    async def test_returns_only_new_messages(self, cache, gmail_account, sample_messages):
        first = await cache.upsert(gmail_account.id, sample_messages[:3])
        second = await cache.upsert(gmail_account.id, sample_messages)

        assert len(first) == 3
        assert all(m.id for m in first)
        assert [m.subject for m in second] == [m.subject for m in sample_messages[3:]]
        assert await cache.count(gmail_account.id) == 5

    async def test_stored_set_is_union(self, cache, gmail_account, sample_messages):
        await cache.upsert(gmail_account.id, sample_messages[:2])
        await cache.upsert(gmail_account.id, sample_messages[1:4])
        await cache.upsert(gmail_account.id, sample_messages[2:])

        assert await cache.count(gmail_account.id) == len(sample_messages)

    async def test_duplicates_within_one_batch(self, cache, gmail_account, message_factory):
        message = message_factory()
        saved = await cache.upsert(gmail_account.id, [message, message.model_copy()])

        assert len(saved) == 1
        assert await cache.count(gmail_account.id) == 1

    async def test_dedup_ignores_remote_id(self, cache, gmail_account, message_factory):
        await cache.upsert(gmail_account.id, [message_factory(remote_id="1")])
        saved = await cache.upsert(gmail_account.id, [message_factory(remote_id="999")])

        assert saved == []

    async def test_dedup_is_per_account(self, cache, gmail_account, imap_account, message_factory):
        message = message_factory()
        await cache.upsert(gmail_account.id, [message])
        saved = await cache.upsert(imap_account.id, [message])

        assert len(saved) == 1

    async def test_different_timestamp_is_a_new_message(self, cache, gmail_account, message_factory):
        await cache.upsert(gmail_account.id, [message_factory()])
        saved = await cache.upsert(
            gmail_account.id, [message_factory(date=datetime(2024, 3, 1, 12, 0, 1))]
        )

        assert len(saved) == 1


@pytest.mark.asyncio
class TestReplaceAll:

    async def test_discards_previous_rows(self, cache, gmail_account, sample_messages, message_factory):
        await cache.upsert(gmail_account.id, sample_messages)
        fresh = [message_factory("Only one left")]

        saved = await cache.replace_all(gmail_account.id, fresh)

        assert len(saved) == 1
        assert await cache.count(gmail_account.id) == 1

    async def test_inserts_without_dedup(self, cache, gmail_account, message_factory):
        message = message_factory()
        saved = await cache.replace_all(gmail_account.id, [message, message.model_copy()])

        assert len(saved) == 2

    async def test_leaves_other_accounts(self, cache, gmail_account, imap_account, sample_messages):
        await cache.upsert(imap_account.id, sample_messages)
        await cache.replace_all(gmail_account.id, sample_messages[:1])

        assert await cache.count(imap_account.id) == len(sample_messages)


@pytest.mark.asyncio
class TestReads:

    async def test_query_page_newest_first(self, cache, gmail_account, sample_messages):
        await cache.upsert(gmail_account.id, list(reversed(sample_messages)))

        page1 = await cache.query_page(gmail_account.id, "INBOX", 2, 1)
        page3 = await cache.query_page(gmail_account.id, "INBOX", 2, 3)

        assert page1.total == 5
        assert [m.subject for m in page1.messages] == ["Invoice for March", "Team meeting tomorrow"]
        assert [m.subject for m in page3.messages] == ["Server alert"]

    async def test_query_page_search_and_filters(self, cache, gmail_account, sample_messages):
        await cache.upsert(gmail_account.id, sample_messages)

        by_text = await cache.query_page(gmail_account.id, "INBOX", 10, 1, search_text="QUARTERLY")
        starred = await cache.query_page(gmail_account.id, "INBOX", 10, 1, filters=CacheFilters(is_starred=True))
        with_files = await cache.query_page(
            gmail_account.id, "INBOX", 10, 1, filters=CacheFilters(has_attachments=True)
        )

        assert [m.subject for m in by_text.messages] == ["Quarterly report"]
        assert [m.subject for m in starred.messages] == ["Server alert"]
        assert with_files.messages[0].attachments[0].filename == "report.pdf"

    async def test_lookup_page_statuses(self, cache, gmail_account, sample_messages):
        miss = await cache.lookup_page(gmail_account.id, "INBOX", 10, 1)
        await cache.upsert(gmail_account.id, sample_messages)
        hit = await cache.lookup_page(gmail_account.id, "INBOX", 10, 1)

        assert miss.status == CacheStatus.MISS
        assert hit.status == CacheStatus.HIT
        assert len(hit.page.messages) == 5

    async def test_lookup_page_error_never_raises(self, gmail_account):
        def broken_factory():
            raise RuntimeError("database is gone")

        lookup = await SyncCache(broken_factory).lookup_page(gmail_account.id, "INBOX", 10, 1)

        assert lookup.status == CacheStatus.ERROR
        assert "database is gone" in str(lookup.error)

    async def test_get_by_id_and_remote_id(self, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages)

        by_id = await cache.get_by_id(gmail_account.id, saved[0].id)
        by_remote = await cache.get_by_remote_id(gmail_account.id, "102")

        assert by_id.subject == "Invoice for March"
        assert by_remote.subject == "Team meeting tomorrow"
        assert await cache.get_by_id(gmail_account.id, "not-a-uuid") is None
        assert await cache.get_by_id(gmail_account.id, str(uuid4())) is None

    async def test_round_trip_preserves_fields(self, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[2:3])
        message = await cache.get_by_id(gmail_account.id, saved[0].id)

        original = sample_messages[2]
        assert message.sender == original.sender
        assert message.to == original.to
        assert message.date == original.date
        assert message.attachments == original.attachments


@pytest.mark.asyncio
class TestMutations:

    async def test_resolve_attaches_ids_and_syncs_flags(self, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])
        remote = sample_messages[0].model_copy(update={'is_read': True, 'body_text': 'changed'})

        resolved = await cache.resolve(gmail_account.id, [remote])
        stored = await cache.get_by_id(gmail_account.id, saved[0].id)

        assert resolved[0].id == saved[0].id
        assert stored.is_read is True
        assert stored.body_text == sample_messages[0].body_text

    async def test_resolve_unknown_message_unchanged(self, cache, gmail_account, message_factory):
        message = message_factory()
        resolved = await cache.resolve(gmail_account.id, [message])

        assert resolved[0].id is None

    async def test_update_flags_and_folder(self, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])

        updated = await cache.update_flags(
            gmail_account.id, saved[0].id, is_starred=True, folder="Trash", clear_remote_id=True
        )
        stored = await cache.get_by_id(gmail_account.id, saved[0].id)

        assert updated is True
        assert stored.is_starred is True
        assert stored.folder == "Trash"
        assert stored.remote_id is None

    async def test_update_flags_unknown_message(self, cache, gmail_account):
        assert await cache.update_flags(gmail_account.id, str(uuid4()), is_read=True) is False

    async def test_remove_and_delete(self, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages)

        assert await cache.remove(gmail_account.id, saved[0].id) is True
        assert await cache.remove(gmail_account.id, saved[0].id) is False
        assert await cache.delete(gmail_account.id) == 4
        assert await cache.count(gmail_account.id) == 0

    async def test_summary_storage(self, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:1])

        assert await cache.get_summary(gmail_account.id, saved[0].id) is None
        generated_at = await cache.set_summary(gmail_account.id, saved[0].id, "Pay the invoice.")
        summary, stored_at = await cache.get_summary(gmail_account.id, saved[0].id)

        assert summary == "Pay the invoice."
        assert stored_at == generated_at

    async def test_embeddings_bookkeeping(self, cache, gmail_account, sample_messages):
        saved = await cache.upsert(gmail_account.id, sample_messages[:2])

        assert await cache.accounts_missing_embeddings() == [gmail_account.id]
        updated = await cache.set_embeddings(gmail_account.id, [(saved[0].id, [0.1, 0.2, 0.3])])
        missing = await cache.messages_missing_embeddings(gmail_account.id, 10)

        assert updated == 1
        assert [m.id for m in missing] == [saved[1].id]
