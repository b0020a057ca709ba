"""
Unit tests for the background embedding indexer.
"""
import asyncio
import pytest
from unittest.mock import Mock

from mailbridge.core.search.indexer import EmbeddingIndexer


@pytest.fixture
def embedder():
    embedder = Mock()
    embedder.embed_batch.side_effect = lambda texts: [[0.1, 0.2, 0.3] for _ in texts]
    return embedder


@pytest.mark.asyncio
class TestEmbeddingIndexer:

    async def test_embeds_in_batches(self, cache, gmail_account, sample_messages, embedder):
        await cache.upsert(gmail_account.id, sample_messages)
        indexer = EmbeddingIndexer(cache, embedder, batch_size=2)

        assert await indexer.run_once() == 2
        assert await indexer.run_once() == 2
        assert await indexer.run_once() == 1
        assert await indexer.run_once() == 0
        assert await cache.accounts_missing_embeddings() == []

    async def test_failing_account_does_not_stop_others(self, cache, gmail_account, imap_account,
                                                        sample_messages, embedder):
        await cache.upsert(gmail_account.id, sample_messages[:2])
        await cache.upsert(imap_account.id, sample_messages[:3])

        def embed_batch(texts):
            if len(texts) == 2:
                raise RuntimeError("quota exceeded")
            return [[0.1, 0.2, 0.3] for _ in texts]
        embedder.embed_batch.side_effect = embed_batch

        embedded = await EmbeddingIndexer(cache, embedder, batch_size=10).run_once()

        assert embedded == 3
        assert await cache.accounts_missing_embeddings() == [gmail_account.id]

    async def test_run_forever_stops_on_event(self, cache, embedder):
        indexer = EmbeddingIndexer(cache, embedder, interval=0.01)
        stop = asyncio.Event()

        task = asyncio.create_task(indexer.run_forever(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert task.done()
