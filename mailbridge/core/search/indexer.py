"""
Background embedding indexer.

Embeds cached messages that have no vector yet, a small batch per account
per sweep, outside the request path. Until a message is indexed the
semantic pass cannot return it.
"""
import asyncio
import logging
from typing import Optional

from mailbridge.core.sync.cache import SyncCache
from .embeddings import OpenAIEmbeddingBackend, prepare_text

logger = logging.getLogger(__name__)


class EmbeddingIndexer:
    """Periodic sweep filling in missing message embeddings."""

    def __init__(
        self,
        cache: SyncCache,
        embedder: OpenAIEmbeddingBackend,
        batch_size: int = 16,
        interval: float = 60
    ):
        self.cache = cache
        self.embedder = embedder
        self.batch_size = batch_size
        self.interval = interval

    async def run_once(self) -> int:
        """One sweep over all accounts; returns the number of messages embedded."""
        embedded = 0
        for account_id in await self.cache.accounts_missing_embeddings():
            try:
                embedded += await self._index_account(account_id)
            except Exception as e:
                logger.error(f"Embedding batch failed for account {account_id}: {e}")
        if embedded:
            logger.info(f"Embedded {embedded} cached messages")
        return embedded

    async def _index_account(self, account_id) -> int:
        messages = await self.cache.messages_missing_embeddings(account_id, self.batch_size)
        if not messages:
            return 0
        texts = [prepare_text(m) for m in messages]
        vectors = await asyncio.to_thread(self.embedder.embed_batch, texts)
        return await self.cache.set_embeddings(account_id, zip([m.id for m in messages], vectors))

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """Sweep every `interval` seconds until cancelled or stop_event is set."""
        logger.info(f"Embedding indexer started (batch {self.batch_size}, every {self.interval}s)")
        while stop_event is None or not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Embedding sweep failed: {e}", exc_info=True)
            if stop_event is None:
                await asyncio.sleep(self.interval)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Embedding indexer stopped")
