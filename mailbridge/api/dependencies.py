"""
Service wiring for the API.

build_services() assembles the object graph once per process; routes get
it through the get_services dependency, which tests override with
app.dependency_overrides.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException

from mailbridge.core.accounts.store import AccountStore
from mailbridge.core.auth.token_refresher import TokenRefresher
from mailbridge.core.config import Settings, get_settings
from mailbridge.core.database.connection import SessionFactory
from mailbridge.core.providers.factory import ProviderFactory
from mailbridge.core.search.embeddings import OpenAIEmbeddingBackend
from mailbridge.core.search.engine import SearchEngine
from mailbridge.core.search.indexer import EmbeddingIndexer
from mailbridge.core.snoozes import SnoozeService
from mailbridge.core.summaries import SummaryService
from mailbridge.core.sync.cache import SyncCache
from mailbridge.core.sync.page_tokens import PageTokenIndex
from mailbridge.core.sync.service import MailboxService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    accounts: AccountStore
    cache: SyncCache
    mailbox: MailboxService
    search: SearchEngine
    summaries: SummaryService
    snoozes: SnoozeService
    indexer: Optional[EmbeddingIndexer] = None


_services: Optional[Services] = None


def build_services(session_factory: SessionFactory, settings: Optional[Settings] = None) -> Services:
    settings = settings or get_settings()
    accounts = AccountStore(session_factory)
    cache = SyncCache(session_factory)
    factory = ProviderFactory(accounts, cache, TokenRefresher(accounts, settings), settings)
    mailbox = MailboxService(factory, cache, PageTokenIndex(), settings)
    embedder = None
    if settings.openai_api_key:
        embedder = OpenAIEmbeddingBackend(settings.openai_api_key, settings.embedding_model)

    return Services(
        accounts=accounts,
        cache=cache,
        mailbox=mailbox,
        search=SearchEngine(session_factory, embedder, settings),
        summaries=SummaryService(cache, settings),
        snoozes=SnoozeService(session_factory, mailbox, interval=settings.snooze_check_interval),
        indexer=EmbeddingIndexer(
            cache, embedder,
            batch_size=settings.embedding_batch_size,
            interval=settings.embedding_index_interval,
        ) if embedder else None,
    )


def set_services(services: Optional[Services]):
    global _services
    _services = services


def get_services() -> Services:
    """FastAPI dependency returning the process-wide services."""
    if _services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _services
