"""Local cache, page-token index and the mailbox service."""
from .cache import SyncCache, CacheFilters, CacheLookup, CacheStatus, CachedPage
from .page_tokens import PageTokenIndex

__all__ = [
    'SyncCache',
    'CacheFilters',
    'CacheLookup',
    'CacheStatus',
    'CachedPage',
    'PageTokenIndex',
]
