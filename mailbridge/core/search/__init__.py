"""Query parsing, fuzzy helpers, embeddings and the combined search engine."""
from .query_parser import SearchCriteria, parse, stringify
from .embeddings import OpenAIEmbeddingBackend
from .engine import SearchEngine, SearchHit, AdvancedSearchResult
from .indexer import EmbeddingIndexer

__all__ = [
    'SearchCriteria',
    'parse',
    'stringify',
    'OpenAIEmbeddingBackend',
    'SearchEngine',
    'SearchHit',
    'AdvancedSearchResult',
    'EmbeddingIndexer',
]
