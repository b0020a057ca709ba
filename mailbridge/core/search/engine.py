"""
Search Engine

Combined fuzzy + semantic search over the message cache. Searches never
touch a remote backend.

search() runs three passes and merges them by message id:

1. edit-distance: literal substring or a word within a length-scaled edit
   distance of the query; every match scores EDIT_DISTANCE_SCORE
2. trigram: best pg_trgm similarity over subject and sender above the
   combined-search threshold
3. semantic: cosine similarity of query and message embeddings (top-K),
   weighted by SEMANTIC_WEIGHT before the max

Each message keeps its best score and the list of passes that found it.
Results sort by score, then recency. A failing pass is logged and dropped.

On PostgreSQL every pass runs in SQL (fuzzystrmatch, pg_trgm,
pgvector); elsewhere the same scores are computed in Python.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import String, and_, cast, func, or_, text

from mailbridge.core.config import Settings, get_settings
from mailbridge.core.database.connection import SessionFactory, session_scope
from mailbridge.core.database.models import CachedMessage, to_uuid
from mailbridge.core.email.models import EmailAddress, NormalizedMessage
from mailbridge.core.errors import ValidationError
from mailbridge.core.sync.cache import row_to_message, text_filter
from .embeddings import OpenAIEmbeddingBackend, cosine_similarity
from .fuzzy import best_trigram_similarity, edit_distance_match, edit_distance_threshold
from .query_parser import SearchCriteria, parse

logger = logging.getLogger(__name__)

EDIT_DISTANCE_SCORE = 0.5
SEMANTIC_WEIGHT = 1.1

PASS_EDIT_DISTANCE = "edit_distance"
PASS_TRIGRAM = "trigram"
PASS_SEMANTIC = "semantic"

LEVENSHTEIN_MAX_LENGTH = 255

# Literal substring of any field, or any word within the edit-distance threshold.
# Words split on non-alphanumerics, as fuzzy.tokenize does.
EDIT_DISTANCE_SQL = """
    SELECT m.id FROM cached_messages m
    WHERE m.account_id = CAST(:account_id AS uuid) AND (
        strpos(lower(coalesce(m.subject, '')), :needle) > 0
        OR strpos(lower(coalesce(m.from_name, '')), :needle) > 0
        OR strpos(lower(coalesce(m.from_address, '')), :needle) > 0
        OR strpos(lower(coalesce(m.body_text, '')), :needle) > 0
        OR {word_match}
    )
"""
EDIT_DISTANCE_WORD_SQL = """EXISTS (
        SELECT 1 FROM regexp_split_to_table(
            lower(concat_ws(' ', m.subject, m.from_name, m.from_address, m.body_text)), '[^[:alnum:]]+'
        ) AS word
        WHERE word <> '' AND length(word) <= :max_length
          AND levenshtein_less_equal(word, :needle, :threshold) <= :threshold
    )"""

FIELD_COLUMNS = {
    'subject': (CachedMessage.subject,),
    'sender': (CachedMessage.from_address, CachedMessage.from_name),
    'body': (CachedMessage.body_text,),
}
SUGGESTION_KINDS = ('sender', 'recipient', 'subject')
SUGGESTION_SCAN_LIMIT = 500


@dataclass
class SearchHit:
    message: NormalizedMessage
    score: float
    sources: List[str] = field(default_factory=list)


@dataclass
class MergedScore:
    score: float
    sources: List[str] = field(default_factory=list)


@dataclass
class AdvancedSearchResult:
    messages: List[NormalizedMessage]
    total: int
    page: int
    page_size: int
    criteria: SearchCriteria


def merge_passes(passes: Sequence[Tuple[str, Dict[str, float]]]) -> Dict[str, MergedScore]:
    """
    Merge per-pass {message id: score} maps, keeping the best score per id
    and the names of every pass that matched it. Semantic scores are
    weighted before comparison.
    """
    merged: Dict[str, MergedScore] = {}
    for name, scores in passes:
        weight = SEMANTIC_WEIGHT if name == PASS_SEMANTIC else 1.0
        for message_id, score in scores.items():
            weighted = score * weight
            entry = merged.get(message_id)
            if entry is None:
                merged[message_id] = MergedScore(score=weighted, sources=[name])
                continue
            entry.score = max(entry.score, weighted)
            if name not in entry.sources:
                entry.sources.append(name)
    return merged


def rank(merged: Dict[str, MergedScore], messages: Dict[str, NormalizedMessage], limit: int) -> List[SearchHit]:
    """Best score first, newest first on ties, truncated to limit."""
    hits = [
        SearchHit(message=messages[message_id], score=entry.score, sources=list(entry.sources))
        for message_id, entry in merged.items()
        if message_id in messages
    ]
    hits.sort(key=lambda hit: (-hit.score, -hit.message.date.timestamp()))
    return hits[:limit]


def criteria_filters(criteria: SearchCriteria) -> list:
    """SQL conditions for parsed criteria: OR within a key, AND across keys."""
    conditions = []
    if criteria.senders:
        conditions.append(or_(*[
            or_(CachedMessage.from_address.ilike(f"%{v}%"), CachedMessage.from_name.ilike(f"%{v}%"))
            for v in criteria.senders
        ]))
    if criteria.recipients:
        conditions.append(or_(*[
            or_(cast(CachedMessage.to_addresses, String).ilike(f"%{v}%"),
                cast(CachedMessage.cc_addresses, String).ilike(f"%{v}%"))
            for v in criteria.recipients
        ]))
    if criteria.subjects:
        conditions.append(or_(*[CachedMessage.subject.ilike(f"%{v}%") for v in criteria.subjects]))
    if criteria.contains:
        conditions.append(or_(*[
            or_(CachedMessage.subject.ilike(f"%{v}%"), CachedMessage.body_text.ilike(f"%{v}%"))
            for v in criteria.contains
        ]))
    if criteria.folders:
        conditions.append(or_(*[
            or_(and_(CachedMessage.labels.is_(None), func.lower(CachedMessage.folder) == v.lower()),
                func.lower(CachedMessage.labels).contains(f",{v.lower()},", autoescape=True))
            for v in criteria.folders
        ]))
    if criteria.has_attachment is not None:
        conditions.append(CachedMessage.has_attachments.is_(criteria.has_attachment))
    if criteria.is_read is not None:
        conditions.append(CachedMessage.is_read.is_(criteria.is_read))
    if criteria.is_starred is not None:
        conditions.append(CachedMessage.is_starred.is_(criteria.is_starred))
    if criteria.free_text:
        conditions.append(text_filter(criteria.free_text))
    return conditions


def _is_postgres(session) -> bool:
    return session.get_bind().dialect.name == 'postgresql'


class SearchEngine:
    """Fuzzy, trigram and semantic search over one account's cached messages."""

    def __init__(
        self,
        session_factory: SessionFactory,
        embedder: Optional[OpenAIEmbeddingBackend] = None,
        settings: Optional[Settings] = None
    ):
        self.session_factory = session_factory
        self.embedder = embedder
        self.settings = settings or get_settings()
        self.semantic_enabled = False

    async def check_embedder(self) -> bool:
        """Enable the semantic pass if the embedding backend answers."""
        if self.embedder is None:
            self.semantic_enabled = False
        else:
            self.semantic_enabled = await asyncio.to_thread(self.embedder.check_availability)
        return self.semantic_enabled

    # ------------------------------------------------------------------
    # Combined search
    # ------------------------------------------------------------------

    async def search(self, account_id, query: str, limit: int = 20) -> List[SearchHit]:
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query cannot be empty")
        if limit < 1:
            raise ValidationError(f"limit must be >= 1, got {limit}")
        account_uuid = to_uuid(account_id)
        if account_uuid is None:
            raise ValidationError(f"Invalid account id: {account_id}")

        passes = [
            (PASS_EDIT_DISTANCE, self._edit_distance_pass),
            (PASS_TRIGRAM, self._trigram_pass),
        ]
        if self.semantic_enabled and self.embedder is not None:
            passes.append((PASS_SEMANTIC, self._semantic_pass))

        results = []
        for name, run in passes:
            try:
                scores = await run(account_uuid, query)
            except Exception as e:
                logger.warning(f"Search pass '{name}' failed for account {account_id}, skipping: {e}")
                continue
            logger.debug(f"Search pass '{name}' matched {len(scores)} messages")
            results.append((name, scores))

        merged = merge_passes(results)
        messages = await asyncio.to_thread(self._load_messages, account_uuid, list(merged))
        hits = rank(merged, messages, limit)
        logger.info(f"Search '{query}' for account {account_id}: {len(merged)} matches, returning {len(hits)}")
        return hits

    async def _edit_distance_pass(self, account_id, query: str) -> Dict[str, float]:
        return await asyncio.to_thread(self._edit_distance_scores, account_id, query)

    def _edit_distance_scores(self, account_id, query: str) -> Dict[str, float]:
        with session_scope(self.session_factory) as session:
            if _is_postgres(session):
                needle = query.lower()
                threshold = edit_distance_threshold(needle)
                params = {'account_id': str(account_id), 'needle': needle}
                word_match = "FALSE"
                # fuzzystrmatch rejects arguments longer than 255 characters
                if len(needle) <= LEVENSHTEIN_MAX_LENGTH:
                    word_match = EDIT_DISTANCE_WORD_SQL
                    params.update(threshold=threshold, max_length=LEVENSHTEIN_MAX_LENGTH)
                sql = text(EDIT_DISTANCE_SQL.format(word_match=word_match))
                rows = session.execute(sql, params).fetchall()
                return {str(row.id): EDIT_DISTANCE_SCORE for row in rows}

            rows = session.query(
                CachedMessage.id, CachedMessage.subject, CachedMessage.from_name,
                CachedMessage.from_address, CachedMessage.body_text,
            ).filter(CachedMessage.account_id == account_id).all()

        return {
            str(row.id): EDIT_DISTANCE_SCORE
            for row in rows
            if edit_distance_match(query, (row.subject, row.from_name, row.from_address, row.body_text))
        }

    async def _trigram_pass(self, account_id, query: str) -> Dict[str, float]:
        columns = FIELD_COLUMNS['subject'] + FIELD_COLUMNS['sender']
        return await asyncio.to_thread(
            self._trigram_scores, account_id, query, columns, self.settings.fuzzy_threshold, None
        )

    def _trigram_scores(self, account_id, query: str, columns, threshold: float,
                        limit: Optional[int]) -> Dict[str, float]:
        with session_scope(self.session_factory) as session:
            if _is_postgres(session):
                scores = [func.similarity(func.coalesce(c, ''), query) for c in columns]
                similarity = func.greatest(*scores) if len(scores) > 1 else scores[0]
                q = session.query(CachedMessage.id, similarity.label('similarity')).filter(
                    CachedMessage.account_id == account_id,
                    similarity > threshold,
                ).order_by(similarity.desc())
                if limit:
                    q = q.limit(limit)
                return {str(row.id): float(row.similarity) for row in q.all()}

            rows = session.query(CachedMessage.id, *columns).filter(CachedMessage.account_id == account_id).all()

        scores = {}
        for row in rows:
            score = best_trigram_similarity(query, row[1:])
            if score > threshold:
                scores[str(row[0])] = score
        if limit:
            scores = dict(sorted(scores.items(), key=lambda item: -item[1])[:limit])
        return scores

    async def _semantic_pass(self, account_id, query: str) -> Dict[str, float]:
        vector = await asyncio.to_thread(self.embedder.embed, query)
        return await asyncio.to_thread(self._semantic_scores, account_id, vector, self.settings.semantic_top_k)

    def _semantic_scores(self, account_id, vector: List[float], top_k: int) -> Dict[str, float]:
        with session_scope(self.session_factory) as session:
            if _is_postgres(session):
                distance = CachedMessage.embedding.cosine_distance(vector)
                rows = session.query(CachedMessage.id, distance.label('distance')).filter(
                    CachedMessage.account_id == account_id,
                    CachedMessage.embedding.isnot(None),
                ).order_by(distance).limit(top_k).all()
                return {str(row.id): max(0.0, min(1.0, 1.0 - float(row.distance))) for row in rows}

            rows = session.query(CachedMessage.id, CachedMessage.embedding).filter(
                CachedMessage.account_id == account_id,
                CachedMessage.embedding.isnot(None),
            ).all()

        scored = sorted(
            ((str(row.id), cosine_similarity(vector, row.embedding)) for row in rows),
            key=lambda item: -item[1],
        )
        return dict(scored[:top_k])

    def _load_messages(self, account_id, message_ids: List[str]) -> Dict[str, NormalizedMessage]:
        if not message_ids:
            return {}
        ids = [to_uuid(mid) for mid in message_ids]
        with session_scope(self.session_factory) as session:
            rows = session.query(CachedMessage).filter(
                CachedMessage.account_id == account_id,
                CachedMessage.id.in_(ids),
            ).all()
            return {str(row.id): row_to_message(row) for row in rows}

    # ------------------------------------------------------------------
    # Structured and single-field search
    # ------------------------------------------------------------------

    async def advanced_search(self, account_id, query: str, page: int = 1,
                              page_size: int = 20) -> AdvancedSearchResult:
        """Evaluate a parsed query as SQL filters, newest first, paginated."""
        if page < 1 or page_size < 1 or page_size > self.settings.max_page_size:
            raise ValidationError(f"Invalid pagination: page={page}, page_size={page_size}")
        criteria = parse(query)
        if criteria.is_empty():
            raise ValidationError("Search query cannot be empty")
        account_uuid = to_uuid(account_id)
        if account_uuid is None:
            raise ValidationError(f"Invalid account id: {account_id}")

        messages, total = await asyncio.to_thread(self._advanced, account_uuid, criteria, page, page_size)
        return AdvancedSearchResult(messages=messages, total=total, page=page, page_size=page_size, criteria=criteria)

    def _advanced(self, account_id, criteria: SearchCriteria, page: int, page_size: int):
        with session_scope(self.session_factory) as session:
            q = session.query(CachedMessage).filter(
                and_(CachedMessage.account_id == account_id, *criteria_filters(criteria))
            )
            total = q.order_by(None).count()
            rows = (
                q.order_by(CachedMessage.date.desc(), CachedMessage.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return [row_to_message(r) for r in rows], total

    async def fuzzy_search_by_field(self, account_id, field_name: str, query: str,
                                    threshold: Optional[float] = None, limit: int = 20) -> List[SearchHit]:
        """Trigram similarity over one of subject, sender or body."""
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query cannot be empty")
        if field_name not in FIELD_COLUMNS:
            raise ValidationError(f"Invalid field '{field_name}'. Must be one of: {', '.join(FIELD_COLUMNS)}")
        account_uuid = to_uuid(account_id)
        if account_uuid is None:
            raise ValidationError(f"Invalid account id: {account_id}")
        if threshold is None:
            threshold = self.settings.field_fuzzy_threshold

        scores = await asyncio.to_thread(
            self._trigram_scores, account_uuid, query, FIELD_COLUMNS[field_name], threshold, limit
        )
        merged = merge_passes([(PASS_TRIGRAM, scores)])
        messages = await asyncio.to_thread(self._load_messages, account_uuid, list(merged))
        return rank(merged, messages, limit)

    async def suggestions(self, account_id, kind: str, prefix: str = "", limit: int = 10) -> List[str]:
        """Distinct senders, recipients or subjects containing `prefix`, most recent first."""
        if kind not in SUGGESTION_KINDS:
            raise ValidationError(f"Invalid suggestion kind '{kind}'. Must be one of: {', '.join(SUGGESTION_KINDS)}")
        account_uuid = to_uuid(account_id)
        if account_uuid is None:
            raise ValidationError(f"Invalid account id: {account_id}")
        return await asyncio.to_thread(self._suggestions, account_uuid, kind, (prefix or "").strip(), limit)

    def _suggestions(self, account_id, kind: str, prefix: str, limit: int) -> List[str]:
        pattern = f"%{prefix}%"
        needle = prefix.lower()
        seen = set()
        results: List[str] = []

        def add(value: Optional[str], key: Optional[str] = None):
            key = (key or value or "").lower()
            if value and key not in seen and len(results) < limit:
                seen.add(key)
                results.append(value)

        with session_scope(self.session_factory) as session:
            base = session.query(CachedMessage).filter(CachedMessage.account_id == account_id)
            if kind == 'sender':
                rows = base.with_entities(CachedMessage.from_name, CachedMessage.from_address).filter(
                    or_(CachedMessage.from_address.ilike(pattern), CachedMessage.from_name.ilike(pattern))
                ).order_by(CachedMessage.date.desc()).limit(SUGGESTION_SCAN_LIMIT).all()
                for row in rows:
                    if row.from_address:
                        add(EmailAddress(name=row.from_name, address=row.from_address).formatted(), row.from_address)
            elif kind == 'recipient':
                rows = base.with_entities(CachedMessage.to_addresses, CachedMessage.cc_addresses).filter(
                    or_(cast(CachedMessage.to_addresses, String).ilike(pattern),
                        cast(CachedMessage.cc_addresses, String).ilike(pattern))
                ).order_by(CachedMessage.date.desc()).limit(SUGGESTION_SCAN_LIMIT).all()
                for row in rows:
                    for entry in (row.to_addresses or []) + (row.cc_addresses or []):
                        address = entry.get('address') or ''
                        name = entry.get('name')
                        if needle in address.lower() or (name and needle in name.lower()):
                            add(EmailAddress(name=name, address=address).formatted(), address)
            else:
                rows = base.with_entities(CachedMessage.subject).filter(
                    CachedMessage.subject.ilike(pattern)
                ).order_by(CachedMessage.date.desc()).limit(SUGGESTION_SCAN_LIMIT).all()
                for row in rows:
                    add(row.subject)
        return results
