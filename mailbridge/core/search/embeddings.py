"""
Embedding Backend

OpenAI embeddings for cached messages and search queries. The semantic
search pass and the background indexer are only enabled once
check_availability() has succeeded.
"""
import logging
import time
from typing import List, Optional, Sequence

import numpy as np
from openai import APIError, OpenAI, RateLimitError

from mailbridge.core.database.models import EMBEDDING_DIMENSIONS
from mailbridge.core.email.models import NormalizedMessage
from mailbridge.core.errors import ConfigurationError, RemoteBackendError

logger = logging.getLogger(__name__)

BACKEND = "openai"
MAX_BODY_CHARS = 2000
PROBE_TEXT = "mailbridge availability check"


def prepare_text(message: NormalizedMessage) -> str:
    """
    Text embedded for a message: subject (twice, for weight), sender and
    the start of the plain-text body.
    """
    parts = []
    if message.subject:
        parts.append(f"Subject: {message.subject}")
        parts.append(message.subject)

    if message.sender.name:
        parts.append(f"From: {message.sender.name}")
    elif message.sender.address:
        parts.append(f"From: {message.sender.address.split('@')[0]}")

    body = (message.body_text or message.preview or "").strip()
    if body:
        if len(body) > MAX_BODY_CHARS:
            body = body[:MAX_BODY_CHARS] + "..."
        parts.append(body)

    return "\n".join(parts)


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1]; 0.0 for zero vectors."""
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    similarity = np.dot(a, b) / (norm_a * norm_b)
    return max(0.0, min(1.0, float(similarity)))


class OpenAIEmbeddingBackend:
    """Generate embedding vectors with the OpenAI embeddings API."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        client: Optional[OpenAI] = None,
        max_retries: int = 3,
        timeout: int = 30
    ):
        self.api_key = api_key
        self.model = model
        self.max_retries = max_retries
        self.timeout = timeout
        self.dims = EMBEDDING_DIMENSIONS
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise ConfigurationError("OPENAI_API_KEY is not set", missing=['openai_api_key'])
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def _create(self, inputs):
        for attempt in range(self.max_retries):
            try:
                return self.client.embeddings.create(model=self.model, input=inputs, timeout=self.timeout)
            except RateLimitError as e:
                if attempt < self.max_retries - 1:
                    wait_time = (2 ** attempt) * 1.0  # 1s, 2s, 4s
                    logger.warning(f"Embedding rate limit hit, retrying in {wait_time}s "
                                   f"(attempt {attempt + 1}/{self.max_retries})")
                    time.sleep(wait_time)
                    continue
                raise RemoteBackendError(f"Embedding rate limit exceeded: {e}", backend=BACKEND) from e
            except APIError as e:
                if attempt < self.max_retries - 1:
                    wait_time = (2 ** attempt) * 0.5
                    logger.warning(f"Embedding API error, retrying in {wait_time}s: {e}")
                    time.sleep(wait_time)
                    continue
                raise RemoteBackendError(f"Embedding API error: {e}", backend=BACKEND) from e
        raise RemoteBackendError("Embedding request failed", backend=BACKEND)

    def _validated(self, embedding: List[float]) -> List[float]:
        if len(embedding) != self.dims:
            raise RemoteBackendError(
                f"Embedding dimension mismatch: expected {self.dims}, got {len(embedding)}", backend=BACKEND
            )
        return list(embedding)

    def embed(self, text: str) -> List[float]:
        response = self._create(text)
        return self._validated(response.data[0].embedding)

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """One vector per input text, in input order."""
        if not texts:
            return []
        response = self._create(list(texts))
        ordered = sorted(response.data, key=lambda item: item.index)
        return [self._validated(item.embedding) for item in ordered]

    def check_availability(self) -> bool:
        """Embed a probe string; False (logged) when the backend is unusable."""
        if not self.api_key and self._client is None:
            logger.info("Semantic search disabled: OPENAI_API_KEY not set")
            return False
        try:
            self.embed(PROBE_TEXT)
        except Exception as e:
            logger.warning(f"Semantic search disabled: embedding backend unavailable ({e})")
            return False
        logger.info(f"Embedding backend available ({self.model})")
        return True
