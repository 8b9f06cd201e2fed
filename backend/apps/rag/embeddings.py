"""
Query embedding for RAG.

Validates and normalizes user questions and caches their embeddings in a
bounded, thread-safe LRU shared by every pipeline in the process.
"""
import logging
import re
import threading
import time
from collections import OrderedDict
from typing import List, Optional, Tuple

from django.conf import settings

from apps.indexing.embedder import BaseEmbeddingProvider

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000
DEFAULT_CACHE_SIZE = 1024


class QueryValidationError(ValueError):
    """Raised when query validation fails."""
    pass


def validate_query(query: str) -> str:
    """
    Reject empty or over-long questions.

    Returns:
        The question with surrounding whitespace stripped

    Raises:
        QueryValidationError: If the query is empty or too long
    """
    if not query or not query.strip():
        raise QueryValidationError("Query cannot be empty")

    query = query.strip()
    if len(query) > MAX_QUERY_LENGTH:
        raise QueryValidationError(f"Query too long (max {MAX_QUERY_LENGTH} characters)")

    return query


def normalize_query(query: str) -> str:
    """
    Normalize a user query for embedding.

    - Strip leading/trailing whitespace
    - Collapse multiple whitespace to single space
    - Raise if empty

    Raises:
        QueryValidationError: If query is empty after normalization
    """
    return re.sub(r'\s+', ' ', validate_query(query))


class EmbeddingCache:
    """
    Thread-safe LRU cache of text -> embedding vector.

    Holds at most max_size entries; inserting beyond that evicts the least
    recently used one. Vectors are stored immutably and handed out as
    fresh lists, so callers cannot alter a cached entry. With a ttl (seconds), entries older than ttl are
    treated as missing and dropped on access.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE, ttl: Optional[float] = None):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._ttl = ttl or None
        self._entries: "OrderedDict[str, Tuple[float, Tuple[float, ...]]]" = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    def _is_expired(self, stored_at: float) -> bool:
        return self._ttl is not None and (time.monotonic() - stored_at) >= self._ttl

    def get(self, key: str) -> Optional[List[float]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            stored_at, vector = entry
            if self._is_expired(stored_at):
                del self._entries[key]
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return list(vector)

    def set(self, key: str, vector: List[float]) -> None:
        with self._lock:
            self._entries[key] = (time.monotonic(), tuple(vector))
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted embedding cache entry ({len(evicted)} chars)")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
        logger.info("Embedding cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._is_expired(entry[0])


class CachedEmbeddingProvider(BaseEmbeddingProvider):
    """Wraps a provider so repeated texts skip the network call."""

    def __init__(self, provider: BaseEmbeddingProvider, cache: EmbeddingCache):
        self.provider = provider
        self.cache = cache

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    def _request_embedding(self, text: str, timeout: Optional[float] = None) -> List[float]:
        return self.provider.embed(text, timeout=timeout)

    def embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        cached = self.cache.get(text)
        if cached is not None:
            return cached

        vector = self.provider.embed(text, timeout=timeout)
        self.cache.set(text, vector)
        logger.debug(f"Generated query embedding with {len(vector)} dimensions")
        return vector


_shared_cache: Optional[EmbeddingCache] = None
_shared_cache_lock = threading.Lock()


def get_shared_cache() -> EmbeddingCache:
    """Get the process-wide embedding cache, sized from settings."""
    global _shared_cache
    with _shared_cache_lock:
        if _shared_cache is None:
            _shared_cache = EmbeddingCache(
                max_size=getattr(settings, 'EMBEDDING_CACHE_SIZE', DEFAULT_CACHE_SIZE),
                ttl=getattr(settings, 'EMBEDDING_CACHE_TTL', 0),
            )
        return _shared_cache
