"""
Tests for query validation and the query embedding cache.
"""
import threading

import pytest
from unittest.mock import patch, MagicMock

from apps.indexing.embedder import BaseEmbeddingProvider, EmbeddingError
from apps.rag import embeddings
from apps.rag.embeddings import (
    MAX_QUERY_LENGTH,
    CachedEmbeddingProvider,
    EmbeddingCache,
    QueryValidationError,
    get_shared_cache,
    normalize_query,
    validate_query,
)


class CountingProvider(BaseEmbeddingProvider):
    """Provider whose vector encodes the text length."""

    def __init__(self):
        self.calls = 0

    @property
    def model_name(self) -> str:
        return "counting"

    def _request_embedding(self, text, timeout=None):
        self.calls += 1
        return [float(len(text)), 0.0]


# ============================================================================
# Query Validation Tests
# ============================================================================

class TestValidateQuery:

    def test_strips_whitespace(self):
        assert validate_query("  How do I log in?  ") == "How do I log in?"

    def test_empty_rejected(self):
        with pytest.raises(QueryValidationError):
            validate_query("")
        with pytest.raises(QueryValidationError):
            validate_query(" \n\t ")

    def test_too_long_rejected(self):
        with pytest.raises(QueryValidationError):
            validate_query("a" * (MAX_QUERY_LENGTH + 1))

    def test_max_length_allowed(self):
        assert len(validate_query("a" * MAX_QUERY_LENGTH)) == MAX_QUERY_LENGTH

    def test_is_value_error(self):
        """Callers catching ValueError also see validation failures."""
        with pytest.raises(ValueError):
            validate_query("")


class TestNormalizeQuery:

    def test_collapses_whitespace(self):
        assert normalize_query("  what   is\n\nSSO?  ") == "what is SSO?"

    def test_empty_rejected(self):
        with pytest.raises(QueryValidationError):
            normalize_query("   ")


# ============================================================================
# Embedding Cache Tests
# ============================================================================

class TestEmbeddingCache:

    def test_get_missing_returns_none(self):
        cache = EmbeddingCache(max_size=2)

        assert cache.get("missing") is None
        assert cache.misses == 1

    def test_set_then_get(self):
        cache = EmbeddingCache(max_size=2)
        cache.set("a", [1.0])

        assert cache.get("a") == [1.0]
        assert cache.hits == 1
        assert "a" in cache
        assert len(cache) == 1

    def test_callers_cannot_alter_cached_vectors(self):
        cache = EmbeddingCache(max_size=2)
        stored = [1.0, 2.0]
        cache.set("a", stored)
        stored.append(3.0)

        first = cache.get("a")
        first[0] = 99.0

        assert cache.get("a") == [1.0, 2.0]

    def test_evicts_least_recently_used(self):
        cache = EmbeddingCache(max_size=2)
        cache.set("a", [1.0])
        cache.set("b", [2.0])
        cache.get("a")          # a is now most recently used
        cache.set("c", [3.0])   # evicts b

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_never_exceeds_max_size(self):
        cache = EmbeddingCache(max_size=3)
        for i in range(10):
            cache.set(str(i), [float(i)])

        assert len(cache) == 3
        assert [str(i) for i in range(10) if str(i) in cache] == ["7", "8", "9"]

    def test_overwrite_refreshes_entry(self):
        cache = EmbeddingCache(max_size=2)
        cache.set("a", [1.0])
        cache.set("b", [2.0])
        cache.set("a", [9.0])
        cache.set("c", [3.0])   # evicts b, not the refreshed a

        assert cache.get("a") == [9.0]
        assert "b" not in cache

    @patch('apps.rag.embeddings.time.monotonic')
    def test_ttl_expiry(self, mock_monotonic):
        cache = EmbeddingCache(max_size=2, ttl=10)

        mock_monotonic.return_value = 100.0
        cache.set("a", [1.0])

        mock_monotonic.return_value = 105.0
        assert cache.get("a") == [1.0]

        mock_monotonic.return_value = 111.0
        assert "a" not in cache
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_zero_ttl_never_expires(self):
        cache = EmbeddingCache(max_size=2, ttl=0)
        cache.set("a", [1.0])

        assert cache.get("a") == [1.0]

    def test_clear(self):
        cache = EmbeddingCache(max_size=2)
        cache.set("a", [1.0])
        cache.get("a")

        cache.clear()

        assert len(cache) == 0
        assert cache.hits == 0
        assert cache.misses == 0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            EmbeddingCache(max_size=0)

    def test_concurrent_writers_stay_bounded(self):
        cache = EmbeddingCache(max_size=16)

        def writer(offset):
            for i in range(200):
                cache.set(f"{offset}-{i}", [float(i)])
                cache.get(f"{offset}-{i // 2}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(cache) == 16


# ============================================================================
# Cached Provider Tests
# ============================================================================

class TestCachedEmbeddingProvider:

    def test_second_call_served_from_cache(self):
        inner = CountingProvider()
        provider = CachedEmbeddingProvider(inner, EmbeddingCache(max_size=4))

        first = provider.embed("what is sso")
        second = provider.embed("what is sso")

        assert first == second == [11.0, 0.0]
        assert inner.calls == 1
        assert provider.model_name == "counting"

    def test_mutating_result_leaves_cache_intact(self):
        provider = CachedEmbeddingProvider(CountingProvider(), EmbeddingCache(max_size=4))

        provider.embed("abc").append(5.0)
        provider.embed("abc")[0] = -1.0

        assert provider.embed("abc") == [3.0, 0.0]

    def test_timeout_forwarded_on_miss(self):
        inner = MagicMock()
        inner.embed.return_value = [1.0]
        provider = CachedEmbeddingProvider(inner, EmbeddingCache(max_size=4))

        provider.embed("q", timeout=3.0)

        inner.embed.assert_called_once_with("q", timeout=3.0)

    def test_failures_not_cached(self):
        inner = MagicMock()
        inner.embed.side_effect = [EmbeddingError("down"), [1.0]]
        provider = CachedEmbeddingProvider(inner, EmbeddingCache(max_size=4))

        with pytest.raises(EmbeddingError):
            provider.embed("q")
        assert provider.embed("q") == [1.0]
        assert inner.embed.call_count == 2

    def test_batch_uses_cache(self):
        inner = CountingProvider()
        provider = CachedEmbeddingProvider(inner, EmbeddingCache(max_size=4))

        provider.embed_batch(["a", "b", "a"])

        assert inner.calls == 2


class TestSharedCache:

    def test_shared_cache_is_singleton(self):
        with patch.object(embeddings, '_shared_cache', None):
            first = get_shared_cache()
            second = get_shared_cache()

        assert first is second
        assert first.max_size == 1024
