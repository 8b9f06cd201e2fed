"""
Tests for the embedding providers.

HTTP is mocked at requests.post; retry sleeps are patched out.
"""
import pytest
import requests
from unittest.mock import patch, MagicMock

from apps.indexing.embedder import (
    EmbeddingError,
    HuggingFaceEmbeddingProvider,
    OllamaEmbeddingProvider,
    create_embedding_provider,
)
from apps.indexing.retry import DeadlineExceeded, RateLimitError, RetryExhausted


def make_response(status_code=200, json_data=None, text="", headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data
    response.text = text
    response.headers = headers or {}
    return response


class FakeProvider(HuggingFaceEmbeddingProvider):
    """Deterministic provider that records calls."""

    def __init__(self, fail_on=None):
        super().__init__(token="t")
        self.calls = []
        self.fail_on = fail_on

    def _request_embedding(self, text, timeout=None):
        self.calls.append(text)
        if text == self.fail_on:
            raise EmbeddingError("upstream failed", status_code=400)
        return [float(len(text)), 1.0]


# ============================================================================
# Hugging Face Provider Tests
# ============================================================================

class TestHuggingFaceEmbeddingProvider:

    @patch('apps.indexing.embedder.requests.post')
    def test_embed_posts_to_feature_extraction(self, mock_post):
        mock_post.return_value = make_response(json_data=[0.1, 0.2, 0.3])
        provider = HuggingFaceEmbeddingProvider(token="hf_x", model="org/model",
                                                base_url="https://hf.example/")

        vector = provider.embed("hello")

        assert vector == [0.1, 0.2, 0.3]
        args, kwargs = mock_post.call_args
        assert args[0] == "https://hf.example/pipeline/feature-extraction/org/model"
        assert kwargs["json"] == {"inputs": "hello"}
        assert kwargs["headers"]["Authorization"] == "Bearer hf_x"

    @patch('apps.indexing.embedder.requests.post')
    def test_nested_vector_is_flattened(self, mock_post):
        mock_post.return_value = make_response(json_data=[[1, 2, 3]])
        provider = HuggingFaceEmbeddingProvider()

        assert provider.embed("hello") == [1.0, 2.0, 3.0]

    def test_empty_text_rejected(self):
        provider = HuggingFaceEmbeddingProvider()

        with pytest.raises(EmbeddingError):
            provider.embed("   ")

    @patch('apps.indexing.embedder.requests.post')
    def test_server_error_not_retried(self, mock_post):
        """A 5xx is transient but propagates on the first failure."""
        mock_post.return_value = make_response(status_code=503, text="overloaded")
        provider = HuggingFaceEmbeddingProvider()

        with pytest.raises(EmbeddingError) as exc_info:
            provider.embed("hello")

        assert exc_info.value.transient is True
        assert exc_info.value.status_code == 503
        mock_post.assert_called_once()

    @patch('apps.indexing.embedder.requests.post')
    def test_client_error_is_permanent(self, mock_post):
        mock_post.return_value = make_response(status_code=401, text="bad token")

        with pytest.raises(EmbeddingError) as exc_info:
            HuggingFaceEmbeddingProvider().embed("hello")

        assert exc_info.value.transient is False

    @patch('apps.indexing.retry.time.sleep')
    @patch('apps.indexing.embedder.requests.post')
    def test_rate_limit_retried(self, mock_post, mock_sleep):
        mock_post.side_effect = [
            make_response(status_code=429, text="slow down"),
            make_response(json_data=[0.5, 0.5]),
        ]

        vector = HuggingFaceEmbeddingProvider().embed("hello")

        assert vector == [0.5, 0.5]
        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(2.0)

    @patch('apps.indexing.retry.time.sleep')
    @patch('apps.indexing.embedder.requests.post')
    def test_rate_limit_exhausted(self, mock_post, mock_sleep):
        mock_post.return_value = make_response(status_code=429, headers={"Retry-After": "1"})

        with pytest.raises(RetryExhausted) as exc_info:
            HuggingFaceEmbeddingProvider().embed("hello")

        assert isinstance(exc_info.value.last_exception, RateLimitError)
        assert mock_post.call_count == 3

    @patch('apps.indexing.embedder.requests.post')
    def test_timeout_maps_to_transient_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout()

        with pytest.raises(EmbeddingError) as exc_info:
            HuggingFaceEmbeddingProvider().embed("hello")

        assert exc_info.value.transient is True

    @patch('apps.indexing.embedder.requests.post')
    def test_empty_payload_rejected(self, mock_post):
        mock_post.return_value = make_response(json_data=[])

        with pytest.raises(EmbeddingError):
            HuggingFaceEmbeddingProvider().embed("hello")

    @patch('apps.indexing.embedder.requests.post')
    def test_non_json_body_rejected(self, mock_post):
        response = make_response(text="<html>gateway</html>")
        response.json.side_effect = ValueError("Expecting value")
        mock_post.return_value = response

        with pytest.raises(EmbeddingError) as exc_info:
            HuggingFaceEmbeddingProvider().embed("hello")

        assert "not JSON" in str(exc_info.value)

    @patch('apps.indexing.embedder.requests.post')
    def test_token_level_output_rejected(self, mock_post):
        """One vector per token is not a sentence embedding."""
        mock_post.return_value = make_response(json_data=[[[0.1, 0.2], [0.3, 0.4]]])

        with pytest.raises(EmbeddingError):
            HuggingFaceEmbeddingProvider().embed("hello")

    @patch('apps.indexing.embedder.requests.post')
    def test_several_vectors_rejected(self, mock_post):
        mock_post.return_value = make_response(json_data=[[0.1, 0.2], [0.3, 0.4]])

        with pytest.raises(EmbeddingError):
            HuggingFaceEmbeddingProvider().embed("hello")

    @patch('apps.indexing.embedder.requests.post')
    def test_request_timeout_bounded_by_deadline(self, mock_post):
        mock_post.return_value = make_response(json_data=[0.1])
        provider = HuggingFaceEmbeddingProvider(timeout=60)

        provider.embed("hello", timeout=5.0)

        assert 0 < mock_post.call_args.kwargs["timeout"] <= 5.0

    @patch('apps.indexing.embedder.requests.post')
    def test_request_timeout_defaults_to_provider(self, mock_post):
        mock_post.return_value = make_response(json_data=[0.1])

        HuggingFaceEmbeddingProvider(timeout=60).embed("hello")

        assert mock_post.call_args.kwargs["timeout"] == 60

    @patch('apps.indexing.retry.time.sleep')
    @patch('apps.indexing.embedder.requests.post')
    def test_rate_limit_within_short_deadline(self, mock_post, mock_sleep):
        mock_post.return_value = make_response(status_code=429)

        with pytest.raises(DeadlineExceeded):
            HuggingFaceEmbeddingProvider().embed("hello", timeout=1.0)

        mock_post.assert_called_once()
        mock_sleep.assert_not_called()


# ============================================================================
# Ollama Provider Tests
# ============================================================================

class TestOllamaEmbeddingProvider:

    @patch('apps.indexing.embedder.requests.post')
    def test_embed(self, mock_post):
        mock_post.return_value = make_response(json_data={"embedding": [0.1, 0.9]})
        provider = OllamaEmbeddingProvider(base_url="http://ollama:11434/", model="all-minilm")

        assert provider.embed("hello") == [0.1, 0.9]
        args, kwargs = mock_post.call_args
        assert args[0] == "http://ollama:11434/api/embeddings"
        assert kwargs["json"] == {"model": "all-minilm", "prompt": "hello"}

    @patch('apps.indexing.embedder.requests.post')
    def test_connection_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError()

        with pytest.raises(EmbeddingError) as exc_info:
            OllamaEmbeddingProvider().embed("hello")

        assert "Cannot connect" in str(exc_info.value)

    @patch('apps.indexing.embedder.requests.post')
    def test_non_json_body_rejected(self, mock_post):
        response = make_response()
        response.json.side_effect = ValueError("Expecting value")
        mock_post.return_value = response

        with pytest.raises(EmbeddingError):
            OllamaEmbeddingProvider().embed("hello")

    @patch('apps.indexing.embedder.requests.post')
    def test_unexpected_body_rejected(self, mock_post):
        mock_post.return_value = make_response(json_data=[0.1, 0.2])

        with pytest.raises(EmbeddingError):
            OllamaEmbeddingProvider().embed("hello")

    @patch('apps.indexing.embedder.requests.post')
    def test_missing_embedding_rejected(self, mock_post):
        mock_post.return_value = make_response(json_data={"error": "model not found"})

        with pytest.raises(EmbeddingError):
            OllamaEmbeddingProvider().embed("hello")

    def test_default_model_matches_index_dimensions(self):
        assert OllamaEmbeddingProvider().model == "all-minilm"


# ============================================================================
# Batch Embedding Tests
# ============================================================================

class TestBatchEmbedding:

    def test_sequential_preserves_order(self):
        provider = FakeProvider()
        progress = []

        vectors = provider.embed_batch(["a", "bbb", "cc"], on_progress=lambda d, t: progress.append((d, t)))

        assert vectors == [[1.0, 1.0], [3.0, 1.0], [2.0, 1.0]]
        assert provider.calls == ["a", "bbb", "cc"]
        assert progress == [(1, 3), (2, 3), (3, 3)]

    def test_sequential_stops_on_failure(self):
        provider = FakeProvider(fail_on="bbb")

        with pytest.raises(EmbeddingError):
            provider.embed_batch(["a", "bbb", "cc"])

        assert provider.calls == ["a", "bbb"]

    def test_thread_pool_preserves_order(self):
        provider = FakeProvider()
        texts = ["x" * n for n in range(1, 20)]

        vectors = provider.embed_batch(texts, max_workers=4)

        assert [v[0] for v in vectors] == [float(n) for n in range(1, 20)]

    def test_thread_pool_propagates_failure(self):
        provider = FakeProvider(fail_on="bad")

        with pytest.raises(EmbeddingError):
            provider.embed_batch(["ok", "bad", "fine"], max_workers=2)

    def test_empty_batch(self):
        assert FakeProvider().embed_batch([]) == []


# ============================================================================
# Connection Check and Factory Tests
# ============================================================================

class TestCheckConnection:

    def test_healthy(self):
        assert FakeProvider().check_connection() is True

    def test_unhealthy(self):
        assert FakeProvider(fail_on="test").check_connection() is False

    @patch('apps.indexing.embedder.requests.post')
    def test_non_json_body_is_unhealthy(self, mock_post):
        response = make_response(text="<html></html>")
        response.json.side_effect = ValueError("Expecting value")
        mock_post.return_value = response

        assert HuggingFaceEmbeddingProvider().check_connection() is False


class TestCreateEmbeddingProvider:

    def test_ollama(self):
        assert isinstance(create_embedding_provider("ollama"), OllamaEmbeddingProvider)

    def test_default_is_huggingface(self):
        assert isinstance(create_embedding_provider("huggingface"), HuggingFaceEmbeddingProvider)
