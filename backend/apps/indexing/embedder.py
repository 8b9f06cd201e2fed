"""
Embedding generation.

Two providers are supported:
- Hugging Face Inference feature-extraction pipeline (default)
- Ollama local embeddings

Batch embedding is a strictly sequential loop by default, which keeps
indexing friendly to upstream rate limits. A bounded thread pool can be
requested explicitly.
"""
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Iterator, List, Optional

import requests
from django.conf import settings

from apps.indexing.retry import (
    ProviderError,
    RateLimitError,
    deadline_after,
    remaining_time,
    retry_with_backoff,
    RATE_LIMIT_RETRY_CONFIG,
)

logger = logging.getLogger(__name__)

DEFAULT_HF_BASE_URL = "https://router.huggingface.co/hf-inference"
DEFAULT_HF_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_OLLAMA_URL = "http://ollama:11434"
DEFAULT_OLLAMA_EMBED_MODEL = "all-minilm"  # 384 dimensions, like all-MiniLM-L6-v2
DEFAULT_EMBEDDING_TIMEOUT = 60  # Embeddings should be quick


class EmbeddingError(ProviderError):
    """Raised when embedding generation fails."""
    pass


def _raise_for_response(response: requests.Response, provider: str) -> None:
    """Map a non-200 provider response onto the error taxonomy."""
    if response.status_code == 200:
        return

    error_detail = response.text[:500] if response.text else "No details"
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitError(
            f"{provider} rate limited (429): {error_detail}",
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    raise EmbeddingError(
        f"{provider} API returned {response.status_code}: {error_detail}",
        transient=response.status_code >= 500,
        status_code=response.status_code,
    )


def _decode_json(response: requests.Response, provider: str):
    try:
        return response.json()
    except ValueError as e:
        raise EmbeddingError(f"{provider} returned a body that is not JSON: {e}")


def _as_vector(data, provider: str) -> List[float]:
    """Check that a decoded payload is a flat, non-empty list of numbers."""
    if not isinstance(data, list) or not data:
        raise EmbeddingError(f"No embedding in {provider} response")
    if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in data):
        raise EmbeddingError(f"Unexpected embedding shape from {provider}")
    return [float(x) for x in data]


class BaseEmbeddingProvider(ABC):
    """Maps text to a fixed-length vector."""

    retry_config: dict = RATE_LIMIT_RETRY_CONFIG
    timeout: float = DEFAULT_EMBEDDING_TIMEOUT

    @abstractmethod
    def _request_embedding(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Perform a single embedding request (no retries)."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        pass

    def _request_timeout(self, timeout: Optional[float]) -> float:
        if timeout is None:
            return self.timeout
        return min(self.timeout, timeout)

    def embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """
        Generate an embedding vector for a single text.

        Rate-limited calls are retried with exponential backoff.

        Args:
            text: Text to embed
            timeout: Overall deadline in seconds, covering retries and backoff

        Raises:
            EmbeddingError: If the provider call fails
            RetryExhausted: If every attempt was rate limited
            DeadlineExceeded: If the timeout ran out first
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot generate embedding for empty text")

        deadline = deadline_after(timeout)
        return retry_with_backoff(
            lambda: self._request_embedding(text, timeout=remaining_time(deadline)),
            config=self.retry_config,
            deadline=deadline,
        )

    def iter_embeddings(
        self,
        texts: Iterable[str],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Iterator[List[float]]:
        """
        Yield embeddings one at a time, strictly in order.

        A failure stops the iteration and propagates.
        """
        texts = list(texts)
        total = len(texts)

        for i, text in enumerate(texts):
            try:
                embedding = self.embed(text)
            except ProviderError as e:
                logger.error(f"Failed to embed text {i + 1}/{total}: {e}")
                raise

            if on_progress:
                on_progress(i + 1, total)
            yield embedding

    def embed_batch(
        self,
        texts: List[str],
        max_workers: int = 1,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> List[List[float]]:
        """
        Generate embeddings for multiple texts, preserving order.

        With max_workers=1 (the default) texts are embedded sequentially.
        Larger values use a thread pool of exactly that size.

        Raises:
            ProviderError: If any embedding fails
        """
        if max_workers <= 1 or len(texts) <= 1:
            embeddings = list(self.iter_embeddings(texts, on_progress=on_progress))
        else:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                embeddings = list(pool.map(self.embed, texts))

        logger.info(f"Generated {len(embeddings)} embeddings with {self.model_name}")
        return embeddings

    def check_connection(self) -> bool:
        """Embed a short test string; True if the provider answered."""
        try:
            vector = self.embed("test")
            logger.info(f"Embedding provider OK ({self.model_name}, dim={len(vector)})")
            return True
        except ProviderError as e:
            logger.warning(f"Embedding provider check failed: {e}")
            return False


class HuggingFaceEmbeddingProvider(BaseEmbeddingProvider):
    """Embeddings from the Hugging Face feature-extraction pipeline."""

    def __init__(
        self,
        token: str = "",
        model: str = DEFAULT_HF_EMBEDDING_MODEL,
        base_url: str = DEFAULT_HF_BASE_URL,
        timeout: float = DEFAULT_EMBEDDING_TIMEOUT,
    ):
        self.token = token
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "HuggingFaceEmbeddingProvider":
        return cls(
            token=getattr(settings, 'HF_TOKEN', ''),
            model=getattr(settings, 'HF_EMBEDDING_MODEL', DEFAULT_HF_EMBEDDING_MODEL),
            base_url=getattr(settings, 'HF_BASE_URL', DEFAULT_HF_BASE_URL),
            timeout=getattr(settings, 'EMBEDDING_TIMEOUT', DEFAULT_EMBEDDING_TIMEOUT),
        )

    @property
    def model_name(self) -> str:
        return self.model

    def _request_embedding(self, text: str, timeout: Optional[float] = None) -> List[float]:
        url = f"{self.base_url}/pipeline/feature-extraction/{self.model}"

        try:
            response = requests.post(
                url,
                json={"inputs": text},
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json",
                },
                timeout=self._request_timeout(timeout),
            )
        except requests.exceptions.Timeout:
            raise EmbeddingError("Hugging Face embedding API timed out", transient=True)
        except requests.exceptions.ConnectionError:
            raise EmbeddingError(f"Cannot connect to Hugging Face at {self.base_url}", transient=True)
        except requests.exceptions.RequestException as e:
            raise EmbeddingError(f"Request failed: {e}")

        _raise_for_response(response, "Hugging Face")

        data = _decode_json(response, "Hugging Face")
        # A sentence-level pipeline may nest the vector one level deep;
        # token-level output (one vector per token) is rejected
        if isinstance(data, list) and len(data) == 1 and isinstance(data[0], list):
            data = data[0]
        return _as_vector(data, "Hugging Face")


class OllamaEmbeddingProvider(BaseEmbeddingProvider):
    """Embeddings from a local Ollama server."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        model: str = DEFAULT_OLLAMA_EMBED_MODEL,
        timeout: float = DEFAULT_EMBEDDING_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "OllamaEmbeddingProvider":
        return cls(
            base_url=getattr(settings, 'OLLAMA_BASE_URL', DEFAULT_OLLAMA_URL),
            model=getattr(settings, 'OLLAMA_EMBED_MODEL', DEFAULT_OLLAMA_EMBED_MODEL),
            timeout=getattr(settings, 'EMBEDDING_TIMEOUT', DEFAULT_EMBEDDING_TIMEOUT),
        )

    @property
    def model_name(self) -> str:
        return self.model

    def _request_embedding(self, text: str, timeout: Optional[float] = None) -> List[float]:
        url = f"{self.base_url}/api/embeddings"

        try:
            response = requests.post(
                url,
                json={
                    "model": self.model,
                    "prompt": text
                },
                timeout=self._request_timeout(timeout),
            )
        except requests.exceptions.Timeout:
            raise EmbeddingError("Ollama API timed out", transient=True)
        except requests.exceptions.ConnectionError:
            raise EmbeddingError(f"Cannot connect to Ollama at {self.base_url}", transient=True)
        except requests.exceptions.RequestException as e:
            raise EmbeddingError(f"Request failed: {e}")

        _raise_for_response(response, "Ollama")

        data = _decode_json(response, "Ollama")
        if not isinstance(data, dict):
            raise EmbeddingError("Unexpected Ollama response body")
        return _as_vector(data.get("embedding"), "Ollama")


def create_embedding_provider(provider: Optional[str] = None) -> BaseEmbeddingProvider:
    """
    Build the embedding provider named by EMBEDDING_PROVIDER.

    - "huggingface" (default): Hugging Face Inference
    - "ollama": Local Ollama server
    """
    provider = (provider or getattr(settings, 'EMBEDDING_PROVIDER', 'huggingface')).lower()

    if provider == 'ollama':
        logger.info("Using Ollama for embeddings")
        return OllamaEmbeddingProvider.from_settings()

    logger.info("Using Hugging Face for embeddings")
    return HuggingFaceEmbeddingProvider.from_settings()
