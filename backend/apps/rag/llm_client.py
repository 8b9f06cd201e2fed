"""
LLM Client Abstraction Layer.

Provides a unified text-completion interface that can switch between:
- OpenAI-compatible APIs (Hugging Face router, OpenAI, Groq, local servers)
- Ollama (local inference)

Rate-limited calls are retried with exponential backoff; every other
failure surfaces as LLMError on the first attempt.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx
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

DEFAULT_OPENAI_BASE_URL = "https://router.huggingface.co/v1"
DEFAULT_OPENAI_MODEL = "Qwen/Qwen2.5-Coder-32B-Instruct"
DEFAULT_OLLAMA_URL = "http://ollama:11434"
DEFAULT_OLLAMA_MODEL = "llama3.2"


@dataclass
class LLMMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", or "assistant"
    content: str


@dataclass
class LLMResponse:
    """Response from an LLM call."""
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None  # token usage if available


class LLMError(ProviderError):
    """Raised when LLM call fails."""
    pass


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    """Map an HTTP error response onto the provider error taxonomy."""
    if response.is_success:
        return

    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitError(
            f"{provider} rate limited (429)",
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    raise LLMError(
        f"{provider} service error: {response.status_code}",
        transient=response.status_code >= 500,
        status_code=response.status_code,
    )


def _decode_json(response: httpx.Response, provider: str) -> dict:
    try:
        data = response.json()
    except ValueError as e:
        raise LLMError(f"{provider} returned a body that is not JSON: {e}")
    if not isinstance(data, dict):
        raise LLMError(f"Unexpected {provider} response body")
    return data


def _call_timeout(timeout: Optional[float], default: float) -> float:
    if timeout is None:
        return float(default)
    return float(min(timeout, default))


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    retry_config: dict = RATE_LIMIT_RETRY_CONFIG

    @abstractmethod
    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LLMResponse:
        """
        Send a chat completion request.

        Args:
            messages: List of messages in the conversation
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens in response (provider default if None)
            timeout: Request timeout in seconds, capped at the client default

        Returns:
            LLMResponse with the model's response

        Raises:
            LLMError: If the request fails
            RateLimitError: If the provider answered 429
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""
        pass

    def complete(
        self,
        prompt: str,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Complete a single prompt, retrying only on rate limits.

        timeout is one deadline for the whole call: each attempt gets the
        time that is left, and no backoff is slept past it.

        Returns:
            The model's response text, stripped

        Raises:
            LLMError: If the request fails
            RetryExhausted: If every attempt was rate limited
            DeadlineExceeded: If the timeout ran out first
        """
        logger.info(f"Generating LLM response (prompt={len(prompt)} chars)")

        deadline = deadline_after(timeout)
        response = retry_with_backoff(
            lambda: self.chat(
                [LLMMessage(role="user", content=prompt)],
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=remaining_time(deadline),
            ),
            config=self.retry_config,
            deadline=deadline,
            on_retry=lambda attempt, err, backoff: logger.warning(
                f"LLM generation retry {attempt + 1}: {err}. Waiting {backoff:.1f}s"
            ),
        )
        return response.content.strip()

    def validate_connection(self) -> bool:
        """Send a tiny ping completion; True if the model answered."""
        try:
            reply = self.complete("ping", temperature=0.1, max_tokens=5)
            logger.info(f"LLM connection validated ({self.model_name})")
            return bool(reply)
        except ProviderError as e:
            logger.warning(f"LLM health check failed: {e}")
            return False


class OllamaClient(BaseLLMClient):
    """LLM client for Ollama local inference."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        model: str = DEFAULT_OLLAMA_MODEL,
        timeout: float = 600,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "OllamaClient":
        return cls(
            base_url=getattr(settings, 'OLLAMA_BASE_URL', DEFAULT_OLLAMA_URL),
            model=getattr(settings, 'OLLAMA_CHAT_MODEL', DEFAULT_OLLAMA_MODEL),
            timeout=getattr(settings, 'OLLAMA_CHAT_TIMEOUT', 600),
        )

    @property
    def model_name(self) -> str:
        return self.model

    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LLMResponse:
        """Send chat request to Ollama."""
        logger.info(f"Calling Ollama chat: model={self.model}, temp={temperature}")

        options = {"temperature": temperature}
        if max_tokens:
            options["num_predict"] = max_tokens

        try:
            with httpx.Client(timeout=_call_timeout(timeout, self.timeout)) as client:
                response = client.post(
                    f"{self.base_url}/api/chat",
                    json={
                        "model": self.model,
                        "messages": [{"role": m.role, "content": m.content} for m in messages],
                        "stream": False,
                        "options": options,
                    }
                )
                _raise_for_status(response, "Ollama")
                data = _decode_json(response, "Ollama")
        except httpx.TimeoutException:
            logger.error("Ollama request timed out")
            raise LLMError("Ollama service timed out", transient=True)
        except httpx.RequestError as e:
            logger.error(f"Ollama connection error: {e}")
            raise LLMError("Could not connect to Ollama", transient=True)

        message = data.get("message")
        content = message.get("content", "") if isinstance(message, dict) else ""
        if not content:
            raise LLMError("Empty response from Ollama")

        logger.info(f"Ollama response: {len(content)} chars")
        return LLMResponse(content=content, model=self.model)


class OpenAICompatibleClient(BaseLLMClient):
    """
    LLM client for OpenAI-compatible APIs.

    Works with: Hugging Face router, OpenAI, Azure OpenAI, Groq, Together,
    local servers, etc.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        model: str = DEFAULT_OPENAI_MODEL,
        timeout: float = 120,
    ):
        if not api_key:
            raise LLMError("OPENAI_API_KEY not configured")

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "OpenAICompatibleClient":
        return cls(
            api_key=getattr(settings, 'OPENAI_API_KEY', ''),
            base_url=getattr(settings, 'OPENAI_BASE_URL', DEFAULT_OPENAI_BASE_URL),
            model=getattr(settings, 'OPENAI_MODEL', DEFAULT_OPENAI_MODEL),
            timeout=getattr(settings, 'OPENAI_TIMEOUT', 120),
        )

    @property
    def model_name(self) -> str:
        return self.model

    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LLMResponse:
        """Send chat request to an OpenAI-compatible API."""
        logger.info(f"Calling OpenAI-compatible API: model={self.model}, temp={temperature}")

        body = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
        }
        if max_tokens:
            body["max_tokens"] = max_tokens

        try:
            with httpx.Client(timeout=_call_timeout(timeout, self.timeout)) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    }
                )
                _raise_for_status(response, "OpenAI-compatible API")
                data = _decode_json(response, "OpenAI-compatible API")
        except httpx.TimeoutException:
            logger.error("OpenAI-compatible request timed out")
            raise LLMError("Completion API timed out", transient=True)
        except httpx.RequestError as e:
            logger.error(f"OpenAI-compatible connection error: {e}")
            raise LLMError("Could not connect to completion API", transient=True)

        choices = data.get("choices")
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise LLMError("No choices in completion response")

        message = choices[0].get("message")
        content = message.get("content", "") if isinstance(message, dict) else ""
        if not content:
            raise LLMError("Empty response from completion API")

        logger.info(f"Completion response: {len(content)} chars")
        return LLMResponse(content=content, model=self.model, usage=data.get("usage"))


def create_llm_client(provider: Optional[str] = None) -> BaseLLMClient:
    """
    Build the LLM client named by LLM_PROVIDER.

    - "openai" (default): OpenAI-compatible API (Hugging Face router by default)
    - "ollama": Local Ollama inference
    """
    provider = (provider or getattr(settings, 'LLM_PROVIDER', 'openai')).lower()

    if provider == 'ollama':
        logger.info("Using Ollama for LLM inference")
        return OllamaClient.from_settings()

    logger.info("Using OpenAI-compatible API for LLM inference")
    return OpenAICompatibleClient.from_settings()
