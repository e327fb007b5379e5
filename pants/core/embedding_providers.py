"""Embedding Provider Abstraction for multiple backends (Gemini, OpenAI, Ollama)."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Retry settings for rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"


@dataclass(frozen=True)
class ModelInfo:
    """Information about an embedding model."""

    model_id: str
    dimensions: int
    max_chars: int  # Input is truncated to this many characters


GEMINI_MODELS: dict[str, ModelInfo] = {
    "text-embedding-004": ModelInfo("text-embedding-004", 768, 10000),
    "embedding-001": ModelInfo("embedding-001", 768, 10000),
}

OPENAI_MODELS: dict[str, ModelInfo] = {
    "text-embedding-3-small": ModelInfo("text-embedding-3-small", 1536, 20000),
    "text-embedding-3-large": ModelInfo("text-embedding-3-large", 3072, 20000),
}

OLLAMA_MODELS: dict[str, ModelInfo] = {
    "nomic-embed-text": ModelInfo("nomic-embed-text", 768, 8000),
    "mxbai-embed-large": ModelInfo("mxbai-embed-large", 1024, 2000),
}


class EmbeddingError(Exception):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "provider": self.provider,
            "model": self.model,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details,
        }


class EmbeddingProvider(ABC):
    """Embedding collaborator: ``embed(texts)`` returns one vector per text."""

    #: False for providers that can never return a vector
    available: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used in the store (e.g. 'gemini')."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Returns:
            List of embedding vectors in the same order as input.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    async def embed_single(self, text: str) -> list[float]:
        result = await self.embed([text])
        return result[0]

    async def health_check(self) -> HealthCheckResult:
        """Embed a probe string and report latency."""
        start = time.monotonic()
        try:
            await self.embed_single("test")
        except EmbeddingError as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self.model_id,
                message=str(e),
                details={"retriable": e.retriable},
            )
        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=self.model_id,
            message="Connected",
            latency_ms=int((time.monotonic() - start) * 1000),
            details={"dimensions": self.dimensions},
        )


class NullEmbeddingProvider(EmbeddingProvider):
    """Provider used when embeddings are not configured. Search is lexical-only."""

    available = False

    def __init__(self, reason: str = "Embeddings not configured"):
        self.reason = reason

    @property
    def name(self) -> str:
        return "none"

    @property
    def model_id(self) -> str:
        return "none"

    @property
    def dimensions(self) -> int:
        return 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        raise EmbeddingError(self.reason, provider=self.name, retriable=False)

    async def health_check(self) -> HealthCheckResult:
        return HealthCheckResult(healthy=False, provider=self.name, model=self.model_id, message=self.reason)


async def _post_with_backoff(
    client: httpx.AsyncClient,
    url: str,
    provider: str,
    **kwargs: Any,
) -> httpx.Response:
    """POST with exponential backoff on 429; other HTTP errors raise EmbeddingError."""
    delay = INITIAL_DELAY
    last_error: Exception | None = None

    for attempt in range(MAX_RETRIES):
        try:
            response = await client.post(url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            last_error = e
            status = e.response.status_code
            if status == 429:
                if "quota" in e.response.text.lower():
                    raise EmbeddingError(
                        f"{provider} quota exhausted", provider=provider, retriable=False
                    ) from e
                logger.warning(
                    f"Rate limit hit, attempt {attempt + 1}/{MAX_RETRIES}. " f"Waiting {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_DELAY)
            elif status in (401, 403):
                raise EmbeddingError(
                    f"{provider} API key rejected ({status})", provider=provider, retriable=False
                ) from e
            else:
                raise EmbeddingError(
                    f"{provider} API error: {status} - {e.response.text}",
                    provider=provider,
                    retriable=status >= 500,
                ) from e
        except httpx.TimeoutException as e:
            raise EmbeddingError(f"{provider} request timed out", provider=provider, retriable=True) from e
        except httpx.TransportError as e:
            raise EmbeddingError(f"{provider} not reachable: {e}", provider=provider, retriable=True) from e

    raise EmbeddingError(
        f"Rate limit not cleared after {MAX_RETRIES} attempts", provider=provider, retriable=True
    ) from last_error


class GeminiProvider(EmbeddingProvider):
    """Google Gemini embedding provider (REST API)."""

    def __init__(self, model: str = "text-embedding-004", api_key: str | None = None):
        if model not in GEMINI_MODELS:
            raise ValueError(f"Unknown Gemini model: {model}. Available: {list(GEMINI_MODELS.keys())}")
        self._model = model
        self._model_info = GEMINI_MODELS[model]
        self._api_key = api_key or os.getenv("GEMINI_API_KEY", "").strip()

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if not self._api_key:
            raise EmbeddingError("GEMINI_API_KEY not set", provider=self.name, retriable=False)

        model_path = f"models/{self._model}"
        requests = [
            {"model": model_path, "content": {"parts": [{"text": t[: self._model_info.max_chars]}]}}
            for t in texts
        ]
        async with httpx.AsyncClient(timeout=60.0) as client:
            response = await _post_with_backoff(
                client,
                f"{GEMINI_BASE_URL}/{model_path}:batchEmbedContents",
                self.name,
                params={"key": self._api_key},
                json={"requests": requests},
            )
        data = response.json()
        return [item["values"] for item in data["embeddings"]]


class OpenAIProvider(EmbeddingProvider):
    """OpenAI embeddings API."""

    def __init__(self, model: str = "text-embedding-3-small", api_key: str | None = None):
        if model not in OPENAI_MODELS:
            raise ValueError(f"Unknown OpenAI model: {model}. Available: {list(OPENAI_MODELS.keys())}")
        self._model = model
        self._model_info = OPENAI_MODELS[model]
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "").strip()

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if not self._api_key:
            raise EmbeddingError("OPENAI_API_KEY not set", provider=self.name, retriable=False)

        truncated = [t[: self._model_info.max_chars] for t in texts]
        async with httpx.AsyncClient(timeout=120.0) as client:
            response = await _post_with_backoff(
                client,
                OPENAI_EMBEDDINGS_URL,
                self.name,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self._model, "input": truncated},
            )
        data = response.json()

        # Order by index
        embeddings: list[list[float]] = [[] for _ in texts]
        for item in data["data"]:
            embeddings[item["index"]] = item["embedding"]
        return embeddings


class OllamaProvider(EmbeddingProvider):
    """Local models served by Ollama."""

    def __init__(self, model: str = "nomic-embed-text", base_url: str | None = None):
        if model not in OLLAMA_MODELS:
            raise ValueError(f"Unknown Ollama model: {model}. Available: {list(OLLAMA_MODELS.keys())}")
        self._model = model
        self._model_info = OLLAMA_MODELS[model]
        self._base_url = (base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")).rstrip("/")

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Ollama doesn't support batch embedding, so we call one by one."""
        results = []
        async with httpx.AsyncClient(timeout=30.0) as client:
            for text in texts:
                response = await _post_with_backoff(
                    client,
                    f"{self._base_url}/api/embeddings",
                    self.name,
                    json={"model": self._model, "prompt": text[: self._model_info.max_chars]},
                )
                results.append(response.json()["embedding"])
        return results


async def embed_or_none(provider: EmbeddingProvider, text: str) -> list[float] | None:
    """Embed ``text``, returning None when the provider is unavailable or fails.

    This is the boundary where provider errors degrade to lexical-only
    indexing and search.
    """
    if not provider.available:
        return None
    try:
        return await provider.embed_single(text)
    except EmbeddingError as e:
        logger.warning(f"Embedding unavailable from {e.provider}: {e}")
        return None
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Malformed embedding response from {provider.name}: {e}")
        return None


def get_provider(provider_name: str = "gemini", model: str | None = None) -> EmbeddingProvider:
    """Factory function to get an embedding provider.

    Returns a NullEmbeddingProvider for 'none' or when the provider's API key
    is missing, so callers never probe for configuration at runtime.

    Raises:
        ValueError: If provider or model is unknown.
    """
    provider_name = (provider_name or "none").lower()

    if provider_name == "gemini":
        if not os.getenv("GEMINI_API_KEY", "").strip():
            return NullEmbeddingProvider("GEMINI_API_KEY not set")
        return GeminiProvider(model=model or "text-embedding-004")

    elif provider_name == "openai":
        if not os.getenv("OPENAI_API_KEY", "").strip():
            return NullEmbeddingProvider("OPENAI_API_KEY not set")
        return OpenAIProvider(model=model or "text-embedding-3-small")

    elif provider_name == "ollama":
        return OllamaProvider(model=model or "nomic-embed-text")

    elif provider_name == "none":
        return NullEmbeddingProvider()

    else:
        raise ValueError(f"Unknown provider: {provider_name}. Available: gemini, openai, ollama, none")
