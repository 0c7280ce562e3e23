"""Embedding Provider Abstraction for local and Ollama backends."""

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


@dataclass(frozen=True)
class ModelInfo:
    """Information about an embedding model."""

    model_id: str
    dimensions: int
    max_tokens: int  # Max input tokens
    description: str


LOCAL_MODELS: dict[str, ModelInfo] = {
    "sentence-transformers/all-MiniLM-L6-v2": ModelInfo(
        model_id="sentence-transformers/all-MiniLM-L6-v2",
        dimensions=384,
        max_tokens=256,
        description="Small and fast, runs in-process on CPU. Default for highlight search.",
    ),
}

OLLAMA_MODELS: dict[str, ModelInfo] = {
    "all-minilm": ModelInfo(
        model_id="all-minilm",
        dimensions=384,
        max_tokens=256,
        description="MiniLM served by a local Ollama daemon. Same vector space size as the local default.",
    ),
}


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g., 'Local', 'Ollama')."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """The model identifier being used."""
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Embedding vector dimensions."""
        ...

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        """True once the model is ready to serve requests."""
        ...

    @abstractmethod
    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a list of texts, one at a time."""
        results = []
        for text in texts:
            results.append(await self.embed_single(text))
        return results

    async def health_check(self) -> HealthCheckResult:
        """Check if the provider can produce an embedding."""
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
        except Exception as e:
            logger.exception(f"Health check for {self.name} failed unexpectedly")
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self.model_id,
                message=f"Connection error: {e}",
            )

        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=self.model_id,
            message="Ready",
            latency_ms=int((time.monotonic() - start) * 1000),
            details={"dimensions": self.dimensions},
        )


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


class EmbeddingError(Exception):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class LocalProvider(EmbeddingProvider):
    """In-process sentence-transformers provider.

    The model is loaded on first use. Concurrent first callers share one
    loading task instead of each loading their own copy. Loading and
    inference run in worker threads so the event loop stays responsive.
    """

    def __init__(self, model: str = "sentence-transformers/all-MiniLM-L6-v2"):
        if model not in LOCAL_MODELS:
            raise ValueError(f"Unknown local model: {model}. Available: {list(LOCAL_MODELS.keys())}")

        self._model_name = model
        self._model_info = LOCAL_MODELS[model]
        self._model: Any = None
        self._loading: asyncio.Future | None = None

    @property
    def name(self) -> str:
        return "Local"

    @property
    def model_id(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _load(self) -> Any:
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(self._model_name)

    async def _get_model(self) -> Any:
        if self._model is not None:
            return self._model

        if self._loading is None:
            logger.info(f"Loading embedding model: {self._model_name}...")
            self._loading = asyncio.ensure_future(asyncio.to_thread(self._load))

        loading = self._loading
        try:
            model = await asyncio.shield(loading)
        except Exception as e:
            # Only the first waiter to see the failure resets; later callers retry the load
            if self._loading is loading:
                self._loading = None
            raise EmbeddingError(
                f"Failed to load model '{self._model_name}': {e}",
                provider=self.name,
                retriable=True,
            ) from e

        if self._model is None:
            self._model = model
            logger.info("Embedding model loaded successfully")
        if self._loading is loading:
            self._loading = None
        return self._model

    async def embed_single(self, text: str) -> list[float]:
        model = await self._get_model()
        try:
            vector = await asyncio.to_thread(
                model.encode,
                text,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise EmbeddingError(f"Inference failed: {e}", provider=self.name) from e
        return [float(x) for x in vector]


class OllamaProvider(EmbeddingProvider):
    """Ollama embedding provider for local models."""

    def __init__(
        self,
        model: str = "all-minilm",
        base_url: str | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Model ID (all-minilm).
            base_url: Ollama server URL. Falls back to OLLAMA_BASE_URL env var or localhost.
        """
        if model not in OLLAMA_MODELS:
            raise ValueError(f"Unknown Ollama model: {model}. Available: {list(OLLAMA_MODELS.keys())}")

        self._model = model
        self._model_info = OLLAMA_MODELS[model]
        self._base_url = (base_url or os.getenv("OLLAMA_BASE_URL", "http://host.docker.internal:11434")).rstrip("/")
        self._ready = False

    @property
    def name(self) -> str:
        return "Ollama"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    @property
    def is_loaded(self) -> bool:
        return self._ready

    async def embed_single(self, text: str) -> list[float]:
        async with httpx.AsyncClient(timeout=30.0) as client:
            try:
                response = await client.post(
                    f"{self._base_url}/api/embeddings",
                    json={
                        "model": self._model,
                        "prompt": text,
                    },
                )
                response.raise_for_status()
                data = response.json()

            except httpx.ConnectError as e:
                raise EmbeddingError(
                    f"Ollama not reachable at {self._base_url}. Is it running?",
                    provider=self.name,
                    retriable=True,
                ) from e

            except httpx.TimeoutException as e:
                raise EmbeddingError(
                    f"Ollama at {self._base_url} timed out",
                    provider=self.name,
                    retriable=True,
                ) from e

            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    raise EmbeddingError(
                        f"Model '{self._model}' not found. Run 'ollama pull {self._model}'.",
                        provider=self.name,
                        retriable=False,
                    ) from e
                raise EmbeddingError(
                    f"Ollama error: {e.response.status_code} - {e.response.text}",
                    provider=self.name,
                    retriable=False,
                ) from e

            except httpx.HTTPError as e:
                raise EmbeddingError(f"Ollama request failed: {e}", provider=self.name, retriable=True) from e

            except ValueError as e:
                raise EmbeddingError(f"Ollama returned invalid JSON: {e}", provider=self.name, retriable=True) from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding:
            raise EmbeddingError("Ollama response has no embedding", provider=self.name, retriable=True)

        self._ready = True
        return embedding


def get_provider(
    provider_name: str = "local",
    model: str | None = None,
) -> EmbeddingProvider:
    """Factory function to get an embedding provider.

    Args:
        provider_name: 'local' or 'ollama'
        model: Optional model ID. Uses default if not specified.

    Raises:
        ValueError: If provider or model is unknown.
    """
    provider_name = provider_name.lower()

    if provider_name == "local":
        return LocalProvider(model=model or "sentence-transformers/all-MiniLM-L6-v2")

    elif provider_name == "ollama":
        return OllamaProvider(model=model or "all-minilm")

    else:
        raise ValueError(f"Unknown provider: {provider_name}. Available: local, ollama")
