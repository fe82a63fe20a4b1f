from __future__ import annotations

import logging
from typing import List

import openai
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..utils.text import hashed_embedding
from .errors import RequestTimeoutError, ServiceComponent, UpstreamServiceError

_LOGGER = logging.getLogger(__name__)


class EmbeddingClient:
    """Turns text into a fixed-length vector."""

    dimensions: int

    async def embed(self, text: str) -> List[float]:  # pragma: no cover - interface
        raise NotImplementedError


class HashedEmbeddingClient(EmbeddingClient):
    """Deterministic token-hashing embeddings for offline mode and tests."""

    def __init__(self, dimensions: int = 768) -> None:
        self.dimensions = dimensions

    async def embed(self, text: str) -> List[float]:
        return hashed_embedding(text, self.dimensions)


class OpenAIEmbeddingClient(EmbeddingClient):
    """Embeddings from any OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        model: str,
        dimensions: int,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=1)

    async def embed(self, text: str) -> List[float]:
        try:
            response = await self.client.embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dimensions,
            )
        except openai.APITimeoutError as exc:
            raise RequestTimeoutError.build(
                ServiceComponent.EMBEDDING,
                "EMBEDDING_TIMEOUT",
                "Embedding request timed out",
                retryable=True,
                model=self.model,
            ) from exc
        except openai.OpenAIError as exc:
            _LOGGER.warning("Embedding request failed", extra={"model": self.model, "error": str(exc)})
            raise UpstreamServiceError.build(
                ServiceComponent.EMBEDDING,
                "EMBEDDING_UNAVAILABLE",
                f"Embedding service error: {exc}",
                retryable=True,
                model=self.model,
            ) from exc
        if not response.data:
            raise UpstreamServiceError.build(
                ServiceComponent.EMBEDDING,
                "EMBEDDING_EMPTY",
                "Embedding service returned no vectors",
                model=self.model,
            )
        vector = [float(value) for value in response.data[0].embedding]
        if len(vector) != self.dimensions:
            raise UpstreamServiceError.build(
                ServiceComponent.EMBEDDING,
                "EMBEDDING_DIMENSIONS",
                f"Embedding service returned {len(vector)} dimensions, expected {self.dimensions}",
                model=self.model,
            )
        return vector


def build_embedding_client(settings: Settings | None = None) -> EmbeddingClient:
    settings = settings or get_settings()
    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingClient(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.embedding_api_key,
            base_url=settings.embedding_api_base,
            timeout=settings.request_timeout_seconds,
        )
    return HashedEmbeddingClient(settings.embedding_dimensions)


__all__ = [
    "EmbeddingClient",
    "HashedEmbeddingClient",
    "OpenAIEmbeddingClient",
    "build_embedding_client",
]
