from __future__ import annotations

import json
import logging
import re

import openai
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..utils.text import preview
from .errors import RequestTimeoutError, ServiceComponent, UpstreamServiceError

_LOGGER = logging.getLogger(__name__)

# Matches the "[Source n] name (chunk i)" blocks laid out by the QA prompt builder.
_SOURCE_BLOCK_RE = re.compile(
    r"^\[Source (\d+)\][^\n]*\n(.*?)(?=^\[Source \d+\]|^Question:|\Z)",
    re.MULTILINE | re.DOTALL,
)


class TextGenerationClient:
    async def generate(self, prompt: str, system: str | None = None) -> str:  # pragma: no cover - interface
        raise NotImplementedError


class OpenAITextGenerationClient(TextGenerationClient):
    """Chat completions against any OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 800,
        timeout: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=1)

    async def generate(self, prompt: str, system: str | None = None) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APITimeoutError as exc:
            raise RequestTimeoutError.build(
                ServiceComponent.GENERATION,
                "GENERATION_TIMEOUT",
                "Generation request timed out",
                retryable=True,
                model=self.model,
            ) from exc
        except openai.OpenAIError as exc:
            _LOGGER.warning("Generation request failed", extra={"model": self.model, "error": str(exc)})
            raise UpstreamServiceError.build(
                ServiceComponent.GENERATION,
                "GENERATION_UNAVAILABLE",
                f"Generation service error: {exc}",
                retryable=True,
                model=self.model,
            ) from exc
        if not response.choices:
            raise UpstreamServiceError.build(
                ServiceComponent.GENERATION,
                "GENERATION_EMPTY",
                "Generation service returned no choices",
                model=self.model,
            )
        return response.choices[0].message.content or ""


class ExtractiveTextGenerationClient(TextGenerationClient):
    """Offline generator that quotes the first context block back as the answer."""

    def __init__(self, confidence: float = 0.4) -> None:
        self.confidence = confidence

    async def generate(self, prompt: str, system: str | None = None) -> str:
        match = _SOURCE_BLOCK_RE.search(prompt)
        if match is None:
            return json.dumps(
                {
                    "answer": "The provided documents do not contain enough information to answer.",
                    "confidence": 0.0,
                    "citations": [],
                    "needsAttorneyReview": True,
                }
            )
        number, body = match.group(1), match.group(2).strip()
        return json.dumps(
            {
                "answer": preview(body, 400),
                "confidence": self.confidence,
                "citations": [{"text": preview(body, 200), "source": f"Source {number}"}],
                "needsAttorneyReview": True,
            }
        )


def build_generation_client(settings: Settings | None = None) -> TextGenerationClient:
    settings = settings or get_settings()
    if settings.generation_provider == "openai":
        return OpenAITextGenerationClient(
            model=settings.generation_model,
            api_key=settings.generation_api_key,
            base_url=settings.generation_api_base,
            temperature=settings.generation_temperature,
            max_tokens=settings.generation_max_tokens,
            timeout=settings.request_timeout_seconds,
        )
    return ExtractiveTextGenerationClient()


__all__ = [
    "TextGenerationClient",
    "OpenAITextGenerationClient",
    "ExtractiveTextGenerationClient",
    "build_generation_client",
]
