"""Embedding provider client.

The memory store embeds text through a callable matching:

    async def embed(self, text: str) -> list[float]: ...

    HttpEmbedder   OpenAI-compatible (/v1/embeddings) or Ollama (/api/embeddings).
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx

from roleforge.config import EmbeddingConfig

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


EmbeddingFormat = Literal["openai", "ollama"]


class HttpEmbedder:
    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        provider_format: EmbeddingFormat = "openai",
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._format = provider_format
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> HttpEmbedder:
        return cls(
            base_url=config.base_url,
            model=config.model,
            api_key=config.api_key,
            provider_format=config.format,
        )

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, text: str) -> tuple[str, dict]:
        if self._format == "ollama":
            return f"{self._base_url}/api/embeddings", {"model": self._model, "prompt": text}
        return f"{self._base_url}/v1/embeddings", {"model": self._model, "input": text}

    def _parse_response(self, data: dict) -> list[float]:
        if self._format == "ollama":
            vector = data.get("embedding")
        else:
            items = data.get("data")
            vector = items[0].get("embedding") if items else None
        if not vector:
            raise EmbeddingError(f"Unexpected response format from {self._format} embedding backend")
        return [float(v) for v in vector]

    async def embed(self, text: str) -> list[float]:
        url, body = self._build_request(text)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise EmbeddingError(f"Cannot connect to embedding backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise EmbeddingError(f"Embedding backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise EmbeddingError(f"Embedding backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        try:
            return self._parse_response(resp.json())
        except (ValueError, AttributeError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingError(f"Unreadable response from embedding backend: {e}") from e


class EmbeddingError(RuntimeError):
    """Raised when the embedding backend cannot be reached or returns an error."""
