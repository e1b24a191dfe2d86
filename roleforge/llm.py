"""LLM client: HTTP connection to a text-completion backend.

Agents call an LLM callable matching the protocol:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` is the calling agent's name ("director", "world", "character").
Implementations may use it for logging or routing.

    HttpLLM   real HTTP client for KoboldCpp and OpenAI-compatible backends.
    EchoLLM   returns the prompt unchanged, for wiring smoke tests.

Production code builds an HttpLLM per agent from its resolved profile.
Tests inject StubLLM (see conftest.py) instead.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

import httpx

from roleforge.config import Profile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpLLM:
    """Async HTTP client for text-completion backends.

    Supported formats:
      "koboldcpp"  POST /api/v1/generate  {"prompt": ...}
                   Response: {"results": [{"text": "..."}]}
      "openai"     POST /v1/completions   {"model": ..., "prompt": ...}
                   Response: {"choices": [{"text": "..."}]}

    Sampler settings (temperature, max_tokens, ...) are sent as extra body
    fields in either format.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        sampler: dict[str, Any] | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._sampler = dict(sampler or {})
        self._timeout = timeout

    @classmethod
    def from_profile(cls, profile: Profile) -> HttpLLM:
        return cls(
            provider_url=profile.base_url,
            api_key=profile.api_key,
            provider_format=profile.format,
            model=profile.model,
            sampler=profile.sampler,
        )

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        body: dict = {**self._sampler, "prompt": prompt}
        if self._format == "openai":
            if self._model:
                body["model"] = self._model
            return f"{self._base_url}/v1/completions", body

        return f"{self._base_url}/api/v1/generate", body

    def _parse_response(self, data: dict) -> str:
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "text" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["text"]

        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def __call__(self, stage: str, prompt: str) -> str:
        url, body = self._build_request(prompt)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request failed: {e}") from e

        try:
            text = self._parse_response(resp.json())
        except (ValueError, AttributeError, KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Unreadable response from LLM backend: {e}") from e
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the prompt text as-is. No network calls."""

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt


class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
