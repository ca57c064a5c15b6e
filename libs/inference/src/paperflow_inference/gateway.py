"""HTTP gateways to external AI providers.

Every gateway exposes the same call, ``invoke(prompt, system=...) -> str``,
and raises ``ProviderError`` subclasses on failure. A fresh
``httpx.AsyncClient`` is opened per call because pipeline runs each own
their event loop on a worker thread, and a client cannot be shared across
loops.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, Protocol

import httpx

from paperflow_inference.errors import (
    MalformedResponseError,
    ProviderConnectionError,
    ProviderError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)

# Max characters of an error body kept in exception messages
_ERROR_BODY_MAX = 300


class Provider(str, Enum):
    """External AI providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    PERPLEXITY = "perplexity"
    OLLAMA = "ollama"


class ProviderGateway(Protocol):
    """Uniform text completion call for one provider."""

    provider: Provider

    async def invoke(self, prompt: str, *, system: str | None = None) -> str: ...


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:_ERROR_BODY_MAX]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or error)[:_ERROR_BODY_MAX]
    if error:
        return str(error)[:_ERROR_BODY_MAX]
    return str(body)[:_ERROR_BODY_MAX]


class HttpGateway:
    """Base class for JSON-over-HTTP chat completion providers."""

    provider: Provider
    endpoint: str = ""
    requires_key: bool = True

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout: float = 120.0,
        max_tokens: int = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _payload(self, prompt: str, system: str | None) -> dict[str, Any]:
        raise NotImplementedError

    def _parse(self, body: Mapping[str, Any]) -> str:
        raise NotImplementedError

    async def invoke(self, prompt: str, *, system: str | None = None) -> str:
        """Send one completion request and return the reply text.

        Raises:
            ProviderTimeoutError: The request timed out.
            ProviderConnectionError: The provider could not be reached.
            ProviderError: The provider answered with an error status.
            MalformedResponseError: The reply was not usable.
        """
        name = self.provider.value
        if self.requires_key and not self.api_key:
            raise ProviderError(name, f"{name} API key not configured", status_code=401)

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.endpoint,
                    headers=self._headers(),
                    json=self._payload(prompt, system),
                )
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(name, f"{name} request timed out") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ProviderError(
                name,
                f"{name} API error {status}: {_error_detail(exc.response)}",
                status_code=status,
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderConnectionError(
                name, f"connection to {name} failed: {exc}"
            ) from exc

        try:
            text = self._parse(response.json())
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError(
                name, f"malformed {name} response: {exc}"
            ) from exc
        if not text or not text.strip():
            raise MalformedResponseError(name, f"malformed {name} response: empty completion")

        logger.debug("%s returned %d characters", name, len(text))
        return text


class OpenAIGateway(HttpGateway):
    """OpenAI chat completions."""

    provider = Provider.OPENAI
    endpoint = "/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {**super()._headers(), "Authorization": f"Bearer {self.api_key}"}

    def _payload(self, prompt: str, system: str | None) -> dict[str, Any]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": 0.2,
        }

    def _parse(self, body: Mapping[str, Any]) -> str:
        return body["choices"][0]["message"]["content"]


class PerplexityGateway(OpenAIGateway):
    """Perplexity online models (OpenAI-compatible API)."""

    provider = Provider.PERPLEXITY


class AnthropicGateway(HttpGateway):
    """Anthropic messages API."""

    provider = Provider.ANTHROPIC
    endpoint = "/messages"
    api_version = "2023-06-01"

    def _headers(self) -> dict[str, str]:
        return {
            **super()._headers(),
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
        }

    def _payload(self, prompt: str, system: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system
        return payload

    def _parse(self, body: Mapping[str, Any]) -> str:
        return "".join(
            block["text"] for block in body["content"] if block.get("type") == "text"
        )


class OllamaGateway(HttpGateway):
    """Local Ollama chat API, used for fallbacks."""

    provider = Provider.OLLAMA
    endpoint = "/api/chat"
    requires_key = False

    def _payload(self, prompt: str, system: str | None) -> dict[str, Any]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {"num_predict": self.max_tokens},
        }

    def _parse(self, body: Mapping[str, Any]) -> str:
        return body["message"]["content"]


class GatewayRegistry:
    """Dispatches ``invoke(provider, prompt)`` to the provider's gateway."""

    def __init__(self, gateways: Mapping[Provider, ProviderGateway]) -> None:
        self._gateways = dict(gateways)

    def has(self, provider: Provider | str) -> bool:
        return Provider(provider) in self._gateways

    def get(self, provider: Provider | str) -> ProviderGateway:
        key = Provider(provider)
        gateway = self._gateways.get(key)
        if gateway is None:
            raise ProviderError(key.value, f"no gateway configured for {key.value}")
        return gateway

    async def invoke(
        self,
        provider: Provider | str,
        prompt: str,
        *,
        system: str | None = None,
    ) -> str:
        return await self.get(provider).invoke(prompt, system=system)
