"""Configuration for external AI provider gateways.

This module is shared across services to keep env var semantics consistent.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class ProviderConfig:
    """Credentials, models and transport settings for every provider.

    Attributes:
        openai_api_key: API key for OpenAI (empty disables the provider).
        openai_model: Chat model used by OpenAI-backed stages.
        openai_base_url: OpenAI API base URL.
        anthropic_api_key: API key for Anthropic.
        anthropic_model: Model used by Anthropic-backed stages.
        anthropic_base_url: Anthropic API base URL.
        perplexity_api_key: API key for Perplexity.
        perplexity_model: Online model used for research.
        perplexity_base_url: Perplexity API base URL.
        ollama_base_url: Local Ollama server used for fallbacks.
        ollama_model: Local model used for fallbacks.
        timeout_seconds: Per-request timeout.
        max_tokens: Maximum tokens generated for a single call.
    """

    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-latest"
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    perplexity_api_key: str = ""
    perplexity_model: str = "sonar-pro"
    perplexity_base_url: str = "https://api.perplexity.ai"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1:8b"
    timeout_seconds: float = 120.0
    max_tokens: int = 4096

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """Create ProviderConfig from environment variables."""
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            openai_base_url=os.getenv("OPENAI_BASE_URL", cls.openai_base_url),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", "").strip(),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", cls.anthropic_model),
            anthropic_base_url=os.getenv(
                "ANTHROPIC_BASE_URL", cls.anthropic_base_url
            ),
            perplexity_api_key=os.getenv("PERPLEXITY_API_KEY", "").strip(),
            perplexity_model=os.getenv("PERPLEXITY_MODEL", cls.perplexity_model),
            perplexity_base_url=os.getenv(
                "PERPLEXITY_BASE_URL", cls.perplexity_base_url
            ),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", cls.ollama_base_url),
            ollama_model=os.getenv("OLLAMA_MODEL", cls.ollama_model),
            timeout_seconds=_float_env("PROVIDER_TIMEOUT_SECONDS", cls.timeout_seconds),
            max_tokens=_int_env("PROVIDER_MAX_TOKENS", cls.max_tokens),
        )
