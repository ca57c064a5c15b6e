"""Gateway wiring, prompt rendering and structured reply parsing."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Mapping, TypeVar

import httpx
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from pydantic import BaseModel, ValidationError

from paperflow_inference.config import ProviderConfig
from paperflow_inference.errors import MalformedResponseError
from paperflow_inference.gateway import (
    AnthropicGateway,
    GatewayRegistry,
    OllamaGateway,
    OpenAIGateway,
    PerplexityGateway,
    Provider,
    ProviderGateway,
)

logger = logging.getLogger(__name__)
TModel = TypeVar("TModel", bound=BaseModel)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def render_prompts(
    *,
    prompts_dir: Path,
    system_template: str,
    user_template: str,
    prompt_vars: Mapping[str, Any],
) -> tuple[str, str]:
    """Render Jinja2 templates for system and user prompts."""
    jinja_env = Environment(
        loader=FileSystemLoader(str(prompts_dir)),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    system_tpl = jinja_env.get_template(system_template)
    user_tpl = jinja_env.get_template(user_template)
    return system_tpl.render(**prompt_vars), user_tpl.render(**prompt_vars)


def build_gateway_registry(
    config: ProviderConfig,
    *,
    include_fallback: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GatewayRegistry:
    """Create gateways for every provider in ``config``.

    Args:
        config: Provider credentials and models.
        include_fallback: Also register the local Ollama gateway.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """
    common: dict[str, Any] = {
        "timeout": config.timeout_seconds,
        "max_tokens": config.max_tokens,
        "transport": transport,
    }
    gateways: dict[Provider, ProviderGateway] = {
        Provider.OPENAI: OpenAIGateway(
            base_url=config.openai_base_url,
            model=config.openai_model,
            api_key=config.openai_api_key,
            **common,
        ),
        Provider.ANTHROPIC: AnthropicGateway(
            base_url=config.anthropic_base_url,
            model=config.anthropic_model,
            api_key=config.anthropic_api_key,
            **common,
        ),
        Provider.PERPLEXITY: PerplexityGateway(
            base_url=config.perplexity_base_url,
            model=config.perplexity_model,
            api_key=config.perplexity_api_key,
            **common,
        ),
    }
    if include_fallback:
        gateways[Provider.OLLAMA] = OllamaGateway(
            base_url=config.ollama_base_url,
            model=config.ollama_model,
            **common,
        )
    for provider, gateway in gateways.items():
        if getattr(gateway, "requires_key", False) and not getattr(gateway, "api_key", ""):
            logger.warning("No API key configured for %s; its stages will fail", provider.value)
    return GatewayRegistry(gateways)


def _json_candidate(text: str) -> str:
    fenced = _FENCE.search(text)
    if fenced:
        return fenced.group(1).strip()
    start = min(
        (i for i in (text.find("{"), text.find("[")) if i != -1),
        default=-1,
    )
    if start == -1:
        return text.strip()
    end = max(text.rfind("}"), text.rfind("]"))
    return text[start : end + 1] if end > start else text[start:]


def parse_json_response(text: str, schema: type[TModel], provider: str = "") -> TModel:
    """Parse a model reply into ``schema``.

    Accepts bare JSON, JSON inside a fenced code block, or JSON surrounded
    by prose.

    Raises:
        MalformedResponseError: If no valid ``schema`` instance can be read.
    """
    candidate = _json_candidate(text)
    try:
        return schema.model_validate(json.loads(candidate))
    except (ValueError, ValidationError) as exc:
        raise MalformedResponseError(
            provider or "unknown",
            f"malformed response for {schema.__name__}: {str(exc)[:200]}",
        ) from exc
