"""Shared inference library: provider gateways, prompts and reply parsing."""

from paperflow_inference.config import ProviderConfig
from paperflow_inference.errors import ProviderError, is_retryable_error
from paperflow_inference.gateway import GatewayRegistry, Provider

__all__ = [
    "GatewayRegistry",
    "Provider",
    "ProviderConfig",
    "ProviderError",
    "is_retryable_error",
]
