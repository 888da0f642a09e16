"""Adapter factory keyed by provider name."""

from __future__ import annotations

import logging

import httpx

from tradechat.config import ChatConfig
from tradechat.errors import ConfigError

from .adapter import ProviderAdapter
from .anthropic import AnthropicAdapter
from .openai_compat import OpenAICompatAdapter

_logger = logging.getLogger(__name__)

_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "anthropic": AnthropicAdapter,
    "deepseek": OpenAICompatAdapter,
}


def available_providers(config: ChatConfig) -> list[str]:
    """Provider names that have both an adapter and an API key."""
    return [
        name for name, profile in config.providers.items()
        if name in _ADAPTERS and profile.configured
    ]


def create_adapter(
    provider: str,
    config: ChatConfig,
    client: httpx.AsyncClient | None = None,
) -> ProviderAdapter:
    """Build the adapter for *provider*.

    Raises
    ------
    ConfigError
        If the provider is unknown or has no API key.
    """
    adapter_cls = _ADAPTERS.get(provider)
    if adapter_cls is None:
        raise ConfigError(f"Unsupported provider: {provider}")
    profile = config.provider(provider)
    if not profile.configured:
        raise ConfigError(
            f"Provider {provider} is not configured (set {profile.api_key_env or 'api_key'})"
        )
    _logger.debug("Creating %s adapter for %s", adapter_cls.__name__, profile.url)
    return adapter_cls(profile, client=client)
