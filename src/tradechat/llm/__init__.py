"""Provider adapters and model registry for tradechat."""

from tradechat.llm.adapter import LLMRequest, ProviderAdapter, VendorRequest
from tradechat.llm.anthropic import AnthropicAdapter
from tradechat.llm.openai_compat import OpenAICompatAdapter
from tradechat.llm.providers import available_providers, create_adapter

__all__ = [
    "AnthropicAdapter",
    "LLMRequest",
    "OpenAICompatAdapter",
    "ProviderAdapter",
    "VendorRequest",
    "available_providers",
    "create_adapter",
]
