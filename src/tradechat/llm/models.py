"""Model registry: providers, context windows and output limits."""

from __future__ import annotations

from dataclasses import dataclass

from tradechat.errors import ConfigError

UNKNOWN_CONTEXT_WINDOW = 4096


@dataclass(frozen=True)
class ModelSpec:
    id: str
    provider: str
    name: str
    context_window: int
    max_output: int
    tool_format: str  # "anthropic" | "openai"
    supports_caching: bool = False
    tier: str = "free"


MODELS: dict[str, ModelSpec] = {
    spec.id: spec
    for spec in (
        ModelSpec(
            id="claude-3-5-haiku-20241022",
            provider="anthropic",
            name="Claude 3.5 Haiku",
            context_window=200_000,
            max_output=4096,
            tool_format="anthropic",
            supports_caching=True,
            tier="free",
        ),
        ModelSpec(
            id="claude-sonnet-4-5-20250929",
            provider="anthropic",
            name="Claude Sonnet 4.5",
            context_window=200_000,
            max_output=8192,
            tool_format="anthropic",
            supports_caching=True,
            tier="pro",
        ),
        ModelSpec(
            id="deepseek-chat",
            provider="deepseek",
            name="DeepSeek Chat",
            context_window=64_000,
            max_output=4096,
            tool_format="openai",
            tier="free",
        ),
        ModelSpec(
            id="deepseek-reasoner",
            provider="deepseek",
            name="DeepSeek Reasoner",
            context_window=64_000,
            max_output=8192,
            tool_format="openai",
            tier="pro",
        ),
    )
}

PROVIDERS = ("anthropic", "deepseek")


def get_model(model_id: str) -> ModelSpec | None:
    return MODELS.get(model_id)


def context_window(model_id: str) -> int:
    spec = MODELS.get(model_id)
    return spec.context_window if spec else UNKNOWN_CONTEXT_WINDOW


def max_output(model_id: str, default: int = 4096) -> int:
    spec = MODELS.get(model_id)
    return spec.max_output if spec else default


def default_model(provider: str, tier: str = "free") -> str:
    """Pick the registry model for *provider* matching *tier*."""
    candidates = [m for m in MODELS.values() if m.provider == provider]
    if not candidates:
        raise ConfigError(f"No models registered for provider: {provider}")
    for spec in candidates:
        if spec.tier == tier:
            return spec.id
    return candidates[0].id


def models_for(provider: str) -> list[ModelSpec]:
    return [m for m in MODELS.values() if m.provider == provider]
