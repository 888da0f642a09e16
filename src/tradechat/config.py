"""Configuration for tradechat.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./tradechat.yaml``
  3. ``~/.config/tradechat/config.yaml``
  4. Built-in defaults

API keys are read from the profile first, then from the environment
variable named by ``api_key_env``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tradechat.errors import ConfigError

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderProfile:
    """Connection settings for one upstream vendor."""

    name: str = "anthropic"
    url: str = "https://api.anthropic.com"
    api_key: str = ""
    api_key_env: str = "ANTHROPIC_API_KEY"
    timeout: float = 120
    connect_timeout: float = 30

    @property
    def resolved_api_key(self) -> str:
        if self.api_key:
            return self.api_key
        return os.environ.get(self.api_key_env, "")

    @property
    def configured(self) -> bool:
        return bool(self.resolved_api_key)


def _default_providers() -> dict[str, ProviderProfile]:
    return {
        "anthropic": ProviderProfile(),
        "deepseek": ProviderProfile(
            name="deepseek",
            url="https://api.deepseek.com",
            api_key_env="DEEPSEEK_API_KEY",
        ),
    }


@dataclass
class ToolRuntimeSpec:
    """Market-data tool runtime (MCP server) settings."""

    url: str = field(default_factory=lambda: os.environ.get("ALPHAVANTAGE_MCP_URL", ""))
    timeout: float = 30
    max_retries: int = 2
    backoff_base: float = 1.0
    backoff_cap: float = 5.0


@dataclass
class ChatConfig:
    """Top-level config for tradechat."""

    default_provider: str = "anthropic"
    providers: dict[str, ProviderProfile] = field(default_factory=_default_providers)
    tools: ToolRuntimeSpec = field(default_factory=ToolRuntimeSpec)

    # Orchestration
    max_follow_up_rounds: int = 3
    context_budget_ratio: float = 0.8
    temperature: float = 0.7
    chart_default_points: int = 50

    log_level: str = "INFO"

    def provider(self, name: str | None = None) -> ProviderProfile:
        """Return the named provider profile (default provider if *None*)."""
        key = name or self.default_provider
        try:
            return self.providers[key]
        except KeyError:
            raise ConfigError(f"Unknown provider: {key}") from None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./tradechat.yaml"),
    Path.home() / ".config" / "tradechat" / "config.yaml",
]


def _parse_provider(name: str, raw: dict[str, Any]) -> ProviderProfile:
    base = _default_providers().get(name, ProviderProfile(name=name, api_key_env=""))
    return ProviderProfile(
        name=name,
        url=raw.get("url", base.url),
        api_key=raw.get("api_key", base.api_key),
        api_key_env=raw.get("api_key_env", base.api_key_env),
        timeout=float(raw.get("timeout", base.timeout)),
        connect_timeout=float(raw.get("connect_timeout", base.connect_timeout)),
    )


def _parse_tools(raw: dict[str, Any] | None) -> ToolRuntimeSpec:
    if not raw:
        return ToolRuntimeSpec()
    spec = ToolRuntimeSpec()
    for k, v in raw.items():
        if v is not None and k in ToolRuntimeSpec.__dataclass_fields__:
            setattr(spec, k, v)
    return spec


def load_config(path: str | Path | None = None) -> ChatConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ChatConfig

    Raises
    ------
    ConfigError
        If the file exists but is not valid YAML or not a mapping.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return ChatConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return ChatConfig()

    _logger.info("Loading config from %s", config_path)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")

    providers = _default_providers()
    for name, praw in (raw.get("providers") or {}).items():
        providers[name] = _parse_provider(name, praw or {})

    defaults = ChatConfig()
    return ChatConfig(
        default_provider=raw.get("default_provider", defaults.default_provider),
        providers=providers,
        tools=_parse_tools(raw.get("tools")),
        max_follow_up_rounds=int(raw.get("max_follow_up_rounds", defaults.max_follow_up_rounds)),
        context_budget_ratio=float(raw.get("context_budget_ratio", defaults.context_budget_ratio)),
        temperature=float(raw.get("temperature", defaults.temperature)),
        chart_default_points=int(raw.get("chart_default_points", defaults.chart_default_points)),
        log_level=raw.get("log_level", defaults.log_level),
    )
