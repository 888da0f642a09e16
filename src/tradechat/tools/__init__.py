"""Tool runtime and execution engine for tradechat."""

from tradechat.tools.engine import (
    DEFAULT_FALLBACKS,
    AttemptRecord,
    FallbackRule,
    ToolExecutionEngine,
    ToolOutcome,
)
from tradechat.tools.runtime import McpToolRuntime, ToolRuntime

__all__ = [
    "DEFAULT_FALLBACKS",
    "AttemptRecord",
    "FallbackRule",
    "McpToolRuntime",
    "ToolExecutionEngine",
    "ToolOutcome",
    "ToolRuntime",
]
