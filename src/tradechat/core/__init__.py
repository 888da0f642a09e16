"""Core orchestration components for tradechat."""

from tradechat.core.conversation import ConversationTurnBuffer
from tradechat.core.orchestrator import ChatOrchestrator, OrchestratorState
from tradechat.core.tool_calls import ToolCallState, ToolCallStatus, try_parse_json
from tradechat.core.usage import UsageAccountant, estimate_tokens

__all__ = [
    "ChatOrchestrator",
    "ConversationTurnBuffer",
    "OrchestratorState",
    "ToolCallState",
    "ToolCallStatus",
    "UsageAccountant",
    "estimate_tokens",
    "try_parse_json",
]
