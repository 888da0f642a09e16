"""Per-request conversation buffer."""

from __future__ import annotations

import json
import logging
from typing import Any

from tradechat.core.tool_calls import ToolCallState
from tradechat.tools.engine import ToolOutcome

_logger = logging.getLogger(__name__)

_ROLES = ("user", "assistant")


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            b.get("text", "") for b in content
            if isinstance(b, dict) and b.get("type") == "text"
        )
    return ""


class ConversationTurnBuffer:
    """Ordered role/content messages for one chat request.

    Only grows.  Messages use Anthropic-style content blocks for tool
    use; adapters convert as needed.
    """

    def __init__(self) -> None:
        self._messages: list[dict[str, Any]] = []

    @classmethod
    def from_history(
        cls, session_messages: list[dict[str, Any]], message: str,
    ) -> ConversationTurnBuffer:
        """Build a buffer from stored history plus the new user message.

        Drops unknown roles and empty content, and merges consecutive
        same-role messages.
        """
        buffer = cls()
        for msg in session_messages:
            role = msg.get("role")
            text = _content_text(msg.get("content")).strip()
            if role not in _ROLES or not text:
                continue
            buffer._append_text(role, text)
        # Vendors require the conversation to open with a user turn
        while buffer._messages and buffer._messages[0]["role"] != "user":
            buffer._messages.pop(0)
        if message and message.strip():
            buffer._append_text("user", message.strip())
        return buffer

    def _append_text(self, role: str, text: str) -> None:
        if self._messages and self._messages[-1]["role"] == role \
                and isinstance(self._messages[-1]["content"], str):
            self._messages[-1]["content"] += "\n\n" + text
        else:
            self._messages.append({"role": role, "content": text})

    def add_tool_exchange(
        self,
        call: ToolCallState,
        outcome: ToolOutcome,
        preamble: str = "",
    ) -> None:
        """Append one assistant ``tool_use`` and one user ``tool_result`` message."""
        assistant_blocks: list[dict[str, Any]] = []
        if preamble:
            assistant_blocks.append({"type": "text", "text": preamble})
        assistant_blocks.append({
            "type": "tool_use",
            "id": call.id,
            "name": call.name,
            "input": call.input,
        })
        result_block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": outcome.result_content(),
        }
        if outcome.is_error:
            result_block["is_error"] = True
        self._messages.append({"role": "assistant", "content": assistant_blocks})
        self._messages.append({"role": "user", "content": [result_block]})

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [dict(m) for m in self._messages]

    def text_for_estimate(self) -> str:
        parts: list[str] = []
        for msg in self._messages:
            content = msg["content"]
            parts.append(content if isinstance(content, str) else json.dumps(content))
        return "\n".join(parts)

    def __len__(self) -> int:
        return len(self._messages)
