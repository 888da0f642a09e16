"""Tool-definition and message format transforms between vendors.

The core speaks Anthropic-shaped messages (``tool_use`` / ``tool_result``
content blocks).  OpenAI-compatible vendors need function-style tools,
``tool_calls`` on assistant messages and ``role: tool`` results.
"""

from __future__ import annotations

import json
from typing import Any


def is_cached_block_format(system: Any) -> bool:
    """True if *system* is a list of ``{"type": "text", "text": ...}`` blocks."""
    return (
        isinstance(system, list)
        and len(system) > 0
        and all(isinstance(b, dict) and b.get("type") == "text" for b in system)
    )


def blocks_to_string(system: Any) -> str:
    """Flatten system content (string or text blocks) into one string."""
    if system is None:
        return ""
    if isinstance(system, str):
        return system
    if isinstance(system, list):
        return "\n\n".join(
            b.get("text", "") for b in system
            if isinstance(b, dict) and b.get("type") == "text" and b.get("text")
        )
    return str(system)


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

def to_anthropic_tool(tool: dict[str, Any]) -> dict[str, Any]:
    """Normalize a tool definition to Anthropic's ``input_schema`` shape."""
    if tool.get("type") == "function" and "function" in tool:
        fn = tool["function"]
        return {
            "name": fn["name"],
            "description": fn.get("description", ""),
            "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
        }
    return {
        "name": tool["name"],
        "description": tool.get("description", ""),
        "input_schema": (
            tool.get("input_schema")
            or tool.get("inputSchema")
            or {"type": "object", "properties": {}}
        ),
    }


def to_openai_tool(tool: dict[str, Any]) -> dict[str, Any]:
    """Convert a tool definition to OpenAI function-calling format."""
    if tool.get("type") == "function" and "function" in tool:
        return tool
    anthropic = to_anthropic_tool(tool)
    return {
        "type": "function",
        "function": {
            "name": anthropic["name"],
            "description": anthropic["description"],
            "parameters": anthropic["input_schema"],
        },
    }


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def _text_of(blocks: list[dict[str, Any]]) -> str:
    return "".join(b.get("text", "") for b in blocks if b.get("type") == "text")


def _stringify(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _text_of([b for b in content if isinstance(b, dict)])
    return json.dumps(content)


def to_openai_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert Anthropic-shaped messages to OpenAI chat messages."""
    out: list[dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if isinstance(content, str):
            out.append({"role": role, "content": content})
            continue
        blocks = [b for b in (content or []) if isinstance(b, dict)]

        tool_uses = [b for b in blocks if b.get("type") == "tool_use"]
        tool_results = [b for b in blocks if b.get("type") == "tool_result"]

        if role == "assistant" and tool_uses:
            text = _text_of(blocks)
            out.append({
                "role": "assistant",
                "content": text or None,
                "tool_calls": [
                    {
                        "id": b["id"],
                        "type": "function",
                        "function": {
                            "name": b["name"],
                            "arguments": json.dumps(b.get("input") or {}),
                        },
                    }
                    for b in tool_uses
                ],
            })
        elif tool_results:
            for b in tool_results:
                out.append({
                    "role": "tool",
                    "tool_call_id": b["tool_use_id"],
                    "content": _stringify(b.get("content", "")),
                })
            text = _text_of(blocks)
            if text:
                out.append({"role": role, "content": text})
        else:
            out.append({"role": role, "content": _text_of(blocks)})
    return out
