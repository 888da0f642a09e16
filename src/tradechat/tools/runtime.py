"""Tool runtimes: the external side that actually runs market-data tools."""

from __future__ import annotations

import itertools
import json
import logging
from typing import Any, Protocol

import httpx

from tradechat.config import ToolRuntimeSpec
from tradechat.errors import ToolError, ToolErrorKind
from tradechat.llm.tool_format import to_anthropic_tool

_logger = logging.getLogger(__name__)

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "api call frequency")
_SERVER_ERROR_CODES = (-32603, -32000)


class ToolRuntime(Protocol):
    """Anything that can run a named tool and return its text result."""

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        ...


def _classify_rpc_error(error: dict[str, Any]) -> ToolErrorKind:
    message = str(error.get("message", "")).lower()
    code = error.get("code")
    if code == 429 or any(m in message for m in _RATE_LIMIT_MARKERS):
        return ToolErrorKind.RATE_LIMITED
    if code in _SERVER_ERROR_CODES or "timeout" in message or "unavailable" in message:
        return ToolErrorKind.SERVER_ERROR
    return ToolErrorKind.GENERIC


class McpToolRuntime:
    """JSON-RPC 2.0 client for an MCP tool server over HTTP.

    A single call is a single attempt; retries belong to
    :class:`~tradechat.tools.engine.ToolExecutionEngine`.

    Parameters
    ----------
    spec:
        Runtime settings (URL, timeout).
    client:
        Optional pre-built ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        spec: ToolRuntimeSpec,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.spec = spec
        self._ids = itertools.count(1)
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(spec.timeout, connect=10),
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json, text/event-stream",
            },
        )

    async def _rpc(self, method: str, params: dict[str, Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            resp = await self._client.post(self.spec.url, json=payload)
        except httpx.TimeoutException as e:
            raise ToolError(ToolErrorKind.SERVER_ERROR, f"{method} timed out") from e
        except httpx.HTTPError as e:
            raise ToolError(ToolErrorKind.SERVER_ERROR, f"{method} transport error: {e}") from e

        if resp.status_code == 429:
            raise ToolError(ToolErrorKind.RATE_LIMITED, "HTTP 429: rate limit exceeded")
        if resp.status_code >= 500:
            raise ToolError(ToolErrorKind.SERVER_ERROR, f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise ToolError(ToolErrorKind.GENERIC, f"HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            body = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ToolError(ToolErrorKind.GENERIC, "invalid JSON-RPC response") from e

        if body.get("error"):
            error = body["error"]
            raise ToolError(_classify_rpc_error(error), str(error.get("message", "tool error")))
        return body.get("result")

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Run *name* with *arguments* and return the joined text content."""
        result = await self._rpc("tools/call", {"name": name, "arguments": arguments})
        if not isinstance(result, dict):
            return json.dumps(result) if result is not None else ""

        content = result.get("content") or []
        text = "\n".join(
            item.get("text", "") for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        )
        if result.get("isError"):
            lower = text.lower()
            kind = ToolErrorKind.GENERIC
            if any(m in lower for m in _RATE_LIMIT_MARKERS):
                kind = ToolErrorKind.RATE_LIMITED
            raise ToolError(kind, text[:300] or f"{name} reported an error")
        if any(m in text.lower() for m in _RATE_LIMIT_MARKERS):
            _logger.warning("Tool %s result mentions a rate limit", name)
        return text

    async def list_tools(self) -> list[dict[str, Any]]:
        """Fetch tool definitions in Anthropic format."""
        result = await self._rpc("tools/list", {})
        tools = (result or {}).get("tools", []) if isinstance(result, dict) else []
        return [to_anthropic_tool(t) for t in tools]

    async def close(self) -> None:
        await self._client.aclose()
