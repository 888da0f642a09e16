"""Anthropic Messages API adapter (SSE streaming)."""

from __future__ import annotations

import json
import logging
from typing import Any

from tradechat.errors import classify_vendor_error
from tradechat.types import (
    BlockDelta,
    BlockStart,
    BlockStop,
    CanonicalEvent,
    ErrorEvent,
    ErrorType,
    InputJsonDelta,
    MessageStart,
    MessageStop,
    TextBlock,
    TextDelta,
    ToolUseBlock,
    Usage,
)

from .adapter import LLMRequest, ProviderAdapter, VendorRequest
from .tool_format import to_anthropic_tool

_logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicStreamTranslator:
    """Translate Anthropic SSE payloads into canonical events.

    Anthropic already streams in block form, so this is mostly a rename;
    input tokens arrive on ``message_start`` and output tokens on
    ``message_delta``.
    """

    def __init__(self) -> None:
        self._input_tokens: int | None = None
        self._output_tokens: int | None = None
        self._stop_reason = ""
        self._done = False
        # Block kinds we do not surface (e.g. "thinking")
        self._skipped: set[int] = set()

    def feed(self, data: str) -> list[CanonicalEvent]:
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            return []

        etype = frame.get("type")

        if etype == "message_start":
            message = frame.get("message") or {}
            usage = message.get("usage") or {}
            self._input_tokens = usage.get("input_tokens")
            cache_created = usage.get("cache_creation_input_tokens") or 0
            cache_read = usage.get("cache_read_input_tokens") or 0
            if cache_created or cache_read:
                _logger.debug(
                    "Prompt cache: created=%d read=%d input=%s",
                    cache_created, cache_read, self._input_tokens,
                )
            return [MessageStart(model=message.get("model", ""))]

        if etype == "content_block_start":
            index = frame.get("index", 0)
            block = frame.get("content_block") or {}
            btype = block.get("type")
            if btype == "tool_use":
                return [BlockStart(index, ToolUseBlock(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    partial_input=block.get("input") or None,
                ))]
            if btype == "text":
                events: list[CanonicalEvent] = [BlockStart(index, TextBlock())]
                if block.get("text"):
                    events.append(BlockDelta(index, TextDelta(block["text"])))
                return events
            self._skipped.add(index)
            return []

        if etype == "content_block_delta":
            index = frame.get("index", 0)
            if index in self._skipped:
                return []
            delta = frame.get("delta") or {}
            dtype = delta.get("type")
            if dtype == "text_delta":
                return [BlockDelta(index, TextDelta(delta.get("text", "")))]
            if dtype == "input_json_delta":
                return [BlockDelta(index, InputJsonDelta(delta.get("partial_json", "")))]
            return []

        if etype == "content_block_stop":
            index = frame.get("index", 0)
            if index in self._skipped:
                return []
            return [BlockStop(index)]

        if etype == "message_delta":
            usage = frame.get("usage") or {}
            if usage.get("output_tokens") is not None:
                self._output_tokens = usage["output_tokens"]
            self._stop_reason = (frame.get("delta") or {}).get("stop_reason") or self._stop_reason
            return []

        if etype == "message_stop":
            self._done = True
            return [MessageStop(
                usage=Usage(self._input_tokens, self._output_tokens),
                stop_reason=self._stop_reason,
            )]

        if etype == "error":
            self._done = True
            err = frame.get("error") or {}
            message = err.get("message", "stream error")
            return [ErrorEvent(message, classify_vendor_error(err.get("type", ""), message))]

        # ping and unknown frames
        return []

    def finish(self) -> list[CanonicalEvent]:
        if self._done:
            return []
        return [ErrorEvent("stream ended before message_stop", ErrorType.SERVER_ERROR)]


class AnthropicAdapter(ProviderAdapter):
    """Adapter for ``POST /v1/messages`` with ``stream: true``.

    System content (string or cache-control text blocks) is passed
    through unchanged.
    """

    provider = "anthropic"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.profile.resolved_api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def normalize_request(self, request: LLMRequest) -> VendorRequest:
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": request.messages,
            "stream": True,
        }
        if request.system:
            payload["system"] = request.system
        if request.tools:
            payload["tools"] = [to_anthropic_tool(t) for t in request.tools]
        return VendorRequest(path="/v1/messages", payload=payload, model=request.model)

    def _translator(self) -> AnthropicStreamTranslator:
        return AnthropicStreamTranslator()
