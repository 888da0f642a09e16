"""OpenAI-compatible chat completions adapter (DeepSeek).

OpenAI-style streams carry no block structure, so the translator
synthesizes it: text deltas open a text block, each new tool call closes
the text block and starts a tool-use block, and ``finish_reason`` closes
whatever is still open.  Tool blocks stay open until then, since vendors
may interleave argument fragments across parallel calls.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from tradechat.errors import classify_status, classify_vendor_error
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
from .tool_format import blocks_to_string, to_openai_messages, to_openai_tool

_logger = logging.getLogger(__name__)


class OpenAIStreamTranslator:
    """Translate ``chat.completion.chunk`` payloads into canonical events."""

    def __init__(self) -> None:
        self._started = False
        self._next_index = 0
        self._text_index: int | None = None
        self._open_tools: list[int] = []
        # vendor tool_calls[].index -> (block index, call id)
        self._tool_blocks: dict[int, tuple[int, str]] = {}
        self._usage: Usage | None = None
        self._finish_reason = ""
        self._finished = False
        self._done = False

    # -- block bookkeeping -------------------------------------------------

    def _close_text(self) -> list[CanonicalEvent]:
        if self._text_index is None:
            return []
        index = self._text_index
        self._text_index = None
        return [BlockStop(index)]

    def _close_open(self) -> list[CanonicalEvent]:
        events = self._close_text()
        events.extend(BlockStop(index) for index in self._open_tools)
        self._open_tools = []
        return events

    def _new_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index

    def _complete(self) -> list[CanonicalEvent]:
        events = self._close_open()
        if not self._done:
            self._done = True
            events.append(MessageStop(usage=self._usage, stop_reason=self._finish_reason))
        return events

    # -- feeding -------------------------------------------------------------

    def feed(self, data: str) -> list[CanonicalEvent]:
        if data == "[DONE]":
            return self._complete()
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            return []

        events: list[CanonicalEvent] = []
        if not self._started:
            self._started = True
            events.append(MessageStart(model=chunk.get("model", "")))

        err = chunk.get("error")
        if err:
            self._done = True
            if isinstance(err, dict):
                message = err.get("message", "stream error")
                code = err.get("code")
                if isinstance(code, int):
                    error_type = classify_status(code, message)
                else:
                    error_type = classify_vendor_error(str(err.get("type", "")), message)
            else:
                message = str(err)
                error_type = classify_vendor_error("", message)
            events.append(ErrorEvent(message, error_type))
            return events

        usage = chunk.get("usage")
        if usage:
            self._usage = Usage(usage.get("prompt_tokens"), usage.get("completion_tokens"))

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if text:
                if self._text_index is None:
                    self._text_index = self._new_index()
                    events.append(BlockStart(self._text_index, TextBlock()))
                events.append(BlockDelta(self._text_index, TextDelta(text)))
            for tool_call in delta.get("tool_calls") or []:
                events.extend(self._feed_tool_call(tool_call))
            if choice.get("finish_reason"):
                self._finish_reason = choice["finish_reason"]
                self._finished = True
                events.extend(self._close_open())
        return events

    def _feed_tool_call(self, tool_call: dict[str, Any]) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        vendor_index = tool_call.get("index", 0)
        call_id = tool_call.get("id") or ""
        fn = tool_call.get("function") or {}
        args = fn.get("arguments")

        known = self._tool_blocks.get(vendor_index)
        if known is None or (call_id and call_id != known[1]):
            events.extend(self._close_text())
            index = self._new_index()
            self._open_tools.append(index)
            call_id = call_id or f"call_{index}"
            self._tool_blocks[vendor_index] = (index, call_id)
            events.append(BlockStart(index, ToolUseBlock(
                id=call_id,
                name=fn.get("name", ""),
                partial_input=args if isinstance(args, dict) else None,
            )))
        else:
            index = known[0]

        if isinstance(args, str) and args:
            events.append(BlockDelta(index, InputJsonDelta(args)))
        return events

    def finish(self) -> list[CanonicalEvent]:
        if self._done:
            return []
        if self._finished:
            return self._complete()
        return [ErrorEvent("stream ended before completion", ErrorType.SERVER_ERROR)]


class OpenAICompatAdapter(ProviderAdapter):
    """Adapter for OpenAI-compatible ``POST /chat/completions`` streams.

    System blocks are flattened into one string and sent as a leading
    ``system`` message.
    """

    provider = "deepseek"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.profile.resolved_api_key}",
            "Content-Type": "application/json",
        }

    def normalize_request(self, request: LLMRequest) -> VendorRequest:
        messages = to_openai_messages(request.messages)
        system_text = blocks_to_string(request.system)
        if system_text:
            messages.insert(0, {"role": "system", "content": system_text})

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            payload["tools"] = [to_openai_tool(t) for t in request.tools]
        return VendorRequest(path="/chat/completions", payload=payload, model=request.model)

    def _translator(self) -> OpenAIStreamTranslator:
        return OpenAIStreamTranslator()
