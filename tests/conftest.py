"""Shared fakes for tradechat tests: scripted adapters, runtimes and sinks."""

from __future__ import annotations

import io
import json
from typing import Any, Callable

import pytest

from tradechat.errors import ToolError, ToolErrorKind
from tradechat.events.emitter import OutboundEmitter, StreamSink
from tradechat.llm.adapter import LLMRequest, VendorRequest
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


class StreamBuilder:
    """Builds canonical event sequences for one round."""

    def text_round(
        self, text: str, chunk: int = 4, usage: Usage | None = Usage(12, 6),
    ) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = [MessageStart(), BlockStart(0, TextBlock())]
        for i in range(0, len(text), chunk):
            events.append(BlockDelta(0, TextDelta(text[i:i + chunk])))
        events += [BlockStop(0), MessageStop(usage)]
        return events

    def tool_round(
        self,
        name: str,
        tool_input: dict[str, Any],
        call_id: str = "toolu_1",
        preamble: str = "",
        usage: Usage | None = Usage(20, 8),
    ) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = [MessageStart()]
        index = 0
        if preamble:
            events += [
                BlockStart(0, TextBlock()),
                BlockDelta(0, TextDelta(preamble)),
                BlockStop(0),
            ]
            index = 1
        raw = json.dumps(tool_input)
        events.append(BlockStart(index, ToolUseBlock(id=call_id, name=name)))
        for i in range(0, len(raw), 5):
            events.append(BlockDelta(index, InputJsonDelta(raw[i:i + 5])))
        events += [BlockStop(index), MessageStop(usage)]
        return events

    def empty_round(self) -> list[CanonicalEvent]:
        return [MessageStart(), MessageStop(Usage(5, 0))]

    def error_round(
        self, error_type: ErrorType = ErrorType.RATE_LIMIT, text: str = "",
    ) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = [MessageStart()]
        if text:
            events += [BlockStart(0, TextBlock()), BlockDelta(0, TextDelta(text))]
        events.append(ErrorEvent("upstream said: secret vendor detail", error_type, 429))
        return events


class ScriptedAdapter:
    """Provider adapter double replaying one scripted round per call."""

    provider = "anthropic"

    def __init__(
        self,
        rounds: list[list[CanonicalEvent]] | Callable[[int], list[CanonicalEvent]],
    ) -> None:
        self._rounds = rounds
        self.requests: list[LLMRequest] = []
        self.opened = 0
        self.streams_closed = 0
        self.closed = False

    def normalize_request(self, request: LLMRequest) -> VendorRequest:
        self.requests.append(request)
        return VendorRequest(
            path="/fake",
            payload={"messages": request.messages, "system": request.system},
            model=request.model,
        )

    async def open_stream(self, vendor_request: VendorRequest):
        index = self.opened
        self.opened += 1
        if callable(self._rounds):
            events = self._rounds(index)
        else:
            events = self._rounds[min(index, len(self._rounds) - 1)]
        try:
            for event in events:
                yield event
        finally:
            self.streams_closed += 1

    async def close(self) -> None:
        self.closed = True


class FakeRuntime:
    """Tool runtime double.

    ``behaviour`` maps tool name to a list of results consumed one per
    call; an exception instance in the list is raised instead.  The last
    entry repeats.
    """

    def __init__(self, behaviour: dict[str, list[Any]] | None = None) -> None:
        self.behaviour = behaviour or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        self.calls.append((name, arguments))
        script = self.behaviour.get(name)
        if not script:
            raise ToolError(ToolErrorKind.GENERIC, f"Unknown tool: {name}")
        made = sum(1 for n, _ in self.calls if n == name)
        item = script[min(made - 1, len(script) - 1)]
        if isinstance(item, BaseException):
            raise item
        return item

    async def list_tools(self) -> list[dict[str, Any]]:
        return [
            {"name": n, "description": n, "input_schema": {"type": "object", "properties": {}}}
            for n in self.behaviour
        ]

    async def close(self) -> None:
        self.closed = True


class RecordingEmitter(OutboundEmitter):
    """Emitter writing to an in-memory buffer, with parsed access."""

    def __init__(self) -> None:
        self.buffer = io.StringIO()
        super().__init__(StreamSink(self.buffer))

    @property
    def events(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self.buffer.getvalue().splitlines() if line]

    def of_type(self, etype: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == etype]

    @property
    def text(self) -> str:
        return "".join(e["chunk"] for e in self.of_type("token"))


@pytest.fixture
def stream() -> StreamBuilder:
    return StreamBuilder()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def no_sleep(monkeypatch):
    """Make tool backoff instant and record the requested delays."""
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("tradechat.tools.engine.asyncio.sleep", _sleep)
    return delays
