"""Tests for the OpenAI-compatible adapter and message format transforms."""

from __future__ import annotations

import json

import httpx

from tradechat.config import ProviderProfile
from tradechat.llm.adapter import LLMRequest
from tradechat.llm.openai_compat import OpenAICompatAdapter, OpenAIStreamTranslator
from tradechat.llm.tool_format import (
    blocks_to_string,
    is_cached_block_format,
    to_openai_messages,
    to_openai_tool,
)
from tradechat.types import (
    BlockDelta,
    BlockStart,
    BlockStop,
    ErrorEvent,
    ErrorType,
    InputJsonDelta,
    MessageStart,
    MessageStop,
    TextBlock,
    TextDelta,
    ToolUseBlock,
)

PROFILE = ProviderProfile(name="deepseek", url="https://api.deepseek.test", api_key="ds-key")


def _chunk(delta: dict | None = None, finish: str | None = None, **extra) -> dict:
    chunk = {"model": "deepseek-chat", "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish}]}
    chunk.update(extra)
    return chunk


def _sse(*chunks, done: bool = True) -> bytes:
    body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode()


def _feed_all(*chunks, done: bool = True) -> list:
    t = OpenAIStreamTranslator()
    events = []
    for c in chunks:
        events.extend(t.feed(json.dumps(c)))
    if done:
        events.extend(t.feed("[DONE]"))
    events.extend(t.finish())
    return events


def _adapter(handler) -> OpenAICompatAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=PROFILE.url)
    return OpenAICompatAdapter(PROFILE, client=client)


class TestNormalize:
    def test_system_flattened_and_prepended(self):
        adapter = OpenAICompatAdapter(PROFILE, client=httpx.AsyncClient())
        vendor = adapter.normalize_request(LLMRequest(
            messages=[{"role": "user", "content": "hi"}],
            model="deepseek-chat",
            system=[
                {"type": "text", "text": "part one", "cache_control": {"type": "ephemeral"}},
                {"type": "text", "text": "part two"},
            ],
            tools=[{"name": "GLOBAL_QUOTE", "description": "q", "input_schema": {"type": "object"}}],
        ))
        assert vendor.path == "/chat/completions"
        messages = vendor.payload["messages"]
        assert messages[0] == {"role": "system", "content": "part one\n\npart two"}
        assert messages[1] == {"role": "user", "content": "hi"}
        assert vendor.payload["stream_options"] == {"include_usage": True}
        assert vendor.payload["tools"][0]["function"]["name"] == "GLOBAL_QUOTE"

    def test_tool_exchange_converted(self):
        messages = to_openai_messages([
            {"role": "user", "content": "quote IBM"},
            {"role": "assistant", "content": [
                {"type": "text", "text": "Checking."},
                {"type": "tool_use", "id": "c1", "name": "GLOBAL_QUOTE", "input": {"symbol": "IBM"}},
            ]},
            {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "c1", "content": "IBM 190"},
            ]},
        ])
        assert messages[1]["content"] == "Checking."
        assert messages[1]["tool_calls"][0]["function"]["arguments"] == '{"symbol": "IBM"}'
        assert messages[2] == {"role": "tool", "tool_call_id": "c1", "content": "IBM 190"}

    def test_tool_use_without_text_has_null_content(self):
        [msg] = to_openai_messages([{"role": "assistant", "content": [
            {"type": "tool_use", "id": "c1", "name": "X", "input": {}},
        ]}])
        assert msg["content"] is None


class TestToolFormat:
    def test_cached_block_detection(self):
        assert is_cached_block_format([{"type": "text", "text": "a"}])
        assert not is_cached_block_format("plain")
        assert not is_cached_block_format([])

    def test_blocks_to_string(self):
        assert blocks_to_string(None) == ""
        assert blocks_to_string("s") == "s"
        assert blocks_to_string([{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]) == "a\n\nb"

    def test_openai_tool_passthrough(self):
        tool = {"type": "function", "function": {"name": "X", "parameters": {}}}
        assert to_openai_tool(tool) is tool


class TestTranslator:
    def test_text_stream(self):
        events = _feed_all(
            _chunk({"role": "assistant", "content": ""}),
            _chunk({"content": "Hel"}),
            _chunk({"content": "lo"}),
            _chunk(finish="stop"),
            {"model": "deepseek-chat", "choices": [], "usage": {"prompt_tokens": 30, "completion_tokens": 2}},
        )
        assert isinstance(events[0], MessageStart)
        assert events[1] == BlockStart(0, TextBlock())
        assert events[2] == BlockDelta(0, TextDelta("Hel"))
        assert events[3] == BlockDelta(0, TextDelta("lo"))
        assert events[4] == BlockStop(0)
        stop = events[-1]
        assert isinstance(stop, MessageStop)
        assert stop.usage.input_tokens == 30
        assert stop.usage.output_tokens == 2
        assert stop.stop_reason == "stop"
        assert sum(isinstance(e, MessageStop) for e in events) == 1

    def test_text_then_two_tool_calls(self):
        events = _feed_all(
            _chunk({"content": "Let me check."}),
            _chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "GLOBAL_QUOTE", "arguments": ""}}]}),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"symbol":'}}]}),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '"IBM"}'}}]}),
            _chunk({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "GLOBAL_QUOTE", "arguments": '{"symbol":"AAPL"}'}}]}),
            _chunk(finish="tool_calls"),
        )
        starts = [e for e in events if isinstance(e, BlockStart)]
        assert [s.index for s in starts] == [0, 1, 2]
        assert starts[1].block == ToolUseBlock(id="call_a", name="GLOBAL_QUOTE")
        assert starts[2].block.id == "call_b"
        first_args = "".join(
            e.delta.fragment for e in events
            if isinstance(e, BlockDelta) and e.index == 1
        )
        assert first_args == '{"symbol":"IBM"}'
        # every block closed exactly once
        stops = [e.index for e in events if isinstance(e, BlockStop)]
        assert sorted(stops) == [0, 1, 2]
        # the text block closes before the first tool block opens
        assert events.index(BlockStop(0)) < events.index(starts[1])

    def test_interleaved_parallel_tool_arguments(self):
        events = _feed_all(
            _chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "GLOBAL_QUOTE", "arguments": '{"symbol":'}}]}),
            _chunk({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "GLOBAL_QUOTE", "arguments": '{"symbol":'}}]}),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '"IBM"}'}}]}),
            _chunk({"tool_calls": [{"index": 1, "function": {"arguments": '"AAPL"}'}}]}),
            _chunk(finish="tool_calls"),
        )

        def args(index):
            return "".join(
                e.delta.fragment for e in events
                if isinstance(e, BlockDelta) and e.index == index
            )

        assert args(0) == '{"symbol":"IBM"}'
        assert args(1) == '{"symbol":"AAPL"}'
        last_delta = max(i for i, e in enumerate(events) if isinstance(e, BlockDelta))
        stops = [i for i, e in enumerate(events) if isinstance(e, BlockStop)]
        assert len(stops) == 2
        assert min(stops) > last_delta

    def test_dict_arguments_become_partial_input(self):
        events = _feed_all(
            _chunk({"tool_calls": [{"index": 0, "id": "c", "function": {"name": "X", "arguments": {"symbol": "IBM"}}}]}),
            _chunk(finish="tool_calls"),
        )
        start = next(e for e in events if isinstance(e, BlockStart))
        assert start.block.partial_input == {"symbol": "IBM"}
        assert not any(isinstance(e, BlockDelta) and isinstance(e.delta, InputJsonDelta) for e in events)

    def test_missing_done_after_finish_still_completes(self):
        events = _feed_all(_chunk({"content": "x"}), _chunk(finish="stop"), done=False)
        assert isinstance(events[-1], MessageStop)

    def test_truncated_stream_is_error(self):
        events = _feed_all(_chunk({"content": "x"}), done=False)
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].error_type is ErrorType.SERVER_ERROR

    def test_error_chunk(self):
        t = OpenAIStreamTranslator()
        events = t.feed(json.dumps({"error": {"message": "Insufficient Balance", "code": 402}}))
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].error_type is ErrorType.QUOTA
        assert t.finish() == []


class TestOpenStream:
    async def test_bearer_auth_and_events(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=_sse(
                _chunk({"content": "ok"}), _chunk(finish="stop"),
            ))

        adapter = _adapter(handler)
        request = adapter.normalize_request(LLMRequest(
            messages=[{"role": "user", "content": "hi"}], model="deepseek-chat",
        ))
        events = [e async for e in adapter.open_stream(request)]
        assert seen["auth"] == "Bearer ds-key"
        assert seen["body"]["stream"] is True
        assert isinstance(events[-1], MessageStop)
        await adapter.close()

    async def test_server_error_status(self):
        adapter = _adapter(lambda r: httpx.Response(503, text="busy"))
        request = adapter.normalize_request(LLMRequest(messages=[], model="deepseek-chat"))
        [event] = [e async for e in adapter.open_stream(request)]
        assert event.error_type is ErrorType.SERVER_ERROR
        assert event.status_code == 503
