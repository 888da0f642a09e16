"""Tests for the outbound emitter and its sinks."""

from __future__ import annotations

import asyncio
import io
import json

from tradechat.events.emitter import (
    EmitterState,
    OutboundEmitter,
    QueueSink,
    StreamSink,
    serialize,
)
from tradechat.types import ErrorType, OutboundEvent, OutboundType


class BrokenSink:
    closed = False

    def write(self, line: str) -> None:
        raise BrokenPipeError("client went away")

    def close(self) -> None:
        pass


class TestEnqueue:
    def test_writes_one_line_per_event(self):
        buf = io.StringIO()
        emitter = OutboundEmitter(StreamSink(buf))
        assert emitter.token("Hel") is True
        assert emitter.token("lo") is True
        lines = buf.getvalue().splitlines()
        assert [json.loads(l) for l in lines] == [
            {"type": "token", "chunk": "Hel"},
            {"type": "token", "chunk": "lo"},
        ]

    def test_enqueue_after_close_returns_false(self):
        buf = io.StringIO()
        emitter = OutboundEmitter(StreamSink(buf))
        emitter.close()
        assert emitter.enqueue(OutboundEvent(OutboundType.TOKEN, {"chunk": "x"})) is False
        assert emitter.token("y") is False
        assert buf.getvalue() == ""

    def test_close_idempotent(self):
        emitter = OutboundEmitter(StreamSink(io.StringIO()))
        emitter.close()
        emitter.close()
        assert emitter.state is EmitterState.CLOSED

    def test_closed_sink_flips_state(self):
        buf = io.StringIO()
        emitter = OutboundEmitter(StreamSink(buf))
        buf.close()
        assert emitter.token("x") is False
        assert emitter.state is EmitterState.CLOSED
        assert emitter.token("y") is False

    def test_write_failure_never_raises(self):
        emitter = OutboundEmitter(BrokenSink())
        assert emitter.token("x") is False
        assert emitter.is_open is False
        emitter.close()


class TestHelpers:
    def test_done_payload(self):
        buf = io.StringIO()
        emitter = OutboundEmitter(StreamSink(buf))
        emitter.done("c1", {"input": 10, "output": 4}, "anthropic", "m")
        assert json.loads(buf.getvalue()) == {
            "type": "done",
            "conversationId": "c1",
            "tokens": {"input": 10, "output": 4},
            "provider": "anthropic",
            "model": "m",
        }

    def test_error_payload(self):
        buf = io.StringIO()
        emitter = OutboundEmitter(StreamSink(buf))
        emitter.error("Rate limit exceeded.", ErrorType.RATE_LIMIT)
        event = json.loads(buf.getvalue())
        assert event == {"type": "error", "error": "Rate limit exceeded.", "errorType": "rate_limit"}

    def test_log_has_timestamp_and_truncates(self):
        buf = io.StringIO()
        emitter = OutboundEmitter(StreamSink(buf))
        emitter.log("info", "big", {"blob": "x" * 2000})
        event = json.loads(buf.getvalue())
        assert event["level"] == "info"
        assert event["message"] == "big"
        assert "timestamp" in event
        assert isinstance(event["data"], str)
        assert len(event["data"]) <= 503

    def test_small_log_data_kept(self):
        buf = io.StringIO()
        emitter = OutboundEmitter(StreamSink(buf))
        emitter.log("warn", "small", {"k": 1})
        assert json.loads(buf.getvalue())["data"] == {"k": 1}

    def test_serialize_terminates_line(self):
        line = serialize(OutboundEvent(OutboundType.TOKEN, {"chunk": "a\nb"}))
        assert line.endswith("\n")
        assert line.count("\n") == 1


class TestQueueSink:
    async def test_lines_until_close(self):
        sink = QueueSink()
        emitter = OutboundEmitter(sink)
        emitter.token("a")
        emitter.token("b")
        emitter.close()
        lines = [line async for line in sink.aiter_lines()]
        assert [json.loads(l)["chunk"] for l in lines] == ["a", "b"]

    async def test_detached_consumer(self):
        sink = QueueSink()
        emitter = OutboundEmitter(sink)
        sink.detach()
        assert emitter.token("a") is False
        emitter.close()

    async def test_consumer_waits_for_producer(self):
        sink = QueueSink()
        emitter = OutboundEmitter(sink)

        async def produce():
            await asyncio.sleep(0)
            emitter.token("late")
            emitter.close()

        task = asyncio.create_task(produce())
        lines = [line async for line in sink.aiter_lines()]
        await task
        assert len(lines) == 1
