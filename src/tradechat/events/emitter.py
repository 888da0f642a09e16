"""Outbound event emitter: the single choke point to the client connection.

The emitter is an explicit ``OPEN -> CLOSED`` state machine.  Writes after
close (or after the client went away) are no-ops returning ``False``.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Protocol, TextIO

from tradechat.types import ErrorType, OutboundEvent, OutboundType

_logger = logging.getLogger(__name__)

_MAX_LOG_DATA = 500

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def serialize(event: OutboundEvent) -> str:
    """One JSON object per line."""
    return json.dumps(event.to_dict(), default=str, ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class EventSink(Protocol):
    """Where serialized lines go."""

    @property
    def closed(self) -> bool:
        ...

    def write(self, line: str) -> None:
        ...

    def close(self) -> None:
        ...


class QueueSink:
    """Sink backed by an ``asyncio.Queue``; consumed by an HTTP response.

    ``detach()`` is called by the consumer when the client disconnects.
    """

    _EOF = None

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, line: str) -> None:
        self._queue.put_nowait(line)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._EOF)

    def detach(self) -> None:
        self._closed = True

    async def aiter_lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._queue.get()
            if line is self._EOF:
                return
            yield line


class StreamSink:
    """Sink writing to a text stream (stdout, a file, ``io.StringIO``)."""

    def __init__(self, stream: TextIO, close_stream: bool = False) -> None:
        self._stream = stream
        self._close_stream = close_stream
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._stream.closed

    def write(self, line: str) -> None:
        self._stream.write(line)
        self._stream.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close_stream:
            self._stream.close()


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

class EmitterState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class OutboundEmitter:
    """Safely writes :class:`OutboundEvent` objects to a sink.

    Usage::

        emitter = OutboundEmitter(QueueSink())
        emitter.token("Hello")
        emitter.done(conversation_id="c1", tokens={"input": 3, "output": 1},
                     provider="anthropic", model="claude-3-5-haiku-20241022")
    """

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self._state = EmitterState.OPEN
        self.sent: int = 0

    @property
    def state(self) -> EmitterState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is EmitterState.OPEN

    def enqueue(self, event: OutboundEvent) -> bool:
        """Write *event*; returns ``False`` (never raises) once closed."""
        if self._state is EmitterState.CLOSED:
            return False
        if self._sink.closed:
            _logger.debug("Client connection closed, dropping %s", event.type.value)
            self._state = EmitterState.CLOSED
            return False
        try:
            self._sink.write(serialize(event))
        except (BrokenPipeError, ConnectionError, RuntimeError, ValueError) as e:
            _logger.debug("Sink write failed (%s), marking closed", e)
            self._state = EmitterState.CLOSED
            return False
        self.sent += 1
        return True

    def close(self) -> None:
        """Close the emitter and its sink; safe to call repeatedly."""
        if self._state is EmitterState.CLOSED:
            if not self._sink.closed:
                self._sink.close()
            return
        self._state = EmitterState.CLOSED
        self._sink.close()

    # -- helpers -------------------------------------------------------------

    def token(self, chunk: str) -> bool:
        return self.enqueue(OutboundEvent(OutboundType.TOKEN, {"chunk": chunk}))

    def log(self, level: str, message: str, data: Any = None) -> bool:
        """Emit a client-visible log and mirror it to the python logger."""
        _logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s %s", message, data if data is not None else "")
        payload: dict[str, Any] = {
            "level": level,
            "message": message,
            "data": _truncate(data),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return self.enqueue(OutboundEvent(OutboundType.LOG, payload))

    def chart_data(self, chart: dict[str, Any]) -> bool:
        return self.enqueue(OutboundEvent(OutboundType.CHART_DATA, dict(chart)))

    def done(
        self,
        conversation_id: str | None,
        tokens: dict[str, int],
        provider: str,
        model: str,
    ) -> bool:
        return self.enqueue(OutboundEvent(OutboundType.DONE, {
            "conversationId": conversation_id,
            "tokens": tokens,
            "provider": provider,
            "model": model,
        }))

    def error(self, message: str, error_type: ErrorType) -> bool:
        return self.enqueue(OutboundEvent(OutboundType.ERROR, {
            "error": message,
            "errorType": error_type.value,
        }))


def _truncate(data: Any) -> Any:
    if data is None:
        return None
    text = json.dumps(data, default=str, ensure_ascii=False)
    if len(text) <= _MAX_LOG_DATA:
        return data
    return text[:_MAX_LOG_DATA] + "..."
