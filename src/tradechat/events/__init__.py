"""Outbound event stream for tradechat."""

from tradechat.events.emitter import (
    EmitterState,
    OutboundEmitter,
    QueueSink,
    StreamSink,
    serialize,
)

__all__ = ["EmitterState", "OutboundEmitter", "QueueSink", "StreamSink", "serialize"]
