"""Shared data types for tradechat.

The canonical event protocol lives here: every vendor stream is translated
into the small set of frozen dataclasses below, and the orchestrator only
ever sees these.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class ErrorType(enum.Enum):
    """Coarse error classification carried on the wire as ``errorType``."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    BAD_REQUEST = "bad_request"
    SERVER_ERROR = "server_error"
    TOOL_FAILURE = "tool_failure"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Canonical event protocol
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Usage:
    """Token counts reported by a vendor (``None`` = not reported)."""

    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True)
class TextBlock:
    """A text content block."""


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool-use content block.

    ``partial_input`` is set when the vendor delivers the complete
    arguments object at call start instead of as JSON fragments.
    """

    id: str
    name: str
    partial_input: dict[str, Any] | None = None


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class InputJsonDelta:
    fragment: str


@dataclass(frozen=True)
class MessageStart:
    model: str = ""


@dataclass(frozen=True)
class BlockStart:
    index: int
    block: Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class BlockDelta:
    index: int
    delta: Union[TextDelta, InputJsonDelta]


@dataclass(frozen=True)
class BlockStop:
    index: int


@dataclass(frozen=True)
class MessageStop:
    usage: Usage | None = None
    stop_reason: str = ""


@dataclass(frozen=True)
class ErrorEvent:
    """A transport or protocol failure surfaced in-band."""

    message: str
    error_type: ErrorType = ErrorType.UNKNOWN
    status_code: int | None = None


CanonicalEvent = Union[
    MessageStart, BlockStart, BlockDelta, BlockStop, MessageStop, ErrorEvent,
]


# ---------------------------------------------------------------------------
# Chart types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChartPoint:
    """A single OHLCV candle; ``time`` is epoch seconds (UTC)."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------

class OutboundType(enum.Enum):
    TOKEN = "token"
    LOG = "log"
    CHART_DATA = "chart_data"
    DONE = "done"
    ERROR = "error"


@dataclass
class OutboundEvent:
    """An event written to the client, one JSON object per line."""

    type: OutboundType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in (OutboundType.DONE, OutboundType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.payload}


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

SystemContent = Union[str, list[dict[str, Any]]]


@dataclass
class ChatRequest:
    """Inbound chat request as handed over by the calling layer."""

    message: str
    provider: str = "anthropic"
    model: str | None = None
    conversation_id: str | None = None
    session_messages: list[dict[str, Any]] = field(default_factory=list)
    previous_summaries: list[str] = field(default_factory=list)
    system_content: SystemContent | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    tier: str = "free"


@dataclass
class UsageCounters:
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"input": self.input_tokens, "output": self.output_tokens}


@dataclass
class ChatResult:
    """Outcome of one orchestrated chat turn."""

    conversation_id: str | None
    text: str = ""
    usage: UsageCounters = field(default_factory=UsageCounters)
    provider: str = ""
    model: str = ""
    error_type: ErrorType | None = None
    rounds: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error_type is None and not self.cancelled
