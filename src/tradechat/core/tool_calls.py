"""Per-round tool-call accumulation.

Vendors stream tool arguments either as one complete object at call start
or as JSON fragments.  :class:`ToolCallState` absorbs both; partial state
never leaves the instance.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any


def try_parse_json(text: str) -> dict[str, Any] | None:
    """Parse *text* as a JSON object, returning *None* on any failure."""
    if not text or not text.strip():
        return None
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


class ToolCallStatus(enum.Enum):
    PENDING = "pending"
    FINALIZED = "finalized"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass
class ToolCallState:
    """A single tool call being assembled from stream events."""

    id: str
    name: str
    index: int = 0
    accumulated_input_text: str = ""
    parsed_input: dict[str, Any] | None = None
    status: ToolCallStatus = ToolCallStatus.PENDING

    def append(self, fragment: str) -> None:
        """Append a JSON fragment and re-parse speculatively."""
        if self.status is not ToolCallStatus.PENDING:
            return
        self.accumulated_input_text += fragment
        parsed = try_parse_json(self.accumulated_input_text)
        if parsed is not None:
            self.parsed_input = parsed

    def finalize(self) -> None:
        """Last parse attempt; keeps the best partial input on failure."""
        if self.status is not ToolCallStatus.PENDING:
            return
        if self.accumulated_input_text:
            parsed = try_parse_json(self.accumulated_input_text)
            if parsed is not None:
                self.parsed_input = parsed
        if self.parsed_input is None:
            self.parsed_input = {}
        self.status = ToolCallStatus.FINALIZED

    @property
    def input(self) -> dict[str, Any]:
        return dict(self.parsed_input or {})


@dataclass
class RoundToolCalls:
    """Tool calls of one round, keyed by canonical block index."""

    calls: dict[int, ToolCallState] = field(default_factory=dict)

    def start(self, index: int, call_id: str, name: str,
              partial_input: dict[str, Any] | None = None) -> ToolCallState:
        state = ToolCallState(
            id=call_id,
            name=name,
            index=index,
            parsed_input=dict(partial_input) if partial_input else None,
        )
        self.calls[index] = state
        return state

    def get(self, index: int) -> ToolCallState | None:
        return self.calls.get(index)

    def finalize_all(self) -> None:
        for state in self.calls.values():
            state.finalize()

    def ordered(self) -> list[ToolCallState]:
        return [self.calls[i] for i in sorted(self.calls)]

    def __bool__(self) -> bool:
        return bool(self.calls)

    def __len__(self) -> int:
        return len(self.calls)
