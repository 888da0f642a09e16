"""Tool execution with bounded retries and declarative fallbacks.

``execute`` is the raw, raising contract; ``run`` wraps it with the
fallback table and always returns a :class:`ToolOutcome`, so a failing
tool never aborts the chat turn.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from tradechat.errors import ToolError, ToolErrorKind, classify_tool_exception

from .runtime import ToolRuntime

_logger = logging.getLogger(__name__)

# Type alias for attempt listeners (sync or async)
AttemptListener = Callable[["AttemptRecord"], Any]


# ---------------------------------------------------------------------------
# Fallback table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FallbackRule:
    """Substitute tool for a failing one.

    ``input_mapper`` reshapes the primary input; returning *None* means
    the fallback does not apply to this input.
    """

    fallback_name: str
    input_mapper: Callable[[dict[str, Any]], dict[str, Any] | None]


def _symbols_of(tool_input: dict[str, Any]) -> list[str]:
    raw = tool_input.get("symbols", tool_input.get("symbol"))
    if isinstance(raw, str):
        return [s.strip() for s in raw.split(",") if s.strip()]
    if isinstance(raw, (list, tuple)):
        return [str(s).strip() for s in raw if str(s).strip()]
    return []


def _single_symbol_quote(tool_input: dict[str, Any]) -> dict[str, Any] | None:
    symbols = _symbols_of(tool_input)
    if len(symbols) != 1:
        return None
    return {"symbol": symbols[0], "entitlement": "realtime"}


def _intraday_for_symbol(tool_input: dict[str, Any]) -> dict[str, Any] | None:
    symbols = _symbols_of(tool_input)
    if len(symbols) != 1:
        return None
    return {
        "symbol": symbols[0],
        "interval": "5min",
        "outputsize": "compact",
        "entitlement": "realtime",
    }


DEFAULT_FALLBACKS: dict[str, FallbackRule] = {
    "REALTIME_BULK_QUOTES": FallbackRule("GLOBAL_QUOTE", _single_symbol_quote),
    "GLOBAL_QUOTE": FallbackRule("TIME_SERIES_INTRADAY", _intraday_for_symbol),
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class AttemptRecord:
    """One invocation attempt, reported to the attempt listener."""

    tool: str
    attempt: int
    max_attempts: int
    success: bool
    error_kind: ToolErrorKind | None = None
    error: str = ""
    fallback_for: str | None = None


@dataclass
class ToolOutcome:
    """Result type of :meth:`ToolExecutionEngine.run`."""

    name: str
    input: dict[str, Any]
    success: bool
    output: str = ""
    error_kind: ToolErrorKind | None = None
    error_message: str = ""
    fallback_name: str | None = None
    fallback_input: dict[str, Any] | None = None
    attempts: int = 0

    @property
    def is_error(self) -> bool:
        return not self.success

    @property
    def executed_name(self) -> str:
        """Name of the tool whose output is in ``output``."""
        return self.fallback_name if self.fallback_name and self.success else self.name

    @property
    def executed_input(self) -> dict[str, Any]:
        if self.fallback_name and self.success and self.fallback_input is not None:
            return self.fallback_input
        return self.input

    def result_content(self) -> str:
        """Text folded into the conversation as the tool result."""
        if self.success:
            if self.fallback_name:
                return (
                    f"Note: {self.name} failed, using {self.fallback_name} instead.\n"
                    f"{self.output}"
                )
            return self.output
        if self.error_kind is ToolErrorKind.SERVER_ERROR:
            return (
                "The market data service is temporarily unavailable (server error). "
                "Please continue without this data and let the user know the data "
                "could not be retrieved."
            )
        if self.error_kind is ToolErrorKind.RATE_LIMITED:
            return (
                "The market data service rate limit was reached. Please continue "
                "without this data and let the user know to try again shortly."
            )
        return f"Tool execution failed: {self.error_message}. Please continue without this data."


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ToolExecutionEngine:
    """Runs tools against a :class:`ToolRuntime`.

    Parameters
    ----------
    runtime:
        The external tool runtime.
    fallbacks:
        ``{tool_name: FallbackRule}``; defaults to :data:`DEFAULT_FALLBACKS`.
    max_retries:
        Retries for transient failures (attempts = retries + 1).
    backoff_base / backoff_cap:
        Delay before retry *n* (0-based) is ``min(base * 2**n, cap)`` seconds.
    """

    def __init__(
        self,
        runtime: ToolRuntime,
        fallbacks: Mapping[str, FallbackRule] | None = None,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        backoff_cap: float = 5.0,
    ) -> None:
        self._runtime = runtime
        self._fallbacks = dict(DEFAULT_FALLBACKS if fallbacks is None else fallbacks)
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap

    def _delay(self, attempt: int) -> float:
        return min(self._backoff_base * (2 ** attempt), self._backoff_cap)

    async def _notify(self, listener: AttemptListener | None, record: AttemptRecord) -> None:
        if listener is None:
            return
        result = listener(record)
        if inspect.isawaitable(result):
            await result

    async def execute(
        self,
        name: str,
        tool_input: dict[str, Any],
        max_retries: int | None = None,
        on_attempt: AttemptListener | None = None,
        fallback_for: str | None = None,
    ) -> str:
        """Run *name* once plus up to *max_retries* transient retries.

        Raises
        ------
        ToolError
            With the classification of the last failure.
        """
        retries = self._max_retries if max_retries is None else max_retries
        max_attempts = retries + 1

        for attempt in range(max_attempts):
            try:
                output = await self._runtime.call_tool(name, tool_input)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = classify_tool_exception(e)
                message = e.message if isinstance(e, ToolError) else str(e) or type(e).__name__
                await self._notify(on_attempt, AttemptRecord(
                    tool=name, attempt=attempt + 1, max_attempts=max_attempts,
                    success=False, error_kind=kind, error=message,
                    fallback_for=fallback_for,
                ))
                if not kind.transient or attempt + 1 >= max_attempts:
                    raise ToolError(kind, message) from e
                delay = self._delay(attempt)
                _logger.warning(
                    "Tool %s failed with %s (attempt %d/%d), retrying in %.1fs",
                    name, kind.value, attempt + 1, max_attempts, delay,
                )
                await asyncio.sleep(delay)
                continue

            await self._notify(on_attempt, AttemptRecord(
                tool=name, attempt=attempt + 1, max_attempts=max_attempts,
                success=True, fallback_for=fallback_for,
            ))
            return output

        # Unreachable: the loop either returns or raises
        raise ToolError(ToolErrorKind.GENERIC, f"{name}: no attempts made")

    async def run(
        self,
        name: str,
        tool_input: dict[str, Any],
        on_attempt: AttemptListener | None = None,
    ) -> ToolOutcome:
        """Run a tool with retries, then its fallback; never raises ToolError."""
        attempts = 0

        def _count(record: AttemptRecord) -> Any:
            nonlocal attempts
            attempts += 1
            if on_attempt is not None:
                return on_attempt(record)
            return None

        try:
            output = await self.execute(name, tool_input, on_attempt=_count)
            return ToolOutcome(name=name, input=tool_input, success=True,
                               output=output, attempts=attempts)
        except ToolError as primary_error:
            failure = primary_error

        rule = self._fallbacks.get(name)
        fallback_input = rule.input_mapper(tool_input) if rule else None
        if rule is not None and fallback_input is not None:
            _logger.warning(
                "Tool %s failed (%s), falling back to %s",
                name, failure.kind.value, rule.fallback_name,
            )
            try:
                output = await self.execute(
                    rule.fallback_name, fallback_input,
                    on_attempt=_count, fallback_for=name,
                )
                return ToolOutcome(
                    name=name, input=tool_input, success=True, output=output,
                    fallback_name=rule.fallback_name, fallback_input=fallback_input,
                    attempts=attempts,
                )
            except ToolError as fallback_error:
                _logger.warning(
                    "Fallback %s for %s also failed: %s",
                    rule.fallback_name, name, fallback_error.message,
                )
                failure = fallback_error

        _logger.error("Tool %s failed: %s", name, failure.message)
        return ToolOutcome(
            name=name,
            input=tool_input,
            success=False,
            error_kind=failure.kind,
            error_message=failure.message,
            attempts=attempts,
        )
