"""Streaming orchestrator: the per-request chat state machine.

    STREAMING -> TOOL_PENDING -> EXECUTING_TOOLS -> FOLLOW_UP -> STREAMING
        \\-> DONE / FAILED

One instance serves one chat request.  It pulls canonical events from a
provider adapter, forwards text as it arrives, runs requested tools one at
a time, and re-queries the vendor with the results until the model stops
asking for tools or the follow-up limit is reached.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from tradechat.charts.extractor import TIME_SERIES_TOOLS, ResultExtractor
from tradechat.core.conversation import ConversationTurnBuffer
from tradechat.core.tool_calls import RoundToolCalls, ToolCallStatus
from tradechat.core.usage import UsageAccountant
from tradechat.errors import ChatError
from tradechat.events.emitter import OutboundEmitter
from tradechat.llm.adapter import LLMRequest, ProviderAdapter, VendorRequest
from tradechat.llm.models import default_model, max_output
from tradechat.llm.tool_format import blocks_to_string
from tradechat.tools.engine import AttemptRecord, ToolExecutionEngine
from tradechat.types import (
    BlockDelta,
    BlockStart,
    BlockStop,
    ChatRequest,
    ChatResult,
    ErrorEvent,
    ErrorType,
    InputJsonDelta,
    MessageStart,
    MessageStop,
    SystemContent,
    TextBlock,
    TextDelta,
    ToolUseBlock,
    Usage,
)

_logger = logging.getLogger(__name__)

FALLBACK_TEXT = (
    "I've retrieved the market data, but encountered an issue generating the "
    "response. Please try asking again."
)

_MAX_TOKENS_BY_TIER = {"pro": 2000, "free": 1000}

# Sync or async callables
PersistenceHook = Callable[[ChatResult], Any]
SystemPromptCompiler = Callable[[dict[str, Any]], Any]


class OrchestratorState(enum.Enum):
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    EXECUTING_TOOLS = "executing_tools"
    FOLLOW_UP = "follow_up"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RoundResult:
    """Everything one streaming round produced."""

    text: str = ""
    tool_calls: RoundToolCalls = field(default_factory=RoundToolCalls)
    usage: Usage | None = None
    error: ErrorEvent | None = None
    cancelled: bool = False


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


_END_OF_STREAM = object()


async def _next_event(events: Any) -> Any:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


class ChatOrchestrator:
    """Drives one chat turn from request to ``done`` / ``error``.

    Parameters
    ----------
    adapter:
        Provider adapter for the selected vendor.
    engine:
        Tool execution engine.
    emitter:
        Outbound emitter for this request's connection.
    extractor:
        Chart extractor; a default one is created if omitted.
    max_follow_up_rounds:
        Maximum number of re-queries after tool execution.
    context_budget_ratio:
        Fraction of the context window an input may occupy.
    temperature:
        Sampling temperature passed to the vendor.
    compile_system_prompt:
        Called with a context dict when the request carries no system
        content.  May return a string or a list of text blocks.
    on_finish:
        Persistence hook, called once at ``done`` or ``error``.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        engine: ToolExecutionEngine,
        emitter: OutboundEmitter,
        extractor: ResultExtractor | None = None,
        max_follow_up_rounds: int = 3,
        context_budget_ratio: float = 0.8,
        temperature: float = 0.7,
        compile_system_prompt: SystemPromptCompiler | None = None,
        on_finish: PersistenceHook | None = None,
    ) -> None:
        self._adapter = adapter
        self._engine = engine
        self._emitter = emitter
        self._extractor = extractor or ResultExtractor()
        self._max_follow_ups = max_follow_up_rounds
        self._budget_ratio = context_budget_ratio
        self._temperature = temperature
        self._compile_system_prompt = compile_system_prompt
        self._on_finish = on_finish
        self.state = OrchestratorState.STREAMING

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        request: ChatRequest,
        cancel: asyncio.Event | None = None,
    ) -> ChatResult:
        """Run the chat turn to completion.

        Parameters
        ----------
        request:
            The inbound chat request.
        cancel:
            Abort signal.  When set, no further events are pulled, the
            upstream stream is closed and nothing more is emitted.

        Returns
        -------
        ChatResult
        """
        cancel = cancel or asyncio.Event()
        provider = request.provider or self._adapter.provider
        result = ChatResult(conversation_id=request.conversation_id, provider=provider)
        usage = UsageAccountant(self._budget_ratio)

        try:
            model = request.model or default_model(provider, request.tier)
            result.model = model
            await self._run_rounds(request, model, usage, result, cancel)
        except asyncio.CancelledError:
            result.cancelled = True
            self._emitter.close()
            raise
        except ChatError as e:
            await self._fail(result, usage, e)
        except Exception as e:
            _logger.exception("Orchestrator error")
            await self._fail(result, usage, ChatError(ErrorType.UNKNOWN, f"{type(e).__name__}: {e}"))
        return result

    # ------------------------------------------------------------------
    # Round loop
    # ------------------------------------------------------------------

    async def _run_rounds(
        self,
        request: ChatRequest,
        model: str,
        usage: UsageAccountant,
        result: ChatResult,
        cancel: asyncio.Event,
    ) -> None:
        buffer = ConversationTurnBuffer.from_history(request.session_messages, request.message)
        if not len(buffer):
            raise ChatError(ErrorType.BAD_REQUEST, "empty conversation",
                            user_message="No valid messages to send.")

        system = await self._system_content(request)
        system_text = blocks_to_string(system)
        usage.check_budget(model, system_text + buffer.text_for_estimate())

        max_tokens = min(
            _MAX_TOKENS_BY_TIER.get(request.tier, _MAX_TOKENS_BY_TIER["free"]),
            max_output(model),
        )
        self._emitter.log("info", "Chat request started", {
            "provider": result.provider,
            "model": model,
            "messages": len(buffer),
            "tools": len(request.tools),
        })

        follow_ups = 0
        while True:
            self._transition(OrchestratorState.STREAMING)
            vendor_request = self._adapter.normalize_request(LLMRequest(
                messages=buffer.messages,
                model=model,
                system=system,
                tools=request.tools or None,
                max_tokens=max_tokens,
                temperature=self._temperature,
            ))
            usage.begin_round(system_text + buffer.text_for_estimate())
            round_ = await self._stream_round(vendor_request, usage, cancel)
            result.rounds += 1

            if round_.cancelled:
                self._cancelled(result)
                return
            if round_.error is not None:
                raise ChatError(round_.error.error_type, round_.error.message)

            result.text += round_.text

            if not round_.tool_calls:
                if follow_ups > 0 and not round_.text:
                    self._emit_fallback_text(result, usage)
                break

            self._transition(OrchestratorState.TOOL_PENDING)
            if follow_ups >= self._max_follow_ups:
                _logger.warning(
                    "Reached max follow-up rounds (%d); returning partial response",
                    self._max_follow_ups,
                )
                self._emitter.log("warn", "Reached maximum tool rounds, returning partial response", {
                    "rounds": follow_ups,
                    "pendingTools": [c.name for c in round_.tool_calls.ordered()],
                })
                if not result.text:
                    self._emit_fallback_text(result, usage)
                break

            self._transition(OrchestratorState.EXECUTING_TOOLS)
            await self._execute_tools(round_, buffer, request, cancel)
            if cancel.is_set():
                self._cancelled(result)
                return

            self._transition(OrchestratorState.FOLLOW_UP)
            follow_ups += 1
            self._emitter.log("info", f"Follow-up round {follow_ups}", {
                "messages": len(buffer),
            })

        self._transition(OrchestratorState.DONE)
        result.usage = usage.totals()
        self._emitter.done(
            conversation_id=result.conversation_id,
            tokens=result.usage.to_dict(),
            provider=result.provider,
            model=model,
        )
        self._emitter.close()
        await self._finish(result)

    async def _stream_round(
        self,
        vendor_request: VendorRequest,
        usage: UsageAccountant,
        cancel: asyncio.Event,
    ) -> RoundResult:
        round_ = RoundResult()
        stream = self._adapter.open_stream(vendor_request)
        events = stream.__aiter__()
        # A stalled upstream must not outlive the abort signal
        abort = asyncio.ensure_future(cancel.wait())
        pull: asyncio.Future[Any] | None = None
        try:
            while True:
                pull = asyncio.ensure_future(_next_event(events))
                done, _ = await asyncio.wait({pull, abort}, return_when=asyncio.FIRST_COMPLETED)
                if pull not in done or cancel.is_set():
                    round_.cancelled = True
                    break
                event = pull.result()
                pull = None
                if event is _END_OF_STREAM:
                    break

                if isinstance(event, MessageStart):
                    continue

                elif isinstance(event, BlockStart):
                    block = event.block
                    if isinstance(block, ToolUseBlock):
                        round_.tool_calls.start(event.index, block.id, block.name, block.partial_input)
                        self._emitter.log("info", f"Tool requested: {block.name}", {"id": block.id})
                    elif not isinstance(block, TextBlock):
                        raise TypeError(f"Unknown block kind: {block!r}")

                elif isinstance(event, BlockDelta):
                    delta = event.delta
                    if isinstance(delta, TextDelta):
                        if delta.text:
                            round_.text += delta.text
                            usage.add_output(delta.text)
                            self._emitter.token(delta.text)
                    elif isinstance(delta, InputJsonDelta):
                        call = round_.tool_calls.get(event.index)
                        if call is not None:
                            call.append(delta.fragment)
                        else:
                            _logger.debug("Input delta for unknown block %d", event.index)
                    else:
                        raise TypeError(f"Unknown delta kind: {delta!r}")

                elif isinstance(event, BlockStop):
                    call = round_.tool_calls.get(event.index)
                    if call is not None:
                        call.finalize()

                elif isinstance(event, MessageStop):
                    round_.usage = event.usage
                    usage.reconcile(event.usage)
                    break

                elif isinstance(event, ErrorEvent):
                    _logger.warning(
                        "Upstream error (%s): %s", event.error_type.value, event.message,
                    )
                    round_.error = event
                    break

                else:
                    raise TypeError(f"Unknown canonical event: {event!r}")
        finally:
            abort.cancel()
            if pull is not None and not pull.done():
                pull.cancel()
                await asyncio.wait({pull})
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        round_.tool_calls.finalize_all()
        return round_

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _execute_tools(
        self,
        round_: RoundResult,
        buffer: ConversationTurnBuffer,
        request: ChatRequest,
        cancel: asyncio.Event,
    ) -> None:
        preamble = round_.text
        for call in round_.tool_calls.ordered():
            if cancel.is_set():
                return
            self._emitter.log("info", f"Executing tool: {call.name}", {"input": call.input})
            outcome = await self._engine.run(call.name, call.input, on_attempt=self._log_attempt)
            call.status = ToolCallStatus.EXECUTED if outcome.success else ToolCallStatus.FAILED
            buffer.add_tool_exchange(call, outcome, preamble=preamble)
            preamble = ""

            if not outcome.success:
                self._emitter.log("warn", f"Tool failed: {call.name}", {
                    "errorKind": outcome.error_kind.value if outcome.error_kind else None,
                    "attempts": outcome.attempts,
                })
                continue

            self._emitter.log("info", f"Tool completed: {outcome.executed_name}", {
                "chars": len(outcome.output),
                "fallback": outcome.fallback_name,
            })
            try:
                chart = self._extractor.extract_chart(
                    outcome.executed_name,
                    outcome.output,
                    tool_input=outcome.executed_input,
                    hints={"request": request.message},
                )
            except Exception:
                _logger.exception("Chart extraction failed for %s", outcome.executed_name)
                self._emitter.log("warn", "Chart extraction failed", {"tool": outcome.executed_name})
                continue
            if chart is not None:
                self._emitter.chart_data(chart)
            elif outcome.executed_name in TIME_SERIES_TOOLS:
                self._emitter.log("info", "No chart data extracted", {"tool": outcome.executed_name})

    def _log_attempt(self, record: AttemptRecord) -> None:
        outcome = "succeeded" if record.success else "failed"
        self._emitter.log(
            "info" if record.success else "warn",
            f"Tool {record.tool} attempt {record.attempt}/{record.max_attempts} {outcome}",
            {
                "tool": record.tool,
                "attempt": record.attempt,
                "errorKind": record.error_kind.value if record.error_kind else None,
                "fallbackFor": record.fallback_for,
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _system_content(self, request: ChatRequest) -> SystemContent | None:
        if request.system_content is not None:
            return request.system_content
        if self._compile_system_prompt is None:
            return None
        return await _maybe_await(self._compile_system_prompt({
            "conversation_id": request.conversation_id,
            "previous_summaries": list(request.previous_summaries),
            "message": request.message,
        }))

    def _emit_fallback_text(self, result: ChatResult, usage: UsageAccountant) -> None:
        _logger.warning("Round produced no text; sending fallback message")
        result.text += FALLBACK_TEXT
        usage.add_output(FALLBACK_TEXT)
        self._emitter.token(FALLBACK_TEXT)

    def _transition(self, state: OrchestratorState) -> None:
        _logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def _cancelled(self, result: ChatResult) -> None:
        _logger.info("Chat %s cancelled by client", result.conversation_id)
        result.cancelled = True
        self._emitter.close()

    async def _fail(self, result: ChatResult, usage: UsageAccountant, error: ChatError) -> None:
        self._transition(OrchestratorState.FAILED)
        _logger.error("Chat failed (%s): %s", error.error_type.value, error.detail)
        result.error_type = error.error_type
        result.usage = usage.totals()
        self._emitter.error(error.user_message, error.error_type)
        self._emitter.close()
        await self._finish(result)

    async def _finish(self, result: ChatResult) -> None:
        if self._on_finish is None:
            return
        try:
            await _maybe_await(self._on_finish(result))
        except Exception:
            _logger.exception("Persistence hook failed")
