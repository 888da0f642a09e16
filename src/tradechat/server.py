"""HTTP surface: a FastAPI app streaming chat turns as NDJSON.

``POST /api/ai/chat`` runs one :class:`ChatOrchestrator` per request and
streams its outbound events, one JSON object per line, until ``done`` or
``error``.  A client disconnect sets the abort signal.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from tradechat import __version__
from tradechat.charts.extractor import ResultExtractor
from tradechat.config import ChatConfig, load_config
from tradechat.core.orchestrator import ChatOrchestrator, PersistenceHook
from tradechat.errors import ConfigError, ToolError
from tradechat.events.emitter import OutboundEmitter, QueueSink
from tradechat.llm.adapter import ProviderAdapter
from tradechat.llm.providers import available_providers, create_adapter
from tradechat.tools.engine import ToolExecutionEngine
from tradechat.tools.runtime import McpToolRuntime
from tradechat.types import ChatRequest, ErrorType

_logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, ChatConfig], ProviderAdapter]
RuntimeFactory = Callable[[ChatConfig], Any]


# ---------------------------------------------------------------------------
# Request model
# ---------------------------------------------------------------------------

class ChatBody(BaseModel):
    """Inbound JSON body of ``POST /api/ai/chat``."""

    message: str = Field(min_length=1)
    conversationId: str | None = None
    sessionMessages: list[dict[str, Any]] = Field(default_factory=list)
    previousSummaries: list[str] = Field(default_factory=list)
    provider: str = "anthropic"
    model: str | None = None
    systemContent: Union[str, list[dict[str, Any]], None] = None
    tools: list[dict[str, Any]] | None = None
    tier: str = "free"

    def to_request(self, tools: list[dict[str, Any]]) -> ChatRequest:
        return ChatRequest(
            message=self.message,
            provider=self.provider,
            model=self.model,
            conversation_id=self.conversationId,
            session_messages=self.sessionMessages,
            previous_summaries=self.previousSummaries,
            system_content=self.systemContent,
            tools=tools,
            tier=self.tier,
        )


def _default_runtime(config: ChatConfig) -> McpToolRuntime:
    return McpToolRuntime(config.tools)


async def _discover_tools(runtime: Any, config: ChatConfig) -> list[dict[str, Any]]:
    if not config.tools.url or not hasattr(runtime, "list_tools"):
        return []
    try:
        return await runtime.list_tools()
    except ToolError as e:
        _logger.warning("Tool discovery failed, continuing without tools: %s", e.message)
        return []


async def _close(resource: Any) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception:
        _logger.exception("Error closing %s", type(resource).__name__)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: ChatConfig | None = None,
    adapter_factory: AdapterFactory = create_adapter,
    runtime_factory: RuntimeFactory = _default_runtime,
    on_finish: PersistenceHook | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    Parameters
    ----------
    config:
        Loaded configuration; discovered via :func:`load_config` if *None*.
    adapter_factory / runtime_factory:
        Seams for building the provider adapter and tool runtime.
    on_finish:
        Persistence hook passed to every orchestrator.
    """
    cfg = config or load_config()
    app = FastAPI(title="tradechat", version=__version__)
    _tasks: set[asyncio.Task[None]] = set()

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request. Please check your input and try again.",
                "errorType": ErrorType.BAD_REQUEST.value,
            },
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "providers": available_providers(cfg)}

    @app.post("/api/ai/chat", response_model=None)
    async def chat(body: ChatBody) -> StreamingResponse | JSONResponse:
        try:
            adapter = adapter_factory(body.provider, cfg)
        except ConfigError as e:
            _logger.error("Provider unavailable: %s", e)
            return JSONResponse(
                status_code=503,
                content={
                    "error": f"{body.provider} provider is not configured.",
                    "errorType": ErrorType.SERVER_ERROR.value,
                },
            )

        runtime = runtime_factory(cfg)
        tools = body.tools if body.tools is not None else await _discover_tools(runtime, cfg)

        sink = QueueSink()
        cancel = asyncio.Event()
        orchestrator = ChatOrchestrator(
            adapter,
            ToolExecutionEngine(
                runtime,
                max_retries=cfg.tools.max_retries,
                backoff_base=cfg.tools.backoff_base,
                backoff_cap=cfg.tools.backoff_cap,
            ),
            OutboundEmitter(sink),
            extractor=ResultExtractor(cfg.chart_default_points),
            max_follow_up_rounds=cfg.max_follow_up_rounds,
            context_budget_ratio=cfg.context_budget_ratio,
            temperature=cfg.temperature,
            on_finish=on_finish,
        )

        async def _run() -> None:
            try:
                await orchestrator.run(body.to_request(tools), cancel)
            finally:
                await _close(adapter)
                await _close(runtime)

        task = asyncio.create_task(_run())
        _tasks.add(task)
        task.add_done_callback(_tasks.discard)

        async def _lines():
            completed = False
            try:
                async for line in sink.aiter_lines():
                    yield line
                completed = True
            finally:
                if not completed and not task.done():
                    _logger.info("Client disconnected; aborting chat %s", body.conversationId)
                    cancel.set()
                    sink.detach()
                    task.cancel()

        return StreamingResponse(_lines(), media_type="application/x-ndjson")

    return app
