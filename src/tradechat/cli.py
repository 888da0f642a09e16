"""CLI interface for tradechat: ask a question, serve the HTTP API, list models."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from tradechat import __version__
from tradechat.charts.extractor import ResultExtractor
from tradechat.config import ChatConfig, load_config
from tradechat.core.orchestrator import ChatOrchestrator
from tradechat.errors import ConfigError, ToolError
from tradechat.events.emitter import OutboundEmitter, StreamSink
from tradechat.llm.models import MODELS
from tradechat.llm.providers import create_adapter
from tradechat.tools.engine import ToolExecutionEngine
from tradechat.tools.runtime import McpToolRuntime
from tradechat.types import ChatRequest, ChatResult

console = Console()
err_console = Console(stderr=True)

_logger = logging.getLogger(__name__)


class ConsoleSink:
    """Renders outbound NDJSON lines with rich instead of printing them raw."""

    def __init__(self, out: Console, show_logs: bool = False) -> None:
        self._out = out
        self._show_logs = show_logs
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, line: str) -> None:
        event = json.loads(line)
        etype = event.get("type")
        if etype == "token":
            self._out.print(event["chunk"], end="", markup=False, highlight=False)
        elif etype == "log":
            if self._show_logs:
                self._out.print(f"\n[dim]\\[{event['level']}] {event['message']}[/dim]")
        elif etype == "chart_data":
            self._out.print()
            self._out.print(_chart_table(event))
        elif etype == "done":
            tokens = event.get("tokens", {})
            self._out.print(
                f"\n[dim]{event.get('provider')}/{event.get('model')} "
                f"tokens in={tokens.get('input', 0)} out={tokens.get('output', 0)}[/dim]"
            )
        elif etype == "error":
            self._out.print(f"\n[red]{event.get('error')} ({event.get('errorType')})[/red]")

    def close(self) -> None:
        self._closed = True


def _chart_table(event: dict[str, Any], rows: int = 5) -> Table:
    data = event.get("data", [])
    time_range = event.get("timeRange") or {}
    table = Table(title=f"{event.get('symbol')} ({len(data)} candles, {time_range.get('days')} days)")
    for col in ("time", "open", "high", "low", "close", "volume"):
        table.add_column(col, justify="right")
    for point in data[-rows:]:
        table.add_row(*(str(point.get(col, "")) for col in ("time", "open", "high", "low", "close", "volume")))
    return table


async def _ask(
    cfg: ChatConfig,
    message: str,
    provider: str,
    model: str | None,
    tier: str,
    use_tools: bool,
    as_json: bool,
    verbose: bool,
) -> ChatResult:
    adapter = create_adapter(provider, cfg)
    runtime = McpToolRuntime(cfg.tools)
    try:
        tools: list[dict[str, Any]] = []
        if use_tools and cfg.tools.url:
            try:
                tools = await runtime.list_tools()
            except ToolError as e:
                _logger.warning("Tool discovery failed: %s", e.message)

        sink = StreamSink(sys.stdout) if as_json else ConsoleSink(console, show_logs=verbose)
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
        )
        return await orchestrator.run(ChatRequest(
            message=message,
            provider=provider,
            model=model,
            tools=tools,
            tier=tier,
        ))
    finally:
        await adapter.close()
        await runtime.close()


@click.group()
@click.version_option(__version__, prog_name="tradechat")
@click.option("--config", "config_path", type=click.Path(), default=None,
              help="Path to tradechat.yaml")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging and visible log events")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Streaming market-data chat."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        cfg = load_config(config_path)
    except ConfigError as e:
        err_console.print(f"[red]{e}[/red]")
        ctx.exit(1)
        return
    if not verbose:
        logging.getLogger().setLevel(cfg.log_level.upper())
    ctx.obj = {"config": cfg, "verbose": verbose}


@main.command()
@click.argument("message")
@click.option("--provider", default=None, help="anthropic | deepseek")
@click.option("--model", default=None, help="Model id (default: per provider and tier)")
@click.option("--tier", type=click.Choice(["free", "pro"]), default="free")
@click.option("--no-tools", is_flag=True, help="Do not offer market-data tools")
@click.option("--json", "as_json", is_flag=True, help="Print raw NDJSON events")
@click.pass_context
def ask(
    ctx: click.Context,
    message: str,
    provider: str | None,
    model: str | None,
    tier: str,
    no_tools: bool,
    as_json: bool,
) -> None:
    """Ask a single question and stream the answer."""
    cfg: ChatConfig = ctx.obj["config"]
    try:
        result = asyncio.run(_ask(
            cfg, message, provider or cfg.default_provider, model, tier,
            not no_tools, as_json, ctx.obj["verbose"],
        ))
    except ConfigError as e:
        err_console.print(f"[red]{e}[/red]")
        ctx.exit(1)
        return
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Cancelled.[/yellow]")
        ctx.exit(130)
        return
    if result.error_type is not None:
        ctx.exit(2)


@main.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8000, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from tradechat.server import create_app

    cfg: ChatConfig = ctx.obj["config"]
    console.print(f"[green]tradechat {__version__}[/green] on http://{host}:{port}")
    uvicorn.run(create_app(cfg), host=host, port=port, log_level="info")


@main.command()
def models() -> None:
    """List registered models."""
    table = Table(title="Models")
    table.add_column("id")
    table.add_column("provider")
    table.add_column("context", justify="right")
    table.add_column("max output", justify="right")
    table.add_column("tier")
    for spec in MODELS.values():
        table.add_row(spec.id, spec.provider, f"{spec.context_window:,}",
                      str(spec.max_output), spec.tier)
    console.print(table)


if __name__ == "__main__":
    main()
