"""Typer CLI for toolloop."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.text import Text

from toolloop.config import CONFIG_FILENAME, AgentConfig, load_agent_config
from toolloop.errors import AgentError

console = Console()
app = typer.Typer(
    name="toolloop",
    help="Tool-calling agent loop with middleware, resilience and memory compaction.",
    add_completion=False,
    no_args_is_help=True,
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _build_loop(config: AgentConfig, cwd: str):
    from toolloop.agent.loop import AgentExecutionLoop
    from toolloop.backends.langchain import LangChainBackend
    from toolloop.persistence import JsonlTurnSink
    from toolloop.pipeline.middleware import LoggingStage, MiddlewarePipeline
    from toolloop.resilience.policy import ResilienceRegistry
    from toolloop.telemetry import LoggingTelemetry
    from toolloop.tools.builtins import create_default_registry

    telemetry = LoggingTelemetry()
    return AgentExecutionLoop(
        backend=LangChainBackend.from_model_name(config.model_name, config.temperature or 0.0),
        tools=create_default_registry(discover=True),
        config=config,
        pipeline=MiddlewarePipeline([LoggingStage(logging.DEBUG)]),
        telemetry=telemetry,
        turn_sink=JsonlTurnSink(Path(cwd) / ".toolloop" / "turns.jsonl"),
        resilience=ResilienceRegistry(config.resilience, telemetry),
    )


async def _run_once(loop, prompt: str) -> None:
    response = await loop.run(prompt)
    console.print(
        Panel(
            response.content or "[dim](empty response)[/dim]",
            title=f"toolloop · {response.iterations} iteration(s)",
            subtitle=f"{response.usage.total_tokens} tokens · {len(response.tool_results)} tool call(s)",
            border_style="green",
        )
    )


async def _stream_once(loop, prompt: str) -> None:
    from toolloop.agent.events import EventKind

    async for event in loop.stream(prompt):
        if event.kind == EventKind.CONTENT:
            console.print(event.payload["delta"], end="")
        elif event.kind == EventKind.TOOL_CALL:
            tc = event.payload["tool_call"]
            console.print(f"\n[cyan]→ {tc.name}[/cyan] [dim]{tc.arguments}[/dim]")
        elif event.kind == EventKind.TOOL_RESULT:
            result = event.payload["tool_result"]
            style = "red" if result.error else "green"
            console.print(f"[{style}]← {result.to_content()[:200]}[/{style}]")
        elif event.kind == EventKind.INTERRUPTED:
            console.print("\n[yellow]Interrupted.[/yellow]")
        elif event.kind == EventKind.DONE:
            console.print()


@app.command()
def run(
    prompt: str = typer.Argument(..., help="What to ask the agent"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Directory holding .toolloop.yml"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model name (LiteLLM format)"),
    max_iter: int | None = typer.Option(None, "--max-iter", "-n", help="Maximum loop iterations"),
    system: str | None = typer.Option(None, "--system", "-s", help="System prompt"),
    stream: bool = typer.Option(False, "--stream/--no-stream", help="Stream tokens as they arrive"),
    parallel_tools: bool | None = typer.Option(
        None, "--parallel-tools/--sequential-tools", help="Run parallel-safe tools concurrently"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Run one prompt through the agent loop."""
    from dotenv import load_dotenv

    load_dotenv()
    _setup_logging(verbose)

    resolved_cwd = str(Path(cwd).resolve())
    try:
        config = load_agent_config(
            resolved_cwd,
            model=model,
            max_iterations=max_iter,
            system_prompt=system,
            parallel_tools=parallel_tools,
        )
    except AgentError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=2) from e

    loop = _build_loop(config, resolved_cwd)
    try:
        asyncio.run(_stream_once(loop, prompt) if stream else _run_once(loop, prompt))
    except AgentError as e:
        console.print(f"[red]{type(e).__name__}:[/red] {e}")
        raise typer.Exit(code=1) from e


@app.command()
def init(
    cwd: str = typer.Option(".", "--cwd", "-C", help="Project directory"),
    model: str = typer.Option("gpt-4o-mini", "--model", "-m", help="Model name (LiteLLM format)"),
    max_iter: int = typer.Option(10, "--max-iter", "-n", help="Maximum loop iterations"),
    strategy: str = typer.Option("sliding_window", "--strategy", help="Compaction strategy"),
) -> None:
    """Scaffold a .toolloop.yml config file."""
    import yaml

    config = {
        "model": model,
        "max_iterations": max_iter,
        "compaction": {"strategy": strategy, "max_tokens": 8000, "reserve_tokens": 2000},
        "resilience": {
            "retry": {"max_retries": 3, "base_delay": 1.0},
            "circuit_breaker": {"failure_threshold": 5, "reset_timeout": 30.0},
            "bulkhead": {"max_concurrent": 10, "max_queue": 100},
        },
    }
    config_path = Path(cwd).resolve() / CONFIG_FILENAME
    config_path.write_text(yaml.dump(config, default_flow_style=False, sort_keys=False))

    console.print(
        Panel(
            Text.from_markup(
                f"[bold green]✓ Created[/bold green] [bold]{config_path}[/bold]\n\n"
                f"  model:          [cyan]{model}[/cyan]\n"
                f"  max_iterations: [cyan]{max_iter}[/cyan]\n"
                f"  compaction:     [cyan]{strategy}[/cyan]\n\n"
                "Run [bold]toolloop run \"...\"[/bold] to start the agent."
            ),
            border_style="green",
            title="toolloop init",
        )
    )


@app.command(name="config")
def show_config(
    cwd: str = typer.Option(".", "--cwd", "-C", help="Directory holding .toolloop.yml"),
) -> None:
    """Show the effective configuration."""
    from rich.table import Table

    config = load_agent_config(str(Path(cwd).resolve()))
    table = Table(title="Effective configuration", show_lines=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    rows = [
        ("model", config.model_name),
        ("max_iterations", config.max_iterations),
        ("tool_timeout", f"{config.tool_timeout}s"),
        ("call_timeout", f"{config.call_timeout}s"),
        ("parallel_tools", config.parallel_tools),
        ("compaction.strategy", config.compaction.strategy),
        ("compaction.budget", config.compaction.budget),
        ("retry.max_retries", config.resilience.retry.max_retries),
        ("circuit.failure_threshold", config.resilience.circuit_breaker.failure_threshold),
        ("bulkhead.max_concurrent", config.resilience.bulkhead.max_concurrent),
    ]
    for key, value in rows:
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def tools() -> None:
    """List the tools available to the agent."""
    from rich.table import Table

    from toolloop.tools.builtins import create_default_registry

    registry = create_default_registry(discover=True)
    table = Table(title="Tools", show_lines=True)
    table.add_column("Name", style="cyan")
    table.add_column("Parallel-safe")
    table.add_column("Description")
    for name in registry.list_names():
        tool = registry.get(name)
        table.add_row(name, "yes" if tool.parallel_safe else "no", tool.get_schema().description)
    console.print(table)


if __name__ == "__main__":
    app()
