# cli.py
# Entry point. Config, logging and wiring only — no plan logic lives here.

import asyncio
import logging
from pathlib import Path
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Prompt

from shell_planner import display
from shell_planner.bootstrap import BootstrapError, Platform, SystemSetup
from shell_planner.config import ConfigError, load_config
from shell_planner.executor import CommandExecutor
from shell_planner.harness import Session
from shell_planner.llm import LLMError, OllamaClient

app = typer.Typer(
    name="shell-planner",
    help="Turn a natural-language task into shell commands and run them.",
    no_args_is_help=True,
)

EXIT_WORDS = {"exit", "quit"}


def _setup_logging(debug: bool) -> None:
    package_logger = logging.getLogger("shell_planner")
    package_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    package_logger.handlers.clear()
    package_logger.addHandler(
        RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    )
    package_logger.propagate = False


async def _start_session(config_path: Path | None, debug: bool) -> tuple[Session, CommandExecutor]:
    config, config_dir = load_config(config_path)
    _setup_logging(debug or config.debug)

    setup = SystemSetup()
    try:
        await setup.ensure_ollama()
    except BootstrapError as exc:
        if setup.platform is Platform.WINDOWS:
            raise BootstrapError(
                f"Ollama setup failed: {exc}\n"
                "On Windows, please install Ollama manually from https://ollama.com"
            ) from exc
        raise BootstrapError(f"Ollama setup failed: {exc}") from exc

    os_name = str(setup.platform)
    client = OllamaClient(
        config.ollama_host,
        config.model.name,
        config_dir,
        temperature=config.model.temperature,
        max_tokens=config.model.max_tokens,
    )
    display.banner(client.model, os_name)
    await client.validate_model(os_name)

    executor = CommandExecutor(setup, timeout=config.execution.command_timeout)
    session = Session(
        client,
        executor,
        os_name=os_name,
        qwen_formatting=config.advanced.qwen_formatting,
    )
    return session, executor


async def _run_query(config_path: Path | None, debug: bool, query: str, output: Path | None) -> None:
    session, executor = await _start_session(config_path, debug)
    try:
        response = await session.process_query(query)
    finally:
        executor.close()

    if output is not None:
        session.save_output(response, output)


async def _interactive(config_path: Path | None, debug: bool) -> None:
    session, executor = await _start_session(config_path, debug)
    try:
        while True:
            try:
                query = await asyncio.to_thread(Prompt.ask, "[bold cyan]task[/bold cyan]")
            except EOFError:
                break
            query = query.strip()
            if not query:
                continue
            if query.lower() in EXIT_WORDS:
                break
            await session.process_query(query)
    finally:
        executor.close()


def _guarded(coro) -> None:
    """Run ``coro``; host/bootstrap failures halt with exit status 1."""
    try:
        asyncio.run(coro)
    except (ConfigError, BootstrapError, LLMError) as exc:
        display.halt(str(exc))
        raise typer.Exit(code=1) from exc


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.toml"),
    debug: bool = typer.Option(False, "--debug", help="Verbose diagnostic logging"),
) -> None:
    ctx.obj = {"config": config, "debug": debug}


@app.command()
def run(
    ctx: typer.Context,
    query: str = typer.Argument(help="Task to plan and execute"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Save the report to this file"),
) -> None:
    """Execute a query."""
    _guarded(_run_query(ctx.obj["config"], ctx.obj["debug"], query, output))


@app.command()
def interactive(ctx: typer.Context) -> None:
    """Start interactive session."""
    _guarded(_interactive(ctx.obj["config"], ctx.obj["debug"]))


if __name__ == "__main__":
    app()
