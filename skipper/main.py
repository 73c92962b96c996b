"""Command-line entry point for Skipper."""

import asyncio
import signal
import uuid
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from skipper import __version__
from skipper.agent import Agent
from skipper.cli import EventRenderer, PermissionPrompter
from skipper.config import Config, set_config
from skipper.exceptions import NothingToCompactError
from skipper.llm import LLMProvider, create_provider
from skipper.logging import configure_logging, log
from skipper.session import SessionStore
from skipper.title import TitleGenerator, is_default_title
from skipper.tools import ToolRegistry, session_tools

app = typer.Typer(help="Skipper - a tool-calling coding assistant")
console = Console()


def _load_config(config: str, model: str, verbose: bool, allow_all: bool = False) -> Config:
    cfg = Config.from_yaml(Path(config)) if config else Config.load()
    if verbose:
        cfg.logging.level = "DEBUG"
    if model:
        cfg.model.model = model
    if allow_all:
        cfg.permissions.allow_all = True
    set_config(cfg)
    configure_logging(cfg.logging)
    return cfg


def _create_provider(cfg: Config) -> LLMProvider:
    return create_provider(
        provider=cfg.model.provider,
        model=cfg.model.model,
        api_key=cfg.model.api_key or None,
        base_url=cfg.model.base_url or None,
        temperature=cfg.model.temperature,
        max_tokens=cfg.model.max_tokens,
    )


def _build_agent(cfg: Config, provider: LLMProvider, store: SessionStore, titled: bool) -> Agent:
    title_generator = None
    if cfg.title.enabled and not titled:
        title_generator = TitleGenerator(provider, cfg.model.model, store=store, config=cfg.title)
    return Agent(
        provider,
        ToolRegistry(session_tools()),
        config=cfg,
        store=store,
        title_generator=title_generator,
        permission_callback=PermissionPrompter(console),
    )


async def _run_prompt(cfg: Config, text: str, session_id: str) -> bool:
    store = SessionStore(cfg.session.path)
    provider = _create_provider(cfg)
    try:
        session = await store.get_or_create_session(
            session_id or str(uuid.uuid4()),
            working_directory=str(cfg.resolved_working_directory()),
        )
        messages = await store.load_messages(session.id)
        agent = _build_agent(cfg, provider, store, titled=not is_default_title(session.title))
        agent.open_session(session.id, messages)

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, agent.abort, session.id)
        except NotImplementedError:
            log.debug("Signal handlers unavailable; Ctrl-C will not abort the turn gracefully")

        final = await agent.prompt(session.id, text, on_event=EventRenderer(console))
        await agent.wait_for_background_tasks()
        console.print(f"[dim]session {session.id}[/dim]")
        return final is not None
    finally:
        await store.close()
        await provider.close()


async def _run_compact(cfg: Config, session_id: str) -> None:
    store = SessionStore(cfg.session.path)
    provider = _create_provider(cfg)
    try:
        session = await store.load_session(session_id)
        if session is None:
            raise typer.BadParameter(f"Session not found: {session_id}")
        agent = _build_agent(cfg, provider, store, titled=True)
        agent.open_session(session.id, await store.load_messages(session.id))
        try:
            result = await agent.run_compaction(session.id, on_event=EventRenderer(console))
        except NothingToCompactError as e:
            console.print(f"[yellow]{e}[/yellow]")
            raise typer.Exit(code=1)
        if result is None:
            raise typer.Exit(code=1)
    finally:
        await store.close()
        await provider.close()


async def _list_sessions(cfg: Config, limit: int) -> None:
    store = SessionStore(cfg.session.path)
    try:
        sessions = await store.list_sessions(limit=limit)
    finally:
        await store.close()

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Updated", style="dim")
    for session in sessions:
        table.add_row(session.id, session.title, session.updated_at)
    console.print(table)


@app.command()
def prompt(
    text: str = typer.Argument(..., help="Instruction for the assistant"),
    session: str = typer.Option("", "-s", "--session", help="Session ID to continue"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    yes: bool = typer.Option(False, "-y", "--yes", help="Run every tool without asking"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one turn, streaming the answer."""
    cfg = _load_config(config, model, verbose, allow_all=yes)
    ok = asyncio.run(_run_prompt(cfg, text, session))
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def sessions(
    limit: int = typer.Option(10, "-n", "--limit", help="Number of sessions to show"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List recent sessions."""
    cfg = _load_config(config, "", False)
    asyncio.run(_list_sessions(cfg, limit))


@app.command()
def compact(
    session: str = typer.Argument(..., help="Session ID to compact"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Summarize the middle of a stored session now."""
    cfg = _load_config(config, "", verbose)
    asyncio.run(_run_compact(cfg, session))


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"Skipper v{__version__}")


if __name__ == "__main__":
    app()
