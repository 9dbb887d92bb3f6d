"""Command-line entry point for Deckhand."""

import asyncio
import sys
from pathlib import Path

import typer
from rich.console import Console

from deckhand import __version__
from deckhand.backend import create_backend
from deckhand.cancellation import CancellationBroker
from deckhand.config import Config, get_config, set_config
from deckhand.conversation import ConversationState
from deckhand.exceptions import ConfigurationError, StoreError
from deckhand.input import ConsoleInput
from deckhand.logging import configure_logging, log
from deckhand.orchestrator import ChatSession
from deckhand.permissions import Agents
from deckhand.store import ConversationStore
from deckhand.tools import create_tool_registry

app = typer.Typer(help="Deckhand - an LLM coding assistant for your terminal")


def _load_config(config: str, model: str) -> Config:
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    set_config(cfg)
    return cfg


async def run_chat(
    initial_input: str | None,
    resume: bool,
    agent: str | None,
    trust_all_tools: bool,
    trust_tools: list[str] | None,
    interactive: bool,
    model_override: bool = False,
) -> int:
    """Run one chat session; returns the process exit code."""
    cfg = get_config()
    cwd = Path.cwd()
    output = Console()

    agents = Agents.from_config(cfg, active=agent, trust_all_tools=trust_all_tools)
    if trust_tools:
        agents.trust_tools(trust_tools)
    registry = create_tool_registry()
    store = ConversationStore(cfg.session.path)

    conversation: ConversationState | None = None
    if resume:
        try:
            conversation = await store.load(cwd, agents, registry)
        except StoreError as e:
            log.warning("Could not resume conversation", cwd=str(cwd), error=str(e))
        if conversation is None:
            output.print("[yellow]No saved conversation for this directory, starting a new one.[/yellow]\n")
    existing = conversation is not None
    if conversation is None:
        conversation = ConversationState(agents, registry, model=cfg.model.model)
    elif model_override or not conversation.model:
        conversation.model = cfg.model.model

    backend = create_backend(cfg)
    broker = CancellationBroker()
    session = ChatSession(
        conversation,
        backend,
        ConsoleInput(output),
        output,
        config=cfg,
        broker=broker,
        store=store,
        initial_input=initial_input,
        interactive=interactive,
        existing_conversation=existing,
        cwd=cwd,
    )

    restore_sigint = broker.install_sigint_handler()
    try:
        await session.spawn()
    finally:
        restore_sigint()
        await backend.close()
        await store.close()

    if not interactive and session.last_error is not None:
        return 1
    return 0


@app.command()
def chat(
    input: str = typer.Argument("", help="First message to send"),
    resume: bool = typer.Option(False, "-r", "--resume", help="Resume the last conversation in this directory"),
    agent: str = typer.Option("", "--agent", help="Tool policy to use"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    trust_all_tools: bool = typer.Option(False, "--trust-all-tools", help="Run every tool without asking"),
    trust_tools: str = typer.Option("", "--trust-tools", help="Comma-separated tools to trust"),
    no_interactive: bool = typer.Option(False, "--no-interactive", help="Answer one request and exit"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start a chat session."""
    cfg = _load_config(config, model)
    if verbose:
        cfg.logging.level = "DEBUG"
    configure_logging()

    initial_input = input or None
    if no_interactive and initial_input is None and not sys.stdin.isatty():
        initial_input = sys.stdin.read().strip() or None
    names = [name.strip() for name in trust_tools.split(",") if name.strip()]

    try:
        code = asyncio.run(
            run_chat(
                initial_input,
                resume=resume,
                agent=agent or None,
                trust_all_tools=trust_all_tools,
                trust_tools=names,
                interactive=not no_interactive,
                model_override=bool(model),
            )
        )
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        log.info("Shutting down...")
        code = 0
    raise typer.Exit(code)


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"Deckhand v{__version__}")


if __name__ == "__main__":
    app()
