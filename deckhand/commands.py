"""Slash commands available at the chat prompt."""

from __future__ import annotations

import shlex
from typing import TYPE_CHECKING

from rich.markup import escape
from rich.table import Table

from deckhand.compaction import CompactStrategy
from deckhand.exceptions import ChatError
from deckhand.logging import get_logger
from deckhand.permissions import PermissionEvalResult, normalize_tool_name
from deckhand.state import ChatState, CompactHistory, Exit, PromptUser

if TYPE_CHECKING:
    from deckhand.orchestrator import ChatSession

log = get_logger(__name__)

HELP_TEXT = """
Commands:
  /help                 - Show this help message
  /clear                - Clear the conversation history
  /compact [prompt]     - Summarize the conversation to free up context
      --show-summary            Print the summary afterwards
      --truncate-large-messages Truncate long messages before summarizing
      --max-message-length N    Truncation limit (implies truncation)
  /tools                - Show tool permissions
  /tools trust NAME...  - Trust tools for this session
  /tools untrust NAME...- Ask again before using tools
  /tools trust-all      - Trust every tool for this session
  /tools reset          - Restore the configured tool permissions
  /model                - Select the model for the session
  /usage                - Show context window usage
  /quit, /exit          - Leave the chat

Other input:
  !COMMAND              - Run a shell command without involving the model
  @NAME [ARGS]          - Send a configured prompt template
"""

EXIT_WORDS = ("exit", "quit")


def parse_command(line: str) -> list[str]:
    """Split a slash command line into words."""
    try:
        args = shlex.split(line.strip().lstrip("/"))
    except ValueError as e:
        raise ChatError(f"Could not parse command: {e}") from e
    if not args:
        raise ChatError("Empty command")
    return args


async def execute_command(session: ChatSession, line: str) -> ChatState:
    """Run one slash command and return the state to continue with.

    Raises:
        ChatError if the command is unknown or its arguments are invalid
    """
    args = parse_command(line)
    command = args[0].lower()
    rest = args[1:]
    subcommand = rest[0].lower() if rest else None
    log.info("Slash command", command=command, subcommand=subcommand)

    try:
        state = await _dispatch(session, command, rest)
    except ChatError as e:
        session.telemetry.record_slash_command(command, subcommand, False, str(e))
        raise
    session.telemetry.record_slash_command(command, subcommand, True)
    return state


async def _dispatch(session: ChatSession, command: str, args: list[str]) -> ChatState:
    if command in EXIT_WORDS or command == "q":
        return Exit()
    elif command == "clear":
        return _clear(session)
    elif command in ("help", "h", "?"):
        session.output.print(HELP_TEXT, markup=False, highlight=False)
        return PromptUser(skip_printing_tools=True)
    elif command == "compact":
        return _compact(args)
    elif command == "tools":
        return _tools(session, args)
    elif command == "model":
        model_id = await select_model(session)
        if model_id is not None:
            session.conversation.model = model_id
            session.output.print(f"\n[green]Using {escape(_model_label(session, model_id))}[/green]\n")
        return PromptUser(skip_printing_tools=True)
    elif command == "usage":
        _usage(session)
        return PromptUser(skip_printing_tools=True)
    raise ChatError(f"Unknown command: /{command}. Type /help for the list of commands.")


def _clear(session: ChatSession) -> ChatState:
    session.conversation.clear(preserve_summary=False)
    session.tool_uses = []
    session.pending_tool_index = None
    session.output.print("\n[green]Conversation history cleared.[/green]\n")
    return PromptUser(skip_printing_tools=True)


def _compact(args: list[str]) -> ChatState:
    show_summary = False
    truncate = False
    max_length: int | None = None
    words: list[str] = []

    remaining = list(args)
    while remaining:
        arg = remaining.pop(0)
        if arg in ("--show-summary", "--summary"):
            show_summary = True
        elif arg == "--truncate-large-messages":
            truncate = True
        elif arg == "--max-message-length":
            if not remaining:
                raise ChatError("--max-message-length requires a value")
            value = remaining.pop(0)
            try:
                max_length = int(value)
            except ValueError as e:
                raise ChatError(f"Invalid message length: {value}") from e
            if max_length <= 0:
                raise ChatError("--max-message-length must be positive")
            truncate = True
        else:
            words.append(arg)

    strategy = CompactStrategy()
    if truncate:
        strategy = CompactStrategy(
            truncate_large_messages=True,
            max_message_length=max_length or CompactStrategy().max_message_length,
        )
    prompt = " ".join(words).strip() or None
    return CompactHistory(prompt=prompt, show_summary=show_summary, strategy=strategy)


def _tools(session: ChatSession, args: list[str]) -> ChatState:
    agents = session.conversation.agents
    registry = session.conversation.tool_registry

    if not args:
        _print_tools(session)
        return PromptUser(skip_printing_tools=True)

    action = args[0].lower()
    names = args[1:]
    if action in ("trust", "untrust"):
        if not names:
            raise ChatError(f"Usage: /tools {action} NAME...")
        unknown = [name for name in names if not registry.has_tool(name)]
        if unknown:
            raise ChatError(f"Unknown tool(s): {', '.join(unknown)}")
        normalized = [normalize_tool_name(name) for name in names]
        if action == "trust":
            agents.trust_tools(normalized)
            session.output.print(f"\n[green]Tools {', '.join(normalized)} are now trusted.[/green]\n")
        else:
            agents.untrust_tools(normalized)
            session.output.print(
                f"\n[green]Tools {', '.join(normalized)} will ask for confirmation before use.[/green]\n"
            )
    elif action == "trust-all":
        agents.trust_all()
        session.output.print(
            "\n[yellow]All tools are now trusted. Deckhand will run them without asking.[/yellow]\n"
        )
    elif action == "reset":
        agents.reset_tools()
        session.output.print("\n[green]Reset tool permissions to the configured defaults.[/green]\n")
    else:
        raise ChatError(f"Unknown /tools action: {action}")
    return PromptUser(skip_printing_tools=True)


def _print_tools(session: ChatSession) -> None:
    agents = session.conversation.agents
    policy = agents.get_active()
    registry = session.conversation.tool_registry

    table = Table(title=f"Tools (agent: {agents.active})", show_header=True, header_style="bold")
    table.add_column("Tool")
    table.add_column("Permission")
    for name in registry.list_tools():
        tool_cls = registry.get_tool_class(name)
        if policy.is_denied(name):
            permission = f"[red]{PermissionEvalResult.DENY.value}[/red]"
        elif policy.is_allowed(name) or agents.trust_all_tools:
            permission = "[green]trusted[/green]"
        elif tool_cls is not None and tool_cls.read_only:
            permission = "[green]trusted (read-only)[/green]"
        else:
            permission = "[dim]per-request[/dim]"
        table.add_row(name, permission)
    session.output.print(table)


def _usage(session: ChatSession) -> None:
    max_chars = session.config.context.max_chars
    used = session.conversation.history_char_count()
    ratio = used / max_chars if max_chars else 0.0
    session.output.print(
        f"\nContext window usage: {used:,} / {max_chars:,} characters ({ratio:.1%})"
    )
    if ratio >= session.config.context.warning_ratio:
        session.output.print(
            "[yellow]The conversation is close to the context limit. "
            "Use /compact to summarize it or /clear to start over.[/yellow]"
        )
    session.output.print()


def _model_label(session: ChatSession, model_id: str) -> str:
    option = session.config.model_option(model_id)
    return option.name if option else model_id


async def select_model(session: ChatSession) -> str | None:
    """Offer the configured models; returns the chosen model id or None."""
    options = session.config.model.options
    if not options:
        session.output.print("[yellow]No models are configured.[/yellow]")
        return None

    session.output.print()
    for index, option in enumerate(options, start=1):
        active = " [green](active)[/green]" if option.model_id == session.conversation.model else ""
        session.output.print(f"  {index}. {escape(option.name)}{active}")
    line = await session.input_source.read_line("Select a model (number or name, empty to cancel): ")
    choice = (line or "").strip()
    if not choice:
        return None

    if choice.isdigit():
        index = int(choice) - 1
        if 0 <= index < len(options):
            return options[index].model_id
    for option in options:
        if choice in (option.name, option.model_id):
            return option.model_id
    session.output.print(f"[red]Unknown model: {escape(choice)}[/red]")
    return None
