"""The chat session: a state machine driving one conversation turn at a time."""

from __future__ import annotations

import asyncio
import shlex
import time
from collections.abc import Awaitable
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape

from deckhand.backend import Backend
from deckhand.cancellation import CANCEL_GRACE_SECONDS, CancellationBroker, RequestMetadataSlot
from deckhand.commands import execute_command, select_model
from deckhand.compaction import CompactionEngine, CompactRetry, CompactStrategy
from deckhand.config import Config, get_config
from deckhand.conversation import (
    AssistantMessage,
    ConversationSnapshot,
    ConversationState,
    RequestMetadata,
    ToolUse,
    ToolUseResult,
)
from deckhand.exceptions import (
    BackendError,
    ChatError,
    CompactHistoryFailure,
    ContextWindowOverflowError,
    ModelOverloadedError,
    MonthlyLimitReachedError,
    NonInteractiveToolApproval,
    PromptTemplateError,
    QuotaExceededError,
    RecvError,
    StoreError,
    StreamTimeoutError,
    TruncatedToolUseError,
    TurnInterrupted,
    error_reason,
)
from deckhand.input import InputSource
from deckhand.logging import get_logger
from deckhand.permissions import DEFAULT_AGENT_NAME, PermissionEvalResult
from deckhand.state import (
    ChatState,
    CompactHistory,
    ExecuteTools,
    Exit,
    HandleInput,
    HandleResponseStream,
    PromptUser,
    RetryModelOverload,
    ValidateTools,
)
from deckhand.stream import Renderer, StreamConsumer
from deckhand.telemetry import TelemetryRecorder
from deckhand.tool_pipeline import QueuedTool, ToolPipeline
from deckhand.tools.registry import ToolContext

if TYPE_CHECKING:
    from deckhand.store import ConversationStore

log = get_logger(__name__)

WELCOME_TEXT = (
    "[bold]Deckhand[/bold] is ready to help with your code.\n"
    "Type [green]/help[/green] for commands, [green]!cmd[/green] to run a shell command "
    "and [green]/quit[/green] to leave."
)
RESUME_TEXT = "[bold]Picking up where we left off...[/bold]"
TRUST_ALL_TEXT = (
    "[yellow]All tools are now trusted ([red]![/red]). "
    "Deckhand will execute tools without asking for confirmation.[/yellow]"
)
TOOL_CONFIRM_TEXT = (
    "\n[dim]Allow this action? Use '[green]t[/green]' to trust (always allow) this tool for the session. "
    "[[green]y[/green]/[green]n[/green]/[green]t[/green]]:[/dim]\n"
)

DENY_TOOL_TEXT = "I deny this tool request. Ask a follow up question clarifying the expected action"
INTERRUPTED_TOOL_TEXT = "The user interrupted the tool execution."
INTERRUPTED_ASSISTANT_TEXT = "Tool uses were interrupted, waiting for the next user prompt"
RESPONSE_TIMEOUT_CONTENT = "Response timed out - message took too long to generate"
SPLIT_WORK_TEXT = "You took too long to respond - try to split up the work into smaller steps."
TOOL_TOO_LARGE_TEXT = (
    "The generated tool was too large, try again but this time split up the work between multiple tool uses"
)
QUOTA_TEXT = "Request quota exceeded. Please wait a moment and try again."
SUMMARY_BORDER_WIDTH = 80


def _rejected_tool_text(name: str) -> str:
    return f"Tool use with {name} was rejected because the arguments supplied were forbidden"


def _next_month_start(today: date) -> date:
    if today.month == 12:
        return date(today.year + 1, 1, 1)
    return date(today.year, today.month + 1, 1)


class ChatSession:
    """Drives a conversation through the chat states until the user exits.

    The session holds exactly one current state. ``next()`` takes it, runs its
    handler and installs whatever state the handler returns. Handlers that can
    block are raced against the session's cancellation broker; when the broker
    wins the turn ends as interrupted. Any error is classified, reported and
    followed by turn cleanup so the loop always lands back on ``PromptUser``.
    """

    def __init__(
        self,
        conversation: ConversationState,
        backend: Backend,
        input_source: InputSource,
        output: Console,
        config: Config | None = None,
        broker: CancellationBroker | None = None,
        telemetry: TelemetryRecorder | None = None,
        store: ConversationStore | None = None,
        initial_input: str | None = None,
        interactive: bool = True,
        existing_conversation: bool = False,
        cwd: Path | None = None,
    ):
        self.conversation = conversation
        self.backend = backend
        self.input_source = input_source
        self.output = output
        self.config = config or get_config()
        self.broker = broker or CancellationBroker()
        self.telemetry = telemetry or TelemetryRecorder()
        self.store = store
        self.initial_input = initial_input
        self.interactive = interactive
        self.existing_conversation = existing_conversation
        self.cwd = cwd or Path.cwd()

        self.tool_uses: list[QueuedTool] = []
        self.pending_tool_index: int | None = None
        self.tool_turn_start_time: float | None = None
        self.user_turn_request_metadata: list[RequestMetadata] = []
        self.last_error: BaseException | None = None

        self.tool_context = ToolContext(
            cwd=self.cwd,
            config=self.config,
            confirm=self._confirm,
            interactive=interactive,
        )
        self.pipeline = ToolPipeline(
            conversation.tool_registry,
            self.tool_context,
            output,
            telemetry=self.telemetry,
            conversation_id=conversation.conversation_id,
        )
        self.consumer = StreamConsumer(idle_timeout=self.config.chat.response_timeout)
        self.compaction = CompactionEngine(backend, truncated_length=self.config.context.compact_max_message_length)

        self._state: ChatState | None = PromptUser()

    @property
    def state(self) -> ChatState | None:
        return self._state

    # Loop

    async def spawn(self) -> None:
        """Greet the user and run states until ``Exit``."""
        self._print_greeting()

        if self.initial_input is not None:
            self._state = HandleInput(input=self.initial_input)
            self.initial_input = None

        while not isinstance(self._state, Exit):
            await self.next()
            if isinstance(self._state, (PromptUser, Exit)):
                await self._save_conversation()

    async def next(self) -> None:
        """Evaluate the current state once and install its successor."""
        state = self._state
        if state is None:
            raise RuntimeError("Chat state must always be set")
        self._state = None

        try:
            if isinstance(state, Exit):
                self._state = state
                return
            elif isinstance(state, PromptUser):
                if not self.interactive:
                    if not self.tool_uses:
                        self._state = Exit()
                        return
                    raise NonInteractiveToolApproval()
                next_state = await self.prompt_user(state.skip_printing_tools)
            elif isinstance(state, HandleInput):
                pending = list(self.tool_uses)
                next_state = await self._race(self.handle_input(state.input), tool_uses=pending)
            elif isinstance(state, ValidateTools):
                next_state = await self._race(self.validate_tools(list(state.tool_uses)))
            elif isinstance(state, ExecuteTools):
                pending = list(self.tool_uses)
                next_state = await self._race(self.execute_tools(), tool_uses=pending)
            elif isinstance(state, HandleResponseStream):
                slot = RequestMetadataSlot()
                next_state = await self._race(
                    self.handle_response(state.conversation_snapshot, slot),
                    metadata_slot=slot,
                )
            elif isinstance(state, CompactHistory):
                slot = RequestMetadataSlot()
                pending = list(self.tool_uses)
                next_state = await self._race(
                    self.compact_history(state.prompt, state.show_summary, state.strategy, slot),
                    tool_uses=pending,
                    metadata_slot=slot,
                )
            elif isinstance(state, RetryModelOverload):
                next_state = await self._race(self.retry_model_overload())
            else:
                raise ChatError(f"Unknown chat state: {state!r}")
        except Exception as e:
            await self._handle_error(e)
            return

        self._state = next_state

    async def _race(
        self,
        work: Awaitable[ChatState],
        tool_uses: list[QueuedTool] | None = None,
        metadata_slot: RequestMetadataSlot | None = None,
    ) -> ChatState:
        """Run a handler against the cancellation broker.

        Raises:
            TurnInterrupted if the broker fired first
        """
        result, cancelled = await self.broker.race(work)
        if not cancelled:
            return result

        if metadata_slot is not None:
            # Let the aborted request publish what it observed.
            await asyncio.sleep(CANCEL_GRACE_SECONDS)
            metadata = metadata_slot.take()
            if metadata is not None:
                self.user_turn_request_metadata.append(metadata)
        raise TurnInterrupted(tool_uses or None)

    # States

    async def prompt_user(self, skip_printing_tools: bool) -> ChatState:
        if self.pending_tool_index is None:
            self._display_char_warnings()
        elif not skip_printing_tools:
            self.output.print(TOOL_CONFIRM_TEXT)

        while True:
            line = await self.input_source.read_line(self._prompt_text())
            if line is None:
                return Exit()
            if line.strip():
                break

        self.conversation.append_user_transcript(line)
        return HandleInput(input=line)

    async def handle_input(self, user_input: str) -> ChatState:
        """Dispatch one line of input by its shape."""
        self.output.print()
        text = user_input.strip()

        if text.startswith("/") and not self._references_file(text):
            try:
                return await execute_command(self, text)
            except ChatError as e:
                self.output.print(f"\n[red]Failed to execute command: {escape(str(e))}[/red]\n")
                return PromptUser()

        if text.startswith("@"):
            return self._send_chat(self._expand_prompt_template(text[1:]))

        if text.startswith("!"):
            await self._run_shell_escape(text[1:])
            return PromptUser()

        if self.pending_tool_index is not None and text in ("y", "Y", "t", "T"):
            queued = self.tool_uses[self.pending_tool_index]
            if text in ("t", "T"):
                self.conversation.agents.trust_tools([queued.tool.qualified_name])
            queued.accepted = True
            return ExecuteTools()

        return self._send_chat(user_input)

    def _send_chat(self, user_input: str) -> ChatState:
        if self.pending_tool_index is not None:
            if user_input.strip() in ("n", "N"):
                user_input = DENY_TOOL_TEXT
            self.conversation.abandon_tool_use(self.tool_uses, user_input)
            self.tool_uses = []
            self.pending_tool_index = None
        else:
            self.conversation.set_next_user_message(user_input)

        self.reset_user_turn()
        snapshot = self.conversation.as_sendable_conversation_state()
        self.pipeline.flush_telemetry()
        return HandleResponseStream(conversation_snapshot=snapshot)

    async def validate_tools(self, tool_uses: list[ToolUse]) -> ChatState:
        log.debug("Validating tool uses", tool_uses=[tool_use.name for tool_use in tool_uses])
        outcome = await self.pipeline.validate(tool_uses)

        if outcome.errors:
            self.output.print("[bold]Tool validation failed:[/bold]")
            for result in outcome.errors:
                self.output.print(f"[red]{escape(result.text())}[/red]")
            self.output.print()
            self.conversation.add_tool_results(outcome.errors)
            self.pipeline.flush_telemetry()
            return HandleResponseStream(conversation_snapshot=self.conversation.as_sendable_conversation_state())

        self.tool_uses = outcome.queued
        self.pending_tool_index = 0
        self.tool_turn_start_time = time.monotonic()
        return ExecuteTools()

    async def execute_tools(self) -> ChatState:
        decision = self.pipeline.evaluate(self.tool_uses, self.conversation.agents)
        if decision is not None:
            self.pending_tool_index = decision.index
            if decision.result is PermissionEvalResult.DENY:
                return HandleInput(input=_rejected_tool_text(decision.tool.name))
            if self.config.chat.enable_notifications:
                self.output.bell()
            return PromptUser(skip_printing_tools=False)

        results, images = await self.pipeline.execute(self.tool_uses, self.tool_turn_start_time)
        self.conversation.add_tool_results(results, images)
        self.tool_uses = []
        self.pending_tool_index = None
        self.pipeline.flush_telemetry()
        self._send_chat_telemetry(end_turn=False)
        return HandleResponseStream(conversation_snapshot=self.conversation.as_sendable_conversation_state())

    async def handle_response(self, snapshot: ConversationSnapshot, metadata_slot: RequestMetadataSlot) -> ChatState:
        """Send the snapshot and consume the reply."""
        stream = await self.backend.send_message(snapshot, metadata_slot)
        renderer = Renderer(self.output)

        try:
            result = await self.consumer.consume(stream, renderer, metadata_slot)
        except StreamTimeoutError as e:
            self._record_recv_error(e, end_turn=False)
            log.error("Stream timed out", request_id=stream.request_id, duration=e.duration)
            self.output.print("[dim]Dividing up the work...[/dim]")
            partial = e.partial_message
            if partial is not None and partial.content.strip():
                message = AssistantMessage.response(partial.message_id, partial.content)
            else:
                message = AssistantMessage.response(None, RESPONSE_TIMEOUT_CONTENT)
            self.conversation.push_assistant_message(message, None)
            self.conversation.set_next_user_message(SPLIT_WORK_TEXT)
            self.pipeline.flush_telemetry()
            return HandleResponseStream(conversation_snapshot=self.conversation.as_sendable_conversation_state())
        except TruncatedToolUseError as e:
            self._record_recv_error(e, end_turn=False)
            log.error(
                "The response stream ended before the entire tool use was received",
                request_id=stream.request_id,
                tool_use_id=e.tool_use_id,
                tool=e.name,
            )
            message = e.partial_message or AssistantMessage(tool_uses=[ToolUse(id=e.tool_use_id, name=e.name)])
            self.conversation.push_assistant_message(message, e.request_metadata)
            self.conversation.add_tool_results([ToolUseResult.error(e.tool_use_id, TOOL_TOO_LARGE_TEXT)])
            self.pipeline.flush_telemetry()
            return HandleResponseStream(conversation_snapshot=self.conversation.as_sendable_conversation_state())
        except RecvError as e:
            self._record_recv_error(e, end_turn=True)
            raise

        self.conversation.push_assistant_message(result.message, result.request_metadata)
        if result.request_metadata is not None:
            self.user_turn_request_metadata.append(result.request_metadata)
        if self.config.chat.enable_notifications:
            self.output.bell()

        if result.tool_uses:
            return ValidateTools(tool_uses=tuple(result.tool_uses))

        self.tool_uses = []
        self.pending_tool_index = None
        self.tool_turn_start_time = None
        self._send_chat_telemetry(end_turn=True)
        return PromptUser()

    async def compact_history(
        self,
        prompt: str | None,
        show_summary: bool,
        strategy: CompactStrategy,
        metadata_slot: RequestMetadataSlot | None = None,
    ) -> ChatState:
        """Replace the history with a model-written summary.

        A queued user message is re-sent once the history has been compacted.
        """
        if not self.conversation.history:
            self.output.print("\nConversation too short to compact.\n")
            return PromptUser(skip_printing_tools=True)

        if strategy.truncate_large_messages:
            log.info("Truncating large messages", max_message_length=strategy.max_message_length)
            self.output.print("Truncating large messages...\n")
        if self.interactive:
            self.output.print("[dim]Creating summary...[/dim]")

        outcome = await self.compaction.compact(self.conversation, prompt, strategy, metadata_slot)
        if outcome is None:
            self.output.print("\nConversation too short to compact.\n")
            return PromptUser(skip_printing_tools=True)
        if isinstance(outcome, CompactRetry):
            return CompactHistory(prompt=prompt, show_summary=show_summary, strategy=outcome.strategy)

        if outcome.request_metadata is not None:
            self.user_turn_request_metadata.append(outcome.request_metadata)
        self.conversation.replace_history_with_summary(
            outcome.summary,
            strategy.messages_to_exclude,
            outcome.request_metadata,
        )

        should_retry = self.conversation.next_user_message is not None
        self._send_chat_telemetry(end_turn=not should_retry)

        self.output.print("[green]✔ Conversation history has been compacted successfully![/green]\n")
        if prompt:
            self.output.print(f"• Custom prompt applied: {escape(prompt)}")
        if show_summary:
            self._print_summary(outcome.summary)

        if should_retry:
            return HandleResponseStream(conversation_snapshot=self.conversation.as_sendable_conversation_state())
        return PromptUser(skip_printing_tools=True)

    async def retry_model_overload(self) -> ChatState:
        model_id = await select_model(self)
        if model_id is None:
            # No switch: drop the request that hit the overloaded model.
            self.conversation.enforce_conversation_invariants()
            self.conversation.reset_next_user_message()
            self.pending_tool_index = None
            self.tool_turn_start_time = None
            return PromptUser()

        self.conversation.model = model_id
        log.info("Retrying with a different model", model=model_id)
        return HandleResponseStream(conversation_snapshot=self.conversation.as_sendable_conversation_state())

    # Errors

    async def _handle_error(self, err: Exception) -> None:
        log.error("An error occurred processing the current state", error=str(err), error_type=type(err).__name__)
        self.last_error = err
        reason = error_reason(err)
        self.telemetry.record_turn(
            self.conversation.conversation_id,
            list(self.user_turn_request_metadata),
            model=self.conversation.model,
            reason=reason,
            cancelled=isinstance(err, TurnInterrupted),
        )

        display_error = True
        if isinstance(err, TurnInterrupted):
            self.output.print("\n")
            if err.tool_uses:
                self.conversation.abandon_tool_use(err.tool_uses, INTERRUPTED_TOOL_TEXT)
                self.conversation.enforce_conversation_invariants()
                self.conversation.push_assistant_message(
                    AssistantMessage.response(None, INTERRUPTED_ASSISTANT_TEXT),
                    None,
                )
            display_error = False
        elif isinstance(err, CompactHistoryFailure):
            self.output.print(
                "[red]Your conversation is too large to continue.[/red]\n"
                "• Run [green]/compact[/green] to compact your conversation. "
                "See [green]/help[/green] for compaction options\n"
                "• Run [green]/usage[/green] to analyze your context usage\n"
                "• Run [green]/clear[/green] to reset your conversation state\n"
            )
            display_error = False
        elif isinstance(err, ContextWindowOverflowError):
            if not self.config.chat.disable_auto_compaction:
                history_len = len(self.conversation.history)
                self._state = CompactHistory(
                    strategy=CompactStrategy.for_overflow(
                        history_len,
                        truncated_length=self.config.context.compact_max_message_length,
                    ),
                )
                self.output.print("[yellow]The context window has overflowed, summarizing the history...[/yellow]\n")
                return
            self.output.print(
                "[red]The conversation history has overflowed.[/red]\n"
                "• Run [green]/compact[/green] to compact your conversation\n"
            )
            display_error = False
        elif isinstance(err, QuotaExceededError):
            self.conversation.append_transcript(QUOTA_TEXT)
            self.output.print(f"[bold red] Rate limit reached:\n    {QUOTA_TEXT}[/bold red]\n")
            display_error = False
        elif isinstance(err, ModelOverloadedError):
            if self.interactive:
                self.output.print(
                    "\n[bold red]The model you've selected is temporarily unavailable. "
                    "Please select a different model.[/bold red]"
                )
                if err.request_id:
                    self.conversation.append_transcript(f"Model unavailable (Request ID: {err.request_id})")
                self._state = RetryModelOverload()
                return
            message = (
                "The model you've selected is temporarily unavailable. "
                "Please relaunch with '--model <model_id>' to use a different model."
            )
            if err.request_id:
                message += f"\n    Request ID: {err.request_id}"
            self.conversation.append_transcript(message)
            self.output.print(f"[bold red]Deckhand is having trouble responding right now:\n    {escape(message)}[/bold red]\n")
            display_error = False
        elif isinstance(err, MonthlyLimitReachedError):
            await self._print_monthly_limit()
            self._state = PromptUser()
            return
        elif isinstance(err, NonInteractiveToolApproval):
            self.output.print(f"[bold red]{escape(str(err))}[/bold red]")
            display_error = False

        if display_error:
            text = f"Deckhand is having trouble responding right now: {err}"
            self.output.print(f"[bold red]{escape(text)}[/bold red]")
            self.conversation.append_transcript(text)

        self.conversation.enforce_conversation_invariants()
        self.conversation.reset_next_user_message()
        self.tool_uses = []
        self.pending_tool_index = None
        self.tool_turn_start_time = None
        self.reset_user_turn()
        self._state = PromptUser()

    async def _print_monthly_limit(self) -> None:
        status = None
        try:
            status = await self.backend.create_subscription_token()
        except BackendError as e:
            log.warning("Subscription lookup failed", error=str(e))
            self.output.print(f"[red]Unable to verify subscription status: {escape(str(e))}[/red]\n")

        reset_on = (status.limits_reset_on if status else None) or _next_month_start(date.today())
        limits_text = f"The limits reset on {reset_on:%m/%d}."
        if status is None or not status.active:
            self.output.print(
                f"[yellow]Monthly request limit reached[/yellow]\n\n"
                f"You've used all your requests for this month. {limits_text}\n"
            )
        else:
            self.output.print(f"[yellow]Monthly request limit reached - {limits_text}[/yellow]\n")

    # Turn bookkeeping

    def reset_user_turn(self) -> None:
        """Forget the request metadata collected for the current user turn."""
        log.info("Resetting the current user turn", requests=len(self.user_turn_request_metadata))
        self.user_turn_request_metadata.clear()

    def _record_recv_error(self, err: RecvError, end_turn: bool) -> None:
        metadata = err.request_metadata
        if metadata is not None:
            self.user_turn_request_metadata.append(metadata)
        if not end_turn:
            # Fatal receive errors are reported by the error handler.
            self.telemetry.record_turn(
                self.conversation.conversation_id,
                list(self.user_turn_request_metadata),
                model=self.conversation.model,
                reason=error_reason(err),
            )

    def _send_chat_telemetry(self, end_turn: bool) -> None:
        self.telemetry.record_turn(
            self.conversation.conversation_id,
            list(self.user_turn_request_metadata),
            model=self.conversation.model,
        )
        if end_turn:
            log.debug("User turn finished", requests=len(self.user_turn_request_metadata))

    async def _save_conversation(self) -> None:
        if self.store is None or not self.config.session.auto_save:
            return
        try:
            await self.store.save(self.cwd, self.conversation)
        except StoreError as e:
            log.warning("Failed to save conversation", cwd=str(self.cwd), error=str(e))

    # Helpers

    async def _confirm(self, question: str) -> bool:
        if not self.interactive:
            return False
        return await self.input_source.confirm(question)

    def _prompt_text(self) -> str:
        agents = self.conversation.agents
        prefix = f"[{agents.active}] " if agents.active != DEFAULT_AGENT_NAME else ""
        marker = "!> " if agents.trust_all_tools else "> "
        return prefix + marker

    def _display_char_warnings(self) -> None:
        max_chars = self.config.context.max_chars
        if not max_chars:
            return
        used = self.conversation.history_char_count()
        if used >= max_chars * self.config.context.warning_ratio:
            self.output.print(
                "\n[bold yellow]This conversation is getting lengthy.[/bold yellow]\n"
                "To ensure continued smooth operation, please use /compact to summarize the conversation.\n"
            )

    def _print_greeting(self) -> None:
        if self.config.chat.greeting_enabled:
            self.output.print(RESUME_TEXT if self.existing_conversation else WELCOME_TEXT)
            self.output.print()
        if self.conversation.agents.trust_all_tools:
            self.output.print(f"{TRUST_ALL_TEXT}\n")
        option = self.config.model_option(self.conversation.model)
        if option is not None:
            self.output.print(f"[cyan]You are chatting with {escape(option.name)}[/cyan]\n")

    def _print_summary(self, summary: str) -> None:
        border = "═" * SUMMARY_BORDER_WIDTH
        self.output.print(f"\n{border}")
        self.output.print("CONVERSATION SUMMARY".center(SUMMARY_BORDER_WIDTH))
        self.output.print(f"{border}\n")
        self.output.print(summary, markup=False, highlight=False)
        self.output.print(
            "\nThe conversation history has been replaced with this summary.\n"
            "It contains all important details from previous interactions."
        )
        self.output.print(f"{border}\n")

    def _references_file(self, text: str) -> bool:
        """Whether ``/...`` input names a path rather than a command."""
        first = text.split(maxsplit=1)[0]
        if "/" in first[1:]:
            return True
        return Path(first).exists()

    def _expand_prompt_template(self, command: str) -> str:
        try:
            parts = shlex.split(command)
        except ValueError as e:
            raise PromptTemplateError("Error splitting prompt command") from e
        if not parts:
            raise PromptTemplateError("Prompt name needs to be specified")

        name, args = parts[0], parts[1:]
        template = self.config.chat.prompts.get(name)
        if template is None:
            raise PromptTemplateError(f"Prompt '{name}' is not configured")
        try:
            return template.format(*args, args=" ".join(args))
        except (IndexError, KeyError) as e:
            raise PromptTemplateError(f"Prompt '{name}' is missing arguments: {e}") from e

    async def _run_shell_escape(self, command: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec("bash", "-c", command, cwd=str(self.cwd))
        except OSError as e:
            self.output.print(f"\n[red]Failed to execute command: {escape(str(e))}[/red]\n")
            return
        try:
            status = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        if status != 0:
            self.output.print(f"[yellow]Self exited with status: {status}[/yellow]")
