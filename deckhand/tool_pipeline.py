"""Validate, permission-check and execute the tool uses of one model response."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from rich.console import Console
from rich.markup import escape

from deckhand.conversation import ImageBlock, ToolResultStatus, ToolUse, ToolUseResult
from deckhand.exceptions import ToolNotFoundError
from deckhand.logging import get_logger
from deckhand.permissions import Agents, PermissionEvalResult, evaluate_permission
from deckhand.telemetry import TelemetryRecorder, ToolUseTelemetry
from deckhand.tools.registry import Tool, ToolContext, ToolRegistry

log = get_logger(__name__)


@dataclass
class QueuedTool:
    """A validated tool use waiting for permission or execution."""

    id: str
    name: str
    tool: Tool
    accepted: bool = False


@dataclass
class ValidationOutcome:
    queued: list[QueuedTool] = field(default_factory=list)
    errors: list[ToolUseResult] = field(default_factory=list)


@dataclass
class PermissionDecision:
    """The first queued tool that cannot run without intervention."""

    index: int
    result: PermissionEvalResult
    tool: QueuedTool


class ToolPipeline:
    """Validation, permission and execution phases for tool uses.

    Results are always produced in tool-use order and tagged with the
    originating tool-use id. Tool failures become error results; they never
    abort the batch.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        ctx: ToolContext,
        output: Console,
        telemetry: TelemetryRecorder | None = None,
        conversation_id: str = "",
    ):
        self.registry = registry
        self.ctx = ctx
        self.output = output
        self.telemetry = telemetry or TelemetryRecorder()
        self.conversation_id = conversation_id
        self._events: dict[str, ToolUseTelemetry] = {}

    def _event(self, tool_use_id: str, tool_name: str) -> ToolUseTelemetry:
        event = self._events.get(tool_use_id)
        if event is None:
            event = ToolUseTelemetry(
                conversation_id=self.conversation_id,
                tool_use_id=tool_use_id,
                tool_name=tool_name,
            )
            self._events[tool_use_id] = event
        return event

    def flush_telemetry(self) -> None:
        """Emit the telemetry gathered for the current batch."""
        for event in self._events.values():
            self.telemetry.record_tool_use(event)
        self._events.clear()

    async def validate(self, tool_uses: list[ToolUse]) -> ValidationOutcome:
        outcome = ValidationOutcome()
        for tool_use in tool_uses:
            event = self._event(tool_use.id, tool_use.name)
            try:
                tool = self.registry.get_tool_from_tool_use(tool_use)
                await tool.validate(self.ctx)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                event.is_valid = False
                event.reason_desc = str(e)
                log.info("Tool use failed validation", tool=tool_use.name, tool_use_id=tool_use.id, error=str(e))
                outcome.errors.append(self._validation_error(tool_use, e))
                continue
            event.is_valid = True
            outcome.queued.append(QueuedTool(id=tool_use.id, name=tool_use.name, tool=tool))
        return outcome

    @staticmethod
    def _validation_error(tool_use: ToolUse, error: Exception) -> ToolUseResult:
        if isinstance(error, ToolNotFoundError):
            text = str(error)
        else:
            text = f"Failed to validate tool parameters: {error}"
        return ToolUseResult(tool_use_id=tool_use.id, content=[text], status=ToolResultStatus.ERROR)

    def print_tool_description(self, queued: QueuedTool, trusted: bool) -> None:
        marker = " [green](trusted)[/green]" if trusted else ""
        self.output.print(f"\n[magenta]Using tool:[/magenta] {escape(queued.name)}{marker}")
        queued.tool.queue_description(self.ctx, self.output)

    def evaluate(self, queued: list[QueuedTool], agents: Agents) -> PermissionDecision | None:
        """Accept allowed tools in order; stop at the first denied or confirmable one."""
        for index, item in enumerate(queued):
            if item.accepted:
                continue
            result = evaluate_permission(item.tool, agents, self.ctx)
            if result is PermissionEvalResult.DENY:
                log.info("Tool use denied by policy", tool=item.name, tool_use_id=item.id)
                return PermissionDecision(index=index, result=result, tool=item)

            allowed = result is PermissionEvalResult.ALLOW
            self.print_tool_description(item, allowed)
            if allowed:
                item.accepted = True
                self._event(item.id, item.name).is_trusted = True
                continue
            return PermissionDecision(index=index, result=result, tool=item)
        return None

    async def execute(
        self,
        queued: list[QueuedTool],
        turn_start: float | None = None,
    ) -> tuple[list[ToolUseResult], list[ImageBlock]]:
        """Invoke every queued tool sequentially."""
        results: list[ToolUseResult] = []
        images: list[ImageBlock] = []
        for item in queued:
            event = self._event(item.id, item.name)
            event.is_accepted = True
            started = time.monotonic()
            try:
                output = await item.tool.invoke(self.ctx, self.output)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                elapsed = time.monotonic() - started
                log.error("Tool execution failed", tool=item.name, tool_use_id=item.id, error=str(e))
                self.output.print(f"[red] ● Execution failure after {elapsed:.2f}s:[/red] {escape(str(e))}")
                event.is_success = False
                event.reason_desc = str(e)
                results.append(
                    ToolUseResult.error(item.id, f"An error occurred processing the tool: \n{e}")
                )
            else:
                elapsed = time.monotonic() - started
                self.output.print(f"[green] ● Completed in {elapsed:.2f}s[/green]")
                event.is_success = True
                results.append(ToolUseResult(tool_use_id=item.id, content=output.content_blocks()))
                if output.kind in ("images", "mixed"):
                    images.extend(output.images)

            finished = time.monotonic()
            event.execution_duration_ms = (finished - started) * 1000
            if turn_start is not None:
                event.turn_duration_ms = (finished - turn_start) * 1000
        return results, images
