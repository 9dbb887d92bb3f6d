"""Shell tool for executing bash commands."""

from __future__ import annotations

import asyncio
import fnmatch
import os
import shlex
from collections import deque
from typing import Any, ClassVar

from pydantic import Field
from rich.console import Console
from rich.markup import escape

from deckhand.cancellation import cancel_task
from deckhand.config import get_config
from deckhand.exceptions import ToolExecutionError, ToolValidationError
from deckhand.logging import get_logger
from deckhand.permissions import AgentPolicy, PermissionEvalResult
from deckhand.tools.registry import (
    InvokeOutput,
    Tool,
    ToolContext,
    extract_shell_base_commands,
    shell_pattern_matches,
    split_shell_segments,
)

log = get_logger(__name__)

DANGEROUS_PATTERNS = ("<(", "$(", "`", ">", "&&", "||")
LINE_COUNT = 1024


def command_requires_acceptance(command: str, readonly_commands: list[str]) -> bool:
    """Return False only for pipelines made entirely of read-only commands."""
    try:
        args = shlex.split(command)
    except ValueError:
        return True
    if not args:
        return True

    if any(pattern in arg for arg in args for pattern in DANGEROUS_PATTERNS):
        return True

    pipeline: list[list[str]] = []
    current: list[str] = []
    for arg in args:
        if arg == "|":
            if current:
                pipeline.append(current)
            current = []
        elif "|" in arg or ";" in arg or arg == "&":
            # Unspaced operators are not split by shlex
            return True
        else:
            current.append(arg)
    if current:
        pipeline.append(current)

    readonly = set(readonly_commands)
    return any(not segment or segment[0] not in readonly for segment in pipeline)


class ExecuteBash(Tool):
    """Execute a command with bash and capture its output."""

    name: ClassVar[str] = "execute_bash"
    description: ClassVar[str] = (
        "Execute the specified bash command. Returns JSON with exit_status, stdout and stderr."
    )

    command: str = Field(description="Bash command to execute")
    summary: str | None = Field(default=None, description="Short description of what the command does")

    async def validate(self, ctx: ToolContext) -> None:
        if not self.command.strip():
            raise ToolValidationError(self.name, "Command is empty")
        if not extract_shell_base_commands(self.command):
            raise ToolValidationError(self.name, "Command is not parseable")

    def queue_description(self, ctx: ToolContext, output: Console) -> None:
        separator = "\n" if len(self.command) > 20 else ""
        output.print(
            f"I will run the following shell command: {separator}[green]{escape(self.command)}[/green]"
        )
        if self.summary:
            output.print(f"[dim]Purpose: {escape(self.summary)}[/dim]")

    def requires_acceptance(self, policy: AgentPolicy, ctx: ToolContext | None = None) -> bool:
        config = ctx.config if ctx is not None else get_config()
        return command_requires_acceptance(self.command, config.tools.readonly_commands)

    def eval_settings(self, settings: dict[str, Any]) -> PermissionEvalResult:
        denied = [str(p) for p in settings.get("denied_commands", []) if str(p).strip()]
        if any(shell_pattern_matches(self.command, pattern) for pattern in denied):
            return PermissionEvalResult.DENY

        allowed = [str(p).strip() for p in settings.get("allowed_commands", []) if str(p).strip()]
        if allowed and not any(pattern in self.command for pattern in DANGEROUS_PATTERNS):
            try:
                segments = split_shell_segments(self.command)
            except ValueError:
                return PermissionEvalResult.ASK
            if segments and all(
                any(fnmatch.fnmatchcase(" ".join(segment), pattern) for pattern in allowed)
                for segment in segments
            ):
                return PermissionEvalResult.ALLOW
        return PermissionEvalResult.ASK

    async def invoke(self, ctx: ToolContext, output: Console) -> InvokeOutput:
        timeout = max(1, int(ctx.config.tools.shell_timeout))

        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing shell command", command=self.command, timeout=timeout)
        try:
            process = await asyncio.create_subprocess_exec(
                "bash",
                "-c",
                self.command,
                cwd=str(ctx.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise ToolExecutionError(self.name, f"Unable to spawn command '{self.command}': {e}") from e

        stdout_buf: deque[str] = deque(maxlen=LINE_COUNT)
        stderr_buf: deque[str] = deque(maxlen=LINE_COUNT)
        run_task = asyncio.create_task(self._run(process, stdout_buf, stderr_buf, output))
        try:
            done, _ = await asyncio.wait({run_task}, timeout=timeout)
            if run_task in done:
                exit_status = await run_task
            else:
                await self._kill(process)
                await cancel_task(run_task)
                raise ToolExecutionError(self.name, f"Command timed out after {timeout}s")
        except asyncio.CancelledError:
            await self._kill(process)
            await cancel_task(run_task)
            raise

        limit = ctx.config.context.max_tool_response_size // 3
        stdout = "\n".join(stdout_buf)
        stderr = "\n".join(stderr_buf)
        return InvokeOutput.from_json(
            {
                "exit_status": str(exit_status),
                "stdout": self._truncate(stdout, limit),
                "stderr": self._truncate(stderr, limit),
            }
        )

    @staticmethod
    def _truncate(text: str, limit: int) -> str:
        if len(text) <= limit:
            return text
        return text[:limit] + " ... truncated"

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader | None,
        buffer: deque[str],
        output: Console,
    ) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            output.print(line, markup=False, highlight=False)
            buffer.append(line)

    async def _run(
        self,
        process: asyncio.subprocess.Process,
        stdout_buf: deque[str],
        stderr_buf: deque[str],
        output: Console,
    ) -> int:
        await asyncio.gather(
            self._pump(process.stdout, stdout_buf, output),
            self._pump(process.stderr, stderr_buf, output),
        )
        return await process.wait()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
