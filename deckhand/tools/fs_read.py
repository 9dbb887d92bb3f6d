"""Read tool for file contents and directory listings."""

from __future__ import annotations

import stat
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import Field
from rich.console import Console
from rich.markup import escape

from deckhand.exceptions import ToolExecutionError, ToolValidationError
from deckhand.logging import get_logger
from deckhand.permissions import PermissionEvalResult
from deckhand.tools.registry import InvokeOutput, Tool, ToolContext, path_matches_any

log = get_logger(__name__)

MAX_DIRECTORY_ENTRIES = 1000


class FsRead(Tool):
    """Read file contents or list a directory."""

    name: ClassVar[str] = "fs_read"
    description: ClassVar[str] = (
        "Read a file (mode Line, optionally restricted to a line range) "
        "or list the entries of a directory (mode Directory)."
    )
    read_only: ClassVar[bool] = True

    path: str = Field(description="Path to the file or directory")
    mode: Literal["Line", "Directory"] = Field(default="Line", description="What to read")
    start_line: int = Field(default=1, description="First line to read (1-indexed, negative counts from the end)")
    end_line: int = Field(default=-1, description="Last line to read (inclusive, -1 means end of file)")
    depth: int = Field(default=0, ge=0, description="Directory recursion depth for mode Directory")

    async def validate(self, ctx: ToolContext) -> None:
        if not self.path.strip():
            raise ToolValidationError(self.name, "Path must not be empty")
        target = ctx.resolve_path(self.path)
        if not target.exists():
            raise ToolValidationError(self.name, f"'{self.path}' does not exist")
        if self.mode == "Line" and not target.is_file():
            raise ToolValidationError(self.name, f"'{self.path}' is not a file")
        if self.mode == "Directory" and not target.is_dir():
            raise ToolValidationError(self.name, f"'{self.path}' is not a directory")

    def queue_description(self, ctx: ToolContext, output: Console) -> None:
        if self.mode == "Directory":
            output.print(f"Reading directory: [green]{escape(self.path)}[/green]")
            return
        line_range = ""
        if self.start_line != 1 or self.end_line != -1:
            line_range = f" from line {self.start_line} to {self.end_line}"
        output.print(f"Reading file: [green]{escape(self.path)}[/green]{line_range}")

    def eval_settings(self, settings: dict[str, Any]) -> PermissionEvalResult:
        if path_matches_any(self.path, settings.get("denied_paths", [])):
            return PermissionEvalResult.DENY
        if path_matches_any(self.path, settings.get("allowed_paths", [])):
            return PermissionEvalResult.ALLOW
        return PermissionEvalResult.ASK

    async def invoke(self, ctx: ToolContext, output: Console) -> InvokeOutput:
        target = ctx.resolve_path(self.path)
        max_size = ctx.config.context.max_tool_response_size
        if self.mode == "Directory":
            return InvokeOutput.from_text(self._list_directory(target, max_size))
        return InvokeOutput.from_text(self._read_lines(target, max_size))

    def _read_lines(self, target: Path, max_size: int) -> str:
        try:
            content = target.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ToolExecutionError(self.name, str(e)) from e

        lines = content.splitlines()
        total = len(lines)
        start = self._resolve_line(self.start_line, total)
        end = self._resolve_line(self.end_line, total)
        if total and start > end:
            raise ToolExecutionError(
                self.name,
                f"starting index: {self.start_line} is outside of the allowed range: ({-total}, {total})",
            )
        selected = "\n".join(lines[start:end + 1]) if total else ""
        if len(selected) > max_size:
            raise ToolExecutionError(
                self.name,
                f"This tool only supports reading {max_size} characters at a time. "
                "Try reading a smaller range of lines.",
            )
        log.debug("Read file", path=str(target), lines=total)
        return selected

    @staticmethod
    def _resolve_line(line: int, total: int) -> int:
        """Convert a 1-indexed (or negative, from the end) line into a list index."""
        if total == 0:
            return 0
        if line < 0:
            return max(total + line, 0)
        return min(max(line - 1, 0), total - 1)

    def _list_directory(self, root: Path, max_size: int) -> str:
        entries: list[str] = []
        pending: list[tuple[Path, int]] = [(root, 0)]
        while pending and len(entries) < MAX_DIRECTORY_ENTRIES:
            directory, level = pending.pop(0)
            try:
                children = sorted(directory.iterdir(), key=lambda p: p.name)
            except OSError as e:
                log.warning("Failed to list directory", path=str(directory), error=str(e))
                continue
            for child in children:
                try:
                    info = child.lstat()
                except OSError:
                    continue
                modified = datetime.fromtimestamp(info.st_mtime).strftime("%Y-%m-%d %H:%M")
                entries.append(f"{stat.filemode(info.st_mode)} {info.st_size:>10} {modified} {child}")
                if child.is_dir() and not child.is_symlink() and level < self.depth:
                    pending.append((child, level + 1))
                if len(entries) >= MAX_DIRECTORY_ENTRIES:
                    break

        listing = "\n".join(entries)
        if len(listing) > max_size:
            raise ToolExecutionError(
                self.name,
                f"This tool only supports reading up to {max_size} characters at a time. "
                "Try reducing the depth.",
            )
        return listing
