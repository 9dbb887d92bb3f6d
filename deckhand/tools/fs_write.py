"""Write tool for creating and editing files."""

from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import Field
from rich.console import Console
from rich.markup import escape

from deckhand.exceptions import ToolExecutionError, ToolValidationError
from deckhand.logging import get_logger
from deckhand.permissions import PermissionEvalResult
from deckhand.tools.registry import InvokeOutput, Tool, ToolContext, path_matches_any

log = get_logger(__name__)

PREVIEW_LINES = 20


class FsWrite(Tool):
    """Create, edit or extend a file."""

    name: ClassVar[str] = "fs_write"
    description: ClassVar[str] = (
        "Create a file (create), replace a unique string in it (str_replace), "
        "append to it (append) or insert text after a line (insert)."
    )

    command: Literal["create", "str_replace", "append", "insert"] = Field(description="Edit operation")
    path: str = Field(description="Path to the file")
    file_text: str | None = Field(default=None, description="Full file content for create")
    old_str: str | None = Field(default=None, description="Exact text to replace for str_replace")
    new_str: str | None = Field(default=None, description="Replacement, appended or inserted text")
    insert_line: int | None = Field(default=None, ge=0, description="Insert after this line (0 = top)")

    async def validate(self, ctx: ToolContext) -> None:
        if not self.path.strip():
            raise ToolValidationError(self.name, "Path must not be empty")
        target = ctx.resolve_path(self.path)
        if self.command == "create":
            if self.file_text is None:
                raise ToolValidationError(self.name, "file_text is required for create")
            if target.is_dir():
                raise ToolValidationError(self.name, f"'{self.path}' is a directory")
            return
        if not target.is_file():
            raise ToolValidationError(self.name, f"The provided path must exist in order to {self.command}")
        if self.command == "str_replace" and not self.old_str:
            raise ToolValidationError(self.name, "old_str is required for str_replace")
        if self.command in ("append", "insert") and self.new_str is None:
            raise ToolValidationError(self.name, f"new_str is required for {self.command}")
        if self.command == "insert" and self.insert_line is None:
            raise ToolValidationError(self.name, "insert_line is required for insert")

    def queue_description(self, ctx: ToolContext, output: Console) -> None:
        target = ctx.resolve_path(self.path)
        if self.command == "create":
            verb = "Replacing" if target.exists() else "Creating"
            output.print(f"{verb}: [green]{escape(self.path)}[/green]")
            self._print_preview(output, self.file_text or "", "green")
        elif self.command == "str_replace":
            output.print(f"Updating: [green]{escape(self.path)}[/green]")
            self._print_preview(output, self.old_str or "", "red", prefix="- ")
            self._print_preview(output, self.new_str or "", "green", prefix="+ ")
        elif self.command == "append":
            output.print(f"Appending to: [green]{escape(self.path)}[/green]")
            self._print_preview(output, self.new_str or "", "green", prefix="+ ")
        else:
            output.print(f"Inserting at line {self.insert_line} in: [green]{escape(self.path)}[/green]")
            self._print_preview(output, self.new_str or "", "green", prefix="+ ")

    @staticmethod
    def _print_preview(output: Console, text: str, color: str, prefix: str = "") -> None:
        lines = text.splitlines()
        for line in lines[:PREVIEW_LINES]:
            output.print(f"[{color}]{escape(prefix + line)}[/{color}]")
        if len(lines) > PREVIEW_LINES:
            output.print(f"[dim]... {len(lines) - PREVIEW_LINES} more lines[/dim]")

    def eval_settings(self, settings: dict[str, Any]) -> PermissionEvalResult:
        if path_matches_any(self.path, settings.get("denied_paths", [])):
            return PermissionEvalResult.DENY
        if path_matches_any(self.path, settings.get("allowed_paths", [])):
            return PermissionEvalResult.ALLOW
        return PermissionEvalResult.ASK

    async def invoke(self, ctx: ToolContext, output: Console) -> InvokeOutput:
        target = ctx.resolve_path(self.path)
        try:
            if self.command == "create":
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(self.file_text or "", encoding="utf-8")
                log.info("Created file", path=str(target), chars=len(self.file_text or ""))
                return InvokeOutput.from_text(f"Wrote {len(self.file_text or '')} chars to {target}")

            content = target.read_text(encoding="utf-8")
            if self.command == "str_replace":
                updated = self._replace(content)
            elif self.command == "append":
                updated = self._append(content)
            else:
                updated = self._insert(content)
            target.write_text(updated, encoding="utf-8")
        except OSError as e:
            log.error("Write failed", path=str(target), error=str(e))
            raise ToolExecutionError(self.name, str(e)) from e

        log.info("Updated file", path=str(target), command=self.command)
        return InvokeOutput.from_text(f"Updated {target}")

    def _replace(self, content: str) -> str:
        old = self.old_str or ""
        matches = content.count(old)
        if matches == 0:
            raise ToolExecutionError(self.name, f"no occurrences of \"{old}\" were found")
        if matches > 1:
            raise ToolExecutionError(self.name, f"{matches} occurrences of old_str were found when only 1 is expected")
        return content.replace(old, self.new_str or "", 1)

    def _append(self, content: str) -> str:
        addition = self.new_str or ""
        if content and not content.endswith("\n"):
            content += "\n"
        return content + addition

    def _insert(self, content: str) -> str:
        lines = content.splitlines(keepends=True)
        line = self.insert_line or 0
        if line > len(lines):
            raise ToolExecutionError(
                self.name,
                f"insert_line {line} is out of range, the file has {len(lines)} lines",
            )
        addition = self.new_str or ""
        if addition and not addition.endswith("\n"):
            addition += "\n"
        if line and not lines[line - 1].endswith("\n"):
            lines[line - 1] += "\n"
        lines.insert(line, addition)
        return "".join(lines)
