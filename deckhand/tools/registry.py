"""Tool capability contract and the closed registry of built-in tools."""

from __future__ import annotations

import fnmatch
import json
import re
import shlex
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from rich.console import Console

from deckhand.config import Config, get_config
from deckhand.conversation import ImageBlock, ToolUse
from deckhand.exceptions import ToolNotFoundError, ToolValidationError
from deckhand.logging import get_logger
from deckhand.permissions import AgentPolicy, PermissionEvalResult, normalize_tool_name

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time"}


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators and pipes."""
    tokens = _tokenize_shell_command(command)
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    """Extract executable command token from a tokenized shell segment."""
    idx = 0
    while idx < len(tokens):
        token = str(tokens[idx]).strip()
        if not token:
            idx += 1
            continue
        if token in _SHELL_WRAPPER_TOKENS:
            idx += 1
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            idx += 1
            continue
        return token
    return ""


def extract_shell_base_commands(command: str) -> list[str]:
    """Extract base command token from each shell segment."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return []
    base_commands: list[str] = []
    for segment in segments:
        base = _extract_segment_base_command(segment)
        if base:
            base_commands.append(base)
    return base_commands


def shell_pattern_matches(command: str, pattern: str) -> bool:
    """Match shell command against a glob-like policy pattern."""
    cleaned_command = str(command or "").strip()
    cleaned_pattern = str(pattern or "").strip()
    if not cleaned_command or not cleaned_pattern:
        return False

    lowered_pattern = cleaned_pattern.lower()
    targets: list[str] = [cleaned_command.lower()]
    try:
        segments = split_shell_segments(cleaned_command)
        targets.extend(" ".join(segment).strip().lower() for segment in segments if segment)
    except ValueError:
        pass
    base_commands = [item.lower() for item in extract_shell_base_commands(cleaned_command)]
    targets.extend(base_commands)
    targets.extend(Path(item).name.lower() for item in base_commands if item)

    return any(fnmatch.fnmatchcase(target, lowered_pattern) for target in targets if target)


def path_matches_any(path: str, patterns: list[str]) -> bool:
    """Match a path against fnmatch globs, trying both the raw and expanded form."""
    candidates = {str(path), str(Path(path).expanduser())}
    for raw_pattern in patterns or []:
        pattern = str(Path(str(raw_pattern)).expanduser())
        if any(fnmatch.fnmatchcase(candidate, pattern) for candidate in candidates):
            return True
        # A directory pattern covers everything below it.
        if any(candidate.startswith(pattern.rstrip("/") + "/") for candidate in candidates):
            return True
    return False


ConfirmCallback = Callable[[str], Awaitable[bool]]


@dataclass
class ToolContext:
    """Ambient execution context a tool needs but the model never supplies."""

    cwd: Path = field(default_factory=Path.cwd)
    config: Config = field(default_factory=get_config)
    confirm: ConfirmCallback | None = None
    interactive: bool = True

    def resolve_path(self, path: str) -> Path:
        """Resolve a model-supplied path against the session's working directory.

        Raises:
            ValueError if the path cannot name a file
        """
        if "\x00" in path:
            raise ValueError("embedded null byte")
        requested = Path(path).expanduser()
        if not requested.is_absolute():
            requested = self.cwd / requested
        return requested.resolve()


class InvokeOutput(BaseModel):
    """Captured output of a tool invocation."""

    kind: Literal["text", "json", "images", "mixed"] = "text"
    text: str = ""
    data: Any = None
    images: list[ImageBlock] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_payload(self) -> InvokeOutput:
        """Ensure image outputs actually carry images."""
        if self.kind == "images" and not self.images:
            raise ValueError("image output requires at least one image")
        return self

    @classmethod
    def from_text(cls, text: str) -> InvokeOutput:
        return cls(kind="text", text=text)

    @classmethod
    def from_json(cls, data: Any) -> InvokeOutput:
        return cls(kind="json", data=data)

    def content_blocks(self) -> list[Any]:
        """Content blocks for the tool result sent back to the model."""
        if self.kind == "text":
            return [self.text]
        if self.kind == "json":
            return [self.data]
        if self.kind == "images":
            return [f"{len(self.images)} image(s) attached"]
        blocks: list[Any] = []
        if self.text:
            blocks.append(self.text)
        if self.data is not None:
            blocks.append(self.data)
        return blocks or [""]


class Tool(BaseModel, ABC):
    """Base class for all tools.

    A tool instance holds the validated arguments of one tool use; the class
    holds the capability. Argument fields double as the JSON schema sent to
    the model.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    read_only: ClassVar[bool] = False

    model_config = ConfigDict(extra="forbid")

    @property
    def qualified_name(self) -> str:
        return normalize_tool_name(self.name)

    @classmethod
    def get_definition(cls) -> dict[str, Any]:
        """Get the tool definition for the model.

        Returns:
            Function-style definition with a JSON schema of the arguments
        """
        schema = cls.model_json_schema()
        schema.pop("title", None)
        return {
            "name": cls.name,
            "description": cls.description,
            "parameters": schema,
        }

    async def validate(self, ctx: ToolContext) -> None:
        """Check arguments beyond their types. Must not have side effects.

        Raises:
            ToolValidationError if the arguments cannot be executed
        """
        return None

    @abstractmethod
    async def invoke(self, ctx: ToolContext, output: Console) -> InvokeOutput:
        """Perform the effect and return the captured output."""
        pass

    def queue_description(self, ctx: ToolContext, output: Console) -> None:
        """Render a preview of what the tool is about to do."""
        output.print(f"[dim]{json.dumps(self.model_dump(exclude_none=True), default=str)}[/dim]")

    def requires_acceptance(self, policy: AgentPolicy, ctx: ToolContext | None = None) -> bool:
        """Intrinsic risk classification used when no policy decides."""
        return not self.read_only

    def eval_settings(self, settings: dict[str, Any]) -> PermissionEvalResult:
        """Evaluate the tool's narrower allow/deny settings.

        ``ASK`` means the settings have no opinion on this call.
        """
        return PermissionEvalResult.ASK


class ToolRegistry:
    """Closed registry mapping tool names to tool classes."""

    def __init__(self, tools: list[type[Tool]]):
        self._tools: dict[str, type[Tool]] = {}
        for tool_cls in tools:
            if not tool_cls.name:
                raise ValueError("Tool must have a name")
            log.debug("Registering tool", tool=tool_cls.name)
            self._tools[normalize_tool_name(tool_cls.name)] = tool_cls

    def has_tool(self, name: str) -> bool:
        return normalize_tool_name(name) in self._tools

    def list_tools(self) -> list[str]:
        return [tool_cls.name for tool_cls in self._tools.values()]

    def get_tool_class(self, name: str) -> type[Tool] | None:
        return self._tools.get(normalize_tool_name(name))

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool_cls.get_definition() for tool_cls in self._tools.values()]

    def get_tool_from_tool_use(self, tool_use: ToolUse) -> Tool:
        """Resolve a tool use into a tool instance holding its parsed arguments.

        Raises:
            ToolNotFoundError if the name is not registered
            ToolValidationError if the arguments do not parse
        """
        tool_cls = self._tools.get(normalize_tool_name(tool_use.name))
        if tool_cls is None:
            raise ToolNotFoundError(tool_use.name)
        try:
            return tool_cls.model_validate(tool_use.args)
        except ValidationError as e:
            raise ToolValidationError(tool_use.name, str(e)) from e
