"""The closed set of chat states driven by the session loop."""

from __future__ import annotations

from dataclasses import dataclass, field

from deckhand.compaction import CompactStrategy
from deckhand.conversation import ConversationSnapshot, ToolUse


@dataclass(frozen=True)
class PromptUser:
    """Wait for the next line of user input."""

    skip_printing_tools: bool = False


@dataclass(frozen=True)
class HandleInput:
    input: str


@dataclass(frozen=True)
class ValidateTools:
    tool_uses: tuple[ToolUse, ...] = ()


@dataclass(frozen=True)
class ExecuteTools:
    pass


@dataclass(frozen=True)
class HandleResponseStream:
    conversation_snapshot: ConversationSnapshot


@dataclass(frozen=True)
class CompactHistory:
    prompt: str | None = None
    show_summary: bool = False
    strategy: CompactStrategy = field(default_factory=CompactStrategy)


@dataclass(frozen=True)
class RetryModelOverload:
    pass


@dataclass(frozen=True)
class Exit:
    pass


ChatState = (
    PromptUser
    | HandleInput
    | ValidateTools
    | ExecuteTools
    | HandleResponseStream
    | CompactHistory
    | RetryModelOverload
    | Exit
)
