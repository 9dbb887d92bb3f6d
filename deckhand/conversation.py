"""Conversation data model and the history it sends to the backend."""

from __future__ import annotations

import base64
import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from deckhand.exceptions import ChatError
from deckhand.logging import get_logger

if TYPE_CHECKING:
    from deckhand.permissions import Agents
    from deckhand.tools.registry import ToolRegistry

log = get_logger(__name__)

TRANSCRIPT_MAX_LEN = 250
CANCELLED_TOOL_USE_TEXT = "Tool use was cancelled by the user"


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class ToolUse:
    """A tool invocation requested by the model."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


class ToolResultStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ImageBlock:
    """An image produced by a tool and forwarded to the model."""

    format: str
    data: bytes


@dataclass
class ToolUseResult:
    """Result of one tool use, tagged with the originating tool use id.

    Content blocks are either text (``str``) or JSON-serializable values.
    """

    tool_use_id: str
    content: list[Any]
    status: ToolResultStatus = ToolResultStatus.SUCCESS

    @classmethod
    def error(cls, tool_use_id: str, text: str) -> ToolUseResult:
        return cls(tool_use_id=tool_use_id, content=[text], status=ToolResultStatus.ERROR)

    def text(self) -> str:
        parts = []
        for block in self.content:
            if isinstance(block, str):
                parts.append(block)
            else:
                parts.append(json.dumps(block, default=str))
        return "\n".join(parts)


@dataclass
class UserMessage:
    """User side of a turn: prompt text, tool results, or both."""

    content: str = ""
    tool_results: list[ToolUseResult] = field(default_factory=list)
    images: list[ImageBlock] = field(default_factory=list)
    timestamp: str = field(default_factory=_utcnow_iso)

    @classmethod
    def prompt(cls, text: str) -> UserMessage:
        return cls(content=text)

    @classmethod
    def tool_use_results(
        cls,
        results: list[ToolUseResult],
        images: list[ImageBlock] | None = None,
    ) -> UserMessage:
        return cls(tool_results=list(results), images=list(images or []))

    @classmethod
    def cancelled_tool_uses(cls, prompt: str | None, tool_use_ids: list[str]) -> UserMessage:
        return cls(
            content=prompt or "",
            tool_results=[ToolUseResult.error(tid, CANCELLED_TOOL_USE_TEXT) for tid in tool_use_ids],
        )

    @property
    def is_tool_results_only(self) -> bool:
        return bool(self.tool_results) and not self.content.strip()

    def char_count(self) -> int:
        return len(self.content) + sum(len(r.text()) for r in self.tool_results)


@dataclass
class AssistantMessage:
    """Model side of a turn."""

    content: str = ""
    tool_uses: list[ToolUse] = field(default_factory=list)
    message_id: str | None = None

    @classmethod
    def response(cls, message_id: str | None, content: str) -> AssistantMessage:
        return cls(content=content, message_id=message_id)

    def char_count(self) -> int:
        return len(self.content) + sum(len(json.dumps(tu.args, default=str)) for tu in self.tool_uses)


@dataclass
class RequestMetadata:
    """Timing and size facts about one backend call."""

    request_id: str | None = None
    message_id: str | None = None
    model_id: str | None = None
    request_start_timestamp_ms: int = 0
    stream_end_timestamp_ms: int | None = None
    time_to_first_chunk_ms: float | None = None
    response_size: int = 0
    user_prompt_length: int = 0
    tool_use_ids: list[str] = field(default_factory=list)


@dataclass
class HistoryEntry:
    user: UserMessage
    assistant: AssistantMessage
    request_metadata: RequestMetadata | None = None


@dataclass(frozen=True)
class ConversationSnapshot:
    """Immutable view of the conversation handed to the backend."""

    conversation_id: str
    user_message: UserMessage
    history: tuple[HistoryEntry, ...]
    model: str | None = None
    summary: str | None = None
    tool_definitions: tuple[dict[str, Any], ...] = ()


class ConversationState:
    """Conversation history plus the session-scoped context needed to send it."""

    def __init__(
        self,
        agents: Agents,
        tool_registry: ToolRegistry,
        model: str | None = None,
        conversation_id: str | None = None,
    ):
        self.conversation_id = conversation_id or str(uuid.uuid4())
        self.agents = agents
        self.tool_registry = tool_registry
        self.model = model
        self.history: list[HistoryEntry] = []
        self.next_user_message: UserMessage | None = None
        self.latest_summary: tuple[str, RequestMetadata | None] | None = None
        self.transcript: deque[str] = deque(maxlen=TRANSCRIPT_MAX_LEN)

    # Transcript

    def append_transcript(self, text: str) -> None:
        self.transcript.append(text)

    def append_user_transcript(self, text: str) -> None:
        self.append_transcript(f"> {text}")

    # Next user message

    def set_next_user_message(self, text: str) -> None:
        if self.next_user_message is not None:
            log.warning("Overwriting pending user message", previous=self.next_user_message.content[:80])
        self.next_user_message = UserMessage.prompt(text)

    def reset_next_user_message(self) -> None:
        self.next_user_message = None

    def add_tool_results(
        self,
        results: list[ToolUseResult],
        images: list[ImageBlock] | None = None,
    ) -> None:
        self.next_user_message = UserMessage.tool_use_results(results, images)

    def abandon_tool_use(self, tool_uses: list[Any], deny_input: str) -> None:
        """Answer every queued tool use with a cancelled result plus ``deny_input``."""
        self.next_user_message = UserMessage.cancelled_tool_uses(
            deny_input,
            [tool.id for tool in tool_uses],
        )

    # History

    def push_assistant_message(
        self,
        message: AssistantMessage,
        request_metadata: RequestMetadata | None = None,
    ) -> None:
        user = self.next_user_message
        if user is None:
            log.warning("Assistant message pushed without a pending user message")
            user = UserMessage.prompt("")
        self.history.append(HistoryEntry(user=user, assistant=message, request_metadata=request_metadata))
        self.next_user_message = None
        if message.content:
            self.append_transcript(message.content)

    def clear(self, preserve_summary: bool = False) -> None:
        self.history.clear()
        self.next_user_message = None
        if not preserve_summary:
            self.latest_summary = None

    def replace_history_with_summary(
        self,
        summary: str,
        messages_to_exclude: int,
        request_metadata: RequestMetadata | None,
    ) -> None:
        """Drop history except the excluded tail and remember the summary."""
        keep = min(max(messages_to_exclude, 0), len(self.history))
        self.history = self.history[len(self.history) - keep:] if keep else []
        self.latest_summary = (summary, request_metadata)
        self.enforce_conversation_invariants()

    def history_char_count(self) -> int:
        total = sum(entry.user.char_count() + entry.assistant.char_count() for entry in self.history)
        if self.next_user_message is not None:
            total += self.next_user_message.char_count()
        if self.latest_summary is not None:
            total += len(self.latest_summary[0])
        return total

    def enforce_conversation_invariants(self) -> None:
        """Repair the history so it forms a valid request.

        - history never starts with a tool-results-only user message
        - results in the next user message match the last assistant's tool uses
          one-to-one and in order
        - tool results with no tool use to answer become prompt text
        """
        while self.history and self.history[0].user.is_tool_results_only:
            self.history.pop(0)

        for idx, entry in enumerate(self.history):
            if entry.user.tool_results:
                expected = self.history[idx - 1].assistant.tool_uses if idx > 0 else []
                entry.user = self._align_tool_results(entry.user, expected)

        if self.next_user_message is not None:
            expected = self.history[-1].assistant.tool_uses if self.history else []
            self.next_user_message = self._align_tool_results(self.next_user_message, expected)

    @staticmethod
    def _align_tool_results(message: UserMessage, expected: list[ToolUse]) -> UserMessage:
        if not expected:
            if not message.tool_results:
                return message
            orphaned = "\n".join(r.text() for r in message.tool_results)
            content = "\n\n".join(part for part in (message.content, orphaned) if part.strip())
            return UserMessage(content=content, images=message.images, timestamp=message.timestamp)

        by_id = {result.tool_use_id: result for result in message.tool_results}
        aligned = [
            by_id.get(tool_use.id) or ToolUseResult.error(tool_use.id, CANCELLED_TOOL_USE_TEXT)
            for tool_use in expected
        ]
        return UserMessage(
            content=message.content,
            tool_results=aligned,
            images=message.images,
            timestamp=message.timestamp,
        )

    def as_sendable_conversation_state(self) -> ConversationSnapshot:
        """Build the snapshot for the next backend request."""
        self.enforce_conversation_invariants()
        if self.next_user_message is None:
            raise ChatError("No user message is pending; nothing to send")
        return ConversationSnapshot(
            conversation_id=self.conversation_id,
            user_message=self.next_user_message,
            history=tuple(self.history),
            model=self.model,
            summary=self.latest_summary[0] if self.latest_summary else None,
            tool_definitions=tuple(self.tool_registry.get_definitions()),
        )

    # Persistence

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "model": self.model,
            "history": [_entry_to_dict(entry) for entry in self.history],
            "summary": self.latest_summary[0] if self.latest_summary else None,
            "transcript": list(self.transcript),
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        agents: Agents,
        tool_registry: ToolRegistry,
    ) -> ConversationState:
        conversation = cls(
            agents=agents,
            tool_registry=tool_registry,
            model=data.get("model"),
            conversation_id=data.get("conversation_id"),
        )
        conversation.history = [_entry_from_dict(item) for item in data.get("history", [])]
        if data.get("summary"):
            conversation.latest_summary = (data["summary"], None)
        conversation.transcript.extend(data.get("transcript", []))
        conversation.enforce_conversation_invariants()
        return conversation


def _result_to_dict(result: ToolUseResult) -> dict[str, Any]:
    return {
        "tool_use_id": result.tool_use_id,
        "content": result.content,
        "status": result.status.value,
    }


def _entry_to_dict(entry: HistoryEntry) -> dict[str, Any]:
    return {
        "user": {
            "content": entry.user.content,
            "tool_results": [_result_to_dict(r) for r in entry.user.tool_results],
            "images": [
                {"format": img.format, "data": base64.b64encode(img.data).decode("ascii")}
                for img in entry.user.images
            ],
            "timestamp": entry.user.timestamp,
        },
        "assistant": {
            "content": entry.assistant.content,
            "message_id": entry.assistant.message_id,
            "tool_uses": [
                {"id": tu.id, "name": tu.name, "args": tu.args} for tu in entry.assistant.tool_uses
            ],
        },
    }


def _entry_from_dict(data: dict[str, Any]) -> HistoryEntry:
    user = data.get("user", {})
    assistant = data.get("assistant", {})
    return HistoryEntry(
        user=UserMessage(
            content=user.get("content", ""),
            tool_results=[
                ToolUseResult(
                    tool_use_id=r["tool_use_id"],
                    content=list(r.get("content", [])),
                    status=ToolResultStatus(r.get("status", "success")),
                )
                for r in user.get("tool_results", [])
            ],
            images=[
                ImageBlock(format=img["format"], data=base64.b64decode(img["data"]))
                for img in user.get("images", [])
            ],
            timestamp=user.get("timestamp") or _utcnow_iso(),
        ),
        assistant=AssistantMessage(
            content=assistant.get("content", ""),
            message_id=assistant.get("message_id"),
            tool_uses=[
                ToolUse(id=tu["id"], name=tu["name"], args=dict(tu.get("args", {})))
                for tu in assistant.get("tool_uses", [])
            ],
        ),
    )
