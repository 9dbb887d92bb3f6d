"""History compaction: summarize the conversation when it outgrows the context budget."""

from __future__ import annotations

from dataclasses import dataclass, replace

from deckhand.backend import Backend, EndStream
from deckhand.cancellation import RequestMetadataSlot
from deckhand.conversation import (
    AssistantMessage,
    ConversationSnapshot,
    ConversationState,
    HistoryEntry,
    RequestMetadata,
    ToolUseResult,
    UserMessage,
)
from deckhand.exceptions import ChatError, CompactHistoryFailure, ContextWindowOverflowError
from deckhand.logging import get_logger

log = get_logger(__name__)

MAX_COMPACT_ESCALATIONS = 3
DEFAULT_MAX_MESSAGE_LENGTH = 500_000
TRUNCATED_MAX_MESSAGE_LENGTH = 25_000
TRUNCATION_MARKER = "...(truncated)"

SUMMARY_PROMPT = (
    "[SYSTEM NOTE: This is an automated summarization request, not from the user]\n\n"
    "Summarize the conversation so far as a concise bullet list so it can replace the full history. "
    "Include:\n"
    "- the user's goals and any constraints they stated\n"
    "- files, commands and resources that were read, created or changed\n"
    "- decisions made, open problems and the next planned step\n"
    "Do not call any tools. Reply with the summary only."
)


@dataclass(frozen=True)
class CompactStrategy:
    """How aggressively to shrink history for a summarization request.

    ``escalation`` counts retries and is capped at ``MAX_COMPACT_ESCALATIONS``.
    """

    truncate_large_messages: bool = False
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH
    messages_to_exclude: int = 0
    escalation: int = 0

    @classmethod
    def for_overflow(
        cls,
        history_len: int,
        truncated_length: int = TRUNCATED_MAX_MESSAGE_LENGTH,
    ) -> CompactStrategy:
        """Starting strategy after a regular request overflowed.

        Short histories almost always hold one huge tool result, so truncation
        starts enabled for them.
        """
        if history_len <= 2:
            return cls(truncate_large_messages=True, max_message_length=truncated_length)
        return cls()


def next_strategy(
    strategy: CompactStrategy,
    history_len: int,
    truncated_length: int = TRUNCATED_MAX_MESSAGE_LENGTH,
) -> CompactStrategy | None:
    """Escalate after a summarization request overflowed; None means give up."""
    if strategy.escalation >= MAX_COMPACT_ESCALATIONS:
        return None
    if history_len <= 2 and not strategy.truncate_large_messages:
        return replace(
            strategy,
            truncate_large_messages=True,
            max_message_length=truncated_length,
            messages_to_exclude=0,
            escalation=strategy.escalation + 1,
        )
    if history_len > 2 and strategy.messages_to_exclude < 1:
        return replace(strategy, messages_to_exclude=1, escalation=strategy.escalation + 1)
    if not strategy.truncate_large_messages:
        return replace(
            strategy,
            truncate_large_messages=True,
            max_message_length=truncated_length,
            escalation=strategy.escalation + 1,
        )
    return None


@dataclass
class CompactResult:
    summary: str
    request_metadata: RequestMetadata | None
    strategy: CompactStrategy


@dataclass
class CompactRetry:
    strategy: CompactStrategy


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def _truncate_entry(entry: HistoryEntry, limit: int) -> HistoryEntry:
    user = UserMessage(
        content=_truncate(entry.user.content, limit),
        tool_results=[
            ToolUseResult(
                tool_use_id=result.tool_use_id,
                content=[_truncate(result.text(), limit)],
                status=result.status,
            )
            for result in entry.user.tool_results
        ],
        timestamp=entry.user.timestamp,
    )
    assistant = AssistantMessage(
        content=_truncate(entry.assistant.content, limit),
        tool_uses=list(entry.assistant.tool_uses),
        message_id=entry.assistant.message_id,
    )
    return HistoryEntry(user=user, assistant=assistant, request_metadata=entry.request_metadata)


class CompactionEngine:
    """Build summarization requests and decide how to retry them."""

    def __init__(self, backend: Backend, truncated_length: int = TRUNCATED_MAX_MESSAGE_LENGTH):
        self.backend = backend
        self.truncated_length = truncated_length

    def next_strategy(self, strategy: CompactStrategy, history_len: int) -> CompactStrategy | None:
        return next_strategy(strategy, history_len, self.truncated_length)

    def build_summary_request(
        self,
        conversation: ConversationState,
        custom_prompt: str | None,
        strategy: CompactStrategy,
    ) -> ConversationSnapshot:
        history = list(conversation.history)
        if strategy.messages_to_exclude:
            history = history[: max(len(history) - strategy.messages_to_exclude, 0)]
        if strategy.truncate_large_messages:
            history = [_truncate_entry(entry, strategy.max_message_length) for entry in history]

        prompt = SUMMARY_PROMPT
        if custom_prompt:
            prompt += f"\n\nIMPORTANT CUSTOM INSTRUCTION: {custom_prompt}"

        return ConversationSnapshot(
            conversation_id=conversation.conversation_id,
            user_message=UserMessage.prompt(prompt),
            history=tuple(history),
            model=conversation.model,
            summary=conversation.latest_summary[0] if conversation.latest_summary else None,
        )

    async def compact(
        self,
        conversation: ConversationState,
        custom_prompt: str | None,
        strategy: CompactStrategy,
        metadata_slot: RequestMetadataSlot | None = None,
    ) -> CompactResult | CompactRetry | None:
        """Request a summary of the conversation.

        Returns None for an empty history, ``CompactRetry`` with an escalated
        strategy when the summarization request itself overflowed, and
        ``CompactResult`` on success.

        Raises:
            CompactHistoryFailure when no stronger strategy is left
        """
        history_len = len(conversation.history)
        if history_len == 0:
            return None

        snapshot = self.build_summary_request(conversation, custom_prompt, strategy)
        log.info("Requesting history summary", history_len=history_len, strategy=strategy)
        try:
            stream = await self.backend.send_message(snapshot, metadata_slot)
        except ContextWindowOverflowError:
            escalated = self.next_strategy(strategy, history_len)
            log.warning("Summary request overflowed", strategy=strategy, next_strategy=escalated)
            if escalated is None:
                raise CompactHistoryFailure()
            return CompactRetry(escalated)

        try:
            while True:
                event = await stream.recv()
                if event is None:
                    raise ChatError("Stream failed during compaction")
                if isinstance(event, EndStream):
                    return CompactResult(
                        summary=event.message.content,
                        request_metadata=event.request_metadata,
                        strategy=strategy,
                    )
        finally:
            await stream.aclose()
