from collections import deque

import pytest

from deckhand.backend import Backend, EndStream, ResponseStream
from deckhand.compaction import (
    MAX_COMPACT_ESCALATIONS,
    SUMMARY_PROMPT,
    TRUNCATION_MARKER,
    CompactionEngine,
    CompactResult,
    CompactRetry,
    CompactStrategy,
    next_strategy,
)
from deckhand.conversation import AssistantMessage, ConversationState, RequestMetadata
from deckhand.exceptions import ChatError, CompactHistoryFailure, ContextWindowOverflowError
from deckhand.permissions import Agents
from deckhand.tools import create_tool_registry


class OneShotStream(ResponseStream):
    def __init__(self, events):
        self._events = deque(events)
        self.closed = False

    async def recv(self):
        return self._events.popleft() if self._events else None

    async def aclose(self):
        self.closed = True


class FakeBackend(Backend):
    def __init__(self, replies):
        self.replies = deque(replies)
        self.snapshots = []

    async def send_message(self, snapshot, metadata_slot=None):
        self.snapshots.append(snapshot)
        reply = self.replies.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply


def conversation_with(*exchanges):
    conversation = ConversationState(Agents(), create_tool_registry(), model="m")
    for prompt, answer in exchanges:
        conversation.set_next_user_message(prompt)
        conversation.push_assistant_message(AssistantMessage(content=answer), None)
    return conversation


def summary_stream(text):
    return OneShotStream([EndStream(AssistantMessage(content=text), RequestMetadata(request_id="sum"))])


def test_overflow_strategy_depends_on_history_length():
    short = CompactStrategy.for_overflow(2, truncated_length=100)
    long = CompactStrategy.for_overflow(3, truncated_length=100)

    assert short == CompactStrategy(truncate_large_messages=True, max_message_length=100)
    assert long == CompactStrategy()


def test_long_history_excludes_latest_message_then_truncates():
    first = next_strategy(CompactStrategy(), history_len=5, truncated_length=100)
    second = next_strategy(first, history_len=5, truncated_length=100)

    assert first.messages_to_exclude == 1
    assert first.truncate_large_messages is False
    assert second.messages_to_exclude == 1
    assert second.truncate_large_messages is True
    assert second.max_message_length == 100
    assert next_strategy(second, history_len=5, truncated_length=100) is None


def test_short_history_truncates_first():
    first = next_strategy(CompactStrategy(), history_len=2, truncated_length=100)

    assert first.truncate_large_messages is True
    assert first.messages_to_exclude == 0
    assert next_strategy(first, history_len=2, truncated_length=100) is None


def test_escalation_is_capped():
    exhausted = CompactStrategy(escalation=MAX_COMPACT_ESCALATIONS)
    assert next_strategy(exhausted, history_len=10) is None


def test_summary_request_applies_exclusion_truncation_and_prompt():
    conversation = conversation_with(("a" * 50, "first"), ("second prompt", "second"), ("third", "last"))
    engine = CompactionEngine(FakeBackend([]), truncated_length=10)
    strategy = CompactStrategy(truncate_large_messages=True, max_message_length=10, messages_to_exclude=1)

    snapshot = engine.build_summary_request(conversation, "keep file names", strategy)

    assert len(snapshot.history) == 2
    assert snapshot.history[0].user.content == "a" * 10 + TRUNCATION_MARKER
    assert snapshot.history[1].assistant.content == "second"
    assert snapshot.user_message.content.startswith(SUMMARY_PROMPT)
    assert snapshot.user_message.content.endswith("IMPORTANT CUSTOM INSTRUCTION: keep file names")
    assert snapshot.tool_definitions == ()
    assert len(conversation.history[0].user.content) == 50


@pytest.mark.asyncio
async def test_compact_returns_summary():
    stream = summary_stream("- did things")
    backend = FakeBackend([stream])
    engine = CompactionEngine(backend)

    outcome = await engine.compact(conversation_with(("hi", "hello")), None, CompactStrategy())

    assert isinstance(outcome, CompactResult)
    assert outcome.summary == "- did things"
    assert outcome.request_metadata.request_id == "sum"
    assert stream.closed is True


@pytest.mark.asyncio
async def test_compact_on_empty_history_returns_none():
    backend = FakeBackend([])
    assert await CompactionEngine(backend).compact(conversation_with(), None, CompactStrategy()) is None
    assert backend.snapshots == []


@pytest.mark.asyncio
async def test_overflowing_summary_request_escalates_then_fails():
    conversation = conversation_with(("1", "a"), ("2", "b"), ("3", "c"))
    engine = CompactionEngine(FakeBackend([ContextWindowOverflowError("too big")] * 3), truncated_length=100)

    first = await engine.compact(conversation, None, CompactStrategy())
    assert isinstance(first, CompactRetry)
    assert first.strategy.messages_to_exclude == 1

    second = await engine.compact(conversation, None, first.strategy)
    assert isinstance(second, CompactRetry)
    assert second.strategy.truncate_large_messages is True

    with pytest.raises(CompactHistoryFailure):
        await engine.compact(conversation, None, second.strategy)


@pytest.mark.asyncio
async def test_stream_ending_without_summary_is_an_error():
    engine = CompactionEngine(FakeBackend([OneShotStream([])]))

    with pytest.raises(ChatError, match="Stream failed during compaction"):
        await engine.compact(conversation_with(("hi", "hello")), None, CompactStrategy())
