import asyncio
import io
from collections import deque

import pytest
from rich.console import Console

from deckhand.backend import AssistantText, EndStream, ResponseStream, ToolUseEvent, ToolUseStart
from deckhand.cancellation import RequestMetadataSlot
from deckhand.conversation import AssistantMessage, RequestMetadata, ToolUse
from deckhand.exceptions import RecvError, StreamTimeoutError, TruncatedToolUseError
from deckhand.stream import Renderer, StreamConsumer


class ListStream(ResponseStream):
    def __init__(self, events, hang=False):
        self._events = deque(events)
        self.hang = hang
        self.request_id = "req-1"
        self.closed = False

    async def recv(self):
        if self._events:
            event = self._events.popleft()
            if isinstance(event, Exception):
                raise event
            return event
        if self.hang:
            await asyncio.Event().wait()
        return None

    async def aclose(self):
        self.closed = True


def renderer():
    return Renderer(Console(file=io.StringIO()))


@pytest.mark.asyncio
async def test_text_and_tool_uses_are_assembled():
    tool_use = ToolUse(id="t1", name="fs_read", args={"path": "a"})
    metadata = RequestMetadata(request_id="req-1")
    stream = ListStream(
        [
            AssistantText("Let me "),
            AssistantText("look."),
            ToolUseStart(name="fs_read", tool_use_id="t1"),
            ToolUseEvent(tool_use),
            EndStream(AssistantMessage(content="Let me look.", message_id="m1"), metadata),
        ]
    )
    sink = renderer()

    result = await StreamConsumer().consume(stream, sink)

    assert result.message.content == "Let me look."
    assert result.message.tool_uses == [tool_use]
    assert result.tool_uses == [tool_use]
    assert result.request_metadata is metadata
    assert stream.closed is True
    assert sink.console.file.getvalue().startswith("Let me look.")


@pytest.mark.asyncio
async def test_stream_without_end_marker_still_completes():
    slot = RequestMetadataSlot()
    slot.set(RequestMetadata(request_id="req-1"))

    result = await StreamConsumer().consume(ListStream([AssistantText("done")]), renderer(), slot)

    assert result.message.content == "done"
    assert result.request_metadata.request_id == "req-1"


@pytest.mark.asyncio
async def test_eof_inside_tool_use_is_truncation():
    stream = ListStream([AssistantText("Writing"), ToolUseStart(name="fs_write", tool_use_id="t7")])

    with pytest.raises(TruncatedToolUseError) as excinfo:
        await StreamConsumer().consume(stream, renderer())

    err = excinfo.value
    assert err.tool_use_id == "t7"
    assert err.name == "fs_write"
    assert err.partial_message.content == "Writing"
    assert [tool_use.id for tool_use in err.partial_message.tool_uses] == ["t7"]
    assert stream.closed is True


@pytest.mark.asyncio
async def test_idle_timeout_carries_partial_message():
    slot = RequestMetadataSlot()
    slot.set(RequestMetadata(request_id="req-1"))
    stream = ListStream([AssistantText("half")], hang=True)

    with pytest.raises(StreamTimeoutError) as excinfo:
        await StreamConsumer(idle_timeout=0.05).consume(stream, renderer(), slot)

    assert excinfo.value.partial_message.content == "half"
    assert excinfo.value.request_metadata.request_id == "req-1"
    assert stream.closed is True


@pytest.mark.asyncio
async def test_other_receive_errors_propagate():
    stream = ListStream([AssistantText("x"), RecvError("connection reset")])

    with pytest.raises(RecvError, match="connection reset"):
        await StreamConsumer().consume(stream, renderer())
    assert stream.closed is True


def test_renderer_boundary_only_breaks_mid_line():
    sink = renderer()
    sink.boundary()
    assert sink.console.file.getvalue() == ""

    sink.write("partial")
    sink.boundary()
    sink.boundary()

    assert sink.console.file.getvalue() == "partial\n"
