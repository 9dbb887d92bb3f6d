"""Consume one backend response stream into an assistant message."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field

from rich.console import Console

from deckhand.backend import AssistantText, EndStream, ResponseStream, ToolUseEvent, ToolUseStart
from deckhand.cancellation import RequestMetadataSlot
from deckhand.conversation import AssistantMessage, RequestMetadata, ToolUse
from deckhand.exceptions import StreamTimeoutError, TruncatedToolUseError
from deckhand.logging import get_logger

log = get_logger(__name__)


class Renderer:
    """Incremental sink for assistant text."""

    def __init__(self, console: Console):
        self.console = console
        self._at_line_start = True

    def write(self, text: str) -> None:
        if not text:
            return
        self.console.print(text, end="", markup=False, highlight=False, soft_wrap=True)
        self._at_line_start = text.endswith("\n")

    def boundary(self) -> None:
        """End the current text run so following output starts on a fresh line."""
        if not self._at_line_start:
            self.console.print()
            self._at_line_start = True

    def finish(self) -> None:
        self.boundary()


@dataclass
class StreamResult:
    message: AssistantMessage
    request_metadata: RequestMetadata | None = None
    tool_uses: list[ToolUse] = field(default_factory=list)


class StreamConsumer:
    """Assemble an assistant message from response events.

    Stream timeouts and tool uses cut off mid-stream are raised with the
    partial message attached so the caller can recover; every other receive
    error propagates unchanged.
    """

    def __init__(self, idle_timeout: float | None = None):
        self.idle_timeout = idle_timeout

    async def consume(
        self,
        stream: ResponseStream,
        renderer: Renderer,
        metadata_slot: RequestMetadataSlot | None = None,
    ) -> StreamResult:
        text_parts: list[str] = []
        tool_uses: list[ToolUse] = []
        receiving: ToolUseStart | None = None

        def _metadata() -> RequestMetadata | None:
            return metadata_slot.peek() if metadata_slot is not None else None

        try:
            while True:
                try:
                    event = await self._recv(stream, _metadata())
                except StreamTimeoutError as e:
                    renderer.finish()
                    if e.partial_message is None:
                        e.partial_message = AssistantMessage(
                            content="".join(text_parts),
                            message_id=stream.request_id,
                        )
                    if e.request_metadata is None:
                        e.request_metadata = _metadata()
                    raise

                if event is None:
                    renderer.finish()
                    if receiving is not None:
                        tool_use_id = receiving.tool_use_id or f"tooluse_{uuid.uuid4().hex[:22]}"
                        log.warning("Stream ended inside a tool use", tool=receiving.name, tool_use_id=tool_use_id)
                        partial = AssistantMessage(
                            content="".join(text_parts),
                            tool_uses=[*tool_uses, ToolUse(id=tool_use_id, name=receiving.name)],
                            message_id=stream.request_id,
                        )
                        raise TruncatedToolUseError(
                            tool_use_id,
                            receiving.name,
                            request_metadata=_metadata(),
                            partial_message=partial,
                        )
                    log.debug("Stream ended without an end marker", tool_uses=len(tool_uses))
                    message = AssistantMessage(
                        content="".join(text_parts),
                        tool_uses=list(tool_uses),
                        message_id=stream.request_id,
                    )
                    return StreamResult(message=message, request_metadata=_metadata(), tool_uses=list(tool_uses))

                if isinstance(event, AssistantText):
                    text_parts.append(event.text)
                    renderer.write(event.text)
                elif isinstance(event, ToolUseStart):
                    renderer.boundary()
                    receiving = event
                elif isinstance(event, ToolUseEvent):
                    tool_uses.append(event.tool_use)
                    receiving = None
                elif isinstance(event, EndStream):
                    renderer.finish()
                    message = event.message
                    if not message.tool_uses and tool_uses:
                        message = AssistantMessage(
                            content=message.content,
                            tool_uses=list(tool_uses),
                            message_id=message.message_id,
                        )
                    return StreamResult(
                        message=message,
                        request_metadata=event.request_metadata,
                        tool_uses=list(message.tool_uses),
                    )
        finally:
            await stream.aclose()

    async def _recv(self, stream: ResponseStream, metadata: RequestMetadata | None):
        if self.idle_timeout is None:
            return await stream.recv()
        try:
            return await asyncio.wait_for(stream.recv(), timeout=self.idle_timeout)
        except asyncio.TimeoutError as e:
            raise StreamTimeoutError(self.idle_timeout, request_metadata=metadata) from e
