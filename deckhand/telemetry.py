"""Telemetry records for turns and tool uses, emitted through structlog."""

from __future__ import annotations

from collections import deque
from typing import Any, Literal

from pydantic import BaseModel, Field

from deckhand.conversation import RequestMetadata
from deckhand.exceptions import ErrorReason
from deckhand.logging import get_logger

log = get_logger("deckhand.telemetry")

TELEMETRY_HISTORY_LEN = 200


class ToolUseTelemetry(BaseModel):
    """One tool use, from validation to execution."""

    conversation_id: str
    tool_use_id: str
    tool_name: str
    is_valid: bool | None = None
    is_accepted: bool = False
    is_trusted: bool = False
    is_success: bool | None = None
    reason_desc: str | None = None
    execution_duration_ms: float | None = None
    turn_duration_ms: float | None = None


class ChatTelemetryEvent(BaseModel):
    """Outcome of one backend request within a user turn."""

    conversation_id: str
    result: Literal["succeeded", "failed", "cancelled"] = "succeeded"
    reason: str | None = None
    reason_desc: str | None = None
    status_code: int | None = None
    model: str | None = None
    request_ids: list[str] = Field(default_factory=list)
    request_count: int = 0
    message_ids: list[str] = Field(default_factory=list)
    time_to_first_chunk_ms: list[float] = Field(default_factory=list)
    response_size: int = 0


class TelemetryRecorder:
    """Collect telemetry events, log them and keep the latest in memory.

    Recording never raises into the caller.
    """

    def __init__(self, max_events: int = TELEMETRY_HISTORY_LEN):
        self.events: deque[BaseModel] = deque(maxlen=max_events)

    def _emit(self, kind: str, event: BaseModel) -> None:
        self.events.append(event)
        try:
            log.info("Telemetry event", kind=kind, **event.model_dump(exclude_none=True))
        except Exception as e:
            log.debug("Telemetry emit failed", kind=kind, error=str(e))

    def record_tool_use(self, event: ToolUseTelemetry) -> None:
        self._emit("tool_use", event)

    def record_turn(
        self,
        conversation_id: str,
        metadata: list[RequestMetadata],
        model: str | None = None,
        reason: ErrorReason | None = None,
        cancelled: bool = False,
    ) -> ChatTelemetryEvent:
        result: Literal["succeeded", "failed", "cancelled"] = "succeeded"
        if cancelled:
            result = "cancelled"
        elif reason is not None:
            result = "failed"
        event = ChatTelemetryEvent(
            conversation_id=conversation_id,
            result=result,
            reason=reason.reason if reason else None,
            reason_desc=reason.reason_description if reason else None,
            status_code=reason.status_code if reason else None,
            model=model,
            request_ids=[m.request_id for m in metadata if m.request_id],
            request_count=len(metadata),
            message_ids=[m.message_id for m in metadata if m.message_id],
            time_to_first_chunk_ms=[
                m.time_to_first_chunk_ms for m in metadata if m.time_to_first_chunk_ms is not None
            ],
            response_size=sum(m.response_size for m in metadata),
        )
        self._emit("chat_turn", event)
        return event

    def record_slash_command(self, command: str, subcommand: str | None, succeeded: bool, error: str | None = None) -> None:
        payload: dict[str, Any] = {"command": command, "subcommand": subcommand, "succeeded": succeeded}
        if error:
            payload["error"] = error
        log.info("Telemetry event", kind="slash_command", **payload)

    def of_kind(self, cls: type[BaseModel]) -> list[BaseModel]:
        return [event for event in self.events if isinstance(event, cls)]
