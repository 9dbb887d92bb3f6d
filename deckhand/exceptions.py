"""Custom exceptions for Deckhand."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, NamedTuple

if TYPE_CHECKING:
    from deckhand.conversation import AssistantMessage, RequestMetadata


class DeckhandError(Exception):
    """Base exception for Deckhand."""

    pass


class ConfigurationError(DeckhandError):
    """Configuration-related errors."""

    pass


class ChatError(DeckhandError):
    """An error that ends (or redirects) the current chat turn."""

    reason: str = "GenericError"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def reason_code(self) -> str:
        return self.reason


class ErrorReason(NamedTuple):
    """Classification shared by user-facing messages and telemetry."""

    reason: str
    reason_description: str
    status_code: int | None


def error_reason(err: BaseException) -> ErrorReason:
    """Classify an error into a (reason, description, status code) triple."""
    if isinstance(err, ChatError):
        return ErrorReason(err.reason_code, str(err), err.status_code)
    if isinstance(err, OSError):
        return ErrorReason("StdIoError", str(err), None)
    return ErrorReason("GenericError", str(err) or type(err).__name__, None)


# Backend send errors


class BackendError(ChatError):
    """The backend rejected or failed to serve a request."""

    reason = "BackendError"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.request_id = request_id


class TransportError(BackendError):
    """Network or protocol failure talking to the backend."""

    reason = "TransportError"
    retryable = True


class ContextWindowOverflowError(BackendError):
    """The conversation no longer fits in the model's context window."""

    reason = "ContextWindowOverflow"


class QuotaExceededError(BackendError):
    """Request quota or rate limit reached."""

    reason = "QuotaBreachError"
    retryable = True


class ModelOverloadedError(BackendError):
    """The selected model is temporarily unavailable."""

    reason = "ModelOverloadedError"
    retryable = True


class MonthlyLimitReachedError(BackendError):
    """The account's monthly request allowance is used up."""

    reason = "MonthlyLimitReached"


# Response stream errors


class RecvError(ChatError):
    """Error raised while consuming a response stream."""

    reason = "RecvError"

    def __init__(
        self,
        message: str,
        request_metadata: RequestMetadata | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.request_metadata = request_metadata


class StreamTimeoutError(RecvError):
    """The backend stopped sending events for too long."""

    reason = "StreamTimeout"

    def __init__(
        self,
        duration: float,
        request_metadata: RequestMetadata | None = None,
        partial_message: AssistantMessage | None = None,
    ):
        super().__init__(
            f"Stream timed out after waiting {duration:g}s",
            request_metadata=request_metadata,
        )
        self.duration = duration
        self.partial_message = partial_message


class TruncatedToolUseError(RecvError):
    """The stream ended before a tool use was fully received."""

    reason = "UnexpectedToolUseEos"

    def __init__(
        self,
        tool_use_id: str,
        name: str,
        request_metadata: RequestMetadata | None = None,
        partial_message: AssistantMessage | None = None,
    ):
        super().__init__(
            f"The response stream ended before the entire tool use was received: {name} ({tool_use_id})",
            request_metadata=request_metadata,
        )
        self.tool_use_id = tool_use_id
        self.name = name
        self.partial_message = partial_message


# Tool errors


class ToolError(DeckhandError):
    """Tool resolution, validation or execution errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f'The tool, "{tool_name}" is not supported by the client')
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool arguments failed validation."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


# Turn-level errors


class TurnInterrupted(ChatError):
    """The user interrupted the running operation."""

    reason = "Interrupted"

    def __init__(self, tool_uses: list[Any] | None = None):
        super().__init__("interrupted")
        self.tool_uses = tool_uses


class CompactHistoryFailure(ChatError):
    """Compaction could not shrink the history enough to be accepted."""

    reason = "CompactHistoryFailure"

    def __init__(self) -> None:
        super().__init__("The conversation history is too large to compact")


class NonInteractiveToolApproval(ChatError):
    """A tool needs approval but nobody is there to give it."""

    reason = "NonInteractiveToolApproval"

    def __init__(self) -> None:
        super().__init__(
            "Tool approval required but --no-interactive was specified. "
            "Use --trust-all-tools to automatically approve tools."
        )


class PromptTemplateError(ChatError):
    """An @-prompt invocation could not be resolved."""

    reason = "GetPromptError"


class StoreError(DeckhandError):
    """Conversation persistence errors."""

    pass
