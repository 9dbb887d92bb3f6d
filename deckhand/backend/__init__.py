"""Backend transport contract: conversation snapshot in, response events out."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING

from deckhand.config import Config
from deckhand.conversation import AssistantMessage, ConversationSnapshot, RequestMetadata, ToolUse
from deckhand.exceptions import ConfigurationError
from deckhand.logging import get_logger

if TYPE_CHECKING:
    from deckhand.cancellation import RequestMetadataSlot

log = get_logger(__name__)


@dataclass(frozen=True)
class ToolUseStart:
    """The model started emitting a tool use."""

    name: str
    tool_use_id: str | None = None


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class ToolUseEvent:
    """A tool use has been received in full."""

    tool_use: ToolUse


@dataclass(frozen=True)
class EndStream:
    message: AssistantMessage
    request_metadata: RequestMetadata


ResponseEvent = ToolUseStart | AssistantText | ToolUseEvent | EndStream


class ResponseStream(ABC):
    """Finite, non-restartable sequence of response events for one request."""

    request_id: str | None = None

    @abstractmethod
    async def recv(self) -> ResponseEvent | None:
        """Return the next event, or None once the stream is exhausted.

        Raises:
            RecvError (or a subclass) if the stream fails
        """
        pass

    async def aclose(self) -> None:
        """Release the underlying connection."""
        return None


@dataclass
class SubscriptionStatus:
    """Account plan details shown when a monthly limit is hit."""

    plan: str = "free"
    active: bool = False
    limits_reset_on: date | None = None


class Backend(ABC):
    """Sends conversation snapshots to a model."""

    @abstractmethod
    async def send_message(
        self,
        snapshot: ConversationSnapshot,
        metadata_slot: RequestMetadataSlot | None = None,
    ) -> ResponseStream:
        """Start a request and return its response stream.

        Raises:
            BackendError (or a subclass) if the request is rejected
        """
        pass

    async def create_subscription_token(self) -> SubscriptionStatus:
        return SubscriptionStatus()

    async def close(self) -> None:
        return None


def create_backend(config: Config) -> Backend:
    """Create the backend selected by ``model.provider``."""
    provider = config.model.provider.strip().lower()
    if provider == "ollama":
        from deckhand.backend.ollama import OLLAMA_NATIVE_BASE_URL, OllamaBackend

        return OllamaBackend(
            model=config.model.model,
            base_url=config.model.base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=config.model.temperature,
            max_tokens=config.model.max_tokens,
            api_key=config.model.api_key or None,
            read_timeout=config.chat.response_timeout,
            max_chars=config.context.max_chars,
        )
    raise ConfigurationError(f"Provider '{config.model.provider}' not supported. Use 'ollama'.")


__all__ = [
    "AssistantText",
    "Backend",
    "EndStream",
    "ResponseEvent",
    "ResponseStream",
    "SubscriptionStatus",
    "ToolUseEvent",
    "ToolUseStart",
    "create_backend",
]
