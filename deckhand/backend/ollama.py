"""Ollama backend - streaming HTTP calls to the Ollama chat API."""

from __future__ import annotations

import base64
import json
import time
import uuid
from collections import deque
from typing import Any

import httpx

from deckhand.backend import (
    AssistantText,
    Backend,
    EndStream,
    ResponseEvent,
    ResponseStream,
    SubscriptionStatus,
    ToolUseEvent,
    ToolUseStart,
)
from deckhand.cancellation import RequestMetadataSlot
from deckhand.conversation import (
    AssistantMessage,
    ConversationSnapshot,
    RequestMetadata,
    ToolUse,
    UserMessage,
)
from deckhand.exceptions import (
    BackendError,
    ContextWindowOverflowError,
    ModelOverloadedError,
    MonthlyLimitReachedError,
    QuotaExceededError,
    RecvError,
    StreamTimeoutError,
    TransportError,
)
from deckhand.logging import get_logger

log = get_logger(__name__)

OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

SYSTEM_PROMPT = (
    "You are Deckhand, a coding assistant working in the user's terminal. "
    "Use the available tools to read and edit files, run shell commands and call AWS. "
    "Keep tool calls small and explain what you are doing."
)
SUMMARY_PREFIX = "The conversation so far has been summarized. Continue from this summary:\n\n"

_OVERFLOW_MARKERS = ("context length", "context window", "prompt is too long", "too many tokens")
_OVERLOAD_MARKERS = ("overloaded", "server busy", "temporarily unavailable")


def _now_ms() -> int:
    return int(time.time() * 1000)


def classify_http_error(status_code: int, body: str, request_id: str | None = None) -> BackendError:
    """Map an HTTP error response onto the backend error taxonomy."""
    text = body.strip()
    lowered = text.lower()
    message = f"Ollama API error {status_code}: {text}" if text else f"Ollama API error {status_code}"

    if status_code == 413 or any(marker in lowered for marker in _OVERFLOW_MARKERS):
        return ContextWindowOverflowError(message, status_code=status_code, request_id=request_id)
    if status_code == 402 or "monthly" in lowered:
        return MonthlyLimitReachedError(message, status_code=status_code, request_id=request_id)
    if status_code == 429:
        return QuotaExceededError(message, status_code=status_code, request_id=request_id)
    if status_code in (503, 529) or any(marker in lowered for marker in _OVERLOAD_MARKERS):
        return ModelOverloadedError(message, status_code=status_code, request_id=request_id)
    return BackendError(message, status_code=status_code, request_id=request_id)


def _user_to_messages(user: UserMessage, tool_names: dict[str, str]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for result in user.tool_results:
        entry: dict[str, Any] = {"role": "tool", "content": result.text()}
        name = tool_names.get(result.tool_use_id)
        if name:
            entry["tool_name"] = name
        messages.append(entry)
    if user.content or not messages:
        messages.append({"role": "user", "content": user.content})
    if user.images:
        messages[-1]["images"] = [base64.b64encode(image.data).decode("ascii") for image in user.images]
    return messages


def _assistant_to_message(assistant: AssistantMessage) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": assistant.content}
    if assistant.tool_uses:
        message["tool_calls"] = [
            {"function": {"name": tool_use.name, "arguments": tool_use.args}}
            for tool_use in assistant.tool_uses
        ]
    return message


def convert_snapshot(snapshot: ConversationSnapshot) -> list[dict[str, Any]]:
    """Convert a conversation snapshot to Ollama chat messages."""
    system = SYSTEM_PROMPT
    if snapshot.summary:
        system = f"{SYSTEM_PROMPT}\n\n{SUMMARY_PREFIX}{snapshot.summary}"
    messages: list[dict[str, Any]] = [{"role": "system", "content": system}]

    tool_names: dict[str, str] = {}
    for entry in snapshot.history:
        messages.extend(_user_to_messages(entry.user, tool_names))
        messages.append(_assistant_to_message(entry.assistant))
        tool_names = {tool_use.id: tool_use.name for tool_use in entry.assistant.tool_uses}
    messages.extend(_user_to_messages(snapshot.user_message, tool_names))
    return messages


def convert_tools(definitions: tuple[dict[str, Any], ...]) -> list[dict[str, Any]]:
    """Convert tool definitions to Ollama format."""
    return [
        {
            "type": "function",
            "function": {
                "name": definition["name"],
                "description": definition.get("description", ""),
                "parameters": definition.get("parameters", {}),
            },
        }
        for definition in definitions
        if definition.get("name")
    ]


class OllamaResponseStream(ResponseStream):
    """Response events decoded from Ollama's newline-delimited JSON stream."""

    def __init__(
        self,
        response: httpx.Response,
        metadata: RequestMetadata,
        read_timeout: float,
    ):
        self._response = response
        self._lines = response.aiter_lines()
        self._pending: deque[ResponseEvent] = deque()
        self._content: list[str] = []
        self._tool_uses: list[ToolUse] = []
        self._done = False
        self._read_timeout = read_timeout
        self.metadata = metadata
        self.request_id = metadata.request_id

    async def recv(self) -> ResponseEvent | None:
        while not self._pending:
            if self._done:
                await self.aclose()
                return None
            try:
                line = await self._lines.__anext__()
            except StopAsyncIteration:
                self._done = True
                continue
            except httpx.ReadTimeout as e:
                await self.aclose()
                raise StreamTimeoutError(self._read_timeout, request_metadata=self.metadata) from e
            except httpx.HTTPError as e:
                await self.aclose()
                raise RecvError(f"Ollama streaming error: {e}", request_metadata=self.metadata) from e
            try:
                self._handle_line(line)
            except RecvError:
                await self.aclose()
                raise
        return self._pending.popleft()

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError:
            log.debug("Skipping undecodable stream line", line=line[:200])
            return

        if chunk.get("error"):
            raise RecvError(f"Ollama stream error: {chunk['error']}", request_metadata=self.metadata)

        if self.metadata.time_to_first_chunk_ms is None:
            self.metadata.time_to_first_chunk_ms = float(_now_ms() - self.metadata.request_start_timestamp_ms)

        message = chunk.get("message") or {}
        content = message.get("content") or ""
        if content:
            self._content.append(content)
            self.metadata.response_size += len(content)
            self._pending.append(AssistantText(content))

        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {"raw": arguments}
            tool_use = ToolUse(
                id=str(call.get("id") or f"tooluse_{uuid.uuid4().hex[:22]}"),
                name=str(function.get("name", "")),
                args=arguments if isinstance(arguments, dict) else {"value": arguments},
            )
            self._tool_uses.append(tool_use)
            self.metadata.tool_use_ids.append(tool_use.id)
            self._pending.append(ToolUseStart(name=tool_use.name, tool_use_id=tool_use.id))
            self._pending.append(ToolUseEvent(tool_use))

        if chunk.get("done"):
            self.metadata.stream_end_timestamp_ms = _now_ms()
            assistant = AssistantMessage(
                content="".join(self._content),
                tool_uses=list(self._tool_uses),
                message_id=self.metadata.message_id,
            )
            self._pending.append(EndStream(message=assistant, request_metadata=self.metadata))
            self._done = True

    async def aclose(self) -> None:
        if not self._response.is_closed:
            await self._response.aclose()


class OllamaBackend(Backend):
    """Direct Ollama API backend."""

    def __init__(
        self,
        model: str = "qwen3-coder:30b",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.2,
        max_tokens: int = 8192,
        api_key: str | None = None,
        read_timeout: float = 300.0,
        max_chars: int = 600_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Ollama backend.

        Args:
            model: Default Ollama model name (e.g., 'qwen3-coder:30b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            read_timeout: Seconds to wait for the next stream chunk
            max_chars: Character budget above which requests overflow locally
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.read_timeout = read_timeout
        self.max_chars = max_chars

        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, read=read_timeout),
            follow_redirects=True,
            transport=transport,
        )

    def _build_body(self, snapshot: ConversationSnapshot) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": 65536,
            "temperature": self.temperature,
        }
        if self.max_tokens:
            options["num_predict"] = self.max_tokens

        body: dict[str, Any] = {
            "model": snapshot.model or self.model,
            "messages": convert_snapshot(snapshot),
            "stream": True,
            "options": options,
        }
        tools = convert_tools(snapshot.tool_definitions)
        if tools:
            body["tools"] = tools
        return body

    async def send_message(
        self,
        snapshot: ConversationSnapshot,
        metadata_slot: RequestMetadataSlot | None = None,
    ) -> ResponseStream:
        url = f"{self.base_url}/api/chat"
        body = self._build_body(snapshot)

        size = sum(len(json.dumps(message, default=str)) for message in body["messages"])
        if size > self.max_chars:
            raise ContextWindowOverflowError(
                f"Conversation is {size} characters, exceeding the {self.max_chars} character budget"
            )

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        metadata = RequestMetadata(
            message_id=str(uuid.uuid4()),
            model_id=body["model"],
            request_start_timestamp_ms=_now_ms(),
            user_prompt_length=len(snapshot.user_message.content),
        )
        log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(body["messages"]))
        request = self.client.build_request("POST", url, json=body, headers=headers)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"Ollama HTTP error: {e}") from e

        metadata.request_id = response.headers.get("x-request-id") or str(uuid.uuid4())
        if metadata_slot is not None:
            metadata_slot.set(metadata)

        log.debug("Ollama response status", status=response.status_code)
        if not response.is_success:
            try:
                error_text = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            raise classify_http_error(response.status_code, error_text, metadata.request_id)

        return OllamaResponseStream(response, metadata, self.read_timeout)

    async def create_subscription_token(self) -> SubscriptionStatus:
        return SubscriptionStatus(plan="local", active=True)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
