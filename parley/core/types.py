"""Core types for parley.

This module defines the fundamental data structures used throughout the
orchestrator: conversations, messages, summaries, tool calls, and the
stream events yielded by provider adapters. All dataclasses are frozen;
state changes produce new instances via dataclasses.replace().
"""

from __future__ import annotations

import json
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from parley.core.cancel import CancellationToken


def new_id() -> str:
    """Return a short unique identifier (time-ordered prefix + random suffix)."""
    return f"{time.time_ns():x}{secrets.token_hex(4)}"


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class Role(Enum):
    """Message role in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class FileRef:
    """An attachment on a user message.

    Attributes:
        name: Original file name.
        mime_type: MIME type (e.g. "image/png", "text/plain").
        size: Size in bytes of the original file.
        content: Extracted text content, if any.
        preview: Data URL (base64) preview, used for images.
    """

    name: str
    mime_type: str
    size: int = 0
    content: str | None = None
    preview: str | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass(frozen=True)
class Message:
    """A message in a conversation.

    Attributes:
        id: Unique within its conversation.
        role: The role of the message sender.
        text: The text content. Empty for a streaming placeholder until the
            first flush.
        created_at: Creation timestamp.
        attachments: Files attached to a user message.
        deleted: Soft-delete marker.
    """

    id: str
    role: Role
    text: str
    created_at: datetime = field(default_factory=utcnow)
    attachments: tuple[FileRef, ...] = ()
    deleted: bool = False


@dataclass(frozen=True)
class Conversation:
    """A conversation owned by the message store.

    Attributes:
        id: Conversation identifier.
        title: Display title.
        messages: Ordered messages, including soft-deleted ones.
        last_modified_at: Timestamp of the last mutation.
        profile: Name of the profile (provider, model, system prompt) in use.
    """

    id: str
    title: str
    messages: tuple[Message, ...] = ()
    last_modified_at: datetime = field(default_factory=utcnow)
    profile: str = "default"

    @property
    def visible_messages(self) -> tuple[Message, ...]:
        """Messages that are not soft-deleted."""
        return tuple(m for m in self.messages if not m.deleted)

    def find(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def index_of(self, message_id: str) -> int:
        """Index of a message, or -1 if not present."""
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return -1


@dataclass(frozen=True)
class ConversationSummary:
    """Condensed history for a conversation.

    Attributes:
        conversation_id: The summarized conversation.
        summary_text: The generated summary (length-clamped).
        covered_message_count: Visible message count when the summary was
            produced. Never decreases for a conversation.
        last_updated_at: When this version was produced.
        version: Starts at 1, increments per successful regeneration.
        topics: Most frequent words in the summary.
    """

    conversation_id: str
    summary_text: str
    covered_message_count: int
    last_updated_at: datetime = field(default_factory=utcnow)
    version: int = 1
    topics: tuple[str, ...] = ()


# --- Tool Calls ---


@dataclass(frozen=True)
class ToolCallRequest:
    """A request to execute a tool, emitted mid-stream by a provider.

    Attributes:
        id: Provider-assigned call identifier.
        tool_name: Name of the tool to execute.
        raw_arguments: JSON text of the arguments, exactly as streamed.
    """

    id: str
    tool_name: str
    raw_arguments: str = "{}"


@dataclass(frozen=True)
class ToolCallResult:
    """Result of executing one tool call.

    Exactly one of payload / error_message is meaningful: a non-empty
    error_message marks a failed call.
    """

    tool_call_id: str
    tool_name: str
    payload: Any = None
    error_message: str = ""

    @property
    def success(self) -> bool:
        """Return True if the tool execution succeeded (no error)."""
        return not self.error_message

    def to_content(self) -> str:
        """JSON text fed back to the model as the tool response."""
        if self.error_message:
            return json.dumps({"error": self.error_message}, ensure_ascii=False)
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, ensure_ascii=False, default=str)

    def to_response_object(self) -> dict[str, Any]:
        """Structured form for providers that take objects, not text."""
        if self.error_message:
            return {"error": self.error_message}
        if isinstance(self.payload, dict):
            return self.payload
        return {"result": self.payload}


@dataclass(frozen=True)
class ToolRound:
    """One completed tool round: what the model asked for and what it got.

    Attributes:
        requests: Tool calls requested by the model, in stream order.
        results: One result per request, in the same order.
        text: Assistant text streamed before the tool calls.
    """

    requests: tuple[ToolCallRequest, ...]
    results: tuple[ToolCallResult, ...]
    text: str = ""


# --- Streaming Types ---
# Yielded by ProviderAdapter.stream(). Tool-call fragments are coalesced by
# the adapter, so a ToolCallDelta always carries complete argument text.


@dataclass(frozen=True)
class StreamEvent:
    """Base class for all streaming events."""

    pass


@dataclass(frozen=True)
class TextDelta(StreamEvent):
    """A chunk of assistant text."""

    text: str


@dataclass(frozen=True)
class ToolCallDelta(StreamEvent):
    """A complete tool call surfaced by the adapter.

    Attributes:
        index: Position of the call within the response.
        id: Call identifier (synthesized by adapters whose vendor has none).
        name: Tool name.
        arguments: Complete JSON argument text.
    """

    index: int
    id: str
    name: str
    arguments: str = "{}"

    def to_request(self) -> ToolCallRequest:
        return ToolCallRequest(id=self.id, tool_name=self.name, raw_arguments=self.arguments)


@dataclass(frozen=True)
class StreamEnd(StreamEvent):
    """Signals the stream has ended."""

    finish_reason: str | None = None


# --- Turn lifecycle ---


class TurnState(Enum):
    """Orchestrator state for one conversation."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING_TEXT = "streaming_text"
    TOOL_DISPATCH = "tool_dispatch"
    FINALIZING = "finalizing"
    FAILED = "failed"


@dataclass(frozen=True)
class PendingTurn:
    """Transient record of the turn in flight for a conversation.

    Attributes:
        conversation_id: Conversation the turn belongs to.
        user_message_id: The user message appended at turn start.
        assistant_placeholder_id: The placeholder being filled by the stream.
        cancel_token: Abort signal for this turn.
        restore: Messages removed when the turn started (regenerate/edit),
            re-appended on rollback.
    """

    conversation_id: str
    user_message_id: str
    assistant_placeholder_id: str
    cancel_token: "CancellationToken"
    restore: tuple[Message, ...] = ()
