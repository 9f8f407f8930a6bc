"""Store events for parley.

Every store mutation publishes one of these to subscribers after the new
state is in place. UIs render from them; nothing in the core depends on a
subscriber being present.

Events are frozen dataclasses following the pattern in core/types.py.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from parley.core.types import utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from parley.core.types import Conversation, ConversationSummary, Message

__all__ = [
    "StoreEvent",
    "ConversationCreated",
    "ConversationDeleted",
    "ConversationRenamed",
    "ProfileChanged",
    "MessageAdded",
    "MessageUpdated",
    "MessageRemoved",
    "SummaryUpdated",
    "TurnStatus",
    "TurnStatusChanged",
    "Notification",
    "NotificationLevel",
]

NotificationLevel = Literal["info", "warning", "error"]


@dataclass(frozen=True)
class StoreEvent:
    """Base class for store events."""

    pass


@dataclass(frozen=True)
class ConversationCreated(StoreEvent):
    conversation: "Conversation"


@dataclass(frozen=True)
class ConversationDeleted(StoreEvent):
    conversation_id: str


@dataclass(frozen=True)
class ConversationRenamed(StoreEvent):
    conversation_id: str
    title: str


@dataclass(frozen=True)
class ProfileChanged(StoreEvent):
    conversation_id: str
    profile: str


@dataclass(frozen=True)
class MessageAdded(StoreEvent):
    conversation_id: str
    message: "Message"


@dataclass(frozen=True)
class MessageUpdated(StoreEvent):
    """A message changed (streamed text, soft delete, edit).

    Attributes:
        conversation_id: Owning conversation.
        message: The message after the change.
    """

    conversation_id: str
    message: "Message"


@dataclass(frozen=True)
class MessageRemoved(StoreEvent):
    """Messages were hard-removed (rollback or truncation)."""

    conversation_id: str
    message_ids: tuple[str, ...]


@dataclass(frozen=True)
class SummaryUpdated(StoreEvent):
    summary: "ConversationSummary"


@dataclass(frozen=True)
class TurnStatus:
    """UI-facing status of a conversation's turn.

    Attributes:
        is_loading: A turn is in flight.
        current_tool: Name of the tool being executed, if any.
        tool_query: The query argument of that tool, for display.
        error: Message of the last failed turn, cleared when a new one starts.
    """

    is_loading: bool = False
    current_tool: str | None = None
    tool_query: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class TurnStatusChanged(StoreEvent):
    conversation_id: str
    status: TurnStatus


@dataclass(frozen=True)
class Notification(StoreEvent):
    """Non-blocking, user-visible message (errors, summary failures)."""

    level: NotificationLevel
    message: str
    conversation_id: str | None = None
    created_at: "datetime" = field(default_factory=utcnow)
