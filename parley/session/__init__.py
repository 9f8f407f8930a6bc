"""Conversation state, persistence and turn orchestration."""

from parley.session.events import (
    ConversationCreated,
    ConversationDeleted,
    ConversationRenamed,
    MessageAdded,
    MessageRemoved,
    MessageUpdated,
    Notification,
    ProfileChanged,
    StoreEvent,
    SummaryUpdated,
    TurnStatus,
    TurnStatusChanged,
)
from parley.session.history import NullHistorySink, SupabaseHistorySink, create_history_sink
from parley.session.logging import configure_logging
from parley.session.persistence import (
    Snapshot,
    load_snapshot,
    sanitize_for_storage,
    save_snapshot,
)
from parley.session.store import MessageStore
from parley.session.throttle import FlushThrottle

__all__ = [
    # Events
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
    # Store and persistence
    "MessageStore",
    "Snapshot",
    "load_snapshot",
    "save_snapshot",
    "sanitize_for_storage",
    # Streaming
    "FlushThrottle",
    # History
    "NullHistorySink",
    "SupabaseHistorySink",
    "create_history_sink",
    # Logging
    "configure_logging",
]
