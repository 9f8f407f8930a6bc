"""Core types and interfaces."""

from parley.core.cancel import CancellationToken
from parley.core.errors import (
    ConfigurationError,
    LoadError,
    ParleyError,
    ProviderError,
    ProviderHttpError,
    StreamStallTimeout,
    ToolExecutionError,
    ToolLoopExceeded,
    TurnCancelled,
    TurnRejected,
)
from parley.core.interfaces import HistorySink, ProviderAdapter
from parley.core.types import (
    Conversation,
    ConversationSummary,
    FileRef,
    Message,
    PendingTurn,
    Role,
    StreamEnd,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallRequest,
    ToolCallResult,
    ToolRound,
    TurnState,
)

__all__ = [
    "CancellationToken",
    # Errors
    "ParleyError",
    "ConfigurationError",
    "LoadError",
    "ProviderError",
    "ProviderHttpError",
    "StreamStallTimeout",
    "ToolExecutionError",
    "ToolLoopExceeded",
    "TurnCancelled",
    "TurnRejected",
    # Interfaces
    "HistorySink",
    "ProviderAdapter",
    # Types
    "Conversation",
    "ConversationSummary",
    "FileRef",
    "Message",
    "PendingTurn",
    "Role",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolRound",
    "TurnState",
    # Streaming types
    "StreamEvent",
    "TextDelta",
    "ToolCallDelta",
    "StreamEnd",
]
