"""In-memory message store.

The store owns conversations, summaries and per-conversation turn status.
Every mutation is a read-modify-write of immutable dataclasses performed
under a lock with no awaits in between, so concurrent flushes cannot lose
updates. Events are published after the lock is released.

Example:
    store = MessageStore()
    unsubscribe = store.subscribe(print)

    conversation = store.create_conversation(profile="flash")
    store.add_message(conversation.id, Message(id=new_id(), role=Role.USER, text="hi"))
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from parley.core.types import Conversation, ConversationSummary, Message, new_id, utcnow
from parley.session.events import (
    ConversationCreated,
    ConversationDeleted,
    ConversationRenamed,
    MessageAdded,
    MessageRemoved,
    MessageUpdated,
    Notification,
    NotificationLevel,
    ProfileChanged,
    StoreEvent,
    SummaryUpdated,
    TurnStatus,
    TurnStatusChanged,
)
from parley.session.persistence import Snapshot

logger = logging.getLogger(__name__)

Listener = Callable[[StoreEvent], None]

DEFAULT_TITLE = "New conversation"

_UPDATABLE_FIELDS = frozenset({"text", "attachments", "deleted"})


class MessageStore:
    """Conversations, summaries and turn status, with change events."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._conversations: dict[str, Conversation] = {}
        self._summaries: dict[str, ConversationSummary] = {}
        self._status: dict[str, TurnStatus] = {}
        self._listeners: list[Listener] = []

    # === Subscription ===

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, event: StoreEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("Store listener failed on %s", type(event).__name__, exc_info=True)

    # === Reads ===

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def list_conversations(self) -> list[Conversation]:
        """All conversations, most recently modified first."""
        with self._lock:
            conversations = list(self._conversations.values())
        return sorted(conversations, key=lambda c: c.last_modified_at, reverse=True)

    def get_summary(self, conversation_id: str) -> ConversationSummary | None:
        return self._summaries.get(conversation_id)

    def get_turn_status(self, conversation_id: str) -> TurnStatus:
        return self._status.get(conversation_id, TurnStatus())

    # === Conversations ===

    def create_conversation(
        self,
        profile: str = "default",
        title: str = DEFAULT_TITLE,
        conversation_id: str | None = None,
    ) -> Conversation:
        """Create an empty conversation.

        Raises:
            ValueError: If conversation_id is already in use.
        """
        conversation = Conversation(id=conversation_id or new_id(), title=title, profile=profile)
        with self._lock:
            if conversation.id in self._conversations:
                raise ValueError(f"Conversation already exists: {conversation.id}")
            self._conversations[conversation.id] = conversation
        self._publish(ConversationCreated(conversation))
        return conversation

    def delete_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation with its summary and status."""
        with self._lock:
            if self._conversations.pop(conversation_id, None) is None:
                return False
            self._summaries.pop(conversation_id, None)
            self._status.pop(conversation_id, None)
        self._publish(ConversationDeleted(conversation_id))
        return True

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return False
            self._conversations[conversation_id] = replace(
                conversation, title=title, last_modified_at=utcnow()
            )
        self._publish(ConversationRenamed(conversation_id, title))
        return True

    def set_profile(self, conversation_id: str, profile: str) -> bool:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return False
            self._conversations[conversation_id] = replace(conversation, profile=profile)
        self._publish(ProfileChanged(conversation_id, profile))
        return True

    # === Messages ===

    def add_message(self, conversation_id: str, message: Message) -> bool:
        """Append a message. No-op (False) if the conversation is gone.

        Raises:
            ValueError: If a message with the same id already exists.
        """
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return False
            if conversation.index_of(message.id) >= 0:
                raise ValueError(f"Duplicate message id: {message.id}")
            self._conversations[conversation_id] = replace(
                conversation,
                messages=(*conversation.messages, message),
                last_modified_at=utcnow(),
            )
        self._publish(MessageAdded(conversation_id, message))
        return True

    def update_message(self, conversation_id: str, message_id: str, **changes: Any) -> bool:
        """Apply a partial update to a message.

        A missing conversation or message is a silent no-op (returns False).

        Raises:
            ValueError: If a field other than text/attachments/deleted is given.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update message fields: {sorted(unknown)}")
        return self._mutate_message(conversation_id, message_id, lambda m: replace(m, **changes))

    def stream_text(self, conversation_id: str, message_id: str, text: str) -> bool:
        """Set a streaming message's text, never letting it shrink.

        Returns False (and changes nothing) for shorter text, identical text,
        or a missing target.
        """

        def apply(message: Message) -> Message | None:
            if len(text) < len(message.text) or text == message.text:
                return None
            return replace(message, text=text)

        return self._mutate_message(conversation_id, message_id, apply)

    def delete_message(self, conversation_id: str, message_id: str) -> bool:
        """Soft-delete a message."""

        def apply(message: Message) -> Message | None:
            return None if message.deleted else replace(message, deleted=True)

        return self._mutate_message(conversation_id, message_id, apply)

    def _mutate_message(
        self,
        conversation_id: str,
        message_id: str,
        apply: Callable[[Message], Message | None],
    ) -> bool:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return False
            index = conversation.index_of(message_id)
            if index < 0:
                return False
            updated = apply(conversation.messages[index])
            if updated is None:
                return False
            messages = list(conversation.messages)
            messages[index] = updated
            self._conversations[conversation_id] = replace(
                conversation, messages=tuple(messages), last_modified_at=utcnow()
            )
        self._publish(MessageUpdated(conversation_id, updated))
        return True

    def rollback_turn(
        self,
        conversation_id: str,
        user_message_id: str,
        placeholder_id: str,
        restore: tuple[Message, ...] = (),
    ) -> bool:
        """Hard-remove a turn's user message and placeholder.

        Messages in `restore` (removed when the turn started) are appended
        back, returning the conversation to its pre-turn message list.
        """
        removed_ids = {user_message_id, placeholder_id}
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return False
            kept = [m for m in conversation.messages if m.id not in removed_ids]
            actually_removed = tuple(
                m.id for m in conversation.messages if m.id in removed_ids
            )
            present = {m.id for m in kept}
            kept.extend(m for m in restore if m.id not in present)
            self._conversations[conversation_id] = replace(
                conversation, messages=tuple(kept), last_modified_at=utcnow()
            )
        if actually_removed:
            self._publish(MessageRemoved(conversation_id, actually_removed))
        for message in restore:
            self._publish(MessageAdded(conversation_id, message))
        return True

    def truncate_from(self, conversation_id: str, message_id: str) -> tuple[Message, ...]:
        """Hard-remove a message and everything after it; return what was removed."""
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return ()
            index = conversation.index_of(message_id)
            if index < 0:
                return ()
            removed = conversation.messages[index:]
            self._conversations[conversation_id] = replace(
                conversation,
                messages=conversation.messages[:index],
                last_modified_at=utcnow(),
            )
        self._publish(MessageRemoved(conversation_id, tuple(m.id for m in removed)))
        return removed

    # === Summaries ===

    def put_summary(self, summary: ConversationSummary) -> bool:
        """Store a summary. Rejected if the conversation is gone or if it
        would move the covered count backwards."""
        with self._lock:
            if summary.conversation_id not in self._conversations:
                return False
            existing = self._summaries.get(summary.conversation_id)
            if existing is not None and summary.covered_message_count < existing.covered_message_count:
                return False
            self._summaries[summary.conversation_id] = summary
        self._publish(SummaryUpdated(summary))
        return True

    def remove_summary(self, conversation_id: str) -> bool:
        """Forget a conversation's summary; the next qualifying turn rebuilds it."""
        with self._lock:
            return self._summaries.pop(conversation_id, None) is not None

    # === Turn status and notifications ===

    def set_turn_status(self, conversation_id: str, **changes: Any) -> TurnStatus:
        """Update the UI-facing status for a conversation."""
        with self._lock:
            status = replace(self._status.get(conversation_id, TurnStatus()), **changes)
            if conversation_id in self._conversations:
                self._status[conversation_id] = status
        self._publish(TurnStatusChanged(conversation_id, status))
        return status

    def notify(
        self,
        level: NotificationLevel,
        message: str,
        conversation_id: str | None = None,
    ) -> None:
        """Publish a non-blocking, user-visible notification."""
        self._publish(Notification(level=level, message=message, conversation_id=conversation_id))

    # === Snapshots ===

    def export_snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                conversations=self.list_conversations(),
                summaries=dict(self._summaries),
            )

    def load_snapshot(self, snapshot: Snapshot) -> None:
        """Replace the store contents with a snapshot."""
        with self._lock:
            self._conversations = {c.id: c for c in snapshot.conversations}
            self._summaries = {
                cid: s for cid, s in snapshot.summaries.items() if cid in self._conversations
            }
            self._status = {}
            loaded = list(self._conversations.values())
        for conversation in loaded:
            self._publish(ConversationCreated(conversation))
