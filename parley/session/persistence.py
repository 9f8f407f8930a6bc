"""Snapshot persistence: conversations and summaries to/from JSON.

Snapshots are sanitized before they reach disk: soft-deleted messages are
dropped, attachment previews (data URLs) are stripped, and attachment text
is clipped.

Conversations can also be exported as plain-text transcripts.
"""

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from parley.core.constants import ATTACHMENT_CONTENT_LIMIT
from parley.core.errors import LoadError
from parley.core.types import Conversation, ConversationSummary, FileRef, Message, Role

logger = logging.getLogger(__name__)

# Schema version for future migrations
SNAPSHOT_SCHEMA_VERSION = 1


# === Serialization helpers ===


def serialize_file_ref(ref: FileRef) -> dict[str, Any]:
    return {
        "name": ref.name,
        "mime_type": ref.mime_type,
        "size": ref.size,
        "content": ref.content,
        "preview": ref.preview,
    }


def deserialize_file_ref(data: dict[str, Any]) -> FileRef:
    return FileRef(
        name=data["name"],
        mime_type=data.get("mime_type", "application/octet-stream"),
        size=data.get("size", 0),
        content=data.get("content"),
        preview=data.get("preview"),
    )


def serialize_message(message: Message) -> dict[str, Any]:
    """Serialize a Message to a JSON-compatible dict."""
    result: dict[str, Any] = {
        "id": message.id,
        "role": message.role.value,
        "text": message.text,
        "created_at": message.created_at.isoformat(),
    }
    if message.attachments:
        result["attachments"] = [serialize_file_ref(a) for a in message.attachments]
    if message.deleted:
        result["deleted"] = True
    return result


def deserialize_message(data: dict[str, Any]) -> Message:
    """Deserialize a Message from a dict."""
    return Message(
        id=data["id"],
        role=Role(data["role"]),
        text=data.get("text", ""),
        created_at=datetime.fromisoformat(data["created_at"]),
        attachments=tuple(deserialize_file_ref(a) for a in data.get("attachments", [])),
        deleted=data.get("deleted", False),
    )


def serialize_conversation(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "profile": conversation.profile,
        "last_modified_at": conversation.last_modified_at.isoformat(),
        "messages": [serialize_message(m) for m in conversation.messages],
    }


def deserialize_conversation(data: dict[str, Any]) -> Conversation:
    return Conversation(
        id=data["id"],
        title=data.get("title", ""),
        profile=data.get("profile", "default"),
        last_modified_at=datetime.fromisoformat(data["last_modified_at"]),
        messages=tuple(deserialize_message(m) for m in data.get("messages", [])),
    )


def serialize_summary(summary: ConversationSummary) -> dict[str, Any]:
    return {
        "conversation_id": summary.conversation_id,
        "summary_text": summary.summary_text,
        "covered_message_count": summary.covered_message_count,
        "last_updated_at": summary.last_updated_at.isoformat(),
        "version": summary.version,
        "topics": list(summary.topics),
    }


def deserialize_summary(data: dict[str, Any]) -> ConversationSummary:
    return ConversationSummary(
        conversation_id=data["conversation_id"],
        summary_text=data["summary_text"],
        covered_message_count=data["covered_message_count"],
        last_updated_at=datetime.fromisoformat(data["last_updated_at"]),
        version=data.get("version", 1),
        topics=tuple(data.get("topics", [])),
    )


@dataclass
class Snapshot:
    """Everything the message store persists.

    Attributes:
        conversations: Conversations, most recently modified first.
        summaries: Summaries keyed by conversation id.
        schema_version: Schema version for migrations.
    """

    conversations: list[Conversation] = field(default_factory=list)
    summaries: dict[str, ConversationSummary] = field(default_factory=dict)
    schema_version: int = SNAPSHOT_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "schema_version": self.schema_version,
            "conversations": [serialize_conversation(c) for c in self.conversations],
            "summaries": [serialize_summary(s) for s in self.summaries.values()],
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        """Create from dictionary."""
        summaries = [deserialize_summary(s) for s in data.get("summaries", [])]
        return cls(
            conversations=[deserialize_conversation(c) for c in data.get("conversations", [])],
            summaries={s.conversation_id: s for s in summaries},
            schema_version=data.get("schema_version", 1),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Snapshot":
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))


def _sanitize_attachment(ref: FileRef, content_limit: int) -> FileRef:
    content = ref.content
    if content is not None and len(content) > content_limit:
        content = content[:content_limit]
    return replace(ref, preview=None, content=content)


def sanitize_for_storage(
    snapshot: Snapshot,
    content_limit: int = ATTACHMENT_CONTENT_LIMIT,
) -> Snapshot:
    """Return a copy fit for disk.

    Drops soft-deleted messages, strips attachment previews and clips
    attachment content to `content_limit` characters. Summaries of
    conversations not in the snapshot are dropped.
    """
    conversations = []
    for conversation in snapshot.conversations:
        messages = tuple(
            replace(
                message,
                attachments=tuple(
                    _sanitize_attachment(a, content_limit) for a in message.attachments
                ),
            )
            for message in conversation.messages
            if not message.deleted
        )
        conversations.append(replace(conversation, messages=messages))

    kept_ids = {c.id for c in conversations}
    summaries = {cid: s for cid, s in snapshot.summaries.items() if cid in kept_ids}
    return Snapshot(
        conversations=conversations,
        summaries=summaries,
        schema_version=snapshot.schema_version,
    )


def save_snapshot(
    path: Path,
    snapshot: Snapshot,
    content_limit: int = ATTACHMENT_CONTENT_LIMIT,
) -> None:
    """Sanitize and write a snapshot atomically (temp file + replace)."""
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = sanitize_for_storage(snapshot, content_limit).to_json()

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Saved snapshot: %s (%d conversations)", path, len(snapshot.conversations))


def load_snapshot(path: Path) -> Snapshot:
    """Load a snapshot; a missing file yields an empty snapshot.

    Raises:
        LoadError: If the file exists but is unreadable or malformed.
    """
    path = path.expanduser()
    if not path.is_file():
        logger.debug("No snapshot at %s", path)
        return Snapshot()

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise LoadError(f"Failed to read snapshot {path}: {e}") from e

    try:
        return Snapshot.from_json(text)
    except json.JSONDecodeError as e:
        raise LoadError(f"Invalid JSON in snapshot {path}: {e}") from e
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise LoadError(f"Malformed snapshot {path}: {e}") from e


# === Transcripts ===

TRANSCRIPT_SEPARATOR = "\n---\n\n"


def render_transcript(conversation: Conversation, profile_label: str) -> str:
    """Plain-text export of a conversation's visible messages."""
    header = (
        f"Conversation: {conversation.title}\n"
        f"Profile: {profile_label}\n"
        f"Date: {conversation.last_modified_at.astimezone():%Y-%m-%d %H:%M}\n\n"
        "---\n\n"
    )
    blocks = []
    for message in conversation.visible_messages:
        sender = "You" if message.role is Role.USER else "Assistant"
        files = "".join(f"[Attachment: {ref.name}]\n" for ref in message.attachments)
        blocks.append(f"{sender}:\n{files}{message.text}\n")
    return header + TRANSCRIPT_SEPARATOR.join(blocks)


def transcript_filename(title: str) -> str:
    """File name for an exported transcript, derived from the title."""
    slug = re.sub(r"[^a-z0-9]", "_", title.lower()).strip("_")
    return f"conversation_{slug or 'chat'}.txt"
