"""Conversation compaction: when to summarize, and what to send the model.

All functions here are pure. They operate on visible (non-deleted)
messages only, so soft-deleted messages never count toward thresholds and
are never sent to a provider.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta

from parley.core.constants import (
    MAX_SUMMARY_LENGTH,
    RECENT_WINDOW,
    SUMMARY_MAX_AGE_DAYS,
    SUMMARY_PROMPT_CLIP,
    SUMMARY_THRESHOLD,
)
from parley.core.types import Conversation, ConversationSummary, Message, Role, utcnow

SUMMARY_PREFIX = "[Prior context]: "

SUMMARY_SYSTEM_PROMPT = (
    "You write short, factual summaries of chat conversations so an assistant "
    "can keep continuity. Reply with the summary only."
)

_STOPWORDS = frozenset({
    "about", "after", "also", "been", "before", "being", "both", "could", "does",
    "from", "have", "into", "just", "like", "more", "most", "other", "over",
    "should", "some", "such", "than", "that", "their", "them", "then", "there",
    "these", "they", "this", "those", "user", "assistant", "very", "were",
    "what", "when", "where", "which", "while", "who", "will", "with", "would",
    "your",
})


def needs_summary(
    conversation: Conversation,
    existing_summary: ConversationSummary | None,
    threshold: int = SUMMARY_THRESHOLD,
) -> bool:
    """True when enough new visible messages exist to (re)summarize."""
    count = len(conversation.visible_messages)
    if existing_summary is None:
        return count >= threshold
    return count >= existing_summary.covered_message_count + threshold


def summary_message(summary: ConversationSummary) -> Message:
    """The synthetic message that stands in for summarized history."""
    return Message(
        id=f"summary_{summary.conversation_id}",
        role=Role.ASSISTANT,
        text=f"{SUMMARY_PREFIX}{summary.summary_text}",
        created_at=summary.last_updated_at,
    )


def build_context(
    conversation: Conversation,
    summary: ConversationSummary | None,
    recent_window: int = RECENT_WINDOW,
) -> list[Message]:
    """Messages to send as history.

    With a summary and more than `recent_window` visible messages, the
    result is the synthetic summary message followed by the last
    `recent_window` messages. Otherwise it is the visible list unchanged.
    """
    visible = list(conversation.visible_messages)
    if summary is None or len(visible) <= recent_window:
        return visible
    return [summary_message(summary), *visible[-recent_window:]]


def enrich_system_prompt(prompt: str, summary: ConversationSummary | None) -> str:
    """Append the summary to the system prompt."""
    if summary is None:
        return prompt
    return (
        f"{prompt}\n\nCONTEXT FROM THE EARLIER CONVERSATION:\n{summary.summary_text}\n\n"
        "Use this context to keep the conversation coherent. Refer to earlier "
        "topics when relevant, without repeating them needlessly."
    )


def select_messages_for_summary(
    conversation: Conversation,
    existing: ConversationSummary | None,
    recent_window: int = RECENT_WINDOW,
) -> list[Message]:
    """Messages a new summary must absorb.

    Without a summary: everything but the last `recent_window`. With one:
    the messages added since it, still excluding the recent window.
    """
    visible = list(conversation.visible_messages)
    end = max(len(visible) - recent_window, 0)
    start = 0 if existing is None else min(existing.covered_message_count, end)
    return visible[start:end]


def _clip_for_prompt(text: str, limit: int = SUMMARY_PROMPT_CLIP) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def build_summary_prompt(
    messages: Sequence[Message],
    existing: ConversationSummary | None,
    profile_name: str,
    max_length: int = MAX_SUMMARY_LENGTH,
) -> str:
    """Build the summarization request text."""
    parts: list[str] = []
    if existing is not None:
        parts.append(f"Previous summary of the conversation:\n{existing.summary_text}\n")
        parts.append("Update this summary with the following additional messages:\n")
    else:
        parts.append(
            "Write a concise, useful summary of the following conversation. It must "
            "capture the main topics, important decisions, and any context useful "
            "for future interactions.\n"
        )

    for message in messages:
        sender = "User" if message.role == Role.USER else "Assistant"
        parts.append(f"{sender}: {_clip_for_prompt(message.text)}")

    parts.append("")
    if existing is not None:
        parts.append(
            "Provide an updated summary that merges the previous information with the new messages."
        )
    else:
        parts.append(
            "Provide a summary of the key points and topics that the assistant should remember."
        )
    parts.append(f"Keep it concise but informative (at most {max_length} characters).")
    parts.append(f'The assistant is configured with the "{profile_name}" profile.')
    return "\n".join(parts)


def clamp_summary(text: str, max_length: int = MAX_SUMMARY_LENGTH) -> str:
    """Clamp to `max_length` characters, appending an ellipsis when cut."""
    text = text.strip()
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def extract_topics(text: str, limit: int = 5) -> tuple[str, ...]:
    """Most frequent words longer than three characters, stopwords removed."""
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    counts = Counter(w for w in words if len(w) > 3 and w not in _STOPWORDS)
    return tuple(word for word, _ in counts.most_common(limit))


def create_summary(
    conversation_id: str,
    summary_text: str,
    message_count: int,
    existing: ConversationSummary | None = None,
) -> ConversationSummary:
    """Build the next summary version.

    The version increments from the existing summary (1 when new), and the
    covered count never moves backwards.
    """
    covered = message_count
    if existing is not None:
        covered = max(existing.covered_message_count, message_count)
    return ConversationSummary(
        conversation_id=conversation_id,
        summary_text=summary_text,
        covered_message_count=covered,
        last_updated_at=utcnow(),
        version=existing.version + 1 if existing is not None else 1,
        topics=extract_topics(summary_text),
    )


def is_stale(
    summary: ConversationSummary,
    max_age: timedelta = timedelta(days=SUMMARY_MAX_AGE_DAYS),
    now: datetime | None = None,
) -> bool:
    """True when the summary is older than `max_age`."""
    return summary.last_updated_at < (now or utcnow()) - max_age
