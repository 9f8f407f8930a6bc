"""Tests for the pure compaction rules."""

from datetime import timedelta

from parley.context.compaction import (
    SUMMARY_PREFIX,
    build_context,
    build_summary_prompt,
    clamp_summary,
    create_summary,
    enrich_system_prompt,
    extract_topics,
    is_stale,
    needs_summary,
    select_messages_for_summary,
)
from parley.core.constants import RECENT_WINDOW, SUMMARY_THRESHOLD
from parley.core.types import Conversation, ConversationSummary, Message, Role, utcnow


def conversation_with(count: int, deleted: frozenset[int] = frozenset()) -> Conversation:
    messages = tuple(
        Message(
            id=f"m{i}",
            role=Role.USER if i % 2 == 0 else Role.ASSISTANT,
            text=f"message {i}",
            deleted=i in deleted,
        )
        for i in range(count)
    )
    return Conversation(id="c", title="t", messages=messages)


def summary(covered: int, **kwargs) -> ConversationSummary:
    return ConversationSummary(
        conversation_id="c", summary_text="Earlier talk.", covered_message_count=covered, **kwargs
    )


class TestNeedsSummary:
    def test_threshold_then_coverage(self) -> None:
        """12 messages need a summary; one more after covering 12 does not."""
        conversation = conversation_with(12)
        assert needs_summary(conversation, None, SUMMARY_THRESHOLD)

        created = create_summary("c", "Earlier talk.", len(conversation.visible_messages))
        assert created.covered_message_count == 12

        assert not needs_summary(conversation_with(13), created, SUMMARY_THRESHOLD)

    def test_below_threshold(self) -> None:
        assert not needs_summary(conversation_with(9), None, 10)

    def test_threshold_again_after_summary(self) -> None:
        assert needs_summary(conversation_with(22), summary(12), 10)

    def test_deleted_messages_do_not_count(self) -> None:
        conversation = conversation_with(11, deleted=frozenset({0, 1}))

        assert not needs_summary(conversation, None, 10)


class TestBuildContext:
    def test_without_summary_everything_visible(self) -> None:
        conversation = conversation_with(12, deleted=frozenset({3}))

        history = build_context(conversation, None)

        assert len(history) == 11
        assert all(not m.deleted for m in history)

    def test_summary_plus_recent_window(self) -> None:
        history = build_context(conversation_with(12), summary(12), RECENT_WINDOW)

        assert len(history) == 1 + RECENT_WINDOW
        assert history[0].role is Role.ASSISTANT
        assert history[0].text == f"{SUMMARY_PREFIX}Earlier talk."
        assert [m.id for m in history[1:]] == ["m7", "m8", "m9", "m10", "m11"]

    def test_short_conversation_ignores_summary(self) -> None:
        history = build_context(conversation_with(4), summary(12), 5)

        assert [m.id for m in history] == ["m0", "m1", "m2", "m3"]

    def test_enrich_system_prompt(self) -> None:
        assert enrich_system_prompt("Be brief.", None) == "Be brief."

        enriched = enrich_system_prompt("Be brief.", summary(10))

        assert enriched.startswith("Be brief.\n\nCONTEXT FROM THE EARLIER CONVERSATION:\nEarlier talk.")


class TestSummaryInputs:
    def test_first_summary_excludes_recent_window(self) -> None:
        selected = select_messages_for_summary(conversation_with(12), None, 5)

        assert [m.id for m in selected] == [f"m{i}" for i in range(7)]

    def test_update_takes_only_new_messages(self) -> None:
        selected = select_messages_for_summary(conversation_with(25), summary(12), 5)

        assert [m.id for m in selected] == [f"m{i}" for i in range(12, 20)]

    def test_prompt_clips_long_messages(self) -> None:
        long_message = Message(id="x", role=Role.USER, text="a" * 300)

        prompt = build_summary_prompt([long_message], None, "flash", 500)

        assert f"User: {'a' * 200}..." in prompt
        assert "at most 500 characters" in prompt
        assert '"flash" profile' in prompt

    def test_update_prompt_includes_previous_summary(self) -> None:
        reply = Message(id="y", role=Role.ASSISTANT, text="Sure.")

        prompt = build_summary_prompt([reply], summary(10), "flash")

        assert prompt.startswith("Previous summary of the conversation:\nEarlier talk.")
        assert "Assistant: Sure." in prompt


class TestSummaryValues:
    def test_clamp(self) -> None:
        assert clamp_summary("  short  ", 10) == "short"
        assert clamp_summary("x" * 20, 10) == "x" * 10 + "..."

    def test_versions_and_monotonic_coverage(self) -> None:
        first = create_summary("c", "one", 12)
        second = create_summary("c", "two", 8, existing=first)

        assert first.version == 1
        assert second.version == 2
        assert second.covered_message_count == 12

    def test_topics(self) -> None:
        topics = extract_topics("Rust ownership. Rust borrowing, rust lifetimes and ownership.")

        assert topics[:2] == ("rust", "ownership")
        assert "and" not in topics

    def test_staleness(self) -> None:
        now = utcnow()
        old = summary(10, last_updated_at=now - timedelta(days=8))
        fresh = summary(10, last_updated_at=now - timedelta(days=1))

        assert is_stale(old, timedelta(days=7), now)
        assert not is_stale(fresh, timedelta(days=7), now)
