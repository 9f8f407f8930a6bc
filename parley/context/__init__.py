"""Context compaction: summaries and the history sent to providers."""

from parley.context.compaction import (
    build_context,
    build_summary_prompt,
    clamp_summary,
    create_summary,
    enrich_system_prompt,
    extract_topics,
    is_stale,
    needs_summary,
    select_messages_for_summary,
    summary_message,
)
from parley.context.summarizer import SummaryScheduler, generate_summary

__all__ = [
    "SummaryScheduler",
    "build_context",
    "build_summary_prompt",
    "clamp_summary",
    "create_summary",
    "enrich_system_prompt",
    "extract_topics",
    "generate_summary",
    "is_stale",
    "needs_summary",
    "select_messages_for_summary",
    "summary_message",
]
