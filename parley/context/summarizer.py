"""Background summarization of long conversations.

Summaries are produced out-of-band: a finalized turn schedules a debounced
task per conversation, so a burst of sends produces one summarization. A
failed summarization is logged and surfaced as a warning notification; it
never affects a turn.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from parley.config.schema import CompactionConfig
from parley.context.compaction import (
    SUMMARY_SYSTEM_PROMPT,
    build_summary_prompt,
    clamp_summary,
    create_summary,
    needs_summary,
    select_messages_for_summary,
)
from parley.core.constants import SUMMARY_BUSY_RETRY_SECONDS
from parley.core.errors import ProviderError
from parley.core.types import Conversation, ConversationSummary
from parley.session.events import ConversationDeleted, StoreEvent

if TYPE_CHECKING:
    from parley.core.interfaces import ProviderAdapter
    from parley.session.store import MessageStore

logger = logging.getLogger(__name__)

ProviderResolver = Callable[[Conversation], "ProviderAdapter"]


async def generate_summary(
    provider: ProviderAdapter,
    conversation: Conversation,
    existing: ConversationSummary | None,
    recent_window: int,
    max_length: int,
) -> str:
    """Ask the provider for a summary and clamp it.

    Raises:
        ProviderError: If the provider fails or returns nothing.
    """
    messages = select_messages_for_summary(conversation, existing, recent_window)
    prompt = build_summary_prompt(messages, existing, conversation.profile, max_length)
    text = await provider.complete(SUMMARY_SYSTEM_PROMPT, prompt)
    if not text or not text.strip():
        raise ProviderError("Summary generation returned no text")
    return clamp_summary(text, max_length)


class SummaryScheduler:
    """Debounced, per-conversation summarization tasks.

    Args:
        store: The message store summaries are written to.
        provider_for: Returns the adapter used to summarize a conversation.
        config: Thresholds, window, length cap and debounce delay.
    """

    def __init__(
        self,
        store: MessageStore,
        provider_for: ProviderResolver,
        config: CompactionConfig | None = None,
    ) -> None:
        self._store = store
        self._provider_for = provider_for
        self._config = config or CompactionConfig()
        self._tasks: dict[str, asyncio.Task[ConversationSummary | None]] = {}
        self._unsubscribe = store.subscribe(self._on_store_event)

    @property
    def pending(self) -> list[str]:
        """Conversation ids with a scheduled or running summarization."""
        return [cid for cid, task in self._tasks.items() if not task.done()]

    def _on_store_event(self, event: StoreEvent) -> None:
        if isinstance(event, ConversationDeleted):
            self.cancel(event.conversation_id)

    def schedule(self, conversation_id: str) -> asyncio.Task[ConversationSummary | None] | None:
        """(Re)start the debounce timer for a conversation.

        A pending task for the same conversation is cancelled and replaced.
        Returns None when summarization is disabled.
        """
        if not self._config.enabled:
            return None
        self.cancel(conversation_id)
        task = asyncio.get_running_loop().create_task(
            self._run_after_delay(conversation_id),
            name=f"summary-{conversation_id}",
        )
        self._tasks[conversation_id] = task
        task.add_done_callback(lambda t, cid=conversation_id: self._forget(cid, t))
        return task

    def _forget(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(conversation_id) is task:
            del self._tasks[conversation_id]

    def cancel(self, conversation_id: str) -> None:
        task = self._tasks.pop(conversation_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _turn_in_flight(self, conversation_id: str) -> bool:
        return self._store.get_turn_status(conversation_id).is_loading

    async def _run_after_delay(self, conversation_id: str) -> ConversationSummary | None:
        if self._config.debounce_seconds > 0:
            await asyncio.sleep(self._config.debounce_seconds)
        while self._turn_in_flight(conversation_id):
            await asyncio.sleep(max(self._config.debounce_seconds, SUMMARY_BUSY_RETRY_SECONDS))
        return await self.summarize_now(conversation_id)

    async def summarize_now(self, conversation_id: str) -> ConversationSummary | None:
        """Summarize immediately if the conversation still needs it.

        Returns the stored summary, or None when nothing was done (the
        conversation is gone, a turn is in flight, it is below threshold,
        or generation failed). A turn in flight has unsettled messages that
        may still be rolled back, so they are never counted.
        """
        conversation = self._store.get(conversation_id)
        if conversation is None:
            return None
        if self._turn_in_flight(conversation_id):
            logger.debug("Summary for %s deferred: turn in flight", conversation_id)
            return None
        existing = self._store.get_summary(conversation_id)
        if not needs_summary(conversation, existing, self._config.threshold):
            return None

        message_count = len(conversation.visible_messages)
        try:
            provider = self._provider_for(conversation)
            text = await generate_summary(
                provider,
                conversation,
                existing,
                self._config.recent_window,
                self._config.max_summary_length,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Summary generation failed for %s: %s", conversation_id, e)
            self._store.notify(
                "warning",
                f"Could not update the conversation summary: {e}",
                conversation_id,
            )
            return None

        summary = create_summary(conversation_id, text, message_count, existing)
        if not self._store.put_summary(summary):
            logger.debug("Summary for %s discarded (conversation gone or stale)", conversation_id)
            return None

        logger.debug(
            "Summary v%d for %s covers %d messages",
            summary.version, conversation_id, summary.covered_message_count,
        )
        self._store.notify("info", "Conversation summary updated", conversation_id)
        return summary

    async def aclose(self) -> None:
        """Cancel all pending tasks and stop listening to the store."""
        self._unsubscribe()
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
