"""Offline provider: canned replies, no network, no tool calling."""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any

from parley.core.types import Message, StreamEnd, StreamEvent, TextDelta, ToolRound

_TOPICS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"^(hi|hello|hey|good (morning|afternoon|evening)|greetings)\b", re.I),
        "Hello! I'm running in offline mode, so my answers are canned. "
        "Configure an API key and pick another profile for real replies.",
    ),
    (
        re.compile(r"\b(help|what can you do|who are you)\b", re.I),
        "In offline mode I can only give fixed replies. With a provider "
        "configured I can answer questions, explain concepts, search the web "
        "and tell you the current time.",
    ),
    (
        re.compile(r"\b(thanks|thank you|great|perfect)\b", re.I),
        "You're welcome!",
    ),
]

DEFAULT_REPLY = (
    "I'm offline right now and can't reach a language model. "
    "Set an API key for one of the configured providers to get a real answer."
)


def offline_reply(text: str) -> str:
    """Pick the canned reply for a user message."""
    cleaned = text.strip()
    for pattern, reply in _TOPICS:
        if pattern.search(cleaned):
            return reply
    return DEFAULT_REPLY


class OfflineProvider:
    """Adapter that streams a canned reply word by word.

    Args:
        chunk_delay: Seconds to sleep between chunks, to mimic streaming.
    """

    def __init__(self, chunk_delay: float = 0.0) -> None:
        self._chunk_delay = chunk_delay

    async def stream(
        self,
        system_prompt: str,
        history: Sequence[Message],
        new_user_message: Message,
        tool_declarations: list[dict[str, Any]] | None = None,
        tool_rounds: Sequence[ToolRound] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        reply = offline_reply(new_user_message.text)
        for word in re.findall(r"\S+\s*", reply):
            if self._chunk_delay:
                await asyncio.sleep(self._chunk_delay)
            yield TextDelta(text=word)
        yield StreamEnd(finish_reason="stop")

    async def complete(self, system_prompt: str, prompt: str) -> str:
        # Summaries offline: the user's lines, joined
        user_lines = [
            line.split(":", 1)[1].strip()
            for line in prompt.splitlines()
            if line.startswith("User:")
        ]
        return "The user talked about: " + "; ".join(user_lines) if user_lines else ""

    async def aclose(self) -> None:
        pass
