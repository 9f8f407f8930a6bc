"""Core interfaces (protocols) for parley.

Components depend on these Protocols rather than concrete classes, so the
orchestrator can be driven by fake providers and sinks in tests.
"""

from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

from parley.core.types import Message, StreamEvent, ToolRound


class ProviderAdapter(Protocol):
    """Protocol for streaming LLM vendor adapters.

    An adapter translates a vendor's streaming API into the normalized
    StreamEvent sequence. It never touches the message store.

    Example:
        async for event in provider.stream(prompt, history, user_msg, tools):
            if isinstance(event, TextDelta):
                print(event.text, end="")
            elif isinstance(event, ToolCallDelta):
                pending.append(event.to_request())
            elif isinstance(event, StreamEnd):
                break
    """

    def stream(
        self,
        system_prompt: str,
        history: Sequence[Message],
        new_user_message: Message,
        tool_declarations: list[dict[str, Any]] | None = None,
        tool_rounds: Sequence[ToolRound] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Open a response stream.

        Args:
            system_prompt: Instruction text for the model.
            history: Prior messages, oldest first (already compacted).
            new_user_message: The message this turn answers.
            tool_declarations: Function declarations the model may call.
            tool_rounds: Tool rounds already completed in this turn, replayed
                so the model sees its own calls and their results.

        Yields:
            TextDelta chunks as they arrive, complete ToolCallDelta events,
            then exactly one StreamEnd.

        Raises:
            ConfigurationError: If the credential is missing.
            ProviderError: On transport or vendor failures.
        """
        ...

    async def complete(self, system_prompt: str, prompt: str) -> str:
        """Single non-streaming completion, returning the text."""
        ...

    async def aclose(self) -> None:
        ...


class HistorySink(Protocol):
    """Best-effort remote record of completed turns.

    Implementations must not raise; failures are logged and swallowed.
    """

    async def record(
        self,
        conversation_id: str,
        user_text: str,
        assistant_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...

    async def get_recent_history(
        self, conversation_id: str, limit: int = 5
    ) -> list[dict[str, Any]]:
        ...

    async def aclose(self) -> None:
        ...
