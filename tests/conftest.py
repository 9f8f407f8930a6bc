"""Shared pytest fixtures and fakes for parley tests."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import pytest

from parley.config.schema import (
    AuthMethod,
    CompactionConfig,
    Config,
    ProfileConfig,
    ProviderConfig,
    StreamConfig,
)
from parley.core.types import Message, StreamEnd, StreamEvent, TextDelta, ToolRound
from parley.provider.registry import ProviderRegistry
from parley.session.orchestrator import StreamOrchestrator
from parley.session.store import MessageStore
from parley.tools.registry import ToolRegistry


@dataclass(frozen=True)
class Pause:
    """Script item: sleep before the next event."""

    seconds: float


@dataclass
class StreamCall:
    system_prompt: str
    history: list[Message]
    new_user_message: Message
    tool_declarations: list[dict[str, Any]] | None
    tool_rounds: tuple[ToolRound, ...]


class ScriptedProvider:
    """Fake adapter replaying one script per stream() call.

    Script items are StreamEvents (yielded), Pause (slept), exceptions
    (raised) or plain callables (called, e.g. to advance a fake clock).
    When scripts run out, replies "ok".
    """

    def __init__(self, *scripts: Sequence[Any], summary: str = "A short summary.") -> None:
        self.scripts = [list(s) for s in scripts]
        self.calls: list[StreamCall] = []
        self.summary = summary
        self.summary_prompts: list[str] = []
        self.closed = False

    async def stream(
        self,
        system_prompt: str,
        history: Sequence[Message],
        new_user_message: Message,
        tool_declarations: list[dict[str, Any]] | None = None,
        tool_rounds: Sequence[ToolRound] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append(StreamCall(
            system_prompt, list(history), new_user_message, tool_declarations,
            tuple(tool_rounds or ()),
        ))
        script = self.scripts.pop(0) if self.scripts else [TextDelta("ok"), StreamEnd("stop")]
        for item in script:
            if isinstance(item, Pause):
                await asyncio.sleep(item.seconds)
            elif isinstance(item, BaseException):
                raise item
            elif callable(item):
                item()
            else:
                yield item

    async def complete(self, system_prompt: str, prompt: str) -> str:
        self.summary_prompts.append(prompt)
        if isinstance(self.summary, BaseException):
            raise self.summary
        return self.summary

    async def aclose(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(
    *,
    compaction: CompactionConfig | None = None,
    stream: StreamConfig | None = None,
    tools_enabled: bool = True,
    **kwargs: Any,
) -> Config:
    """Config with a single 'test' profile bound to the 'fake' provider."""
    return Config(
        default_profile="test",
        providers={
            "fake": ProviderConfig(
                type="offline", api_key_env="", base_url="", auth_method=AuthMethod.NONE
            ),
        },
        profiles={
            "test": ProfileConfig(
                provider="fake",
                model="test-model",
                system_prompt="Be brief.",
                tools_enabled=tools_enabled,
            ),
        },
        compaction=compaction or CompactionConfig(enabled=False),
        stream=stream or StreamConfig(),
        **kwargs,
    )


def build_orchestrator(
    provider: ScriptedProvider,
    *,
    config: Config | None = None,
    tools: ToolRegistry | None = None,
    history: Any = None,
    clock: Callable[[], float] = time.monotonic,
) -> StreamOrchestrator:
    config = config or make_config()
    registry = ProviderRegistry(config)
    registry.register("fake", "test-model", provider)
    return StreamOrchestrator(
        MessageStore(), config, registry, tools=tools, history=history, clock=clock
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> Config:
    return make_config()
