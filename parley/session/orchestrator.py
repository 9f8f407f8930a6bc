"""Turn orchestration: user input through streamed, tool-assisted replies.

The orchestrator owns the per-conversation turn state machine:

    idle -> sending -> streaming_text <-> tool_dispatch -> finalizing -> idle
    sending / streaming_text / tool_dispatch -> failed -> idle

Every write goes through the MessageStore, and a failed or cancelled turn
is rolled back so the conversation's message list equals what it was
before the call. Progress is observed by subscribing to the store.

Example:
    orchestrator = StreamOrchestrator.from_config(load_config())
    conversation = orchestrator.new_conversation("flash")
    outcome = await orchestrator.send_turn(conversation.id, "What time is it?")
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from parley.config.schema import Config, ProfileConfig
from parley.context.compaction import build_context, enrich_system_prompt, is_stale
from parley.context.summarizer import SummaryScheduler
from parley.core.cancel import CancellationToken
from parley.core.constants import TITLE_LENGTH
from parley.core.errors import (
    ConfigurationError,
    ParleyError,
    ProviderError,
    ProviderHttpError,
    StreamStallTimeout,
    ToolLoopExceeded,
    TurnCancelled,
    TurnRejected,
)
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
    new_id,
)
from parley.provider.registry import ProviderRegistry
from parley.session.history import NullHistorySink, create_history_sink
from parley.session.persistence import render_transcript
from parley.session.store import DEFAULT_TITLE, MessageStore
from parley.session.throttle import FlushThrottle
from parley.tools.builtin import SEARCH_TOOL_NAME, register_builtin_tools
from parley.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from parley.core.interfaces import HistorySink, ProviderAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.SENDING}),
    TurnState.SENDING: frozenset({TurnState.STREAMING_TEXT, TurnState.FAILED}),
    TurnState.STREAMING_TEXT: frozenset(
        {TurnState.TOOL_DISPATCH, TurnState.FINALIZING, TurnState.FAILED}
    ),
    TurnState.TOOL_DISPATCH: frozenset({TurnState.STREAMING_TEXT, TurnState.FAILED}),
    TurnState.FINALIZING: frozenset({TurnState.IDLE}),
    TurnState.FAILED: frozenset({TurnState.IDLE}),
}

_END = object()


@dataclass(frozen=True)
class TurnOutcome:
    """How a turn ended.

    Attributes:
        conversation_id: The conversation the turn ran in.
        state: FINALIZING for a completed turn, FAILED for a rolled-back one.
        assistant_message_id: The filled placeholder (None after rollback).
        text: Final assistant text ("" after rollback).
        tool_rounds: Tool rounds executed during the turn.
        error: The exception that failed the turn, if any.
    """

    conversation_id: str
    state: TurnState
    assistant_message_id: str | None = None
    text: str = ""
    tool_rounds: tuple[ToolRound, ...] = ()
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is TurnState.FINALIZING


@dataclass
class _ActiveTurn:
    """Mutable per-turn working state, private to the orchestrator."""

    pending: PendingTurn
    profile_name: str
    user_message: Message
    history: list[Message]
    summary: ConversationSummary | None
    throttle: FlushThrottle
    profile: ProfileConfig | None = None
    previous_title: str | None = None
    text: str = ""
    rounds: list[ToolRound] = field(default_factory=list)

    @property
    def conversation_id(self) -> str:
        return self.pending.conversation_id

    @property
    def placeholder_id(self) -> str:
        return self.pending.assistant_placeholder_id


def describe_turn_error(error: BaseException) -> str:
    """User-facing message for a failed turn, by error category."""
    match error:
        case TurnCancelled():
            return "Response cancelled."
        case ConfigurationError():
            return error.message
        case StreamStallTimeout():
            return f"{error.message}. The connection may have stalled; try again."
        case ProviderHttpError() if error.is_rate_limit:
            return f"Rate limit reached, wait a moment and retry. ({error.message})"
        case ToolLoopExceeded():
            return f"{error.message}. The turn was stopped."
        case ParleyError():
            return error.message
        case _:
            return f"Unexpected error: {error}"


def _tool_query(request: ToolCallRequest) -> str | None:
    """The `query` argument of a tool call, for status display."""
    try:
        args = json.loads(request.raw_arguments or "{}")
    except json.JSONDecodeError:
        return None
    if isinstance(args, dict) and isinstance(args.get("query"), str):
        return args["query"]
    return None


def _title_from(text: str, attachments: Sequence[FileRef]) -> str:
    title = text.strip()[:TITLE_LENGTH]
    if not title and attachments:
        title = attachments[0].name[:TITLE_LENGTH]
    return title or DEFAULT_TITLE


async def _next_or_end(iterator: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


async def _until_cancelled(
    awaitable: Awaitable[T],
    token: CancellationToken,
    timeout: float | None = None,
) -> T:
    """Await `awaitable` unless the token fires or the timeout elapses first.

    Raises:
        TurnCancelled: The token fired. Any result is discarded.
        TimeoutError: Nothing completed within `timeout` seconds.
    """
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("Abandoned operation raised on cancel: %s", e)
    token.raise_if_cancelled()
    if task not in done:
        raise TimeoutError
    return task.result()


class StreamOrchestrator:
    """Runs turns against providers and tools, writing results to the store.

    Turns in different conversations run concurrently. Within one
    conversation at most one turn is pending; a second send is rejected.

    Args:
        store: The message store (the only shared mutable state).
        config: Loaded configuration.
        providers: Adapter registry used to resolve a conversation's profile.
        tools: Tool registry offered to tool-enabled profiles.
        history: Best-effort remote history sink.
        summaries: Background summarizer. Created from config when None.
        clock: Monotonic clock for flush throttling.
    """

    def __init__(
        self,
        store: MessageStore,
        config: Config,
        providers: ProviderRegistry,
        tools: ToolRegistry | None = None,
        history: HistorySink | None = None,
        summaries: SummaryScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._config = config
        self._providers = providers
        self._tools = (
            tools if tools is not None
            else ToolRegistry(config.tools.timeout, config.tools.max_concurrent)
        )
        self._history: HistorySink = history or NullHistorySink()
        self._summaries = summaries or SummaryScheduler(
            store, self._summary_provider_for, config.compaction
        )
        self._clock = clock
        self._search_enabled = True

        self._states: dict[str, TurnState] = {}
        self._pending: dict[str, PendingTurn] = {}
        self._tasks: set[asyncio.Task[TurnOutcome]] = set()
        self._background: set[asyncio.Task[None]] = set()
        self._closeables: list[Callable[[], Awaitable[None]]] = []

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: MessageStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> StreamOrchestrator:
        """Wire an orchestrator with the configured providers, built-in tools
        and history sink. `transport` is shared by every HTTP client."""
        providers = ProviderRegistry(config, transport=transport)
        tools = ToolRegistry(config.tools.timeout, config.tools.max_concurrent)
        search = register_builtin_tools(tools, config, transport=transport)
        orchestrator = cls(
            store or MessageStore(),
            config,
            providers,
            tools=tools,
            history=create_history_sink(config.history, transport=transport),
        )
        if search is not None:
            orchestrator._closeables.append(search.aclose)
        return orchestrator

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def summaries(self) -> SummaryScheduler:
        return self._summaries

    @property
    def history(self) -> HistorySink:
        return self._history

    @property
    def search_enabled(self) -> bool:
        """Whether web search is offered to the model on new turns."""
        return self._search_enabled

    def set_search_enabled(self, enabled: bool) -> None:
        self._search_enabled = enabled
        logger.info("Web search %s", "enabled" if enabled else "disabled")

    # === Queries ===

    def state_of(self, conversation_id: str) -> TurnState:
        return self._states.get(conversation_id, TurnState.IDLE)

    def pending_turn(self, conversation_id: str) -> PendingTurn | None:
        return self._pending.get(conversation_id)

    # === Conversations ===

    def new_conversation(self, profile: str | None = None) -> Conversation:
        """Create an empty conversation bound to a profile.

        Raises:
            ConfigurationError: If the profile is unknown.
        """
        name = profile or self._config.default_profile
        self._resolve_profile(name)
        return self._store.create_conversation(profile=name)

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation, aborting its pending turn if any.

        Pending summarization is cancelled by the scheduler when the store
        reports the deletion.
        """
        pending = self._pending.get(conversation_id)
        if pending is not None:
            pending.cancel_token.cancel()
        return self._store.delete_conversation(conversation_id)

    def change_profile(self, conversation_id: str, profile: str) -> bool:
        """Switch the profile used for the conversation's next turns.

        Raises:
            ConfigurationError: If the profile is unknown.
            TurnRejected: If the conversation is unknown or a turn is pending.
        """
        self._resolve_profile(profile)
        if self._check_can_start(conversation_id).profile == profile:
            return False
        return self._store.set_profile(conversation_id, profile)

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        """Set a conversation's title. Blank titles are ignored."""
        title = title.strip()
        if not title:
            return False
        return self._store.rename_conversation(conversation_id, title)

    def export_conversation(self, conversation_id: str) -> str | None:
        """Plain-text transcript of a conversation, or None if it is unknown."""
        conversation = self._store.get(conversation_id)
        if conversation is None:
            return None
        profile = self._config.profiles.get(conversation.profile)
        label = (profile.display_name if profile else None) or conversation.profile
        return render_transcript(conversation, label)

    def delete_message(self, conversation_id: str, message_id: str) -> bool:
        """Soft-delete a message. Messages of the pending turn cannot be deleted."""
        pending = self._pending.get(conversation_id)
        if pending is not None and message_id in (
            pending.user_message_id,
            pending.assistant_placeholder_id,
        ):
            logger.debug("Refusing to delete in-flight message %s", message_id)
            return False
        return self._store.delete_message(conversation_id, message_id)

    def prune_stale_summaries(self, now: datetime | None = None) -> list[str]:
        """Drop summaries older than the configured max age.

        Returns the affected conversation ids.
        """
        max_age = self._config.compaction.max_age_days
        pruned = []
        for conversation in self._store.list_conversations():
            summary = self._store.get_summary(conversation.id)
            if summary is None or not is_stale(summary, timedelta(days=max_age), now):
                continue
            if self._store.remove_summary(conversation.id):
                pruned.append(conversation.id)
        if pruned:
            logger.info("Pruned %d stale summaries", len(pruned))
        return pruned

    # === Turns ===

    async def send_turn(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[FileRef] = (),
    ) -> TurnOutcome:
        """Run one turn to completion.

        The pending turn is registered before the first suspension point,
        so a concurrent second send for the same conversation is rejected.

        Raises:
            TurnRejected: Unknown conversation, a turn already pending, or
                empty text and attachments. Nothing is changed.
        """
        turn = self._begin_turn(conversation_id, text, tuple(attachments))
        return await self._run_turn(turn)

    def submit_turn(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[FileRef] = (),
    ) -> asyncio.Task[TurnOutcome]:
        """Validate and start a turn without waiting for it.

        Must be called from a running event loop.

        Raises:
            TurnRejected: As for send_turn, raised synchronously.
        """
        turn = self._begin_turn(conversation_id, text, tuple(attachments))
        return self._spawn(turn)

    async def regenerate_last_turn(self, conversation_id: str) -> TurnOutcome:
        """Discard the last exchange and ask again with the same user input.

        Raises:
            TurnRejected: No user message to regenerate from, or a turn is
                already pending.
        """
        return await self._run_turn(self._begin_regenerate(conversation_id))

    def submit_regenerate(self, conversation_id: str) -> asyncio.Task[TurnOutcome]:
        """Validate and start a regeneration without waiting for it."""
        return self._spawn(self._begin_regenerate(conversation_id))

    async def edit_and_resend(
        self, conversation_id: str, message_id: str, new_text: str
    ) -> TurnOutcome:
        """Replace a user message and everything after it with a new turn.

        Attachments of the edited message are kept.

        Raises:
            TurnRejected: Unknown message, not a user message, or a turn is
                already pending.
        """
        return await self._run_turn(self._begin_edit(conversation_id, message_id, new_text))

    def submit_edit(
        self, conversation_id: str, message_id: str, new_text: str
    ) -> asyncio.Task[TurnOutcome]:
        """Validate and start an edit-and-resend without waiting for it."""
        return self._spawn(self._begin_edit(conversation_id, message_id, new_text))

    def cancel_turn(self, conversation_id: str) -> bool:
        """Fire the abort signal of the pending turn, if any."""
        pending = self._pending.get(conversation_id)
        if pending is None:
            return False
        logger.info("Cancelling turn in %s", conversation_id)
        pending.cancel_token.cancel()
        return True

    # === Lifecycle ===

    async def aclose(self) -> None:
        """Abort pending turns, stop background work and close clients."""
        for pending in list(self._pending.values()):
            pending.cancel_token.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._summaries.aclose()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._history.aclose()
        for close in self._closeables:
            await close()
        await self._providers.aclose()

    # === Internals: setup ===

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._store.get(conversation_id)
        if conversation is None:
            raise TurnRejected(f"Unknown conversation: {conversation_id}")
        return conversation

    def _check_can_start(self, conversation_id: str) -> Conversation:
        conversation = self._require_conversation(conversation_id)
        if conversation_id in self._pending:
            raise TurnRejected("A response is already in progress for this conversation")
        return conversation

    def _resolve_profile(self, name: str) -> ProfileConfig:
        try:
            return self._config.get_profile(name)
        except KeyError as e:
            raise ConfigurationError(f"Unknown profile: {name}") from e

    def _provider_for_profile(self, name: str) -> ProviderAdapter:
        profile = self._resolve_profile(name)
        try:
            return self._providers.get_for_profile(name)
        except KeyError as e:
            raise ConfigurationError(
                f"Profile '{name}' uses unknown provider '{profile.provider}'"
            ) from e

    def _summary_provider_for(self, conversation: Conversation) -> ProviderAdapter:
        return self._provider_for_profile(self._config.compaction.profile or conversation.profile)

    def _begin_turn(
        self,
        conversation_id: str,
        text: str,
        attachments: tuple[FileRef, ...],
        replace_from: str | None = None,
    ) -> _ActiveTurn:
        """Validate, then append the user message and placeholder.

        Runs without suspending, so the turn is pending once this returns.
        """
        self._check_can_start(conversation_id)
        if not text.strip() and not attachments:
            raise TurnRejected("Message is empty")

        removed: tuple[Message, ...] = ()
        if replace_from is not None:
            removed = self._store.truncate_from(conversation_id, replace_from)

        conversation = self._require_conversation(conversation_id)
        profile_name = conversation.profile
        summary = self._store.get_summary(conversation_id)
        history = build_context(conversation, summary, self._config.compaction.recent_window)

        user_message = Message(id=new_id(), role=Role.USER, text=text, attachments=attachments)
        placeholder = Message(id=new_id(), role=Role.ASSISTANT, text="")
        pending = PendingTurn(
            conversation_id=conversation_id,
            user_message_id=user_message.id,
            assistant_placeholder_id=placeholder.id,
            cancel_token=CancellationToken(),
            restore=removed,
        )
        self._pending[conversation_id] = pending
        self._transition(conversation_id, TurnState.SENDING)

        turn = _ActiveTurn(
            pending=pending,
            profile_name=profile_name,
            user_message=user_message,
            history=history,
            summary=summary,
            throttle=FlushThrottle(self._config.stream.flush_interval, self._clock),
        )

        if conversation.title == DEFAULT_TITLE and not any(
            m.role is Role.USER for m in conversation.visible_messages
        ):
            turn.previous_title = conversation.title
            self._store.rename_conversation(conversation_id, _title_from(text, attachments))

        self._store.add_message(conversation_id, user_message)
        self._store.add_message(conversation_id, placeholder)
        self._store.set_turn_status(
            conversation_id, is_loading=True, current_tool=None, tool_query=None, error=None
        )
        logger.debug(
            "Turn started in %s (profile=%s, history=%d)",
            conversation_id, profile_name, len(history),
        )
        return turn

    def _begin_regenerate(self, conversation_id: str) -> _ActiveTurn:
        conversation = self._check_can_start(conversation_id)
        last_user = next(
            (m for m in reversed(conversation.visible_messages) if m.role is Role.USER),
            None,
        )
        if last_user is None:
            raise TurnRejected("Nothing to regenerate")
        return self._begin_turn(
            conversation_id, last_user.text, last_user.attachments, replace_from=last_user.id
        )

    def _begin_edit(self, conversation_id: str, message_id: str, new_text: str) -> _ActiveTurn:
        conversation = self._check_can_start(conversation_id)
        original = conversation.find(message_id)
        if original is None or original.deleted:
            raise TurnRejected(f"Unknown message: {message_id}")
        if original.role is not Role.USER:
            raise TurnRejected("Only user messages can be edited")
        return self._begin_turn(
            conversation_id, new_text, original.attachments, replace_from=message_id
        )

    def _spawn(self, turn: _ActiveTurn) -> asyncio.Task[TurnOutcome]:
        task = asyncio.get_running_loop().create_task(
            self._run_turn(turn), name=f"turn-{turn.conversation_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _transition(self, conversation_id: str, new: TurnState) -> None:
        current = self.state_of(conversation_id)
        if new not in _TRANSITIONS[current]:
            raise RuntimeError(f"Invalid turn transition {current.value} -> {new.value}")
        logger.debug("Turn %s: %s -> %s", conversation_id, current.value, new.value)
        if new is TurnState.IDLE:
            self._states.pop(conversation_id, None)
        else:
            self._states[conversation_id] = new

    # === Internals: running ===

    async def _run_turn(self, turn: _ActiveTurn) -> TurnOutcome:
        try:
            await self._converse(turn)
        except asyncio.CancelledError:
            self._fail(turn, TurnCancelled("Turn task cancelled"))
            raise
        except Exception as e:
            return self._fail(turn, e)
        return self._finalize(turn)

    async def _converse(self, turn: _ActiveTurn) -> None:
        """Stream, dispatch tools, and stream again until the model answers."""
        profile = turn.profile = self._resolve_profile(turn.profile_name)
        provider = self._provider_for_profile(turn.profile_name)
        system_prompt = enrich_system_prompt(profile.system_prompt, turn.summary)
        token = turn.pending.cancel_token
        declarations = None
        if profile.tools_enabled:
            excluded = () if self._search_enabled else (SEARCH_TOOL_NAME,)
            declarations = self._tools.get_declarations(exclude=excluded) or None
        max_rounds = self._config.stream.max_tool_rounds

        turn.throttle.start()
        while True:
            token.raise_if_cancelled()
            round_start = len(turn.text)
            stream = provider.stream(
                system_prompt,
                turn.history,
                turn.user_message,
                declarations,
                tuple(turn.rounds) or None,
            )
            requests = await self._consume(turn, stream)
            if not requests:
                break
            if len(turn.rounds) >= max_rounds:
                raise ToolLoopExceeded(max_rounds)

            self._transition(turn.conversation_id, TurnState.TOOL_DISPATCH)
            self._flush(turn, force=True)
            results = await self._dispatch(turn, requests)
            turn.rounds.append(
                ToolRound(tuple(requests), tuple(results), text=turn.text[round_start:])
            )
            self._transition(turn.conversation_id, TurnState.STREAMING_TEXT)

        if not turn.text.strip():
            raise ProviderError("The model returned an empty response")

    async def _consume(
        self, turn: _ActiveTurn, stream: AsyncIterator[StreamEvent]
    ) -> list[ToolCallRequest]:
        """Drain one stream into the turn buffer; return requested tool calls."""
        token = turn.pending.cancel_token
        idle_timeout = self._config.stream.idle_timeout
        iterator = stream.__aiter__()
        requests: list[ToolCallRequest] = []
        started = self._clock()
        events = 0
        try:
            while True:
                try:
                    event = await _until_cancelled(_next_or_end(iterator), token, idle_timeout)
                except TimeoutError:
                    raise StreamStallTimeout(idle_timeout) from None
                if event is _END:
                    break
                events += 1
                if self.state_of(turn.conversation_id) is TurnState.SENDING:
                    self._transition(turn.conversation_id, TurnState.STREAMING_TEXT)

                match event:
                    case TextDelta(text=chunk):
                        turn.text += chunk
                        self._flush(turn)
                    case ToolCallDelta():
                        requests.append(event.to_request())
                    case StreamEnd():
                        break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        self._flush(turn, force=True)
        logger.debug(
            "Stream for %s done: %d events, %d chars, %d tool calls, %.2fs",
            turn.conversation_id, events, len(turn.text), len(requests),
            self._clock() - started,
        )
        return requests

    async def _dispatch(
        self, turn: _ActiveTurn, requests: list[ToolCallRequest]
    ) -> list[ToolCallResult]:
        """Run a batch of tool calls concurrently and wait for all of them."""
        cid = turn.conversation_id

        def on_start(request: ToolCallRequest) -> None:
            self._store.set_turn_status(
                cid, current_tool=request.tool_name, tool_query=_tool_query(request)
            )

        logger.info("Dispatching %d tool call(s) in %s", len(requests), cid)
        try:
            return await _until_cancelled(
                self._tools.execute(requests, turn.pending.cancel_token, on_tool_start=on_start),
                turn.pending.cancel_token,
            )
        finally:
            self._store.set_turn_status(cid, current_tool=None, tool_query=None)

    def _flush(self, turn: _ActiveTurn, force: bool = False) -> None:
        """Write the buffer to the placeholder, throttled unless forced.

        Unchanged text is never rewritten.
        """
        if not turn.throttle.needs_final(turn.text):
            return
        if not force and not turn.throttle.due():
            return
        self._store.stream_text(turn.conversation_id, turn.placeholder_id, turn.text)
        turn.throttle.mark(turn.text)

    # === Internals: ending ===

    def _finalize(self, turn: _ActiveTurn) -> TurnOutcome:
        cid = turn.conversation_id
        self._transition(cid, TurnState.FINALIZING)
        self._flush(turn, force=True)
        self._pending.pop(cid, None)
        self._store.set_turn_status(cid, is_loading=False, current_tool=None, tool_query=None)

        self._record_history(turn)
        self._summaries.schedule(cid)
        self._transition(cid, TurnState.IDLE)
        logger.debug("Turn finalized in %s (%d tool rounds)", cid, len(turn.rounds))
        return TurnOutcome(
            conversation_id=cid,
            state=TurnState.FINALIZING,
            assistant_message_id=turn.placeholder_id,
            text=turn.text,
            tool_rounds=tuple(turn.rounds),
        )

    def _fail(self, turn: _ActiveTurn, error: BaseException) -> TurnOutcome:
        cid = turn.conversation_id
        pending = turn.pending
        self._transition(cid, TurnState.FAILED)
        self._store.rollback_turn(
            cid, pending.user_message_id, pending.assistant_placeholder_id, pending.restore
        )
        if turn.previous_title is not None:
            self._store.rename_conversation(cid, turn.previous_title)

        message = describe_turn_error(error)
        if isinstance(error, TurnCancelled):
            logger.info("Turn cancelled in %s", cid)
        elif isinstance(error, ParleyError):
            logger.warning("Turn failed in %s: %s", cid, error)
        else:
            logger.error("Turn crashed in %s: %s", cid, error, exc_info=error)

        self._pending.pop(cid, None)
        self._store.set_turn_status(
            cid, is_loading=False, current_tool=None, tool_query=None, error=message
        )
        level = "info" if isinstance(error, TurnCancelled) else "error"
        self._store.notify(level, message, cid)
        self._transition(cid, TurnState.IDLE)
        return TurnOutcome(
            conversation_id=cid,
            state=TurnState.FAILED,
            tool_rounds=tuple(turn.rounds),
            error=error,
        )

    def _record_history(self, turn: _ActiveTurn) -> None:
        metadata = {
            "profile": turn.profile_name,
            "model": turn.profile.model if turn.profile else None,
            "tool_calls": [r.tool_name for rnd in turn.rounds for r in rnd.requests],
        }
        task = asyncio.get_running_loop().create_task(
            self._safe_record(turn.conversation_id, turn.user_message.text, turn.text, metadata)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _safe_record(
        self, conversation_id: str, user_text: str, assistant_text: str, metadata: dict[str, Any]
    ) -> None:
        try:
            await self._history.record(conversation_id, user_text, assistant_text, metadata)
        except Exception as e:
            logger.warning("History record failed for %s: %s", conversation_id, e)
