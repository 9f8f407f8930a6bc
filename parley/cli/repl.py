"""Interactive chat loop.

The REPL is only a store subscriber plus an input loop: it renders streamed
text from MessageUpdated events and tool activity from TurnStatusChanged,
and sends each input line as a turn through the orchestrator.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.styles import Style
from rich.console import Console
from rich.markup import escape

from parley.cli.console import get_console
from parley.config.schema import Config
from parley.core.constants import (
    TOOL_QUERY_DISPLAY_LENGTH,
    TOOLBAR_TITLE_LENGTH,
    get_snapshot_path,
)
from parley.core.errors import ConfigurationError, LoadError, TurnRejected
from parley.core.types import Role
from parley.core.utils import clip
from parley.session.events import (
    MessageUpdated,
    Notification,
    StoreEvent,
    SummaryUpdated,
    TurnStatusChanged,
)
from parley.session.orchestrator import StreamOrchestrator, TurnOutcome
from parley.session.persistence import load_snapshot, save_snapshot, transcript_filename

logger = logging.getLogger(__name__)

HELP_TEXT = """\
[bold]Commands[/]
  /new \\[profile]   start a new conversation
  /regen           regenerate the last answer
  /edit <text>     replace your last message and resend
  /list            list conversations
  /switch <n>      switch to conversation n from /list
  /profile <name>  switch this conversation to another profile
  /profiles        list profiles
  /rename <title>  rename this conversation
  /search \\[on|off] toggle the web search tool
  /export \\[path]   write this conversation to a text file
  /history         show recent turns from the remote history sink
  /help            show this help
  /quit            save and exit
Ctrl-C during a reply cancels it."""


class ChatRenderer:
    """Renders store events for the active conversation to a console."""

    def __init__(self, console: Console) -> None:
        self.console = console
        self.conversation_id: str | None = None
        self._printed: dict[str, int] = {}
        self._tool_shown: str | None = None

    def __call__(self, event: StoreEvent) -> None:
        match event:
            case MessageUpdated(conversation_id=cid, message=message) if (
                cid == self.conversation_id and message.role is Role.ASSISTANT
            ):
                already = self._printed.get(message.id, 0)
                if len(message.text) > already:
                    self.console.print(
                        escape(message.text[already:]), end="", style="assistant"
                    )
                    self._printed[message.id] = len(message.text)
            case TurnStatusChanged(conversation_id=cid, status=status) if (
                cid == self.conversation_id
            ):
                if status.current_tool and status.current_tool != self._tool_shown:
                    query = status.tool_query
                    detail = f": {clip(query, TOOL_QUERY_DISPLAY_LENGTH)}" if query else ""
                    self.console.print(
                        f"\n[tool]→ {escape(status.current_tool)}{escape(detail)}[/]"
                    )
                self._tool_shown = status.current_tool
            case SummaryUpdated(summary=summary) if summary.conversation_id == self.conversation_id:
                logger.debug("Summary v%d received", summary.version)
            case Notification(level=level, message=message):
                self.console.print(f"\n[{level}]{escape(message)}[/]")

    def reset(self) -> None:
        self._printed.clear()
        self._tool_shown = None


class Repl:
    """Input loop bound to one orchestrator."""

    def __init__(
        self,
        orchestrator: StreamOrchestrator,
        config: Config,
        console: Console | None = None,
        profile: str | None = None,
        prompt_session: PromptSession[str] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = config
        self.console = console or get_console()
        self.profile = profile or config.default_profile
        self.renderer = ChatRenderer(self.console)
        self._unsubscribe = orchestrator.store.subscribe(self.renderer)
        self.conversation_id = ""
        self._prompt_session = prompt_session

    def start_conversation(self, profile: str | None = None) -> None:
        conversation = self.orchestrator.new_conversation(profile or self.profile)
        self._activate(conversation.id)
        welcome = self.config.get_profile(conversation.profile).welcome_message
        if welcome:
            self.console.print(f"[assistant]{escape(welcome)}[/]")

    def get_toolbar(self) -> HTML:
        """Bottom toolbar: active conversation, its profile and search state."""
        conversation = self.orchestrator.store.get(self.conversation_id)
        if conversation is None:
            return HTML('<style fg="ansibrightblack">no conversation</style>')
        search = "on" if self.orchestrator.search_enabled else "off"
        return HTML(
            '<style fg="ansigreen">●</style> {} '
            '<style fg="ansibrightblack">| {} | search {}</style>'
        ).format(clip(conversation.title, TOOLBAR_TITLE_LENGTH), conversation.profile, search)

    def _activate(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self.renderer.conversation_id = conversation_id
        self.renderer.reset()

    async def run_turn(self, coro_factory: Callable[[], Awaitable[TurnOutcome]]) -> None:
        """Run a turn, cancelling it on Ctrl-C."""
        loop = asyncio.get_running_loop()
        cid = self.conversation_id
        installed = False
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, self.orchestrator.cancel_turn, cid)
            installed = True
        try:
            outcome = await coro_factory()
        except TurnRejected as e:
            self.console.print(f"[warning]{escape(e.message)}[/]")
            return
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)
        if outcome.succeeded:
            self.console.print()

    async def handle_command(self, line: str) -> bool:
        """Execute a slash command. Returns False when the loop should stop."""
        name, _, arg = line[1:].partition(" ")
        arg = arg.strip()
        match name:
            case "quit" | "exit" | "q":
                return False
            case "help":
                self.console.print(HELP_TEXT)
            case "new":
                try:
                    self.start_conversation(arg or None)
                except ConfigurationError as e:
                    self.console.print(f"[error]{escape(e.message)}[/]")
                    return True
                self.console.print("[info]New conversation.[/]")
            case "regen":
                await self.run_turn(
                    lambda: self.orchestrator.regenerate_last_turn(self.conversation_id)
                )
            case "edit":
                conversation = self.orchestrator.store.get(self.conversation_id)
                last_user = None
                if conversation is not None:
                    last_user = next(
                        (m for m in reversed(conversation.visible_messages) if m.role is Role.USER),
                        None,
                    )
                if last_user is None or not arg:
                    self.console.print("[warning]Usage: /edit <text> (needs a previous message)[/]")
                    return True
                await self.run_turn(
                    lambda: self.orchestrator.edit_and_resend(
                        self.conversation_id, last_user.id, arg
                    )
                )
            case "list":
                for i, conversation in enumerate(self.orchestrator.store.list_conversations(), 1):
                    marker = "*" if conversation.id == self.conversation_id else " "
                    count = len(conversation.visible_messages)
                    self.console.print(
                        f"{marker} {i}. {escape(conversation.title)} "
                        f"[info]({conversation.profile}, {count} messages)[/]"
                    )
            case "switch":
                conversations = self.orchestrator.store.list_conversations()
                if not arg.isdigit() or not 1 <= int(arg) <= len(conversations):
                    self.console.print("[warning]Usage: /switch <n> (see /list)[/]")
                    return True
                self._activate(conversations[int(arg) - 1].id)
                self.console.print(f"[info]Switched to {escape(conversations[int(arg) - 1].title)}[/]")
            case "profile":
                if not arg:
                    self.console.print("[warning]Usage: /profile <name> (see /profiles)[/]")
                    return True
                try:
                    changed = self.orchestrator.change_profile(self.conversation_id, arg)
                except (ConfigurationError, TurnRejected) as e:
                    self.console.print(f"[error]{escape(e.message)}[/]")
                    return True
                if changed:
                    self.console.print(f"[info]Profile set to {escape(arg)}.[/]")
            case "profiles":
                for profile_name in self.config.list_profiles():
                    profile = self.config.profiles[profile_name]
                    label = profile.display_name or profile_name
                    self.console.print(f"  {profile_name}: {escape(label)} [info]({profile.model})[/]")
            case "rename":
                if not self.orchestrator.rename_conversation(self.conversation_id, arg):
                    self.console.print("[warning]Usage: /rename <title>[/]")
                    return True
                self.console.print(f"[info]Renamed to {escape(arg)}.[/]")
            case "search":
                match arg.lower():
                    case "":
                        enabled = not self.orchestrator.search_enabled
                    case "on":
                        enabled = True
                    case "off":
                        enabled = False
                    case _:
                        self.console.print("[warning]Usage: /search \\[on|off][/]")
                        return True
                self.orchestrator.set_search_enabled(enabled)
                self.console.print(f"[info]Web search {'on' if enabled else 'off'}.[/]")
            case "export":
                self._export(arg)
            case "history":
                rows = await self.orchestrator.history.get_recent_history(self.conversation_id)
                if not rows:
                    self.console.print("[info]No remote history.[/]")
                for row in rows:
                    self.console.print(f"[user]> {escape(str(row.get('user_prompt', '')))}[/]")
                    self.console.print(escape(str(row.get("ai_response", ""))))
            case _:
                self.console.print(f"[warning]Unknown command: /{escape(name)}[/]")
        return True

    def _export(self, target: str) -> None:
        conversation = self.orchestrator.store.get(self.conversation_id)
        transcript = self.orchestrator.export_conversation(self.conversation_id)
        if conversation is None or transcript is None:
            self.console.print("[warning]No conversation to export.[/]")
            return
        path = Path(target).expanduser() if target else Path(transcript_filename(conversation.title))
        try:
            path.write_text(transcript, encoding="utf-8")
        except OSError as e:
            self.console.print(f"[error]Export failed: {escape(str(e))}[/]")
            return
        logger.info("Exported %s to %s", self.conversation_id, path)
        self.console.print(f"[info]Exported to {escape(str(path))}[/]")

    async def run(self) -> None:
        if not self.conversation_id:
            self.start_conversation()
        self.console.print("[info]Type /help for commands.[/]")
        if self._prompt_session is None:
            self._prompt_session = PromptSession(
                bottom_toolbar=self.get_toolbar,
                style=Style.from_dict({"bottom-toolbar": "noreverse"}),
            )
        while True:
            try:
                line = await self._prompt_session.prompt_async("> ")
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await self.handle_command(line):
                    break
                continue
            await self.run_turn(
                lambda: self.orchestrator.send_turn(self.conversation_id, line)
            )

    def close(self) -> None:
        self._unsubscribe()


async def run_session(
    config: Config,
    profile: str | None = None,
    save: bool = True,
    console: Console | None = None,
) -> None:
    """Load the snapshot, run the REPL, save on exit."""
    console = console or get_console()
    orchestrator = StreamOrchestrator.from_config(config)
    snapshot_path = Path(config.persistence.path) if config.persistence.path else get_snapshot_path()
    persist = save and config.persistence.enabled

    if persist:
        try:
            orchestrator.store.load_snapshot(load_snapshot(snapshot_path))
            orchestrator.prune_stale_summaries()
        except LoadError as e:
            console.print(f"[warning]{escape(e.message)} (starting empty)[/]")

    repl = Repl(orchestrator, config, console=console, profile=profile)
    try:
        await repl.run()
    finally:
        repl.close()
        await orchestrator.aclose()
        if persist:
            save_snapshot(
                snapshot_path,
                orchestrator.store.export_snapshot(),
                config.persistence.attachment_content_limit,
            )
            logger.info("Snapshot saved to %s", snapshot_path)
