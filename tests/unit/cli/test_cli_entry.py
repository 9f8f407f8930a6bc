"""Tests for CLI argument parsing, main() and the chat renderer."""

import io
import json
from collections.abc import Iterator
from pathlib import Path

import pytest
from rich.console import Console

from parley.cli import main as main_module
from parley.cli.arg_parser import parse_args
from parley.cli.console import PARLEY_THEME, set_console
from parley.cli.repl import ChatRenderer
from parley.core.types import Message, Role
from parley.session.events import MessageUpdated, Notification, TurnStatus, TurnStatusChanged


def recording_console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    console = Console(file=buffer, theme=PARLEY_THEME, color_system=None, width=120)
    return console, buffer


@pytest.fixture
def console(monkeypatch: pytest.MonkeyPatch) -> Iterator[io.StringIO]:
    recorded, buffer = recording_console()
    set_console(recorded)
    monkeypatch.setattr(main_module, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(main_module, "load_dotenv", lambda *args, **kwargs: False)
    yield buffer
    set_console(None)


class TestArgs:
    def test_defaults(self) -> None:
        args = parse_args([])

        assert args.config is None
        assert args.profile is None
        assert args.verbose == 0
        assert not args.no_save

    def test_flags(self) -> None:
        args = parse_args(["-c", "cfg.json", "-p", "developer", "-vv", "--no-save"])

        assert args.config == Path("cfg.json")
        assert args.profile == "developer"
        assert args.verbose == 2
        assert args.no_save


class TestMain:
    def test_list_profiles(self, tmp_path: Path, console: io.StringIO) -> None:
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"default_profile": "local"}))

        assert main_module.main(["--config", str(config_path), "--list-profiles"]) == 0

        output = console.getvalue()
        assert "* local (offline/built-in)" in output
        assert "flash (gemini/gemini-2.0-flash)" in output

    def test_invalid_config(self, tmp_path: Path, console: io.StringIO) -> None:
        config_path = tmp_path / "config.json"
        config_path.write_text("{broken")

        assert main_module.main(["--config", str(config_path)]) == 1
        assert "Invalid JSON" in console.getvalue()

    def test_unknown_profile(self, tmp_path: Path, console: io.StringIO) -> None:
        config_path = tmp_path / "config.json"
        config_path.write_text("{}")

        assert main_module.main(["--config", str(config_path), "-p", "nope", "--list-profiles"]) == 1
        assert "Unknown profile: nope" in console.getvalue()

    def test_loads_dotenv(
        self, tmp_path: Path, console: io.StringIO, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        calls = []
        monkeypatch.setattr(main_module, "load_dotenv", lambda *args, **kwargs: calls.append(args))
        config_path = tmp_path / "config.json"
        config_path.write_text("{}")

        assert main_module.main(["--config", str(config_path), "--list-profiles"]) == 0
        assert calls == [()]


class TestChatRenderer:
    def test_streams_only_new_text(self) -> None:
        console, buffer = recording_console()
        renderer = ChatRenderer(console)
        renderer.conversation_id = "c1"

        for text in ["Hel", "Hello", "Hello [world]"]:
            renderer(MessageUpdated("c1", Message(id="a", role=Role.ASSISTANT, text=text)))
        renderer(MessageUpdated("other", Message(id="b", role=Role.ASSISTANT, text="ignored")))

        assert buffer.getvalue() == "Hello [world]"

    def test_tool_status_and_notifications(self) -> None:
        console, buffer = recording_console()
        renderer = ChatRenderer(console)
        renderer.conversation_id = "c1"

        status = TurnStatus(is_loading=True, current_tool="internet_search", tool_query="rust")
        renderer(TurnStatusChanged("c1", status))
        renderer(TurnStatusChanged("c1", status))
        renderer(Notification(level="error", message="Rate limit reached"))

        output = buffer.getvalue()
        assert output.count("→ internet_search: rust") == 1
        assert "Rate limit reached" in output

    def test_long_tool_query_is_clipped(self) -> None:
        console, buffer = recording_console()
        renderer = ChatRenderer(console)
        renderer.conversation_id = "c1"

        query = "x" * 200
        renderer(TurnStatusChanged("c1", TurnStatus(is_loading=True, current_tool="internet_search", tool_query=query)))

        line = buffer.getvalue().strip()
        assert line == "→ internet_search: " + "x" * 57 + "..."
