"""Shared Rich Console instance for parley."""

from __future__ import annotations

from rich.console import Console
from rich.theme import Theme

PARLEY_THEME = Theme({
    "user": "bold cyan",
    "assistant": "green",
    "tool": "dim yellow",
    "info": "dim",
    "warning": "yellow",
    "error": "bold red",
})

_console: Console | None = None


def get_console() -> Console:
    """Get the shared Console instance, creating it on first access."""
    global _console
    if _console is None:
        _console = Console(highlight=False, markup=True, theme=PARLEY_THEME)
    return _console


def set_console(console: Console | None) -> None:
    """Replace the shared console (tests record output this way)."""
    global _console
    _console = console
