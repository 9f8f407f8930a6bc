"""Typed exception hierarchy for parley.

Fatal categories (ConfigurationError, ProviderError and subclasses,
StreamStallTimeout, ToolLoopExceeded, TurnCancelled) are caught at the
orchestrator boundary and roll the turn back. ToolExecutionError never
leaves the tool registry.
"""

from __future__ import annotations

import re


class ParleyError(Exception):
    """Base class for all parley errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(ParleyError):
    """Missing or invalid configuration, including a missing credential."""


class LoadError(ParleyError):
    """A config or snapshot file could not be read or parsed."""


class ProviderError(ParleyError):
    """LLM provider failure (network issues, malformed responses)."""


class ProviderHttpError(ProviderError):
    """The vendor answered with a 4xx/5xx status.

    Attributes:
        status_code: HTTP status returned by the vendor.
        detail: Vendor error message, when the body carried one.
    """

    def __init__(self, status_code: int, detail: str = "", provider: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        self.provider = provider
        prefix = f"{provider} " if provider else ""
        message = f"{prefix}API request failed ({status_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    @property
    def is_rate_limit(self) -> bool:
        return self.status_code == 429


class StreamStallTimeout(ParleyError):
    """The provider stream produced no event within the idle timeout."""

    def __init__(self, idle_seconds: float) -> None:
        self.idle_seconds = idle_seconds
        super().__init__(f"No response from the model for {idle_seconds:g}s")


class ToolExecutionError(ParleyError):
    """Raised by a tool executor. Always converted to an error result."""

    def __init__(self, tool_name: str, reason: str) -> None:
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Tool '{tool_name}' failed: {reason}")


class ToolLoopExceeded(ParleyError):
    """The model kept requesting tools past the round limit."""

    def __init__(self, max_rounds: int) -> None:
        self.max_rounds = max_rounds
        super().__init__(f"Model requested tools for more than {max_rounds} rounds")


class TurnRejected(ParleyError):
    """send_turn was refused before any state changed."""


class TurnCancelled(ParleyError):
    """The pending turn was aborted."""

    def __init__(self, message: str = "Turn cancelled") -> None:
        super().__init__(message)


# === Error Sanitization for Model-Facing Messages ===

_HOME_PATTERN = re.compile(r"/home/[^/\s]+")
_PATH_PATTERN = re.compile(r"(/[^\s:]+)+")
_WINDOWS_USER_PATTERN = re.compile(r"[A-Za-z]:[/\\]Users[/\\][^\\/\s]+", re.IGNORECASE)


def sanitize_error_for_model(error: str | None, tool_name: str = "") -> str | None:
    """Reduce sensitive details in errors fed back to the model.

    Keeps errors informative but replaces filesystem paths and usernames.

    Args:
        error: The original error message.
        tool_name: Optional tool name for context.

    Returns:
        Sanitized message, or the input unchanged if empty/None.
    """
    if not error:
        return error

    lowered = error.lower()
    if "timed out" in lowered or "timeout" in lowered:
        return f"{tool_name or 'Operation'} timed out"

    result = _WINDOWS_USER_PATTERN.sub("C:\\\\Users\\\\[user]", error)
    result = _HOME_PATTERN.sub("/home/[user]", result)
    # URLs keep their host; only bare paths are replaced
    if "://" not in result:
        result = _PATH_PATTERN.sub("[path]", result)
    return result
