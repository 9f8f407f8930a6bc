"""Current date and time tool."""

from collections.abc import Callable
from datetime import datetime
from typing import Any

CLOCK_DESCRIPTION = "Get the current local date and time."
CLOCK_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}}

DEFAULT_TIME_FORMAT = "%A, %d %B %Y, %H:%M:%S"


def make_clock(
    time_format: str = DEFAULT_TIME_FORMAT,
    now: Callable[[], datetime] = datetime.now,
) -> Callable[[], Any]:
    """Build the get_current_time executor.

    Args:
        time_format: strftime format for the returned timestamp.
        now: Clock source, injectable for tests.
    """

    async def get_current_time() -> dict[str, str]:
        current = now().astimezone()
        return {
            "current_time": current.strftime(time_format),
            "iso": current.isoformat(timespec="seconds"),
        }

    return get_current_time
