"""Register the built-in tools."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from parley.tools.builtin.clock import CLOCK_DESCRIPTION, CLOCK_PARAMETERS, make_clock
from parley.tools.builtin.search import (
    SEARCH_DESCRIPTION,
    SEARCH_PARAMETERS,
    SEARCH_TOOL_NAME,
    SerperSearch,
)

if TYPE_CHECKING:
    from parley.config.schema import Config
    from parley.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def register_builtin_tools(
    registry: ToolRegistry,
    config: Config,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SerperSearch | None:
    """Register internet_search and get_current_time unless disabled.

    Returns:
        The search client (the caller owns it and must aclose() it), or
        None when search is disabled.
    """
    disabled = set(config.tools.disabled)
    search: SerperSearch | None = None

    if SEARCH_TOOL_NAME not in disabled:
        search = SerperSearch(config.search, transport=transport)
        registry.register(
            SEARCH_TOOL_NAME,
            search.internet_search,
            description=SEARCH_DESCRIPTION,
            parameters=SEARCH_PARAMETERS,
        )

    if "get_current_time" not in disabled:
        registry.register(
            "get_current_time",
            make_clock(config.tools.time_format),
            description=CLOCK_DESCRIPTION,
            parameters=CLOCK_PARAMETERS,
        )

    logger.debug("Registered built-in tools: %s", registry.names)
    return search
