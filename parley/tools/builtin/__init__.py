"""Built-in tools: web search and current time."""

from parley.tools.builtin.clock import make_clock
from parley.tools.builtin.registration import register_builtin_tools
from parley.tools.builtin.search import SEARCH_TOOL_NAME, SearchResult, SerperSearch

__all__ = [
    "SEARCH_TOOL_NAME",
    "SearchResult",
    "SerperSearch",
    "make_clock",
    "register_builtin_tools",
]
