"""Web search through the Serper API."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from parley.config.schema import SearchConfig
from parley.core.errors import ToolExecutionError
from parley.provider.base import extract_error_detail

logger = logging.getLogger(__name__)

SEARCH_TOOL_NAME = "internet_search"

SEARCH_DESCRIPTION = (
    "Search the internet for real-time information. Use it for recent events, "
    "prices, news and anything that may have changed since training."
)

SEARCH_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "The search query."},
    },
    "required": ["query"],
}


@dataclass(frozen=True)
class SearchResult:
    title: str
    link: str
    snippet: str

    def to_dict(self) -> dict[str, str]:
        return {"title": self.title, "link": self.link, "snippet": self.snippet}


class SerperSearch:
    """Client for google.serper.dev.

    The API key is read from the configured environment variable on each
    call, so a key exported after startup is picked up.
    """

    def __init__(
        self,
        config: SearchConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or SearchConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.timeout, transport=self._transport
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str) -> list[SearchResult]:
        """Run a query and return the organic results in rank order.

        Raises:
            ToolExecutionError: If the key is missing or the request fails.
        """
        api_key = os.environ.get(self._config.api_key_env)
        if not api_key:
            raise ToolExecutionError(
                "internet_search",
                f"Search API key is not configured (set {self._config.api_key_env})",
            )

        client = await self._ensure_client()
        try:
            response = await client.post(
                self._config.endpoint,
                headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
                json={"q": query},
            )
        except httpx.HTTPError as e:
            raise ToolExecutionError("internet_search", f"Search request failed: {e}") from e

        if response.status_code >= 400:
            detail = extract_error_detail(response.content)
            logger.warning("Serper API error %d: %s", response.status_code, detail)
            raise ToolExecutionError(
                "internet_search", f"Search API error ({response.status_code}): {detail}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ToolExecutionError("internet_search", "Search API returned invalid JSON") from e

        return [
            SearchResult(
                title=item.get("title", ""),
                link=item.get("link", ""),
                snippet=item.get("snippet", ""),
            )
            for item in data.get("organic") or []
            if isinstance(item, dict)
        ]

    async def internet_search(self, query: str) -> dict[str, Any]:
        """Tool executor: top results for a query."""
        query = query.strip()
        if not query:
            raise ToolExecutionError("internet_search", "Query cannot be empty")
        results = await self.search(query)
        top = results[: self._config.result_limit]
        logger.debug("Search '%s': %d results, returning %d", query, len(results), len(top))
        return {"query": query, "results": [r.to_dict() for r in top]}
