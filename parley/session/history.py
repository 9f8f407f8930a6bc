"""Remote turn history (best effort).

A history sink records each completed turn somewhere outside the process.
It is fire-and-forget: failures are logged and never reach the caller.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from parley.config.schema import HistorySinkConfig

logger = logging.getLogger(__name__)


class NullHistorySink:
    """Sink used when remote history is disabled."""

    async def record(
        self,
        conversation_id: str,
        user_text: str,
        assistant_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        return None

    async def get_recent_history(
        self, conversation_id: str, limit: int = 5
    ) -> list[dict[str, Any]]:
        return []

    async def aclose(self) -> None:
        pass


class SupabaseHistorySink:
    """Writes turns to a Supabase (PostgREST) table.

    Rows carry conversation_id, user_prompt, ai_response and metadata.

    Args:
        url: Project URL, e.g. https://xyz.supabase.co
        api_key: Anon or service key.
        table: Target table name.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str = "conversations_history",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def record(
        self,
        conversation_id: str,
        user_text: str,
        assistant_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        row = {
            "conversation_id": conversation_id,
            "user_prompt": user_text,
            "ai_response": assistant_text,
            "metadata": metadata or {},
        }
        try:
            client = await self._ensure_client()
            response = await client.post(
                self._endpoint,
                headers={**self._headers(), "Prefer": "return=minimal"},
                json=row,
            )
            if response.status_code >= 400:
                logger.warning(
                    "History sink rejected row for %s: %d %s",
                    conversation_id, response.status_code, response.text[:200],
                )
        except httpx.HTTPError as e:
            logger.warning("History sink unavailable for %s: %s", conversation_id, e)

    async def get_recent_history(
        self, conversation_id: str, limit: int = 5
    ) -> list[dict[str, Any]]:
        """Last `limit` turns, oldest first. Returns [] on any failure."""
        params = {
            "select": "user_prompt,ai_response,created_at",
            "conversation_id": f"eq.{conversation_id}",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        try:
            client = await self._ensure_client()
            response = await client.get(self._endpoint, headers=self._headers(), params=params)
            response.raise_for_status()
            rows = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("History read failed for %s: %s", conversation_id, e)
            return []
        if not isinstance(rows, list):
            return []
        return list(reversed(rows))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_history_sink(
    config: HistorySinkConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> NullHistorySink | SupabaseHistorySink:
    """Build the configured sink.

    An enabled sink whose URL or key is unset falls back to NullHistorySink,
    so a missing history backend never blocks chatting.
    """
    if not config.enabled:
        return NullHistorySink()

    url = os.environ.get(config.url_env)
    api_key = os.environ.get(config.api_key_env)
    if not url or not api_key:
        logger.warning(
            "History sink enabled but %s / %s are not set; history disabled",
            config.url_env, config.api_key_env,
        )
        return NullHistorySink()
    return SupabaseHistorySink(
        url, api_key, table=config.table, timeout=config.timeout, transport=transport
    )
