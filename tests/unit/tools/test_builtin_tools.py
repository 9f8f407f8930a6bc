"""Tests for the built-in search and clock tools."""

import json
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from parley.config.schema import Config, SearchConfig, ToolsConfig
from parley.core.errors import ToolExecutionError
from parley.tools.builtin import SerperSearch, make_clock, register_builtin_tools
from parley.tools.registry import ToolRegistry

KEY_ENV = "PARLEY_TEST_SERPER_KEY"


def organic(count: int) -> dict[str, Any]:
    return {
        "organic": [
            {"title": f"Result {i}", "link": f"https://example.com/{i}", "snippet": f"About {i}"}
            for i in range(count)
        ]
    }


def make_search(handler: Any, **config: Any) -> SerperSearch:
    return SerperSearch(
        SearchConfig(api_key_env=KEY_ENV, **config), transport=httpx.MockTransport(handler)
    )


class TestSerperSearch:
    @pytest.mark.asyncio
    async def test_results_limited(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(KEY_ENV, "serper-key")
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["key"] = request.headers.get("x-api-key")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=organic(8))

        search = make_search(handler, result_limit=3)
        payload = await search.internet_search("  rust async  ")
        await search.aclose()

        assert captured == {"key": "serper-key", "body": {"q": "rust async"}}
        assert payload["query"] == "rust async"
        assert [r["title"] for r in payload["results"]] == ["Result 0", "Result 1", "Result 2"]
        assert payload["results"][0] == {
            "title": "Result 0", "link": "https://example.com/0", "snippet": "About 0"
        }

    @pytest.mark.asyncio
    async def test_missing_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(KEY_ENV, raising=False)
        search = make_search(lambda request: httpx.Response(200, json=organic(1)))

        with pytest.raises(ToolExecutionError) as exc_info:
            await search.internet_search("x")

        assert KEY_ENV in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_api_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(KEY_ENV, "k")
        search = make_search(lambda request: httpx.Response(500, json={"message": "down"}))

        with pytest.raises(ToolExecutionError) as exc_info:
            await search.internet_search("x")

        assert exc_info.value.reason == "Search API error (500): down"

    @pytest.mark.asyncio
    async def test_empty_query(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(KEY_ENV, "k")
        search = make_search(lambda request: httpx.Response(200, json=organic(1)))

        with pytest.raises(ToolExecutionError, match="empty"):
            await search.internet_search("   ")

    @pytest.mark.asyncio
    async def test_no_organic_results(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(KEY_ENV, "k")
        search = make_search(lambda request: httpx.Response(200, json={}))

        assert (await search.internet_search("x"))["results"] == []


class TestClock:
    @pytest.mark.asyncio
    async def test_fixed_now(self) -> None:
        fixed = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)
        get_current_time = make_clock("%Y-%m-%d", now=lambda: fixed)

        result = await get_current_time()

        assert result["current_time"] == "2024-06-15"
        assert result["iso"].startswith("2024-06-15T")


class TestRegistration:
    def test_registers_both(self) -> None:
        registry = ToolRegistry()

        search = register_builtin_tools(registry, Config())

        assert isinstance(search, SerperSearch)
        assert sorted(registry.names) == ["get_current_time", "internet_search"]

    def test_disabled_tools_skipped(self) -> None:
        registry = ToolRegistry()
        config = Config(tools=ToolsConfig(disabled=["internet_search"]))

        search = register_builtin_tools(registry, config)

        assert search is None
        assert registry.names == ["get_current_time"]
