"""Tests for the OpenAI-compatible adapter over a mocked HTTP transport."""

import json
from typing import Any

import httpx
import pytest

from parley.config.schema import ProviderConfig
from parley.core.errors import ConfigurationError, ProviderError, ProviderHttpError
from parley.core.types import (
    FileRef,
    Message,
    Role,
    StreamEnd,
    TextDelta,
    ToolCallDelta,
    ToolCallRequest,
    ToolCallResult,
    ToolRound,
)
from parley.provider.openai_compat import OpenAICompatProvider

KEY_ENV = "PARLEY_TEST_OPENAI_KEY"


def sse(*events: Any) -> bytes:
    """Encode events as an SSE body terminated by [DONE]."""
    lines = [f"data: {json.dumps(event)}\n\n" for event in events]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def delta(**fields: Any) -> dict[str, Any]:
    return {"choices": [{"delta": fields}]}


def make_provider(
    handler: Any, monkeypatch: pytest.MonkeyPatch, **config: Any
) -> OpenAICompatProvider:
    monkeypatch.setenv(KEY_ENV, "sk-test")
    provider_config = ProviderConfig(
        type="openai", api_key_env=KEY_ENV, base_url="https://api.test/v1", **config
    )
    return OpenAICompatProvider(
        provider_config, "gpt-test", transport=httpx.MockTransport(handler)
    )


def user(text: str, **kwargs: Any) -> Message:
    return Message(id="u1", role=Role.USER, text=text, **kwargs)


async def drain(provider: OpenAICompatProvider, *args: Any, **kwargs: Any) -> list:
    return [event async for event in provider.stream(*args, **kwargs)]


class TestStreaming:
    """SSE parsing and tool-call coalescing."""

    @pytest.mark.asyncio
    async def test_text_and_fragmented_tool_call(self, monkeypatch: pytest.MonkeyPatch) -> None:
        body = sse(
            delta(content="Hel"),
            delta(content="lo"),
            delta(tool_calls=[{
                "index": 0, "id": "call_a",
                "function": {"name": "internet_search", "arguments": ""},
            }]),
            delta(tool_calls=[{"index": 0, "function": {"arguments": '{"query": '}}]),
            {"choices": [{
                "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '"rust"}'}}]},
                "finish_reason": "tool_calls",
            }]},
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        provider = make_provider(handler, monkeypatch)
        events = await drain(provider, "sys", [], user("hi"))
        await provider.aclose()

        assert events == [
            TextDelta("Hel"),
            TextDelta("lo"),
            ToolCallDelta(0, "call_a", "internet_search", '{"query": "rust"}'),
            StreamEnd("tool_calls"),
        ]

    @pytest.mark.asyncio
    async def test_missing_call_id_is_synthesized(self, monkeypatch: pytest.MonkeyPatch) -> None:
        body = sse(delta(tool_calls=[
            {"index": 1, "function": {"name": "get_current_time", "arguments": ""}},
        ]))
        provider = make_provider(lambda request: httpx.Response(200, content=body), monkeypatch)

        events = await drain(provider, "sys", [], user("time?"))

        assert events[0] == ToolCallDelta(1, "call_1", "get_current_time", "{}")
        assert events[-1] == StreamEnd(None)

    @pytest.mark.asyncio
    async def test_error_chunk_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        body = sse(delta(content="par"), {"error": {"message": "overloaded"}})
        provider = make_provider(lambda request: httpx.Response(200, content=body), monkeypatch)

        with pytest.raises(ProviderError, match="overloaded"):
            await drain(provider, "sys", [], user("hi"))

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        body = b": keep-alive\n\ndata: {not json}\n\n" + sse(delta(content="ok"))
        provider = make_provider(lambda request: httpx.Response(200, content=body), monkeypatch)

        events = await drain(provider, "sys", [], user("hi"))

        assert events == [TextDelta("ok"), StreamEnd(None)]


class TestRequestBody:
    """Wire format of the chat/completions request."""

    @pytest.mark.asyncio
    async def test_history_tools_and_rounds(self, monkeypatch: pytest.MonkeyPatch) -> None:
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers.get("authorization")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, content=sse(delta(content="done")))

        declarations = [{
            "type": "function",
            "function": {"name": "internet_search", "description": "Search", "parameters": {}},
        }]
        tool_round = ToolRound(
            requests=(ToolCallRequest("call_1", "internet_search", '{"query": "x"}'),),
            results=(ToolCallResult("call_1", "internet_search", payload={"results": []}),),
            text="Looking. ",
        )
        history = [
            Message(id="h1", role=Role.USER, text="earlier"),
            Message(id="h2", role=Role.ASSISTANT, text="answer"),
        ]
        provider = make_provider(handler, monkeypatch)

        await drain(provider, "Be brief.", history, user("now"), declarations, [tool_round])

        body = captured["body"]
        assert captured["url"] == "https://api.test/v1/chat/completions"
        assert captured["auth"] == "Bearer sk-test"
        assert body["model"] == "gpt-test"
        assert body["stream"] is True
        assert body["tools"] == declarations
        assert body["tool_choice"] == "auto"
        assert body["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "earlier"},
            {"role": "assistant", "content": "answer"},
            {"role": "user", "content": "now"},
            {
                "role": "assistant",
                "content": "Looking. ",
                "tool_calls": [{
                    "id": "call_1",
                    "type": "function",
                    "function": {"name": "internet_search", "arguments": '{"query": "x"}'},
                }],
            },
            {"role": "tool", "tool_call_id": "call_1", "content": '{"results": []}'},
        ]

    @pytest.mark.asyncio
    async def test_image_attachment_becomes_part(self, monkeypatch: pytest.MonkeyPatch) -> None:
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, content=sse(delta(content="a cat")))

        image = FileRef(
            name="cat.png", mime_type="image/png", size=10, preview="data:image/png;base64,AAAA"
        )
        provider = make_provider(handler, monkeypatch)

        await drain(provider, "", [], user("what is this?", attachments=(image,)))

        (message,) = captured["body"]["messages"]
        assert message["content"][1] == {
            "type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}
        }
        assert "cat.png" in message["content"][0]["text"]


class TestErrors:
    """HTTP failures, retries and credentials."""

    @pytest.mark.asyncio
    async def test_unauthorized_has_hint(self, monkeypatch: pytest.MonkeyPatch) -> None:
        provider = make_provider(
            lambda request: httpx.Response(401, json={"error": {"message": "bad key"}}),
            monkeypatch,
        )

        with pytest.raises(ProviderHttpError) as exc_info:
            await drain(provider, "sys", [], user("hi"))

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == (
            "OpenAI API request failed (401): Authentication failed. Check your API key. (bad key)"
        )

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429)
            return httpx.Response(200, content=sse(delta(content="ok")))

        provider = make_provider(handler, monkeypatch)
        monkeypatch.setattr(provider, "_calculate_retry_delay", lambda attempt: 0)

        events = await drain(provider, "sys", [], user("hi"))

        assert len(calls) == 2
        assert events[0] == TextDelta("ok")

    @pytest.mark.asyncio
    async def test_rate_limit_without_retries(self, monkeypatch: pytest.MonkeyPatch) -> None:
        provider = make_provider(lambda request: httpx.Response(429), monkeypatch, max_retries=0)

        with pytest.raises(ProviderHttpError) as exc_info:
            await drain(provider, "sys", [], user("hi"))

        assert exc_info.value.is_rate_limit
        assert exc_info.value.detail == "Rate limit or quota exceeded."

    def test_missing_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(KEY_ENV, raising=False)
        config = ProviderConfig(type="openai", api_key_env=KEY_ENV, base_url="https://api.test/v1")

        with pytest.raises(ConfigurationError) as exc_info:
            OpenAICompatProvider(config, "gpt-test")

        assert KEY_ENV in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connect_error_after_retries(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = make_provider(handler, monkeypatch, max_retries=1)
        monkeypatch.setattr(provider, "_calculate_retry_delay", lambda attempt: 0)

        with pytest.raises(ProviderError, match="Failed to connect to OpenAI after 2 attempts"):
            await drain(provider, "sys", [], user("hi"))


class TestComplete:
    @pytest.mark.asyncio
    async def test_non_streaming_completion(self, monkeypatch: pytest.MonkeyPatch) -> None:
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"choices": [{"message": {"role": "assistant", "content": "Summary."}}]}
            )

        provider = make_provider(handler, monkeypatch)

        text = await provider.complete("Summarize.", "User: hi")

        assert text == "Summary."
        assert captured["body"]["stream"] is False
        assert captured["body"]["messages"] == [
            {"role": "system", "content": "Summarize."},
            {"role": "user", "content": "User: hi"},
        ]

    @pytest.mark.asyncio
    async def test_malformed_completion(self, monkeypatch: pytest.MonkeyPatch) -> None:
        provider = make_provider(lambda request: httpx.Response(200, json={"choices": []}), monkeypatch)

        with pytest.raises(ProviderError, match="Failed to parse"):
            await provider.complete("s", "p")
