"""OpenAI-compatible provider for parley.

This module implements the adapter for OpenAI-compatible chat APIs:
- OpenAI (api.openai.com)
- Groq (api.groq.com/openai)
- DeepSeek (api.deepseek.com)
- OpenRouter (openrouter.ai)

All use the /chat/completions endpoint with OpenAI message format and
function calling.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any

import httpx

from parley.core.errors import ProviderError
from parley.core.types import (
    Message,
    Role,
    StreamEnd,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolRound,
)
from parley.provider.base import BaseProvider, image_attachments, render_user_text

if TYPE_CHECKING:
    from parley.config.schema import ProviderConfig

logger = logging.getLogger(__name__)

_LABELS = {
    "openai": "OpenAI",
    "groq": "Groq",
    "deepseek": "DeepSeek",
    "openrouter": "OpenRouter",
}


class OpenAICompatProvider(BaseProvider):
    """Provider for OpenAI-compatible APIs.

    Text deltas are surfaced as soon as they arrive. Tool-call fragments are
    accumulated per `index` (id and name set once, arguments concatenated)
    and emitted as complete ToolCallDelta events when the stream ends.

    Example:
        config = ProviderConfig(type="groq", api_key_env="GROQ_API_KEY",
                                base_url="https://api.groq.com/openai/v1")
        provider = OpenAICompatProvider(config, "llama-3.3-70b-versatile")

        async for event in provider.stream("Be brief.", [], user_message):
            ...
    """

    provider_label = "OpenAI-compatible"

    def __init__(self, config: ProviderConfig, model_id: str, **kwargs: Any) -> None:
        super().__init__(config, model_id, **kwargs)
        self.provider_label = _LABELS.get(config.type, self.provider_label)

    def _build_endpoint(self, stream: bool = False) -> str:
        return f"{self._base_url}/chat/completions"

    def _build_request_body(
        self,
        system_prompt: str,
        history: Sequence[Message],
        new_user_message: Message,
        tool_declarations: list[dict[str, Any]] | None,
        tool_rounds: Sequence[ToolRound] | None,
        stream: bool,
    ) -> dict[str, Any]:
        """Build OpenAI-format request body.

        Order: system message, history, the new user message, then for each
        completed tool round the assistant `tool_calls` message followed by
        one `tool` message per result.
        """
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        for message in history:
            messages.append(self._message_to_dict(message))
        messages.append(self._user_message_to_dict(new_user_message))

        for tool_round in tool_rounds or ():
            messages.append({
                "role": "assistant",
                "content": tool_round.text or None,
                "tool_calls": [
                    {
                        "id": request.id,
                        "type": "function",
                        "function": {
                            "name": request.tool_name,
                            "arguments": request.raw_arguments or "{}",
                        },
                    }
                    for request in tool_round.requests
                ],
            })
            for result in tool_round.results:
                messages.append({
                    "role": "tool",
                    "tool_call_id": result.tool_call_id,
                    "content": result.to_content(),
                })

        body: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "stream": stream,
        }
        if self._temperature is not None:
            body["temperature"] = self._temperature
        if self._max_tokens is not None:
            body["max_tokens"] = self._max_tokens
        if tool_declarations:
            body["tools"] = tool_declarations
            body["tool_choice"] = "auto"

        return body

    def _message_to_dict(self, message: Message) -> dict[str, Any]:
        role = "user" if message.role == Role.USER else message.role.value
        text = render_user_text(message) if message.role == Role.USER else message.text
        return {"role": role, "content": text}

    def _user_message_to_dict(self, message: Message) -> dict[str, Any]:
        """The new user message, with image attachments as image_url parts."""
        text = render_user_text(message)
        images = image_attachments(message)
        if not images:
            return {"role": "user", "content": text}

        parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
        for image in images:
            parts.append({"type": "image_url", "image_url": {"url": image.preview}})
        return {"role": "user", "content": parts}

    def _parse_completion(self, data: dict[str, Any]) -> str:
        """Parse a non-streaming response to its text content.

        Raises:
            ProviderError: If response format is invalid.
        """
        try:
            return data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError(f"Failed to parse API response: {e}") from e

    async def _parse_stream(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        """Parse OpenAI SSE stream to StreamEvents."""
        content_length = 0
        tool_calls_by_index: dict[int, dict[str, str]] = {}

        event_count = 0
        received_done = False
        finish_reason: str | None = None
        stream_start = time.monotonic()

        async for data in self._iter_sse_data(response):
            if data == "[DONE]":
                received_done = True
                break

            try:
                event_data = json.loads(data)
            except json.JSONDecodeError:
                # Skip malformed JSON in stream
                continue
            event_count += 1

            if isinstance(event_data, dict) and event_data.get("error"):
                error = event_data["error"]
                detail = error.get("message") if isinstance(error, dict) else str(error)
                raise ProviderError(f"{self.provider_label} stream error: {detail}")

            choices = event_data.get("choices") or []
            if not choices:
                continue
            if choices[0].get("finish_reason"):
                finish_reason = choices[0]["finish_reason"]

            delta = choices[0].get("delta") or {}
            content = delta.get("content")
            if content:
                content_length += len(content)
                yield TextDelta(text=content)

            for tc_delta in delta.get("tool_calls") or []:
                self._accumulate_tool_call(tc_delta, tool_calls_by_index)

        self._log_stream_summary(
            response, event_count, content_length, len(tool_calls_by_index),
            received_done, finish_reason, stream_start,
        )

        for index in sorted(tool_calls_by_index):
            acc = tool_calls_by_index[index]
            yield ToolCallDelta(
                index=index,
                id=acc["id"] or f"call_{index}",
                name=acc["name"],
                arguments=acc["arguments"] or "{}",
            )
        yield StreamEnd(finish_reason=finish_reason)

    @staticmethod
    def _accumulate_tool_call(
        tc_delta: dict[str, Any], tool_calls_by_index: dict[int, dict[str, str]]
    ) -> None:
        index = tc_delta.get("index", 0)
        if index not in tool_calls_by_index:
            tool_calls_by_index[index] = {"id": "", "name": "", "arguments": ""}
        acc = tool_calls_by_index[index]

        # id/name are set once; arguments arrive in fragments
        if tc_delta.get("id") and not acc["id"]:
            acc["id"] = tc_delta["id"]
        func = tc_delta.get("function") or {}
        if func.get("name") and not acc["name"]:
            acc["name"] = func["name"]
        if func.get("arguments"):
            acc["arguments"] += func["arguments"]

    def _log_stream_summary(
        self,
        response: httpx.Response,
        event_count: int,
        content_length: int,
        tool_call_count: int,
        received_done: bool,
        finish_reason: str | None,
        stream_start: float,
    ) -> None:
        duration_ms = round((time.monotonic() - stream_start) * 1000)
        if not content_length and not tool_call_count:
            logger.warning(
                "Empty stream response: status=%d, events=%d, "
                "received_done=%s, finish_reason=%s, duration=%dms",
                response.status_code, event_count,
                received_done, finish_reason, duration_ms,
            )
        else:
            logger.debug(
                "Stream complete: events=%d, content_len=%d, tools=%d, "
                "done=%s, finish=%s, duration=%dms",
                event_count, content_length, tool_call_count,
                received_done, finish_reason, duration_ms,
            )
