"""Google Gemini provider for parley.

Uses the generativelanguage v1beta REST API:
- models/{model}:streamGenerateContent?alt=sse for streaming
- models/{model}:generateContent for single completions

Gemini has no call identifiers, so tool calls get synthesized ids
(`call_<index>`), and function responses are matched back by name.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

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

logger = logging.getLogger(__name__)


def to_function_declarations(tool_declarations: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert OpenAI-style tool declarations to Gemini functionDeclarations."""
    declarations = []
    for declaration in tool_declarations:
        function = declaration.get("function", declaration)
        entry: dict[str, Any] = {
            "name": function["name"],
            "description": function.get("description", ""),
        }
        parameters = function.get("parameters")
        # Gemini rejects an object schema with no properties
        if parameters and parameters.get("properties"):
            entry["parameters"] = parameters
        declarations.append(entry)
    return declarations


def _parse_data_url(url: str) -> tuple[str, str] | None:
    """Split a base64 data URL into (mime_type, data)."""
    if not url.startswith("data:") or ";base64," not in url:
        return None
    header, data = url[5:].split(";base64,", 1)
    return header or "application/octet-stream", data


class GeminiProvider(BaseProvider):
    """Provider for the Gemini generateContent API.

    Example:
        config = ProviderConfig(type="gemini", api_key_env="GEMINI_API_KEY",
                                base_url="https://generativelanguage.googleapis.com/v1beta",
                                auth_method="x-goog-api-key")
        provider = GeminiProvider(config, "gemini-2.0-flash")
    """

    provider_label = "Gemini"

    def _build_endpoint(self, stream: bool = False) -> str:
        if stream:
            return f"{self._base_url}/models/{self._model}:streamGenerateContent?alt=sse"
        return f"{self._base_url}/models/{self._model}:generateContent"

    def _build_request_body(
        self,
        system_prompt: str,
        history: Sequence[Message],
        new_user_message: Message,
        tool_declarations: list[dict[str, Any]] | None,
        tool_rounds: Sequence[ToolRound] | None,
        stream: bool,
    ) -> dict[str, Any]:
        contents: list[dict[str, Any]] = []
        for message in history:
            if message.role == Role.USER:
                contents.append({"role": "user", "parts": [{"text": render_user_text(message)}]})
            else:
                contents.append({"role": "model", "parts": [{"text": message.text}]})

        contents.append(self._user_content(new_user_message))

        for tool_round in tool_rounds or ():
            model_parts: list[dict[str, Any]] = []
            if tool_round.text:
                model_parts.append({"text": tool_round.text})
            for request in tool_round.requests:
                model_parts.append({
                    "functionCall": {
                        "name": request.tool_name,
                        "args": self._parse_args(request.raw_arguments),
                    }
                })
            contents.append({"role": "model", "parts": model_parts})
            contents.append({
                "role": "user",
                "parts": [
                    {
                        "functionResponse": {
                            "name": result.tool_name,
                            "response": result.to_response_object(),
                        }
                    }
                    for result in tool_round.results
                ],
            })

        body: dict[str, Any] = {"contents": contents}
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        generation_config: dict[str, Any] = {}
        if self._temperature is not None:
            generation_config["temperature"] = self._temperature
        if self._max_tokens is not None:
            generation_config["maxOutputTokens"] = self._max_tokens
        if generation_config:
            body["generationConfig"] = generation_config

        if tool_declarations:
            body["tools"] = [{"functionDeclarations": to_function_declarations(tool_declarations)}]

        return body

    def _user_content(self, message: Message) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": render_user_text(message)}]
        for image in image_attachments(message):
            parsed = _parse_data_url(image.preview or "")
            if parsed is None:
                continue
            mime_type, data = parsed
            parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
        return {"role": "user", "parts": parts}

    @staticmethod
    def _parse_args(raw_arguments: str) -> dict[str, Any]:
        try:
            args = json.loads(raw_arguments or "{}")
        except json.JSONDecodeError:
            return {}
        return args if isinstance(args, dict) else {}

    def _parse_completion(self, data: dict[str, Any]) -> str:
        """Join the text parts of the first candidate.

        Raises:
            ProviderError: If response format is invalid.
        """
        try:
            parts = data["candidates"][0]["content"].get("parts") or []
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError(f"Failed to parse API response: {e}") from e
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    async def _parse_stream(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        """Parse Gemini SSE chunks to StreamEvents.

        Each chunk is a full GenerateContentResponse; function calls arrive
        whole, so they are collected and emitted at the end.
        """
        function_calls: list[dict[str, Any]] = []
        content_length = 0
        event_count = 0
        finish_reason: str | None = None
        stream_start = time.monotonic()

        async for data in self._iter_sse_data(response):
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                continue
            event_count += 1

            if isinstance(chunk, dict) and chunk.get("error"):
                error = chunk["error"]
                detail = error.get("message") if isinstance(error, dict) else str(error)
                raise ProviderError(f"Gemini stream error: {detail}")

            candidates = chunk.get("candidates") or []
            if not candidates:
                continue
            candidate = candidates[0]
            if candidate.get("finishReason"):
                finish_reason = candidate["finishReason"]

            for part in (candidate.get("content") or {}).get("parts") or []:
                text = part.get("text")
                if text:
                    content_length += len(text)
                    yield TextDelta(text=text)
                if part.get("functionCall"):
                    function_calls.append(part["functionCall"])

        duration_ms = round((time.monotonic() - stream_start) * 1000)
        if not content_length and not function_calls:
            logger.warning(
                "Empty stream response: status=%d, events=%d, finish_reason=%s, duration=%dms",
                response.status_code, event_count, finish_reason, duration_ms,
            )
        else:
            logger.debug(
                "Stream complete: events=%d, content_len=%d, tools=%d, finish=%s, duration=%dms",
                event_count, content_length, len(function_calls), finish_reason, duration_ms,
            )

        for index, call in enumerate(function_calls):
            yield ToolCallDelta(
                index=index,
                id=f"call_{index}",
                name=call.get("name", ""),
                arguments=json.dumps(call.get("args") or {}, ensure_ascii=False),
            )
        yield StreamEnd(finish_reason=finish_reason)
