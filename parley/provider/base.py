"""Base provider with shared HTTP, retry, and error-translation logic.

Concrete adapters only describe the wire format: endpoint, request body,
and how to turn a response into StreamEvents. Retries happen before the
first byte of a stream is consumed; once streaming has begun, a failure is
final for that stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from typing import Any
from urllib.parse import urlparse

import httpx

from parley.config.schema import AuthMethod, ProviderConfig
from parley.core.errors import ConfigurationError, ProviderError, ProviderHttpError
from parley.core.types import FileRef, Message, Role, StreamEvent, ToolRound, new_id

logger = logging.getLogger(__name__)

# Hosts that are considered safe for HTTP (non-HTTPS) connections
_LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "[::1]"})

# Maximum size for error response bodies
MAX_ERROR_BODY_SIZE: int = 10 * 1024  # 10 KB

# Attachment text inlined into the prompt is clipped to this many characters
ATTACHMENT_PROMPT_LIMIT = 3000

MAX_RETRY_DELAY = 10.0
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def validate_base_url(url: str) -> None:
    """Validate a provider base_url.

    HTTPS is always allowed, HTTP only for loopback hosts; any other
    scheme is rejected.

    Raises:
        ConfigurationError: If the URL fails validation.
    """
    if not url:
        raise ConfigurationError("Provider base_url cannot be empty")

    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()

    if scheme == "https":
        return
    if scheme == "http":
        if host in _LOOPBACK_HOSTS:
            return
        raise ConfigurationError(
            f"HTTP base_url '{url}' is not allowed. Use HTTPS, or http://localhost "
            "for local development."
        )
    if not scheme:
        raise ConfigurationError(
            f"Provider base_url '{url}' must include a scheme (https:// or http://)"
        )
    raise ConfigurationError(
        f"Provider base_url scheme '{scheme}' is not allowed. Use https:// or http://localhost."
    )


def extract_error_detail(body: bytes) -> str:
    """Pull the vendor error message out of an error body.

    Handles the common `{"error": {"message": ...}}` shape (also the list form
    Gemini sometimes returns) and falls back to the raw text.
    """
    text = body[:MAX_ERROR_BODY_SIZE].decode(errors="replace").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return text


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def render_user_text(message: Message) -> str:
    """Message text with non-image attachments described inline.

    Image attachments are sent as native parts by adapters that support
    them; here they only get a one-line description.
    """
    if not message.attachments:
        return message.text

    blocks: list[str] = []
    for attachment in message.attachments:
        block = f"[File: {attachment.name} ({attachment.mime_type}, {format_size(attachment.size)})]"
        if attachment.content:
            content = attachment.content
            if len(content) > ATTACHMENT_PROMPT_LIMIT:
                content = content[:ATTACHMENT_PROMPT_LIMIT] + "\n...(truncated)"
            block += f"\nContent:\n{content}"
        blocks.append(block)

    described = "\n\n".join(blocks)
    if message.text:
        return f"{described}\n\nMessage: {message.text}"
    return f"{described}\n\nThe user uploaded these files. Analyze them."


def image_attachments(message: Message) -> list[FileRef]:
    """Image attachments that carry a data-URL preview."""
    return [a for a in message.attachments if a.is_image and a.preview]


class BaseProvider(ABC):
    """Abstract base class for HTTP-backed provider adapters.

    Provides shared functionality:
    - API key resolution from environment (at construction)
    - HTTP header building based on auth_method
    - Request retry logic with exponential backoff
    - Error translation into ProviderHttpError / ProviderError

    Subclasses implement:
    - _build_endpoint(): API endpoint URL
    - _build_request_body(): Convert the turn to provider format
    - _parse_completion(): Pull text out of a non-streaming response
    - _parse_stream(): Convert a streaming response to StreamEvents
    """

    provider_label = "Provider"

    def __init__(
        self,
        config: ProviderConfig,
        model_id: str,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            config: Provider configuration.
            model_id: The model ID to use for API requests.
            temperature: Sampling temperature, if the profile sets one.
            max_tokens: Output token cap, if the profile sets one.
            transport: Custom httpx transport (tests use httpx.MockTransport).

        Raises:
            ConfigurationError: If the API key is missing or base_url is invalid.
        """
        self._config = config
        validate_base_url(config.base_url)

        self._api_key = self._get_api_key()
        self._base_url = config.base_url.rstrip("/")
        self._model = model_id
        self._temperature = temperature
        self._max_tokens = max_tokens

        self._timeout = config.request_timeout
        self._max_retries = config.max_retries
        self._retry_backoff = config.retry_backoff

        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def model(self) -> str:
        return self._model

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client (lazily created, instance-owned)."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client. Safe to call multiple times."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_api_key(self) -> str | None:
        """Get the API key from environment, or None if auth not required.

        Raises:
            ConfigurationError: If auth is required but the env var is not set.
        """
        if self._config.auth_method == AuthMethod.NONE:
            return None

        api_key = os.environ.get(self._config.api_key_env)
        if not api_key:
            raise ConfigurationError(
                f"API key not found. Set the {self._config.api_key_env} environment variable."
            )
        return api_key

    def _build_headers(self) -> dict[str, str]:
        """Build HTTP headers based on auth_method and config."""
        headers: dict[str, str] = {"Content-Type": "application/json"}
        headers.update(self._config.extra_headers)

        if self._api_key:
            match self._config.auth_method:
                case AuthMethod.BEARER:
                    headers["Authorization"] = f"Bearer {self._api_key}"
                case AuthMethod.API_KEY:
                    headers["api-key"] = self._api_key
                case AuthMethod.X_API_KEY:
                    headers["x-api-key"] = self._api_key
                case AuthMethod.X_GOOG_API_KEY:
                    headers["x-goog-api-key"] = self._api_key
                case AuthMethod.NONE:
                    pass

        return headers

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff using the config multiplier plus 0-1s jitter."""
        delay = (self._retry_backoff ** attempt) + random.uniform(0, 1)
        return min(delay, MAX_RETRY_DELAY)

    def _http_error(self, status_code: int, body: bytes) -> ProviderHttpError:
        """Translate a failed response into a ProviderHttpError."""
        detail = extract_error_detail(body)
        if status_code in (401, 403):
            hint = "Authentication failed. Check your API key."
            detail = f"{hint} ({detail})" if detail else hint
        elif status_code == 404:
            hint = f"Model '{self._model}' or endpoint not found."
            detail = f"{hint} ({detail})" if detail else hint
        elif status_code == 429 and not detail:
            detail = "Rate limit or quota exceeded."
        return ProviderHttpError(status_code, detail, provider=self.provider_label)

    def _network_error(self, e: Exception) -> ProviderError:
        attempts = self._max_retries + 1
        if isinstance(e, httpx.ConnectError):
            return ProviderError(
                f"Failed to connect to {self.provider_label} after {attempts} attempts: {e}"
            )
        return ProviderError(
            f"{self.provider_label} request timed out after {attempts} attempts: {e}"
        )

    async def _make_request(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        """Make a non-streaming HTTP request with retries.

        Raises:
            ProviderHttpError: On a 4xx/5xx status (after retries for retryable ones).
            ProviderError: On network failure or an unparseable body.
        """
        logger.debug("POST %s (model=%s, stream=False)", url, self._model)

        for attempt in range(self._max_retries + 1):
            try:
                client = await self._ensure_client()
                response = await client.post(url, headers=self._build_headers(), json=body)

                if response.status_code in RETRYABLE_STATUS_CODES and attempt < self._max_retries:
                    logger.debug(
                        "Retryable status %d, attempt %d", response.status_code, attempt + 1
                    )
                    await asyncio.sleep(self._calculate_retry_delay(attempt))
                    continue

                if response.status_code >= 400:
                    raise self._http_error(response.status_code, response.content)

                try:
                    return response.json()
                except json.JSONDecodeError as e:
                    raise ProviderError(
                        f"{self.provider_label} returned invalid JSON: {e}"
                    ) from e

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt < self._max_retries:
                    await asyncio.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise self._network_error(e) from e
            except httpx.HTTPError as e:
                raise ProviderError(f"HTTP error occurred: {e}") from e

        raise ProviderError("Request failed unexpectedly")

    async def _make_streaming_request(
        self, url: str, body: dict[str, Any]
    ) -> AsyncIterator[httpx.Response]:
        """Make a streaming HTTP request with retries.

        Yields:
            The open httpx Response, exactly once.

        Raises:
            ProviderHttpError: On a 4xx/5xx status (after retries for retryable ones).
            ProviderError: On network failure.
        """
        logger.debug("POST %s (model=%s, stream=True)", url, self._model)

        for attempt in range(self._max_retries + 1):
            try:
                client = await self._ensure_client()
                async with client.stream(
                    "POST", url, headers=self._build_headers(), json=body
                ) as response:
                    if response.status_code >= 400:
                        error_body = await response.aread()
                        if (
                            response.status_code in RETRYABLE_STATUS_CODES
                            and attempt < self._max_retries
                        ):
                            logger.debug(
                                "Retryable status %d, attempt %d",
                                response.status_code, attempt + 1,
                            )
                            await asyncio.sleep(self._calculate_retry_delay(attempt))
                            continue
                        raise self._http_error(response.status_code, error_body)

                    yield response
                    return

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt < self._max_retries:
                    await asyncio.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise self._network_error(e) from e
            except httpx.HTTPError as e:
                raise ProviderError(f"HTTP error occurred: {e}") from e

    @staticmethod
    async def _iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
        """Yield the payload of each SSE `data:` line.

        Comments and other fields are skipped. A trailing line without a
        newline is still delivered.
        """
        buffer = ""
        async for chunk in response.aiter_text():
            buffer += chunk
            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                line = line.strip()
                if line.startswith("data:"):
                    yield line[5:].removeprefix(" ")

        line = buffer.strip()
        if line.startswith("data:"):
            yield line[5:].removeprefix(" ")

    # Abstract methods for subclasses to implement

    @abstractmethod
    def _build_endpoint(self, stream: bool = False) -> str:
        ...

    @abstractmethod
    def _build_request_body(
        self,
        system_prompt: str,
        history: Sequence[Message],
        new_user_message: Message,
        tool_declarations: list[dict[str, Any]] | None,
        tool_rounds: Sequence[ToolRound] | None,
        stream: bool,
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    def _parse_completion(self, data: dict[str, Any]) -> str:
        ...

    @abstractmethod
    def _parse_stream(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        ...

    # Concrete implementations using abstract methods

    async def complete(self, system_prompt: str, prompt: str) -> str:
        """Perform a single non-streaming completion.

        Raises:
            ProviderError: If the API request fails.
        """
        message = Message(id=new_id(), role=Role.USER, text=prompt)
        body = self._build_request_body(system_prompt, (), message, None, None, stream=False)
        data = await self._make_request(self._build_endpoint(stream=False), body)
        return self._parse_completion(data)

    async def stream(
        self,
        system_prompt: str,
        history: Sequence[Message],
        new_user_message: Message,
        tool_declarations: list[dict[str, Any]] | None = None,
        tool_rounds: Sequence[ToolRound] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response for one turn.

        Yields:
            TextDelta, complete ToolCallDelta events, then StreamEnd.

        Raises:
            ProviderError: If the API request fails.
        """
        url = self._build_endpoint(stream=True)
        body = self._build_request_body(
            system_prompt, history, new_user_message, tool_declarations, tool_rounds,
            stream=True,
        )

        async for response in self._make_streaming_request(url, body):
            try:
                async for event in self._parse_stream(response):
                    yield event
            except httpx.HTTPError as e:
                raise ProviderError(f"{self.provider_label} stream interrupted: {e}") from e
