"""Tool registry: declarations for the model, concurrent execution of calls.

Tools are registered as async executors plus a JSON Schema for their
arguments. The registry never lets one tool's failure escape: every
request produces exactly one ToolCallResult, in request order.

Example:
    async def echo(message: str) -> dict:
        return {"echo": message}

    registry = ToolRegistry()
    registry.register(
        "echo", echo,
        description="Echo a message",
        parameters={"type": "object", "properties": {"message": {"type": "string"}},
                    "required": ["message"]},
    )

    results = await registry.execute([ToolCallRequest("c1", "echo", '{"message": "hi"}')])
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable, Collection, Sequence
from dataclasses import dataclass
from typing import Any

import jsonschema

from parley.core.cancel import CancellationToken
from parley.core.constants import MAX_CONCURRENT_TOOLS, TOOL_TIMEOUT_SECONDS
from parley.core.errors import ToolExecutionError, sanitize_error_for_model
from parley.core.types import ToolCallRequest, ToolCallResult

logger = logging.getLogger(__name__)

ToolExecutor = Callable[..., Awaitable[Any]]
ToolHook = Callable[[ToolCallRequest], None]

MAX_TOOL_NAME_LENGTH = 64
VALID_TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}}


def validate_tool_name(name: str) -> None:
    """Validate that a tool name is acceptable to every provider.

    Raises:
        ValueError: If the name is empty, too long, or has invalid characters.
    """
    if not name:
        raise ValueError("Tool name cannot be empty")
    if len(name) > MAX_TOOL_NAME_LENGTH:
        raise ValueError(
            f"Tool name '{name[:20]}...' exceeds maximum length of "
            f"{MAX_TOOL_NAME_LENGTH} characters"
        )
    if not VALID_TOOL_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid tool name '{name}': must start with a letter or underscore "
            "and contain only letters, digits, '_' and '-'"
        )


def format_validation_error(error: jsonschema.ValidationError, tool_name: str) -> str:
    """Format a jsonschema ValidationError into a model-readable message."""
    path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else ""

    if error.validator == "required":
        return f"{tool_name}: {error.message}"
    if error.validator == "type" and path:
        return f"{tool_name}: Parameter '{path}' has wrong type - {error.message}"
    if error.validator == "enum" and path:
        return f"{tool_name}: Parameter '{path}' must be one of {error.validator_value}"
    if path:
        return f"{tool_name}: Parameter '{path}' {error.message}"
    return f"{tool_name}: {error.message}"


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool.

    Attributes:
        name: The name the model calls the tool by.
        description: Human-readable description sent to the model.
        parameters: JSON Schema for the arguments object.
        executor: Async callable invoked with the validated arguments as kwargs.
    """

    name: str
    description: str
    parameters: dict[str, Any]
    executor: ToolExecutor

    def to_declaration(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Name-keyed tool catalogue with concurrent, failure-isolated execution.

    Args:
        timeout: Per-tool timeout in seconds (0 = no timeout).
        max_concurrent: Upper bound on tools running at once.
    """

    def __init__(
        self,
        timeout: float = TOOL_TIMEOUT_SECONDS,
        max_concurrent: int = MAX_CONCURRENT_TOOLS,
    ) -> None:
        self._specs: dict[str, ToolSpec] = {}
        self._timeout = timeout
        self._max_concurrent = max_concurrent

    def register(
        self,
        name: str,
        executor: ToolExecutor,
        *,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> None:
        """Register (or replace) a tool.

        Raises:
            ValueError: If the tool name is invalid.
        """
        validate_tool_name(name)
        self._specs[name] = ToolSpec(
            name=name,
            description=description,
            parameters=parameters or dict(EMPTY_PARAMETERS),
            executor=executor,
        )

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._specs.keys())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def get_declarations(self, exclude: Collection[str] = ()) -> list[dict[str, Any]]:
        """OpenAI-format function declarations for registered tools not in `exclude`."""
        return [
            spec.to_declaration() for spec in self._specs.values() if spec.name not in exclude
        ]

    async def execute(
        self,
        requests: Sequence[ToolCallRequest],
        cancel_token: CancellationToken | None = None,
        on_tool_start: ToolHook | None = None,
    ) -> list[ToolCallResult]:
        """Execute a batch of tool calls concurrently.

        Returns one result per request, in the same order as `requests`,
        each carrying the request's id. Failures of any kind become error
        results; this method does not raise for a single tool's failure.
        """
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def execute_one(request: ToolCallRequest) -> ToolCallResult:
            async with semaphore:
                if cancel_token is not None and cancel_token.is_cancelled:
                    return ToolCallResult(
                        tool_call_id=request.id,
                        tool_name=request.tool_name,
                        error_message="cancelled",
                    )
                if on_tool_start is not None:
                    on_tool_start(request)
                return await self.execute_single(request)

        results = await asyncio.gather(
            *[execute_one(request) for request in requests],
            return_exceptions=True,
        )

        final_results: list[ToolCallResult] = []
        for request, result in zip(requests, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Tool '%s' dispatch failed: %s", request.tool_name, result)
                safe = sanitize_error_for_model(f"Execution error: {result}", request.tool_name)
                final_results.append(ToolCallResult(
                    tool_call_id=request.id,
                    tool_name=request.tool_name,
                    error_message=safe or "Execution error",
                ))
            else:
                final_results.append(result)
        return final_results

    async def execute_single(self, request: ToolCallRequest) -> ToolCallResult:
        """Resolve, validate and run one tool call."""
        spec = self._specs.get(request.tool_name)
        if spec is None:
            logger.warning("Unknown tool requested: %s", request.tool_name)
            return self._error(request, f"Unknown tool: {request.tool_name} is not implemented")

        try:
            args = json.loads(request.raw_arguments or "{}")
        except json.JSONDecodeError as e:
            return self._error(request, f"Invalid JSON arguments for {spec.name}: {e.msg}")
        if not isinstance(args, dict):
            return self._error(
                request, f"Arguments for {spec.name} must be an object, got {type(args).__name__}"
            )

        try:
            jsonschema.validate(args, spec.parameters)
        except jsonschema.ValidationError as e:
            return self._error(request, format_validation_error(e, spec.name))

        # Drop properties the schema does not declare
        known = spec.parameters.get("properties")
        if known is not None:
            extras = set(args) - set(known)
            if extras:
                logger.warning("Ignoring unexpected arguments for %s: %s", spec.name, sorted(extras))
                args = {k: v for k, v in args.items() if k in known}

        return await self._run(spec, request, args)

    async def _run(
        self, spec: ToolSpec, request: ToolCallRequest, args: dict[str, Any]
    ) -> ToolCallResult:
        try:
            if self._timeout > 0:
                payload = await asyncio.wait_for(spec.executor(**args), timeout=self._timeout)
            else:
                payload = await spec.executor(**args)
        except TimeoutError:
            logger.warning("Tool '%s' timed out after %ss", spec.name, self._timeout)
            return self._error(request, f"Tool timed out after {self._timeout}s")
        except ToolExecutionError as e:
            logger.warning("Tool '%s' failed: %s", spec.name, e.reason)
            return self._error(request, e.reason)
        except Exception as e:
            logger.warning("Tool '%s' raised exception: %s", spec.name, e, exc_info=True)
            return self._error(request, f"Tool execution error: {e}")

        return ToolCallResult(tool_call_id=request.id, tool_name=spec.name, payload=payload)

    @staticmethod
    def _error(request: ToolCallRequest, message: str) -> ToolCallResult:
        safe = sanitize_error_for_model(message, request.tool_name)
        return ToolCallResult(
            tool_call_id=request.id,
            tool_name=request.tool_name,
            error_message=safe or "Tool execution error",
        )
