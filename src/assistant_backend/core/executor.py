"""Tool execution for agent operations.

The ToolExecutor validates a tool call's input against the tool's schema, runs
the tool with a timeout, and validates the output before it crosses back into
the orchestrator's context.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError

from assistant_backend.config import TOOL_TIMEOUT_SECONDS
from assistant_backend.errors import InvalidInput, ToolError, ToolTimeout, UpstreamError
from assistant_backend.models import ToolCall
from assistant_backend.tools import ToolRegistry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolExecutionResult:
    """Outcome of one tool call, correlated by ``call_id``."""

    call_id: str
    tool_name: str
    success: bool
    output: dict[str, Any] | None = None
    error: ToolError | None = None
    execution_time_ms: float = 0.0

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error else None


class ToolExecutor:
    """Runs registered tools.

    Holds no per-call state, so concurrent calls are independent. A
    ConfigurationError from a tool propagates to the caller; every other
    ToolError comes back as a failed result.

    Example:
        >>> executor = ToolExecutor(default_registry(), httpx.AsyncClient())
        >>> result = await executor.execute(ToolCall(tool_name="weather", input={"location": "Paris"}))
        >>> result.success
    """

    def __init__(
        self,
        registry: ToolRegistry,
        client: httpx.AsyncClient,
        timeout: float = TOOL_TIMEOUT_SECONDS,
    ) -> None:
        self._registry = registry
        self._client = client
        self._timeout = timeout

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(self, call: ToolCall) -> ToolExecutionResult:
        start_time = time.time()
        log.info(f"🔧 Tool execution requested: {call.tool_name}({call.input}) [{call.id}]")

        try:
            output = await self._run(call)
        except ToolError as e:
            execution_time_ms = (time.time() - start_time) * 1000
            log.warning(f"🔧 Tool execution failed: {call.tool_name} [{call.id}] - {e.kind}: {e}")
            return ToolExecutionResult(
                call_id=call.id,
                tool_name=call.tool_name,
                success=False,
                error=e,
                execution_time_ms=execution_time_ms,
            )

        execution_time_ms = (time.time() - start_time) * 1000
        log.info(f"🔧 Tool executed successfully: {call.tool_name} [{call.id}] in {execution_time_ms:.2f}ms")
        return ToolExecutionResult(
            call_id=call.id,
            tool_name=call.tool_name,
            success=True,
            output=output,
            execution_time_ms=execution_time_ms,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _run(self, call: ToolCall) -> dict[str, Any]:
        spec = self._registry.get(call.tool_name)

        try:
            args = spec.input_model.model_validate(call.input)
        except ValidationError as e:
            raise InvalidInput(f"Invalid input for {spec.name}: {_summarize(e)}") from e

        try:
            raw = await asyncio.wait_for(spec.handler(self._client, args), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeout(f"{spec.name} did not respond within {self._timeout:g}s") from e

        try:
            result = spec.output_model.model_validate(raw)
        except ValidationError as e:
            raise UpstreamError(f"Unexpected {spec.name} result: {_summarize(e)}") from e
        return result.model_dump(by_alias=True, exclude_none=True)


def _summarize(error: ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in error.errors())
