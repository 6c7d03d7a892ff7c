"""Agent orchestration for one user turn.

The Orchestrator drives the model through ``Deciding -> (ToolCalling)* ->
Responding -> Done`` and turns every step into protocol events. TurnStream
pumps those events through a bounded queue so a slow consumer stalls the
producer, and lets the consumer stop the turn at any point.
"""

import asyncio
import itertools
import json
import logging
from contextlib import aclosing, suppress
from typing import Any, AsyncIterator, Sequence

import httpx

from assistant_backend import config
from assistant_backend.core.client import ModelClient, TextChunk, ToolRequest, create_model_client
from assistant_backend.core.events import (
    MessageDoneEvent,
    ProtocolEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolResultEvent,
)
from assistant_backend.core.executor import ToolExecutionResult, ToolExecutor
from assistant_backend.errors import ConfigurationError, ProtocolError, UnknownTool
from assistant_backend.models import ImagePart, Message, TextPart, ToolCall, ToolInvocationPart, new_id
from assistant_backend.tools import ToolRegistry, default_registry

log = logging.getLogger(__name__)


def to_chat_messages(history: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert timeline messages into the chat-completions message list."""
    messages: list[dict[str, Any]] = []
    for message in history:
        if message.role == "user":
            messages.append({"role": "user", "content": message.text})
            continue

        for part in message.parts:
            if isinstance(part, TextPart):
                if messages and messages[-1]["role"] == "assistant" and "tool_calls" not in messages[-1]:
                    messages[-1]["content"] += part.text
                elif part.text:
                    messages.append({"role": "assistant", "content": part.text})
            elif isinstance(part, ToolInvocationPart):
                messages.append(_tool_call_message(part.tool_call_id, part.tool_name, part.input))
                if part.state == "output":
                    content = json.dumps(part.output or {})
                else:
                    content = json.dumps({"error": part.error or "Tool call did not complete", "kind": "tool"})
                messages.append(_tool_result_message(part.tool_call_id, part.tool_name, content))
            elif isinstance(part, ImagePart):
                continue
            else:
                log.warning(f"Skipping unsupported part in history: {part!r}")
    return messages


def _tool_call_message(call_id: str, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": json.dumps(arguments)},
            }
        ],
    }


def _tool_result_message(call_id: str, name: str, content: str) -> dict[str, Any]:
    return {"tool_call_id": call_id, "role": "tool", "name": name, "content": content}


class Orchestrator:
    """Runs user turns against a model and the tool executor.

    Constructed once, reused across turns, closed with ``aclose``. Per-turn
    bookkeeping (seq counter, seen tool call ids, working context) lives in
    ``run`` only.
    """

    def __init__(
        self,
        model: ModelClient,
        executor: ToolExecutor,
        max_tool_rounds: int = 4,
        queue_size: int = config.STREAM_QUEUE_SIZE,
    ) -> None:
        self._model = model
        self._executor = executor
        self._registry: ToolRegistry = executor.registry
        self._max_tool_rounds = max_tool_rounds
        self._queue_size = queue_size

    async def run(self, history: Sequence[Message], message_id: str | None = None) -> AsyncIterator[ProtocolEvent]:
        message_id = message_id or new_id("msg")
        seq = itertools.count()

        def emit(event_type, **fields):
            return event_type(message_id=message_id, seq=next(seq), **fields)

        messages = to_chat_messages(history)
        tools = self._registry.openai_tools()
        seen_call_ids: set[str] = set()
        log.info(f"Turn started for message {message_id} with {len(history)} prior message(s)")

        try:
            for round_number in itertools.count():
                requests: list[ToolRequest] = []
                async for chunk in self._model.stream(messages, tools):
                    if isinstance(chunk, TextChunk):
                        if chunk.text:
                            yield emit(TextDeltaEvent, text=chunk.text)
                    elif isinstance(chunk, ToolRequest):
                        requests.append(chunk)
                    else:
                        log.warning(f"Ignoring unsupported model chunk: {chunk!r}")

                if not requests:
                    log.info(f"Turn completed for message {message_id}")
                    yield emit(MessageDoneEvent)
                    return

                if round_number >= self._max_tool_rounds:
                    raise ProtocolError(f"Model requested tools more than {self._max_tool_rounds} times in one turn")

                for request in requests:
                    if request.id in seen_call_ids:
                        raise ProtocolError(f"Duplicate tool call id '{request.id}'")
                    seen_call_ids.add(request.id)

                    yield emit(ToolCallEvent, tool_call_id=request.id, tool_name=request.name, input=request.arguments)
                    messages.append(_tool_call_message(request.id, request.name, request.arguments))

                    result = await self._call_tool(request)
                    if result.success:
                        yield emit(ToolResultEvent, tool_call_id=request.id, output=result.output)
                        content = json.dumps(result.output)
                    else:
                        yield emit(ToolErrorEvent, tool_call_id=request.id, error=str(result.error), error_kind=result.error_kind)
                        content = json.dumps({"error": str(result.error), "kind": result.error_kind})
                    messages.append(_tool_result_message(request.id, request.name, content))

        except ConfigurationError as e:
            log.error(f"Turn aborted for message {message_id}: {e}")
            yield emit(StreamErrorEvent, error=str(e), kind="configuration")
        except ProtocolError as e:
            log.error(f"Protocol error in message {message_id}: {e}")
            yield emit(StreamErrorEvent, error=str(e), kind="protocol")
        except Exception as e:
            log.exception(f"Model backend failed for message {message_id}")
            yield emit(StreamErrorEvent, error=f"The assistant backend failed: {e}", kind="upstream")

    async def _call_tool(self, request: ToolRequest) -> ToolExecutionResult:
        if request.name not in self._registry.names():
            error = UnknownTool(request.name)
            log.warning(f"Model requested unknown tool: {request.name}")
            return ToolExecutionResult(call_id=request.id, tool_name=request.name, success=False, error=error)
        call = ToolCall(id=request.id, tool_name=request.name, input=request.arguments)
        return await self._executor.execute(call)

    def stream(self, history: Sequence[Message], message_id: str | None = None) -> "TurnStream":
        message_id = message_id or new_id("msg")
        return TurnStream(self.run(history, message_id=message_id), message_id=message_id, maxsize=self._queue_size)

    async def aclose(self) -> None:
        await self._model.aclose()
        await self._executor.aclose()

    async def __aenter__(self) -> "Orchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def create_orchestrator(model: ModelClient | None = None, omdb_api_key: str | None = None) -> Orchestrator:
    """Build the orchestrator with the default tools and an HTTP client it owns."""
    model = model or create_model_client()
    client = httpx.AsyncClient(timeout=httpx.Timeout(config.TOOL_TIMEOUT_SECONDS))
    executor = ToolExecutor(default_registry(omdb_api_key=omdb_api_key), client)
    return Orchestrator(model, executor)


# =============================================================================
# BOUNDED CHANNEL
# =============================================================================

_CLOSED = object()
_WAKE = object()


class TurnStream:
    """Delivers one turn's events from a producer task through a bounded queue.

    Example:
        >>> turn = orchestrator.stream(history)
        >>> async for event in turn:
        ...     timeline = reduce(timeline, event)

    ``cancel()`` stops the producer (cancelling any in-flight tool call or
    model request) and ends the stream with a ``stream-error`` of kind
    ``cancelled`` so pending tool invocations reach a terminal state.
    """

    def __init__(self, events: AsyncIterator[ProtocolEvent], message_id: str, maxsize: int = config.STREAM_QUEUE_SIZE):
        self.message_id = message_id
        self._events = events
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(maxsize, 1))
        self._task: asyncio.Task | None = None
        self._last_seq = -1
        self._cancel_reason: str | None = None
        self._finished = False

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    @property
    def finished(self) -> bool:
        return self._finished

    def start(self) -> None:
        # A turn stopped before iteration never reaches the model.
        if self._task is None and not self.cancelled:
            self._task = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        try:
            async with aclosing(self._events) as events:
                async for event in events:
                    await self._queue.put(event)
        except asyncio.CancelledError:
            log.info(f"Producer for message {self.message_id} cancelled")
            raise
        except Exception as e:
            log.exception(f"Producer for message {self.message_id} failed")
            await self._queue.put(e)
            return
        await self._queue.put(_CLOSED)

    def cancel(self, reason: str = "Stopped by user") -> None:
        if self._finished or self.cancelled:
            return
        log.info(f"Cancelling turn for message {self.message_id}: {reason}")
        self._cancel_reason = reason
        if self._task is not None:
            self._task.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_WAKE)

    def __aiter__(self) -> "TurnStream":
        self.start()
        return self

    async def __anext__(self) -> ProtocolEvent:
        if self._finished:
            raise StopAsyncIteration
        item = _WAKE if self.cancelled else await self._queue.get()

        if self.cancelled:
            self._finished = True
            return StreamErrorEvent(message_id=self.message_id, seq=self._last_seq + 1, error=self._cancel_reason, kind="cancelled")
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self._finished = True
            raise item

        self._last_seq = item.seq
        if item.type in ("done", "stream-error"):
            self._finished = True
        return item

    async def aclose(self) -> None:
        """Cancel if still running and wait for the producer to exit."""
        self.cancel("Stream closed")
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
