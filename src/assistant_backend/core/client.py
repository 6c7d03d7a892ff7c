import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from openai import AsyncAzureOpenAI

from assistant_backend import config
from assistant_backend.errors import ConfigurationError
from assistant_backend.models import new_id

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextChunk:
    text: str


@dataclass(frozen=True)
class ToolRequest:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("call"))


ModelChunk = TextChunk | ToolRequest


class ModelClient(Protocol):
    """Decides what to say next given the chat-completions message list.

    One call to ``stream`` is one model step: it yields either text chunks
    (the reply) or tool requests (then the orchestrator runs the tools, folds
    the results into ``messages`` and calls ``stream`` again).
    """

    def stream(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> AsyncIterator[ModelChunk]: ...

    async def aclose(self) -> None: ...


class ChatClient:
    def __init__(self, client: AsyncAzureOpenAI | None = None, temperature: float = 0):
        if client is None:
            missing = [
                name
                for name in ("AZURE_OPENAI_MODEL", "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_KEY", "AZURE_OPENAI_API_VERSION")
                if not getattr(config, name)
            ]
            if missing:
                raise ConfigurationError(f"Missing Azure OpenAI settings: {', '.join(missing)}")
            client = AsyncAzureOpenAI(
                azure_endpoint=config.AZURE_OPENAI_ENDPOINT,
                api_key=config.AZURE_OPENAI_API_KEY,
                api_version=config.AZURE_OPENAI_API_VERSION,
            )
        self.client = client
        self.deployment_name = config.AZURE_OPENAI_MODEL
        self.system_prompt = config.SYSTEM_PROMPT
        self.temperature = temperature

    async def stream(self, messages, tools):
        response_stream = await self.client.chat.completions.create(
            model=self.deployment_name,
            messages=[{"role": "system", "content": self.system_prompt}, *messages],
            tools=tools,
            parallel_tool_calls=False,
            stream=True,
            temperature=self.temperature,
        )

        # Tool call fragments arrive spread over many deltas, keyed by index.
        pending: dict[int, dict[str, str]] = {}
        try:
            async for part in response_stream:
                if not part.choices:
                    continue
                delta = part.choices[0].delta
                finish_reason = part.choices[0].finish_reason

                if delta.content:
                    yield TextChunk(delta.content)

                for tool_call in delta.tool_calls or []:
                    slot = pending.setdefault(tool_call.index, {"id": "", "name": "", "arguments": ""})
                    if tool_call.id:
                        slot["id"] = tool_call.id
                    if tool_call.function and tool_call.function.name:
                        slot["name"] = tool_call.function.name
                    if tool_call.function and tool_call.function.arguments:
                        slot["arguments"] += tool_call.function.arguments

                if finish_reason == "tool_calls":
                    for index in sorted(pending):
                        slot = pending[index]
                        yield ToolRequest(
                            id=slot["id"] or new_id("call"),
                            name=slot["name"],
                            arguments=_load_arguments(slot["arguments"]),
                        )
                    break

                if finish_reason in ("stop", "length", "content_filter"):
                    break
        finally:
            await response_stream.close()

    async def aclose(self) -> None:
        await self.client.close()


def _load_arguments(raw: str) -> dict[str, Any]:
    try:
        arguments = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        log.warning(f"Model produced unparsable tool arguments: {raw!r}")
        return {}
    return arguments if isinstance(arguments, dict) else {}


# =============================================================================
# DETERMINISTIC STAND-IN
# =============================================================================

WEATHER_PATTERN = re.compile(r"\bweather\b(?:\s+(?:like\s+)?(?:in|for|at)\b)?\s*(?P<location>[^?!.]*)", re.IGNORECASE)
MOVIE_PATTERN = re.compile(
    r"\b(?:tell me about|movie|film)\b\s*(?:the\s+)?(?:(?:movie|film)\s+)?(?P<title>[^?!.]*)",
    re.IGNORECASE,
)

HELP_TEXT = "I can look up the current weather for a city or details about a movie. Try \"What's the weather in Paris?\""


class KeywordModel:
    """Rule-based model for local runs and tests.

    Recognizes weather and movie requests, calls the matching tool, and
    summarizes the tool result in one sentence. Streams its reply word by word.
    """

    async def stream(self, messages, tools):
        available = {tool["function"]["name"] for tool in tools}
        last = messages[-1] if messages else {"role": "user", "content": ""}

        if last["role"] == "tool":
            reply = self._summarize(last.get("name", ""), last.get("content") or "{}")
        else:
            request = self._decide(str(last.get("content") or ""), available)
            if isinstance(request, ToolRequest):
                yield request
                return
            reply = request

        for word in re.findall(r"\S+\s*", reply):
            yield TextChunk(word)

    def _decide(self, text: str, available: set[str]) -> ToolRequest | str:
        if "weather" in available and (match := WEATHER_PATTERN.search(text)):
            location = match.group("location").strip()
            if not location:
                return "Which city would you like the weather for?"
            return ToolRequest(name="weather", arguments={"location": location})

        if "movie" in available and (match := MOVIE_PATTERN.search(text)):
            title = match.group("title").strip()
            if not title:
                return "Which movie would you like to know about?"
            return ToolRequest(name="movie", arguments={"title": title})

        return HELP_TEXT

    def _summarize(self, tool_name: str, content: str) -> str:
        payload = json.loads(content)

        if "error" in payload:
            subject = "location" if tool_name == "weather" else "title"
            if payload.get("kind") == "not_found":
                return f"Sorry, I couldn't find that {subject}: {payload['error']}. Could you check the spelling?"
            return f"Sorry, the {tool_name} lookup failed: {payload['error']}. Please try again in a moment."

        if tool_name == "weather":
            return (
                f"Weather in {payload['location']}: {payload.get('conditions', 'Unknown')}, "
                f"{_number(payload['temperature'])}°C (feels {_number(payload['feelsLike'])}°C)."
            )
        if tool_name == "movie":
            genre = payload.get("genre")
            return f"{payload['title']} ({payload['year']}): {genre}." if genre else f"{payload['title']} ({payload['year']})."
        return HELP_TEXT

    async def aclose(self) -> None:
        return None


def _number(value: float) -> str:
    return f"{value:g}"


def create_model_client(kind: str = config.ASSISTANT_MODEL) -> ModelClient:
    if kind == "keyword":
        return KeywordModel()
    if kind == "azure":
        return ChatClient()
    raise ConfigurationError(f"Unknown ASSISTANT_MODEL '{kind}'")
