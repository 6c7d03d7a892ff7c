"""Unit tests for the Chainlit handlers, with the ``cl`` module stubbed out.

Tests cover:
- A full turn rendered into a message, tool steps and inline images
- Stopping a turn after an event already left the stream
- Session setup failures and the stop hook
"""

import asyncio
from contextlib import aclosing
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from assistant_backend.core import handlers
from assistant_backend.core.stream import decode_stream
from assistant_backend.core.timeline import Timeline, pending_tool_calls
from assistant_backend.errors import ConfigurationError


class FakeMessage:
    def __init__(self, content="", **kwargs):
        self.content = content
        self.elements = []
        self.sent = False

    async def stream_token(self, token):
        self.content += token

    async def send(self):
        self.sent = True
        return self


class FakeStep:
    def __init__(self, name, type):
        self.name = name
        self.type = type
        self.input = None
        self.output = None
        self.is_error = False
        self.updated = False

    async def send(self):
        return self

    async def update(self):
        self.updated = True


class FakeSession(dict):
    def set(self, key, value):
        self[key] = value


@pytest.fixture
def fake_cl(monkeypatch):
    messages, steps = [], []

    def message(**kwargs):
        messages.append(FakeMessage(**kwargs))
        return messages[-1]

    def step(**kwargs):
        steps.append(FakeStep(**kwargs))
        return steps[-1]

    cl = SimpleNamespace(
        Message=message,
        ErrorMessage=message,
        Step=step,
        Image=lambda **kwargs: SimpleNamespace(**kwargs),
        user_session=FakeSession(),
        messages=messages,
        steps=steps,
    )
    monkeypatch.setattr(handlers, "cl", cl)
    return cl


@pytest.fixture
def session(fake_cl, orchestrator):
    fake_cl.user_session.set("timeline", Timeline())
    fake_cl.user_session.set("orchestrator", orchestrator)
    return fake_cl.user_session


def interrupted_at(seq):
    """A decode_stream that is cancelled right after pulling the event with ``seq``."""

    async def decode(chunks):
        async with aclosing(decode_stream(chunks)) as events:
            async for event in events:
                if event.seq == seq:
                    raise asyncio.CancelledError
                yield event

    return decode


class TestOnMessage:
    @pytest.mark.asyncio
    async def test_weather_turn_is_rendered_and_saved(self, fake_cl, session):
        await handlers.on_message(SimpleNamespace(content="What's the weather in Paris?", id="u1"))

        timeline = session.get("timeline")
        assert [m.role for m in timeline.messages] == ["user", "assistant"]
        assert timeline.messages[-1].done is True

        reply = fake_cl.messages[-1]
        assert reply.content == "Weather in Paris: Clear sky, 18.3°C (feels 17.1°C)."
        assert reply.sent is True

        step = fake_cl.steps[0]
        assert step.name == "weather"
        assert step.updated is True
        assert step.is_error is False
        assert session.get("turn") is None

    @pytest.mark.asyncio
    async def test_movie_poster_is_attached_inline(self, fake_cl, session):
        await handlers.on_message(SimpleNamespace(content="Tell me about Inception", id="u1"))

        reply = fake_cl.messages[-1]
        assert [image.url for image in reply.elements] == ["https://m.media-amazon.com/images/inception.jpg"]
        assert reply.elements[0].display == "inline"

    @pytest.mark.asyncio
    async def test_stop_after_event_left_the_stream(self, fake_cl, session, monkeypatch):
        """The tool result is pulled but never reduced; the stop still settles the reply."""
        monkeypatch.setattr("assistant_backend.config.PROTOCOL_STRICT", True)
        monkeypatch.setattr(handlers, "decode_stream", interrupted_at(seq=1))

        with pytest.raises(asyncio.CancelledError):
            await handlers.on_message(SimpleNamespace(content="What's the weather in Paris?", id="u1"))

        timeline = session.get("timeline")
        reply = timeline.messages[-1]
        assert reply.done is True
        assert reply.error == "Stopped by user"
        assert reply.parts[0].state == "error"
        assert pending_tool_calls(timeline) == []

        assert fake_cl.messages[-1].content.endswith("⚠️ Stopped by user")
        assert fake_cl.steps[0].is_error is True
        assert session.get("turn") is None

    @pytest.mark.asyncio
    async def test_without_orchestrator(self, fake_cl):
        await handlers.on_message(SimpleNamespace(content="hi", id="u1"))

        assert fake_cl.messages[-1].content == "The assistant is not available in this session."


class TestSessionHooks:
    @pytest.mark.asyncio
    async def test_start_chat_reports_missing_configuration(self, fake_cl, monkeypatch):
        def unconfigured():
            raise ConfigurationError("AZURE_OPENAI_ENDPOINT is not set")

        monkeypatch.setattr(handlers, "create_orchestrator", unconfigured)

        await handlers.start_chat()

        assert fake_cl.user_session.get("orchestrator") is None
        assert "AZURE_OPENAI_ENDPOINT" in fake_cl.messages[-1].content
        assert fake_cl.messages[-1].sent is True

    @pytest.mark.asyncio
    async def test_on_stop_cancels_running_turn(self, fake_cl):
        turn = MagicMock()
        fake_cl.user_session.set("turn", turn)

        await handlers.on_stop()

        turn.cancel.assert_called_once_with()
