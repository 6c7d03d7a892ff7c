import asyncio
import json
import logging

import chainlit as cl

from assistant_backend.config import configure_logging
from assistant_backend.core.events import ProtocolEvent
from assistant_backend.core.orchestrator import create_orchestrator
from assistant_backend.core.stream import decode_stream, encode_stream
from assistant_backend.core.timeline import Timeline, add_user_message, images, reduce
from assistant_backend.errors import ConfigurationError
from assistant_backend.models import Message

configure_logging()
log = logging.getLogger(__name__)


class TurnView:
    """Mirrors one assistant message of the timeline into Chainlit elements."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        self.msg = cl.Message(content="")
        self.steps: dict[str, cl.Step] = {}
        self.closed_steps: set[str] = set()
        self.shown_images: set[str] = set()

    async def render(self, message: Message, event: ProtocolEvent) -> None:
        if event.type == "text-delta":
            await self.msg.stream_token(event.text)
        elif event.type == "tool-call":
            step = cl.Step(name=event.tool_name, type="tool")
            step.input = json.dumps(event.input)
            await step.send()
            self.steps[event.tool_call_id] = step
        elif event.type in ("tool-result", "tool-error"):
            await self._close_steps(message)
            self._attach_images(message)
        elif event.type in ("done", "stream-error"):
            await self._close_steps(message)
            self._attach_images(message)
            if message.error:
                await self.msg.stream_token(f"\n\n⚠️ {message.error}")
            await self.msg.send()
        else:
            log.warning(f"No view for event type {event.type}")

    async def _close_steps(self, message: Message) -> None:
        for part in message.tool_invocations():
            step = self.steps.get(part.tool_call_id)
            if step is None or not part.is_terminal or part.tool_call_id in self.closed_steps:
                continue
            if part.state == "output":
                step.output = json.dumps(part.output, indent=2)
            else:
                step.output = part.error
                step.is_error = True
            await step.update()
            self.closed_steps.add(part.tool_call_id)

    def _attach_images(self, message: Message) -> None:
        for image in images(message):
            if image.url in self.shown_images:
                continue
            self.msg.elements.append(cl.Image(url=image.url, name=image.alt or "image", display="inline"))
            self.shown_images.add(image.url)


@cl.on_chat_start
async def start_chat():
    cl.user_session.set("timeline", Timeline())
    try:
        cl.user_session.set("orchestrator", create_orchestrator())
    except ConfigurationError as e:
        log.error(f"Assistant is not configured: {e}")
        await cl.ErrorMessage(content=f"The assistant is not configured: {e}").send()


@cl.on_message
async def on_message(message: cl.Message):
    orchestrator = cl.user_session.get("orchestrator")
    if orchestrator is None:
        await cl.ErrorMessage(content="The assistant is not available in this session.").send()
        return
    timeline = add_user_message(cl.user_session.get("timeline", Timeline()), message.content, message.id)

    turn = orchestrator.stream(timeline.messages)
    cl.user_session.set("turn", turn)
    view = TurnView(turn.message_id)

    # Same framing a remote client would receive.
    events = decode_stream(encode_stream(turn))
    try:
        async for event in events:
            timeline = reduce(timeline, event)
            await view.render(timeline.find(turn.message_id), event)
    except asyncio.CancelledError:
        turn.cancel()
        # An event already pulled into the codec pipe is lost, so the
        # closing stream-error may skip a seq.
        async for event in turn:
            timeline = reduce(timeline, event, strict=False)
            await view.render(timeline.find(turn.message_id), event)
        raise
    finally:
        await events.aclose()
        await turn.aclose()
        cl.user_session.set("turn", None)
        cl.user_session.set("timeline", timeline)


@cl.on_stop
async def on_stop():
    turn = cl.user_session.get("turn")
    if turn is not None:
        turn.cancel()


@cl.on_chat_end
async def on_chat_end():
    orchestrator = cl.user_session.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.aclose()
