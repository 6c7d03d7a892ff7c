"""
Client-side timeline: folds protocol events into an ordered message list.

``reduce`` is a pure function. The same event applied twice leaves the state
unchanged: events are de-duplicated by their per-message ``seq`` and tool
results by ``tool_call_id``. Parts are only ever appended or grown in place,
never reordered.
"""

import logging
import re
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict

from assistant_backend import config
from assistant_backend.core.events import (
    MessageDoneEvent,
    ProtocolEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolResultEvent,
)
from assistant_backend.errors import ProtocolError
from assistant_backend.models import ImagePart, Message, Part, TextPart, ToolInvocationPart, user_message

log = logging.getLogger(__name__)

INCOMPLETE_TOOL_CALL = "Tool call did not complete"


class Timeline(BaseModel):
    messages: tuple[Message, ...] = ()
    # highest seq applied per assistant message
    last_seq: dict[str, int] = {}

    model_config = ConfigDict(frozen=True)

    def find(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


def add_user_message(timeline: Timeline, text: str, message_id: str | None = None) -> Timeline:
    return timeline.model_copy(update={"messages": timeline.messages + (user_message(text, message_id),)})


def current_message(timeline: Timeline) -> Message | None:
    """The assistant message still streaming, if any."""
    for message in reversed(timeline.messages):
        if message.role == "assistant" and not message.done:
            return message
    return None


def pending_tool_calls(timeline: Timeline) -> list[ToolInvocationPart]:
    return [part for message in timeline.messages for part in message.tool_invocations() if not part.is_terminal]


def reduce(timeline: Timeline, event: ProtocolEvent, strict: bool | None = None) -> Timeline:
    """Apply one event and return the new timeline.

    Protocol violations (unmatched tool call ids, seq gaps, events addressed to
    user messages) raise ProtocolError when ``strict``; otherwise the
    offending event is dropped or applied with a warning.
    """
    if strict is None:
        strict = config.PROTOCOL_STRICT

    messages = list(timeline.messages)
    index = next((i for i, message in enumerate(messages) if message.id == event.message_id), None)
    if index is None:
        messages.append(Message(id=event.message_id, role="assistant"))
        index = len(messages) - 1
    message = messages[index]

    if message.role != "assistant":
        _violation(strict, f"{event.type} event addressed to {message.role} message {message.id}")
        return timeline

    last_seq = timeline.last_seq.get(message.id, -1)
    if event.seq <= last_seq or message.done:
        log.debug(f"Ignoring replayed {event.type} event {message.id}:{event.seq}")
        return timeline
    if event.seq != last_seq + 1:
        _violation(strict, f"Sequence gap in {message.id}: expected {last_seq + 1}, got {event.seq}")

    messages[index] = _apply(message, event, strict)
    return Timeline(messages=tuple(messages), last_seq={**timeline.last_seq, message.id: event.seq})


def _apply(message: Message, event: ProtocolEvent, strict: bool) -> Message:
    parts = list(message.parts)

    if isinstance(event, TextDeltaEvent):
        if parts and isinstance(parts[-1], TextPart):
            parts[-1] = TextPart(text=parts[-1].text + event.text)
        else:
            parts.append(TextPart(text=event.text))

    elif isinstance(event, ToolCallEvent):
        if _find_invocation(parts, event.tool_call_id) is not None:
            log.debug(f"Ignoring duplicate tool call {event.tool_call_id}")
            return message
        parts.append(ToolInvocationPart(tool_call_id=event.tool_call_id, tool_name=event.tool_name, input=event.input))

    elif isinstance(event, (ToolResultEvent, ToolErrorEvent)):
        position = _find_invocation(parts, event.tool_call_id)
        if position is None:
            _violation(strict, f"No tool invocation {event.tool_call_id} in message {message.id}, dropping {event.type}")
            return message
        invocation = parts[position]
        if invocation.is_terminal:
            log.debug(f"Tool invocation {event.tool_call_id} already {invocation.state}")
            return message
        if isinstance(event, ToolResultEvent):
            parts[position] = invocation.model_copy(update={"state": "output", "output": event.output})
            # Appended after the existing parts, not next to the invocation.
            poster = event.output.get("poster")
            if isinstance(poster, str) and poster.startswith(("http://", "https://")):
                parts.append(ImagePart(url=poster, alt=f"{event.output.get('title', 'Movie')} poster"))
        else:
            parts[position] = invocation.model_copy(update={"state": "error", "error": event.error})

    elif isinstance(event, MessageDoneEvent):
        return message.model_copy(update={"parts": _settle(parts, INCOMPLETE_TOOL_CALL), "done": True})

    elif isinstance(event, StreamErrorEvent):
        return message.model_copy(update={"parts": _settle(parts, event.error), "done": True, "error": event.error})

    else:
        log.warning(f"Unhandled event type {getattr(event, 'type', type(event).__name__)}")
        return message

    return message.model_copy(update={"parts": tuple(parts)})


def _find_invocation(parts: list[Part], tool_call_id: str) -> int | None:
    for position, part in enumerate(parts):
        if isinstance(part, ToolInvocationPart) and part.tool_call_id == tool_call_id:
            return position
    return None


def _settle(parts: list[Part], reason: str) -> tuple[Part, ...]:
    """Move every pending tool invocation to the error state."""
    return tuple(
        part.model_copy(update={"state": "error", "error": reason})
        if isinstance(part, ToolInvocationPart) and not part.is_terminal
        else part
        for part in parts
    )


def _violation(strict: bool, detail: str) -> None:
    if strict:
        raise ProtocolError(detail)
    log.warning(f"Protocol violation: {detail}")


# =============================================================================
# READ MODEL
# =============================================================================

MARKDOWN_LINK = re.compile(r"!\[([^\]]*)\]\((https?://[^\s)]+)\)|\[([^\]]+)\]\((https?://[^\s)]+)\)")


@dataclass(frozen=True)
class Segment:
    kind: Literal["text", "image", "link"]
    text: str
    url: str | None = None


def render_segments(text: str) -> list[Segment]:
    """Split markdown text into plain text, inline image and link segments."""
    segments = []
    last = 0
    for match in MARKDOWN_LINK.finditer(text):
        if match.start() > last:
            segments.append(Segment("text", text[last : match.start()]))
        if match.group(2):
            segments.append(Segment("image", match.group(1) or "image", match.group(2)))
        else:
            segments.append(Segment("link", match.group(3), match.group(4)))
        last = match.end()
    if last < len(text):
        segments.append(Segment("text", text[last:]))
    return segments


def images(message: Message) -> list[ImagePart]:
    """Image parts of a message plus images referenced inline in its text."""
    found = []
    for part in message.parts:
        if isinstance(part, ImagePart):
            found.append(part)
        elif isinstance(part, TextPart):
            found.extend(
                ImagePart(url=segment.url, alt=segment.text)
                for segment in render_segments(part.text)
                if segment.kind == "image"
            )
    return found
