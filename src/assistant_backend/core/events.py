"""
Protocol events emitted by the orchestrator for one assistant message.

Every event carries the ``message_id`` it belongs to and a per-message ``seq``
starting at 0, so receivers can correlate and de-duplicate without relying on
arrival order across messages.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

ToolErrorKind = Literal["not_found", "upstream", "timeout", "invalid_input", "unknown_tool", "tool"]
StreamErrorKind = Literal["configuration", "upstream", "protocol", "cancelled"]


class _Event(BaseModel):
    message_id: str = Field(..., alias="messageId")
    seq: int = Field(..., ge=0)

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class TextDeltaEvent(_Event):
    type: Literal["text-delta"] = "text-delta"
    text: str


class ToolCallEvent(_Event):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str = Field(..., alias="toolCallId")
    tool_name: str = Field(..., alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(_Event):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str = Field(..., alias="toolCallId")
    output: dict[str, Any]


class ToolErrorEvent(_Event):
    type: Literal["tool-error"] = "tool-error"
    tool_call_id: str = Field(..., alias="toolCallId")
    error: str
    error_kind: ToolErrorKind = Field(default="tool", alias="errorKind")


class MessageDoneEvent(_Event):
    type: Literal["done"] = "done"


class StreamErrorEvent(_Event):
    """Terminates the stream. Pending tool invocations become errors."""

    type: Literal["stream-error"] = "stream-error"
    error: str
    kind: StreamErrorKind = "upstream"


ProtocolEvent = Annotated[
    TextDeltaEvent | ToolCallEvent | ToolResultEvent | ToolErrorEvent | MessageDoneEvent | StreamErrorEvent,
    Field(discriminator="type"),
]

EVENT_TYPES = ("text-delta", "tool-call", "tool-result", "tool-error", "done", "stream-error")
TERMINAL_TYPES = ("done", "stream-error")

event_adapter: TypeAdapter[ProtocolEvent] = TypeAdapter(ProtocolEvent)


def parse_event(data: dict[str, Any] | str | bytes) -> ProtocolEvent:
    """Validate a decoded payload (or raw JSON) into the matching event model."""
    if isinstance(data, (str, bytes)):
        return event_adapter.validate_json(data)
    return event_adapter.validate_python(data)
