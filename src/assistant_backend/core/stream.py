"""
Event-stream framing for protocol events.

Each event becomes one Server-Sent-Events frame:

    id: <messageId>:<seq>
    event: <type>
    data: <json payload>
    <blank line>

The decoder accepts arbitrary chunk boundaries (including inside a multi-byte
UTF-8 character) and only emits an event once its whole frame has arrived.
"""

import json
import logging
from typing import AsyncIterable, AsyncIterator, Iterable

from pydantic import ValidationError

from assistant_backend.core.events import EVENT_TYPES, ProtocolEvent, parse_event
from assistant_backend.errors import ProtocolError

log = logging.getLogger(__name__)

MEDIA_TYPE = "text/event-stream"


def encode_event(event: ProtocolEvent) -> bytes:
    payload = event.model_dump_json(by_alias=True)
    frame = f"id: {event.message_id}:{event.seq}\nevent: {event.type}\ndata: {payload}\n\n"
    return frame.encode("utf-8")


async def encode_stream(events: AsyncIterable[ProtocolEvent]) -> AsyncIterator[bytes]:
    async for event in events:
        yield encode_event(event)


class StreamDecoder:
    """Incremental decoder. Feed raw chunks, get back complete events in order."""

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bool:
        """True while a partial frame is buffered."""
        return bool(self._buffer.strip())

    def feed(self, chunk: bytes | str) -> list[ProtocolEvent]:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer = (self._buffer + chunk).replace(b"\r\n", b"\n")

        events = []
        while True:
            frame, sep, rest = self._buffer.partition(b"\n\n")
            if not sep:
                break
            self._buffer = rest
            event = self._parse_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        if self.pending:
            leftover = self._buffer
            self._buffer = b""
            raise ProtocolError(f"Stream ended with an incomplete frame ({len(leftover)} bytes)")

    def _parse_frame(self, frame: bytes) -> ProtocolEvent | None:
        try:
            text = frame.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}") from e

        event_type = None
        data_lines = []
        for line in text.split("\n"):
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            value = value[1:] if value.startswith(" ") else value
            if name == "event":
                event_type = value
            elif name == "data":
                data_lines.append(value)
            elif name in ("id", "retry"):
                continue
            else:
                log.debug(f"Ignoring unknown frame field {name!r}")

        if not data_lines:
            # keep-alive or comment-only frame
            return None

        try:
            payload = json.loads("\n".join(data_lines))
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Frame data is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ProtocolError("Frame data must be a JSON object")

        payload_type = payload.get("type")
        if payload_type not in EVENT_TYPES:
            raise ProtocolError(f"Unknown event type {payload_type!r}")
        if event_type is not None and event_type != payload_type:
            raise ProtocolError(f"Frame event {event_type!r} does not match payload type {payload_type!r}")

        try:
            return parse_event(payload)
        except ValidationError as e:
            raise ProtocolError(f"Invalid {payload_type} event: {e}") from e


async def decode_stream(chunks: AsyncIterable[bytes | str] | Iterable[bytes | str]) -> AsyncIterator[ProtocolEvent]:
    decoder = StreamDecoder()
    if hasattr(chunks, "__aiter__"):
        async for chunk in chunks:
            for event in decoder.feed(chunk):
                yield event
    else:
        for chunk in chunks:
            for event in decoder.feed(chunk):
                yield event
    decoder.close()
