"""Unit tests for event-stream framing."""

import pytest

from assistant_backend.core.events import (
    MessageDoneEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolResultEvent,
)
from assistant_backend.core.stream import StreamDecoder, decode_stream, encode_event, encode_stream
from assistant_backend.errors import ProtocolError

EVENTS = [
    ToolCallEvent(message_id="m1", seq=0, tool_call_id="c1", tool_name="weather", input={"location": "Paris"}),
    ToolResultEvent(message_id="m1", seq=1, tool_call_id="c1", output={"location": "Paris", "temperature": 18.3}),
    TextDeltaEvent(message_id="m1", seq=2, text="Weather in Paris: "),
    TextDeltaEvent(message_id="m1", seq=3, text="Clear sky, 18.3°C."),
    MessageDoneEvent(message_id="m1", seq=4),
]


class TestEncodeEvent:
    def test_frame_layout(self):
        frame = encode_event(EVENTS[0]).decode("utf-8")

        lines = frame.split("\n")
        assert lines[0] == "id: m1:0"
        assert lines[1] == "event: tool-call"
        assert lines[2].startswith("data: {")
        assert '"toolCallId":"c1"' in lines[2]
        assert '"messageId":"m1"' in lines[2]
        assert frame.endswith("\n\n")

    def test_every_kind_is_distinguishable(self):
        events = [
            *EVENTS,
            ToolErrorEvent(message_id="m2", seq=0, tool_call_id="c2", error="timeout", error_kind="timeout"),
            StreamErrorEvent(message_id="m3", seq=0, error="OMDB_API_KEY is not set", kind="configuration"),
        ]
        kinds = {encode_event(event).split(b"\n")[1] for event in events}

        assert kinds == {
            b"event: tool-call",
            b"event: tool-result",
            b"event: text-delta",
            b"event: done",
            b"event: tool-error",
            b"event: stream-error",
        }


class TestStreamDecoder:
    def test_whole_stream_in_one_chunk(self):
        data = b"".join(encode_event(event) for event in EVENTS)

        assert StreamDecoder().feed(data) == EVENTS

    def test_byte_by_byte_delivery(self):
        """Frames split at every byte, including inside the multi-byte degree sign."""
        data = b"".join(encode_event(event) for event in EVENTS)
        decoder = StreamDecoder()

        decoded = []
        for i in range(len(data)):
            decoded.extend(decoder.feed(data[i : i + 1]))
        decoder.close()

        assert decoded == EVENTS

    def test_partial_frame_is_buffered(self):
        frame = encode_event(EVENTS[2])
        decoder = StreamDecoder()

        assert decoder.feed(frame[:10]) == []
        assert decoder.pending is True
        assert decoder.feed(frame[10:]) == [EVENTS[2]]
        assert decoder.pending is False

    def test_crlf_and_comments(self):
        frame = encode_event(EVENTS[4]).replace(b"\n", b"\r\n")
        decoder = StreamDecoder()

        events = decoder.feed(b": keep-alive\r\n\r\n" + frame[:5])
        events += decoder.feed(frame[5:])

        assert events == [EVENTS[4]]

    def test_truncated_stream(self):
        decoder = StreamDecoder()
        decoder.feed(encode_event(EVENTS[0])[:-3])

        with pytest.raises(ProtocolError, match="incomplete frame"):
            decoder.close()

    def test_bad_json(self):
        with pytest.raises(ProtocolError, match="not valid JSON"):
            StreamDecoder().feed(b"event: done\ndata: {oops\n\n")

    def test_unknown_type(self):
        with pytest.raises(ProtocolError, match="Unknown event type"):
            StreamDecoder().feed(b'data: {"type": "reasoning", "messageId": "m", "seq": 0}\n\n')

    def test_event_name_mismatch(self):
        with pytest.raises(ProtocolError, match="does not match"):
            StreamDecoder().feed(b'event: text-delta\ndata: {"type": "done", "messageId": "m", "seq": 0}\n\n')

    def test_missing_field(self):
        with pytest.raises(ProtocolError, match="Invalid tool-result event"):
            StreamDecoder().feed(b'data: {"type": "tool-result", "messageId": "m", "seq": 0}\n\n')


    def test_cancellation_is_not_a_tool_error_kind(self):
        payload = b'{"type": "tool-error", "messageId": "m", "seq": 0, "toolCallId": "c", "error": "x", "errorKind": "cancelled"}'

        with pytest.raises(ProtocolError, match="Invalid tool-error event"):
            StreamDecoder().feed(b"data: " + payload + b"\n\n")


class TestStreamHelpers:
    @pytest.mark.asyncio
    async def test_encode_then_decode_preserves_order(self):
        async def source():
            for event in EVENTS:
                yield event

        decoded = [event async for event in decode_stream(encode_stream(source()))]

        assert decoded == EVENTS

    @pytest.mark.asyncio
    async def test_decode_rechunked_transport(self):
        data = b"".join(encode_event(event) for event in EVENTS)
        chunks = [data[i : i + 7] for i in range(0, len(data), 7)]

        decoded = [event async for event in decode_stream(chunks)]

        assert decoded == EVENTS
