import json

import pytest
from mcp.types import ErrorData

from aiohttp_mcp_transport.codec import (
    FrameDecoder,
    decode_frame,
    decode_message,
    encode_comment,
    encode_frame,
    encode_message,
    format_event,
)
from aiohttp_mcp_transport.errors import MalformedFrameError
from aiohttp_mcp_transport.types import (
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)

from .utils import FakeClock

MESSAGES = [
    JSONRPCRequest(jsonrpc="2.0", id=1, method="tools/call", params={"name": "echo", "arguments": {"text": "a\nb"}}),
    JSONRPCRequest(jsonrpc="2.0", id="req-7", method="ping"),
    JSONRPCNotification(jsonrpc="2.0", method="notifications/progress", params={"progressToken": 1, "progress": 5}),
    JSONRPCResponse(jsonrpc="2.0", id=3, result={"ok": True, "text": "line1\r\nline2"}),
    JSONRPCError(jsonrpc="2.0", id="x", error=ErrorData(code=-32601, message="Method not found")),
]


class TestMessageCodec:
    def test_encode_is_single_line(self) -> None:
        for message in MESSAGES:
            assert "\n" not in encode_message(message)

    def test_encode_omits_unset_fields(self) -> None:
        encoded = json.loads(encode_message(JSONRPCRequest(jsonrpc="2.0", id=1, method="ping")))
        assert encoded == {"jsonrpc": "2.0", "id": 1, "method": "ping"}

    def test_decode_returns_concrete_message(self) -> None:
        message = decode_message(b'{"jsonrpc":"2.0","method":"notifications/initialized"}')
        assert isinstance(message, JSONRPCNotification)
        assert message.method == "notifications/initialized"

    @pytest.mark.parametrize(
        "payload",
        ["not json", "{}", '{"jsonrpc":"1.0","id":1,"method":"x"}', "[1, 2]", ""],
    )
    def test_decode_rejects_invalid_envelopes(self, payload: str) -> None:
        with pytest.raises(MalformedFrameError):
            decode_message(payload)


class TestFraming:
    """Event-stream framing of pushed messages."""

    def test_encode_frame_layout(self) -> None:
        message = JSONRPCRequest(jsonrpc="2.0", id=1, method="ping")
        frame = encode_frame(message, event_id=42)
        assert frame == b"id: 42\ndata: " + encode_message(message).encode() + b"\n\n"

    def test_encode_frame_without_id(self) -> None:
        assert not encode_frame(MESSAGES[1]).startswith(b"id:")

    def test_multiline_payload_becomes_several_data_lines(self) -> None:
        assert format_event("a\nb", 1) == b"id: 1\ndata: a\ndata: b\n\n"

    def test_encode_comment(self) -> None:
        assert encode_comment("keepalive") == b": keepalive\n\n"
        assert encode_comment() == b":\n\n"

    @pytest.mark.parametrize("message", MESSAGES)
    def test_decode_frame_recovers_message(self, message: object) -> None:
        raw = encode_frame(message, event_id=9)  # type: ignore[arg-type]
        result = decode_frame(raw)
        assert result is not None
        frame, consumed = result
        assert frame.message == message
        assert frame.event_id == 9
        assert consumed == len(raw)

    def test_decode_frame_needs_more_data(self) -> None:
        raw = encode_frame(MESSAGES[0], event_id=1)
        assert decode_frame(raw[:-1]) is None
        assert decode_frame(b"") is None

    def test_decode_frame_skips_comments(self) -> None:
        raw = encode_comment("keepalive") + encode_frame(MESSAGES[1], event_id=2)
        result = decode_frame(raw)
        assert result is not None
        frame, consumed = result
        assert frame.event_id == 2
        assert consumed == len(raw)

    def test_decode_frame_leaves_following_event(self) -> None:
        first = encode_frame(MESSAGES[1], event_id=1)
        result = decode_frame(first + encode_frame(MESSAGES[2], event_id=2))
        assert result is not None
        assert result[1] == len(first)

    def test_decode_frame_raises_on_malformed_event(self) -> None:
        with pytest.raises(MalformedFrameError):
            decode_frame(b"data: {broken\n\n")


class TestFrameDecoder:
    """Incremental decoding of a push stream."""

    def test_every_split_point_yields_same_frame(self) -> None:
        raw = encode_frame(MESSAGES[0], event_id=5)
        for split in range(len(raw) + 1):
            decoder = FrameDecoder()
            items = decoder.feed(raw[:split]) + decoder.feed(raw[split:])
            assert len(items) == 1, split
            frame = items[0]
            assert not isinstance(frame, MalformedFrameError)
            assert frame.message == MESSAGES[0]
            assert frame.event_id == 5
            assert decoder.pending == 0

    def test_byte_at_a_time(self) -> None:
        raw = b"".join(encode_frame(message, event_id=i) for i, message in enumerate(MESSAGES, 1))
        decoder = FrameDecoder()
        frames = []
        for i in range(len(raw)):
            frames.extend(decoder.feed(raw[i : i + 1]))
        assert [frame.message for frame in frames] == MESSAGES  # type: ignore[union-attr]
        assert decoder.last_event_id == len(MESSAGES)

    @pytest.mark.parametrize("newline", [b"\n", b"\r\n", b"\r"])
    def test_line_terminators(self, newline: bytes) -> None:
        raw = b"id: 3" + newline + b'data: {"jsonrpc":"2.0","id":1,"method":"ping"}' + newline + newline
        # A trailing lone \r may still be half of \r\n, so follow up with a comment line
        items = FrameDecoder().feed(raw + b":" + newline)
        assert len(items) == 1
        assert items[0].event_id == 3  # type: ignore[union-attr]

    def test_crlf_split_between_cr_and_lf(self) -> None:
        decoder = FrameDecoder()
        assert decoder.feed(b'data: {"jsonrpc":"2.0","id":1,"method":"ping"}\r') == []
        # A lone \n after \r is the same terminator, not a blank line
        assert decoder.feed(b"\n") == []
        items = decoder.feed(b"\r\n")
        assert len(items) == 1

    def test_data_lines_are_joined(self) -> None:
        raw = b'data: {"jsonrpc":"2.0",\ndata: "id":1,"method":"ping"}\n\n'
        items = FrameDecoder().feed(raw)
        assert len(items) == 1
        message = items[0].message  # type: ignore[union-attr]
        assert isinstance(message, JSONRPCRequest)
        assert message.id == 1
        assert message.method == "ping"

    def test_malformed_event_is_reported_in_band(self) -> None:
        decoder = FrameDecoder()
        raw = b"data: nope\n\n" + encode_frame(MESSAGES[1], event_id=2)
        items = decoder.feed(raw)
        assert len(items) == 2
        assert isinstance(items[0], MalformedFrameError)
        assert items[1].event_id == 2  # type: ignore[union-attr]

    def test_non_integer_id_is_malformed(self) -> None:
        items = FrameDecoder().feed(b'id: abc\ndata: {"jsonrpc":"2.0","id":1,"method":"ping"}\n\n')
        assert len(items) == 1
        assert isinstance(items[0], MalformedFrameError)

    def test_comments_count_as_activity(self) -> None:
        clock = FakeClock()
        decoder = FrameDecoder(clock=clock)
        clock.advance(30)
        assert decoder.feed(encode_comment("keepalive")) == []
        assert decoder.comments_seen == 1
        assert decoder.last_activity == clock.now
        assert decoder.last_event_id is None

    def test_unknown_fields_are_ignored(self) -> None:
        raw = b'event: message\nretry: 100\ndata: {"jsonrpc":"2.0","id":1,"method":"ping"}\n\n'
        items = FrameDecoder().feed(raw)
        assert len(items) == 1
        assert not isinstance(items[0], MalformedFrameError)

    def test_blank_lines_without_data_produce_nothing(self) -> None:
        assert FrameDecoder().feed(b"\n\n\n") == []
