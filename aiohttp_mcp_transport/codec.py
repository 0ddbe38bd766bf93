"""
Frame Codec Module

Serializes JSON-RPC envelopes and the event-stream framing used on the push
side of the transport.

An event is one or more ``data:`` lines followed by exactly one blank line. A
leading ``id:`` line carries the integer event id used for resumption. Lines
starting with ``:`` are comments (keepalives): they produce no event but still
count as stream activity.
"""

import logging
import re
import time
from collections.abc import Callable, Iterator

from pydantic import ValidationError

from .errors import MalformedFrameError
from .types import Frame, JSONRPCMessage, Message

__all__ = [
    "FrameDecoder",
    "decode_frame",
    "decode_message",
    "encode_comment",
    "encode_frame",
    "encode_message",
    "format_event",
]

logger = logging.getLogger(__name__)

_LINE_END = re.compile(rb"\r\n|\r|\n")


def encode_message(message: Message | JSONRPCMessage) -> str:
    """Serialize a message to single-line JSON."""
    return message.model_dump_json(by_alias=True, exclude_none=True)


def decode_message(data: str | bytes | bytearray) -> Message:
    """Parse and validate a JSON-RPC envelope."""
    try:
        return JSONRPCMessage.model_validate_json(data).root
    except ValidationError as err:
        raise MalformedFrameError(f"Invalid JSON-RPC message: {err}") from err


def format_event(data: str, event_id: int | None = None) -> bytes:
    """Frame an already serialized payload as one push-stream event."""
    parts = []
    if event_id is not None:
        parts.append(f"id: {event_id}\n")
    parts.extend(f"data: {line}\n" for line in data.split("\n"))
    parts.append("\n")
    return "".join(parts).encode()


def encode_frame(message: Message | JSONRPCMessage, event_id: int | None = None) -> bytes:
    return format_event(encode_message(message), event_id)


def encode_comment(text: str = "") -> bytes:
    return f": {text}\n\n".encode() if text else b":\n\n"


def _split_lines(buffer: bytes | bytearray, start: int = 0) -> Iterator[tuple[bytes, int]]:
    """Yield complete lines with the offset just past their terminator.

    A trailing lone ``\\r`` is held back because the next chunk may start with ``\\n``.
    """
    pos = start
    while True:
        match = _LINE_END.search(buffer, pos)
        if match is None:
            return
        if match.group() == b"\r" and match.end() == len(buffer):
            return
        yield bytes(buffer[pos : match.start()]), match.end()
        pos = match.end()


class FrameDecoder:
    """Incremental push-stream decoder.

    Bytes may be fed in arbitrary slices; partial lines are kept until their
    terminator arrives. A malformed event is returned in-band as a
    :class:`MalformedFrameError` and decoding resumes after its blank line.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buffer = bytearray()
        self._data_lines: list[str] = []
        self._event_id: int | None = None
        self._error: str | None = None
        self.last_event_id: int | None = None
        self.last_activity = clock()
        self.comments_seen = 0

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete line."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[Frame | MalformedFrameError]:
        self._buffer.extend(chunk)
        results: list[Frame | MalformedFrameError] = []
        consumed = 0
        for line, consumed in _split_lines(self._buffer):
            item = self._process_line(line)
            if item is not None:
                results.append(item)
        del self._buffer[:consumed]
        return results

    def _process_line(self, raw_line: bytes) -> Frame | MalformedFrameError | None:
        self.last_activity = self._clock()

        if not raw_line:
            return self._dispatch()

        try:
            line = raw_line.decode()
        except UnicodeDecodeError:
            self._error = "Frame is not valid UTF-8"
            return None

        if line.startswith(":"):
            self.comments_seen += 1
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data_lines.append(value)
        elif name == "id":
            try:
                self._event_id = int(value)
            except ValueError:
                self._error = f"Event id must be an integer, got {value!r}"
        else:
            # event:, retry: and unknown fields carry nothing for this protocol
            logger.debug("Ignoring event-stream field %r", name)
        return None

    def _dispatch(self) -> Frame | MalformedFrameError | None:
        data_lines, event_id, error = self._data_lines, self._event_id, self._error
        self._data_lines, self._event_id, self._error = [], None, None

        if error is not None:
            return MalformedFrameError(error)
        if not data_lines:
            return None

        data = "\n".join(data_lines)
        try:
            message = decode_message(data)
        except MalformedFrameError as err:
            return err

        if event_id is not None:
            self.last_event_id = event_id
        return Frame(message=message, data=data, event_id=event_id)


def decode_frame(raw: bytes) -> tuple[Frame, int] | None:
    """Decode the first complete event in ``raw``.

    Returns the frame and the number of bytes it consumed, or ``None`` when
    ``raw`` does not yet hold a complete event. Comment-only blocks are skipped.

    Raises:
        MalformedFrameError: If the first complete event cannot be decoded.
    """
    decoder = FrameDecoder()
    for line, end in _split_lines(raw):
        item = decoder._process_line(line)
        if isinstance(item, MalformedFrameError):
            raise item
        if item is not None:
            return item, end
    return None
