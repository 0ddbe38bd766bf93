"""
Duplex Channel Module

Client-side byte channels carrying newline-delimited JSON-RPC envelopes.

Inbound data reaches readers through an anyio memory object stream filled by
background tasks; :meth:`DuplexChannel.read` and friends take from a local
buffer so callers may consume arbitrary slices. A deliberate :meth:`close`
reads as EOF, a dropped connection raises :class:`ChannelReadError` and leaves
the channel usable after a reconnect.
"""

import logging
import math
from abc import ABC, abstractmethod
from types import TracebackType
from typing import TypeVar

import aiohttp
import anyio
from anyio.abc import TaskGroup

from .codec import FrameDecoder, decode_message, encode_message
from .config import ClientConfig
from .errors import (
    ChannelClosedError,
    ChannelReadError,
    ChannelWriteError,
    MalformedFrameError,
    ReplayGapError,
    SessionNotFoundError,
    TransportError,
)
from .types import (
    CONTENT_TYPE_JSON,
    CONTENT_TYPE_SSE,
    LAST_EVENT_ID_HEADER,
    MCP_PROTOCOL_VERSION_HEADER,
    MCP_SESSION_ID_HEADER,
    Frame,
    Message,
)

__all__ = ["DuplexChannel", "StreamableHTTPChannel"]

logger = logging.getLogger(__name__)

ChannelT = TypeVar("ChannelT", bound="DuplexChannel")


def _as_line(body: bytes | str) -> bytes:
    """Collapse a JSON document onto one newline-terminated line.

    Raw newlines cannot occur inside JSON strings, so they are only whitespace.
    """
    if isinstance(body, str):
        body = body.encode()
    return body.replace(b"\r", b" ").replace(b"\n", b" ").strip() + b"\n"


class DuplexChannel(ABC):
    """Bidirectional message channel, used as an async context manager."""

    def __init__(self) -> None:
        self._inbound_writer, self._inbound = anyio.create_memory_object_stream[bytes | Exception](math.inf)
        self._buffer = bytearray()
        self._task_group: TaskGroup | None = None
        self._closed = False
        self._eof = False
        self.protocol_version: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self: ChannelT) -> ChannelT:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        try:
            await self._open()
        except BaseException:
            self._task_group.cancel_scope.cancel()
            await self._task_group.__aexit__(None, None, None)
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        await self.close()
        assert self._task_group is not None
        self._task_group.cancel_scope.cancel()
        return await self._task_group.__aexit__(exc_type, exc_val, exc_tb)

    async def _open(self) -> None:
        """Establish the transport. Called once on entering the context."""

    @abstractmethod
    async def _close_transport(self) -> None: ...

    @abstractmethod
    async def write(self, data: bytes) -> int:
        """Send one logical message. Never retried by the channel."""

    def _start_reading(self) -> None:
        """Hook for channels that connect their inbound side lazily."""

    def _feed(self, data: bytes) -> None:
        try:
            self._inbound_writer.send_nowait(data)
        except anyio.ClosedResourceError:
            logger.debug("Dropping %d inbound byte(s) after close", len(data))

    def _emit(self, error: Exception) -> None:
        try:
            self._inbound_writer.send_nowait(error)
        except anyio.ClosedResourceError:
            logger.debug("Dropping inbound error after close: %s", error)

    async def _fill(self) -> bool:
        """Move the next inbound chunk into the buffer. ``False`` means EOF."""
        if self._eof:
            return False
        self._start_reading()
        try:
            item = await self._inbound.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            self._eof = True
            return False
        if isinstance(item, Exception):
            raise item
        self._buffer.extend(item)
        return True

    async def read(self, n: int = -1) -> bytes:
        """Read up to ``n`` bytes, or everything buffered when ``n`` is negative.

        Returns ``b""`` only at EOF after a deliberate close.

        Raises:
            ChannelReadError: If the inbound connection dropped.
            MalformedFrameError: If an inbound frame could not be decoded.
        """
        while not self._buffer:
            if not await self._fill():
                return b""
        if n < 0 or n >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
        else:
            data = bytes(self._buffer[:n])
            del self._buffer[:n]
        return data

    async def readline(self) -> bytes:
        while True:
            index = self._buffer.find(b"\n")
            if index >= 0:
                line = bytes(self._buffer[: index + 1])
                del self._buffer[: index + 1]
                return line
            if not await self._fill():
                line = bytes(self._buffer)
                self._buffer.clear()
                return line

    async def receive(self) -> Message:
        """Read the next complete message.

        Raises:
            ChannelClosedError: If the channel was closed.
        """
        while True:
            line = await self.readline()
            if not line:
                raise ChannelClosedError("Channel closed")
            line = line.strip()
            if line:
                return decode_message(line)

    async def send(self, message: Message) -> None:
        await self.write(encode_message(message).encode())

    async def close(self) -> None:
        """Close the channel. Calling it again is a no-op."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._close_transport()
        finally:
            self._inbound_writer.close()
        logger.debug("Closed %s", type(self).__name__)


class StreamableHTTPChannel(DuplexChannel):
    """Client channel over ``POST`` for outbound and a ``GET`` push stream for inbound.

    The push stream is opened on the first read once the server assigned a
    session id. Responses to POSTed requests arrive in the POST response body
    and share the inbound buffer with pushed events, in no particular order.
    """

    def __init__(
        self,
        url: str,
        *,
        config: ClientConfig | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__()
        self.url = url
        self._config = config or ClientConfig()
        self._http = http_session
        self._owns_http = http_session is None
        self.session_id: str | None = None
        self.last_event_id: int | None = None
        self._wants_push = False
        self._push_started = False
        self._push_scope: anyio.CancelScope | None = None
        self._decoder: FrameDecoder | None = None

    @property
    def last_activity(self) -> float | None:
        """Monotonic time the push stream last carried anything, keepalives included."""
        return self._decoder.last_activity if self._decoder is not None else None

    @property
    def keepalives_seen(self) -> int:
        return self._decoder.comments_seen if self._decoder is not None else 0

    async def _open(self) -> None:
        if self._http is None:
            self._http = aiohttp.ClientSession(headers=self._config.headers)

    async def _close_transport(self) -> None:
        if self._push_scope is not None:
            self._push_scope.cancel()
        if self._owns_http and self._http is not None:
            await self._http.close()

    def _headers(self, accept: str) -> dict[str, str]:
        headers = {"Accept": accept}
        if self.session_id:
            headers[MCP_SESSION_ID_HEADER] = self.session_id
        if self.protocol_version:
            headers[MCP_PROTOCOL_VERSION_HEADER] = self.protocol_version
        return headers

    def _http_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        if self._http is None:
            raise RuntimeError("Channel is not open, use it as an async context manager")
        return self._http

    def _capture_session_id(self, response: aiohttp.ClientResponse) -> None:
        session_id = response.headers.get(MCP_SESSION_ID_HEADER)
        if session_id and session_id != self.session_id:
            logger.debug("Received session ID: %s", session_id)
            self.session_id = session_id
            self._maybe_open_push()

    async def write(self, data: bytes) -> int:
        http = self._http_session()
        headers = self._headers(f"{CONTENT_TYPE_JSON}, {CONTENT_TYPE_SSE}")
        headers["Content-Type"] = CONTENT_TYPE_JSON
        try:
            async with http.post(self.url, data=data, headers=headers) as response:
                self._capture_session_id(response)
                if response.status == 202:
                    return len(data)
                if not 200 <= response.status < 300:
                    body = await response.text()
                    raise ChannelWriteError(f"POST failed with status {response.status}: {body}", response.status)

                if response.content_type == CONTENT_TYPE_SSE:
                    decoder = FrameDecoder()
                    async for chunk in response.content.iter_any():
                        self._deliver(decoder.feed(chunk))
                else:
                    body = await response.read()
                    if body.strip():
                        self._feed(_as_line(body))
        except aiohttp.ClientError as err:
            raise ChannelWriteError(f"POST failed: {err}") from err
        return len(data)

    def _deliver(self, items: list[Frame | MalformedFrameError]) -> None:
        for item in items:
            if isinstance(item, MalformedFrameError):
                logger.warning("Skipping malformed event: %s", item)
                self._emit(item)
                continue
            self._feed(_as_line(encode_message(item.message)))
            if item.event_id is not None:
                self.last_event_id = item.event_id

    def _start_reading(self) -> None:
        self._wants_push = True
        self._maybe_open_push()

    def _maybe_open_push(self) -> None:
        if self._push_started or not self._wants_push or self.session_id is None or self._closed:
            return
        if self._task_group is None:
            return
        self._push_started = True
        self._task_group.start_soon(self._run_push)

    async def _connect_push(self) -> aiohttp.ClientResponse:
        """Open the ``GET`` push stream, resuming after :attr:`last_event_id`.

        Raises:
            SessionNotFoundError: If the server no longer knows the session.
            ReplayGapError: If events after ``last_event_id`` are gone.
            ChannelReadError: For any other failure.
        """
        http = self._http_session()
        headers = self._headers(CONTENT_TYPE_SSE)
        if self.last_event_id is not None:
            headers[LAST_EVENT_ID_HEADER] = str(self.last_event_id)
        timeout = aiohttp.ClientTimeout(total=None, sock_read=self._config.read_timeout)
        try:
            response = await http.get(self.url, headers=headers, timeout=timeout)
        except aiohttp.ClientError as err:
            raise ChannelReadError(f"Push stream connection failed: {err}") from err

        if response.status == 200:
            return response
        response.release()
        if response.status in (400, 404):
            raise SessionNotFoundError(self.session_id, f"Push stream rejected with status {response.status}")
        if response.status == 410:
            raise ReplayGapError(self.last_event_id or 0)
        raise ChannelReadError(f"Push stream failed with status {response.status}")

    async def _run_push(self, response: aiohttp.ClientResponse | None = None) -> None:
        with anyio.CancelScope() as scope:
            self._push_scope = scope
            try:
                if response is None:
                    response = await self._connect_push()
                logger.debug("Push stream open for session %s", self.session_id)
                self._decoder = decoder = FrameDecoder()
                async with response:
                    async for chunk in response.content.iter_any():
                        self._deliver(decoder.feed(chunk))
            except TransportError as err:
                self._emit(err)
            except (aiohttp.ClientError, ConnectionError, TimeoutError) as err:
                self._emit(ChannelReadError(f"Push stream dropped: {err}"))
            else:
                if not self._closed:
                    self._emit(ChannelReadError("Push stream ended by server"))

    async def reconnect(self) -> None:
        """Reopen the push stream after a drop, resuming with ``Last-Event-ID``.

        Raises:
            SessionNotFoundError: If the server no longer knows the session.
            ReplayGapError: If the events to resume from were evicted.
            ChannelReadError: For any other failure.
        """
        if self._push_scope is not None:
            self._push_scope.cancel()
        response = await self._connect_push()
        assert self._task_group is not None
        self._push_started = True
        self._task_group.start_soon(self._run_push, response)
        logger.info("Resumed push stream of session %s after event %s", self.session_id, self.last_event_id)

    async def terminate(self) -> None:
        """Ask the server to close the session."""
        if self.session_id is None:
            return
        http = self._http_session()
        try:
            async with http.delete(self.url, headers=self._headers(CONTENT_TYPE_JSON)) as response:
                if response.status not in (200, 202, 204, 404):
                    raise ChannelWriteError(f"DELETE failed with status {response.status}", response.status)
        except aiohttp.ClientError as err:
            raise ChannelWriteError(f"DELETE failed: {err}") from err
        logger.info("Terminated session %s", self.session_id)
