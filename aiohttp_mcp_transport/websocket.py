"""
WebSocket transport.

Both directions share one socket and every text frame carries exactly one
JSON-RPC envelope. On the server each socket owns one session for its whole
lifetime, so outbound messages still go through the session's Event Log.
"""

import logging

import aiohttp
import anyio
from aiohttp import WSMsgType, web

from .auth import Claims, get_claims
from .channel import DuplexChannel, _as_line
from .core import MCPServer
from .errors import ChannelClosedError, ChannelReadError, ChannelWriteError, TransportError
from .session import Session
from .streamable_http import match_origin
from .types import EventRecord

__all__ = ["WebSocketChannel", "WebSocketHandler"]

logger = logging.getLogger(__name__)


class WebSocketChannel(DuplexChannel):
    """Client channel over a single WebSocket connection."""

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        heartbeat: float | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__()
        self.url = url
        self._headers = headers or {}
        self._heartbeat = heartbeat
        self._http = http_session
        self._owns_http = http_session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def _open(self) -> None:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        try:
            self._ws = await self._http.ws_connect(self.url, headers=self._headers, heartbeat=self._heartbeat)
        except aiohttp.ClientError as err:
            if self._owns_http:
                await self._http.close()
            raise ChannelReadError(f"WebSocket connection failed: {err}") from err
        assert self._task_group is not None
        self._task_group.start_soon(self._reader)

    async def _reader(self) -> None:
        assert self._ws is not None
        ws = self._ws
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                self._feed(_as_line(msg.data))
            elif msg.type == WSMsgType.BINARY:
                self._feed(_as_line(msg.data))
            elif msg.type == WSMsgType.ERROR:
                logger.warning("WebSocket error: %s", ws.exception())
                break
        if not self._closed:
            self._emit(ChannelReadError(f"WebSocket closed by server (code {ws.close_code})"))

    async def write(self, data: bytes) -> int:
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        if self._ws is None or self._ws.closed:
            raise ChannelWriteError("WebSocket is not connected")
        try:
            await self._ws.send_str(data.decode())
        except (aiohttp.ClientError, ConnectionError) as err:
            raise ChannelWriteError(f"WebSocket send failed: {err}") from err
        return len(data)

    async def _close_transport(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._owns_http and self._http is not None:
            await self._http.close()


class WebSocketHandler:
    """aiohttp handler serving one session per WebSocket connection."""

    __slots__ = ("_heartbeat", "_server")

    def __init__(self, server: MCPServer, heartbeat: float | None = None) -> None:
        self._server = server
        self._heartbeat = heartbeat

    async def handle_request(self, request: web.Request) -> web.StreamResponse:
        origin = request.headers.get("origin")
        patterns = self._server.config.allowed_origins
        if origin and patterns and not any(match_origin(origin, pattern) for pattern in patterns):
            logger.warning("Rejected WebSocket from origin %s", origin)
            raise web.HTTPForbidden(text="Forbidden: Origin not allowed")

        ws = web.WebSocketResponse(heartbeat=self._heartbeat, max_msg_size=self._server.config.max_message_size)
        await ws.prepare(request)

        sessions = self._server.sessions
        session = sessions.create()
        sessions.activate(session)
        stream = await session.attach()
        claims = get_claims(request)
        logger.info("WebSocket session %s opened", session.session_id)

        async def send(record: EventRecord) -> None:
            await ws.send_str(record.payload)

        async def pump() -> None:
            try:
                await stream.pump(send)
            except ConnectionResetError:
                logger.debug("WebSocket of session %s went away", session.session_id)
            # The session was closed or expired server side
            await ws.close()

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(pump)
                async for msg in ws:
                    if msg.type == WSMsgType.TEXT:
                        # Concurrent so a cancellation can overtake a running request
                        tg.start_soon(self._handle_text, session, msg.data, request, claims)
                    elif msg.type == WSMsgType.ERROR:
                        logger.warning("WebSocket error on session %s: %s", session.session_id, ws.exception())
                tg.cancel_scope.cancel()
        finally:
            session.detach(stream)
            if session.session_id in sessions:
                await sessions.close(session.session_id)
            logger.info("WebSocket session %s closed", session.session_id)
        return ws

    async def _handle_text(self, session: Session, data: str, request: web.Request, claims: Claims | None) -> None:
        try:
            response = await self._server.handle_message(data, session, request, claims)
            if response is not None:
                await session.push(response)
        except TransportError as err:
            logger.debug("Dropping message for session %s: %s", session.session_id, err)
