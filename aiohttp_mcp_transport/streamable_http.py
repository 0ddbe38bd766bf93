"""
StreamableHTTP Server Transport Module

This module implements the HTTP side of the session transport.

* ``POST`` carries one JSON-RPC envelope from the client. Requests are answered
  in the response body, notifications and responses get ``202 Accepted``.
* ``GET`` attaches the long-lived push stream that carries server-to-client
  messages as ``text/event-stream`` events, resumable with ``Last-Event-ID``.
* ``DELETE`` closes the session, ``OPTIONS`` answers CORS preflights.
"""

import fnmatch
import logging
from collections.abc import Awaitable, Callable
from http import HTTPStatus

import anyio
from aiohttp import web
from aiohttp_sse import EventSourceResponse, sse_response
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import INTERNAL_ERROR, INVALID_REQUEST

from .auth import get_claims
from .codec import decode_message, encode_message
from .core import MCPServer
from .errors import ReplayGapError, TransportError, error_body
from .session import PushStream, Session
from .types import (
    CONTENT_TYPE_JSON,
    CONTENT_TYPE_SSE,
    DEFAULT_NEGOTIATED_VERSION,
    LAST_EVENT_ID_HEADER,
    MCP_PROTOCOL_VERSION_HEADER,
    MCP_SESSION_ID_HEADER,
    EventRecord,
    JSONRPCRequest,
    JSONRPCResponse,
    Message,
)

__all__ = ["StreamableHTTPHandler", "match_origin"]

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "GET, POST, DELETE, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Mcp-Session-Id, Mcp-Protocol-Version, X-API-Key, Authorization, Last-Event-ID"

READ_CHUNK_SIZE = 64 * 1024


def match_origin(origin: str, pattern: str) -> bool:
    """Match an ``Origin`` header against an exact value or a wildcard pattern.

    ``*`` matches everything, ``https://*.example.com`` matches any subdomain.
    """
    if pattern in ("*", origin):
        return True
    return "*" in pattern and fnmatch.fnmatchcase(origin, pattern)


def _create_error_response(
    error_message: str,
    status_code: HTTPStatus,
    error_code: int = INVALID_REQUEST,
    session_id: str | None = None,
    headers: dict[str, str] | None = None,
) -> web.Response:
    """Create an error response with a simple string message."""
    response_headers = {"Content-Type": CONTENT_TYPE_JSON}
    if headers:
        response_headers.update(headers)
    if session_id:
        response_headers[MCP_SESSION_ID_HEADER] = session_id

    return web.Response(body=error_body(error_message, error_code), status=status_code, headers=response_headers)


def _create_json_response(
    response_message: Message | None,
    status_code: HTTPStatus = HTTPStatus.OK,
    session_id: str | None = None,
) -> web.Response:
    """Create a JSON response from a JSON-RPC message"""
    response_headers = {"Content-Type": CONTENT_TYPE_JSON}
    if session_id:
        response_headers[MCP_SESSION_ID_HEADER] = session_id

    return web.Response(
        body=encode_message(response_message) if response_message else None,
        status=status_code,
        headers=response_headers,
    )


def _error_from_exception(err: TransportError, session_id: str | None = None) -> web.Response:
    return _create_error_response(str(err), HTTPStatus(err.status), err.code, session_id)


def _check_accept_headers(request: web.Request) -> tuple[bool, bool]:
    """Check if the request accepts the required media types."""
    accept_header = request.headers.get("accept", "")
    accept_types = [media_type.strip() for media_type in accept_header.split(",")]

    has_json = any(media_type.startswith((CONTENT_TYPE_JSON, "*/*")) for media_type in accept_types)
    has_sse = any(media_type.startswith((CONTENT_TYPE_SSE, "*/*")) for media_type in accept_types)

    return has_json, has_sse


def _check_content_type(request: web.Request) -> bool:
    """Check if the request has the correct Content-Type."""
    content_type = request.headers.get("content-type", "")
    content_type_parts = [part.strip() for part in content_type.split(";")[0].split(",")]

    return any(part == CONTENT_TYPE_JSON for part in content_type_parts)


class StreamableHTTPHandler:
    """aiohttp request handler serving every session of an :class:`MCPServer`."""

    __slots__ = ("_server",)

    def __init__(self, server: MCPServer) -> None:
        self._server = server

    @property
    def server(self) -> MCPServer:
        return self._server

    async def handle_request(self, request: web.Request) -> web.StreamResponse:
        """Application entry point that handles all HTTP requests"""
        origin = request.headers.get("origin")
        if origin and not self._origin_allowed(origin):
            logger.warning("Rejected request from origin %s", origin)
            return _create_error_response("Forbidden: Origin not allowed", HTTPStatus.FORBIDDEN)

        cors_headers = self._cors_headers(origin)
        if request.method == "OPTIONS":
            return self._handle_preflight(origin)
        if request.method == "GET":
            return await self._handle_get_request(request, cors_headers)

        if request.method == "POST":
            response = await self._handle_post_request(request)
        elif request.method == "DELETE":
            response = await self._handle_delete_request(request)
        else:
            response = _create_error_response(
                "Method Not Allowed",
                HTTPStatus.METHOD_NOT_ALLOWED,
                headers={"Allow": ALLOWED_METHODS},
            )
        response.headers.update(cors_headers)
        return response

    def _origin_allowed(self, origin: str) -> bool:
        patterns = self._server.config.allowed_origins
        return not patterns or any(match_origin(origin, pattern) for pattern in patterns)

    def _cors_headers(self, origin: str | None) -> dict[str, str]:
        if not origin:
            return {}
        allowed = origin if self._server.config.allowed_origins else "*"
        return {
            "Access-Control-Allow-Origin": allowed,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Expose-Headers": "Mcp-Session-Id",
        }

    def _handle_preflight(self, origin: str | None) -> web.Response:
        headers = self._cors_headers(origin) or {"Access-Control-Allow-Origin": "*"}
        headers.update(
            {
                "Access-Control-Allow-Methods": ALLOWED_METHODS,
                "Access-Control-Allow-Headers": ALLOWED_HEADERS,
                "Access-Control-Max-Age": "86400",
            }
        )
        return web.Response(status=HTTPStatus.NO_CONTENT, headers=headers)

    def _validate_session(self, request: web.Request) -> Session | web.Response:
        """Resolve the session named by the request, or the error response to send."""
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            return _create_error_response("Bad Request: Missing session ID", HTTPStatus.BAD_REQUEST)
        try:
            return self._server.sessions.get(session_id)
        except TransportError as err:
            logger.debug("Rejected session %s: %s", session_id, err)
            return _create_error_response(f"Not Found: {err}", HTTPStatus.NOT_FOUND)

    def _validate_protocol_version(self, request: web.Request) -> web.Response | None:
        """Validate the protocol version header in the request."""
        protocol_version = request.headers.get(MCP_PROTOCOL_VERSION_HEADER, DEFAULT_NEGOTIATED_VERSION)
        if protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            supported_versions = ", ".join(SUPPORTED_PROTOCOL_VERSIONS)
            return _create_error_response(
                f"Bad Request: Unsupported protocol version: {protocol_version}. "
                + f"Supported versions: {supported_versions}",
                HTTPStatus.BAD_REQUEST,
            )
        return None

    def _validate_request_headers(self, request: web.Request) -> Session | web.Response:
        session = self._validate_session(request)
        if isinstance(session, web.Response):
            return session
        if error_response := self._validate_protocol_version(request):
            return error_response
        return session

    async def _read_body(self, request: web.Request) -> bytes | None:
        """Read the body, or return ``None`` once it exceeds the size limit."""
        limit = self._server.config.max_message_size
        if request.content_length is not None and request.content_length > limit:
            return None
        body = bytearray()
        async for chunk in request.content.iter_chunked(READ_CHUNK_SIZE):
            body.extend(chunk)
            if len(body) > limit:
                return None
        return bytes(body)

    async def _handle_post_request(self, request: web.Request) -> web.Response:
        """Handle POST requests containing JSON-RPC messages."""
        has_json, _ = _check_accept_headers(request)
        if not has_json:
            return _create_error_response(
                "Not Acceptable: Client must accept application/json",
                HTTPStatus.NOT_ACCEPTABLE,
            )

        if not _check_content_type(request):
            return _create_error_response(
                "Unsupported Media Type: Content-Type must be application/json",
                HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
            )

        body = await self._read_body(request)
        if body is None:
            return _create_error_response(
                "Payload Too Large: Message exceeds maximum size",
                HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            )

        try:
            message = decode_message(body)
        except TransportError as err:
            return _error_from_exception(err)

        is_initialization_request = isinstance(message, JSONRPCRequest) and message.method == "initialize"
        if is_initialization_request and not request.headers.get(MCP_SESSION_ID_HEADER):
            return await self._handle_initialize(request, message)

        session = self._validate_request_headers(request)
        if isinstance(session, web.Response):
            return session

        try:
            response_message = await self._server.handle_message(message, session, request, get_claims(request))
        except TransportError as err:
            return _error_from_exception(err, session.session_id)
        except Exception as err:
            logger.exception("Error handling POST request")
            return _create_error_response(
                f"Error handling POST request: {err}",
                HTTPStatus.INTERNAL_SERVER_ERROR,
                INTERNAL_ERROR,
                session.session_id,
            )

        # Notifications, responses and cancelled requests carry no body
        if response_message is None:
            return _create_json_response(None, HTTPStatus.ACCEPTED, session.session_id)
        return _create_json_response(response_message, session_id=session.session_id)

    async def _handle_initialize(self, request: web.Request, message: JSONRPCRequest) -> web.Response:
        sessions = self._server.sessions
        session = sessions.create()
        try:
            response_message = await self._server.handle_message(message, session, request, get_claims(request))
        except Exception as err:
            sessions.discard(session.session_id)
            logger.exception("Error initializing session")
            return _create_error_response(
                f"Error initializing session: {err}",
                HTTPStatus.INTERNAL_SERVER_ERROR,
                INTERNAL_ERROR,
            )

        if not isinstance(response_message, JSONRPCResponse):
            sessions.discard(session.session_id)
            if response_message is None:
                return _create_json_response(None, HTTPStatus.ACCEPTED)
            return _create_json_response(response_message)

        sessions.activate(session)
        return _create_json_response(response_message, session_id=session.session_id)

    async def _handle_get_request(self, request: web.Request, cors_headers: dict[str, str]) -> web.StreamResponse:
        """
        Handle GET request to attach the push stream.

        This allows the server to communicate to the client without the client
        first sending data via HTTP POST. Events missed while no stream was
        attached are replayed first.
        """
        _, has_sse = _check_accept_headers(request)
        if not has_sse:
            return _create_error_response(
                "Not Acceptable: Client must accept text/event-stream",
                HTTPStatus.NOT_ACCEPTABLE,
            )

        session = self._validate_request_headers(request)
        if isinstance(session, web.Response):
            return session

        last_event_id = None
        if raw_last_event_id := request.headers.get(LAST_EVENT_ID_HEADER):
            try:
                last_event_id = int(raw_last_event_id)
            except ValueError:
                return _create_error_response(
                    f"Bad Request: Last-Event-ID must be an integer, got {raw_last_event_id!r}",
                    HTTPStatus.BAD_REQUEST,
                    session_id=session.session_id,
                )

        try:
            stream = await session.attach(last_event_id)
        except ReplayGapError as err:
            logger.info("Session %s cannot resume: %s", session.session_id, err)
            return _create_error_response(f"Gone: {err}", HTTPStatus.GONE, session_id=session.session_id)
        except TransportError as err:
            return _error_from_exception(err, session.session_id)

        headers = {**cors_headers, MCP_SESSION_ID_HEADER: session.session_id}
        try:
            # This sends the headers immediately, pings keep an idle stream alive
            async with sse_response(
                request,
                headers=headers,
                ping_interval=self._server.config.session.keepalive_interval,
            ) as response:
                await self._run_push_stream(session, stream, response)
        finally:
            session.detach(stream)
        return response

    async def _run_push_stream(self, session: Session, stream: PushStream, response: EventSourceResponse) -> None:
        async def send_event(record: EventRecord) -> None:
            logger.debug("Sending event %d via SSE", record.event_id)
            await response.send(record.payload, id=str(record.event_id))

        async with anyio.create_task_group() as tg:
            # https://trio.readthedocs.io/en/latest/reference-core.html#custom-supervisors
            async def cancel_on_finish(coro: Callable[[], Awaitable[None]]) -> None:
                try:
                    await coro()
                except (ConnectionResetError, TimeoutError):
                    logger.debug("Client of session %s went away", session.session_id)
                tg.cancel_scope.cancel()

            tg.start_soon(cancel_on_finish, lambda: stream.pump(send_event))
            # Returns once a ping finds the connection closed
            tg.start_soon(cancel_on_finish, response.wait)
        logger.debug("Closing push stream of session %s", session.session_id)

    async def _handle_delete_request(self, request: web.Request) -> web.Response:
        """Handle DELETE requests for explicit session termination."""
        session = self._validate_request_headers(request)
        if isinstance(session, web.Response):
            return session

        try:
            await self._server.sessions.close(session.session_id)
        except TransportError as err:
            return _error_from_exception(err)
        logger.info("Terminated session %s on client request", session.session_id)
        return _create_json_response(None, HTTPStatus.OK)
