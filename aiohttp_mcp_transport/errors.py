from http import HTTPStatus

from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, PARSE_ERROR, ErrorData, JSONRPCError

__all__ = [
    "AuthenticationError",
    "ChannelClosedError",
    "ChannelError",
    "ChannelReadError",
    "ChannelWriteError",
    "MalformedFrameError",
    "ProgressOrderError",
    "ReplayGapError",
    "RequestCancelledError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "TransportError",
    "error_body",
]


class TransportError(Exception):
    """Base class for transport-level failures.

    ``status`` is the HTTP status the server answers with when the error ends an
    HTTP exchange, ``code`` the JSON-RPC error code used in the response body.
    """

    status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    code: int = INTERNAL_ERROR


class MalformedFrameError(TransportError):
    """A frame or envelope could not be decoded. Only that frame is lost."""

    status = HTTPStatus.BAD_REQUEST
    code = PARSE_ERROR


class SessionNotFoundError(TransportError):
    """The session id is unknown to the server."""

    status = HTTPStatus.NOT_FOUND
    code = INVALID_REQUEST

    def __init__(self, session_id: str | None, message: str = "Invalid or expired session ID") -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionExpiredError(SessionNotFoundError):
    """The session existed but was torn down after being idle."""

    def __init__(self, session_id: str | None) -> None:
        super().__init__(session_id, "Session expired")


class ReplayGapError(TransportError):
    """Resumption asked for events that are no longer retained."""

    status = HTTPStatus.GONE
    code = INVALID_REQUEST

    def __init__(self, last_event_id: int, floor: int | None = None) -> None:
        if floor is None:
            super().__init__(f"Cannot resume after event {last_event_id}")
        else:
            super().__init__(f"Cannot resume after event {last_event_id}: oldest retained event is {floor}")
        self.last_event_id = last_event_id
        self.floor = floor


class ChannelError(TransportError):
    """Base class for duplex channel failures."""


class ChannelWriteError(ChannelError):
    """An outbound message was not accepted. Never retried by the channel."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.http_status = status


class ChannelReadError(ChannelError):
    """The inbound connection dropped. The owner may reconnect and resume."""


class ChannelClosedError(ChannelError):
    """The channel or session was closed while a caller still waited on it."""


class ProgressOrderError(TransportError):
    """A progress update did not strictly increase. The update is dropped."""

    def __init__(self, token: object, value: float, last_value: float) -> None:
        super().__init__(f"Progress for token {token!r} must increase: {value} <= {last_value}")
        self.token = token
        self.value = value
        self.last_value = last_value


class AuthenticationError(TransportError):
    """Credentials or token were rejected by an auth provider."""

    status = HTTPStatus.UNAUTHORIZED
    code = INVALID_REQUEST


class RequestCancelledError(TransportError):
    """The local caller's request was cancelled before a response arrived."""


def error_body(message: str, code: int = INVALID_REQUEST) -> str:
    """JSON-RPC error body for HTTP errors that have no request id to answer."""
    error = JSONRPCError(jsonrpc="2.0", id="server-error", error=ErrorData(code=code, message=message))
    return error.model_dump_json(by_alias=True, exclude_none=True)
