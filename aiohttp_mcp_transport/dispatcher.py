"""
Dispatcher Module

Single entry point for every decoded inbound message, on both the server and
the client side of a channel.

Requests run inside their own :class:`anyio.CancelScope`, registered with the
channel's :class:`RequestRegistry` so ``notifications/cancelled`` can stop them.
The registry is marked complete before a response is handed back, so a
cancellation arriving while the response is in transit is a no-op.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import anyio
from aiohttp import web
from mcp.shared.exceptions import McpError
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    CancelledNotificationParams,
    ErrorData,
    LoggingLevel,
    ProgressNotificationParams,
)
from pydantic import BaseModel, ValidationError

from .codec import decode_message
from .errors import MalformedFrameError, ProgressOrderError
from .registry import RequestRegistry
from .types import (
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    Message,
    ProgressToken,
    RequestId,
)

if TYPE_CHECKING:
    from .auth import Claims
    from .session import Session

__all__ = [
    "ChannelContext",
    "Dispatcher",
    "Handler",
    "Middleware",
    "NotificationHandler",
    "RequestContext",
    "logging_middleware",
    "recovery_middleware",
    "require_claims",
]

logger = logging.getLogger(__name__)

# RFC 5424 severities, least severe first
LOGGING_LEVELS: Final[tuple[LoggingLevel, ...]] = (
    "debug",
    "info",
    "notice",
    "warning",
    "error",
    "critical",
    "alert",
    "emergency",
)


@dataclass(slots=True, kw_only=True)
class ChannelContext:
    """Where an inbound message came from and how to talk back.

    ``send`` writes a message to the peer on the channel's outbound side. For
    server sessions that is :meth:`Session.push`, so it lands in the Event Log.
    """

    registry: RequestRegistry
    send: Callable[[Message], Awaitable[Any]]
    session: "Session | None" = None
    http_request: web.Request | None = None
    claims: "Claims | None" = None


class RequestContext:
    """Per-message view handed to handlers and middleware."""

    def __init__(
        self,
        channel: ChannelContext,
        message: JSONRPCRequest | JSONRPCNotification,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> None:
        self.channel = channel
        self.message = message
        self._cancel_scope = cancel_scope

    @property
    def request_id(self) -> RequestId | None:
        return self.message.id if isinstance(self.message, JSONRPCRequest) else None

    @property
    def method(self) -> str:
        return self.message.method

    @property
    def params(self) -> dict[str, Any]:
        return self.message.params or {}

    @property
    def session(self) -> "Session | None":
        return self.channel.session

    @property
    def http_request(self) -> web.Request | None:
        return self.channel.http_request

    @property
    def claims(self) -> "Claims | None":
        return self.channel.claims

    @property
    def progress_token(self) -> ProgressToken | None:
        meta = self.params.get("_meta")
        if isinstance(meta, dict):
            return meta.get("progressToken")
        return None

    @property
    def cancelled(self) -> bool:
        return self._cancel_scope is not None and self._cancel_scope.cancel_called

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self.channel.send(JSONRPCNotification(jsonrpc="2.0", method=method, params=params))

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> JSONRPCResponse:
        """Ask the peer something while handling this message.

        Only available on server sessions, where the answer comes back as a POST.
        """
        if self.session is None:
            raise RuntimeError("Server requests need a session")
        return await self.session.send_request(method, params, timeout)

    async def report_progress(self, progress: float, total: float | None = None, message: str | None = None) -> None:
        """Send ``notifications/progress`` if the caller asked for progress."""
        token = self.progress_token
        if token is None:
            return
        params = ProgressNotificationParams(progressToken=token, progress=progress, total=total, message=message)
        await self.send_notification(
            "notifications/progress", params.model_dump(by_alias=True, exclude_none=True, mode="json")
        )

    async def log(self, level: LoggingLevel, data: Any, logger_name: str | None = None) -> bool:
        """Forward a log message to the client as ``notifications/message``.

        Nothing is sent until the client picked a level with ``logging/setLevel``,
        or when ``level`` is below it.

        Returns:
            Whether the message was sent.
        """
        min_level = self.session.log_level if self.session is not None else None
        if min_level is None or LOGGING_LEVELS.index(level) < LOGGING_LEVELS.index(min_level):
            return False
        params: dict[str, Any] = {"level": level, "data": data}
        if logger_name is not None:
            params["logger"] = logger_name
        await self.send_notification("notifications/message", params)
        return True


Handler = Callable[[RequestContext, JSONRPCRequest], Awaitable[Any]]
NotificationHandler = Callable[[RequestContext, JSONRPCNotification], Awaitable[None]]
Middleware = Callable[[Handler], Handler]


def _error_response(request_id: RequestId, code: int, message: str, data: Any = None) -> JSONRPCError:
    return JSONRPCError(jsonrpc="2.0", id=request_id, error=ErrorData(code=code, message=message, data=data))


def _to_response(request_id: RequestId, result: Any) -> Message:
    if isinstance(result, JSONRPCResponse | JSONRPCError):
        return result
    if result is None:
        result = {}
    elif isinstance(result, BaseModel):
        result = result.model_dump(by_alias=True, exclude_none=True, mode="json")
    elif not isinstance(result, dict):
        raise TypeError(f"Handler returned unsupported result type {type(result).__name__}")
    return JSONRPCResponse(jsonrpc="2.0", id=request_id, result=result)


class Dispatcher:
    """Routes requests and notifications to handlers and responses to waiters."""

    def __init__(self, middlewares: Iterable[Middleware] = ()) -> None:
        self._request_handlers: dict[str, Handler] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._middlewares: list[Middleware] = list(middlewares)

    def use(self, middleware: Middleware) -> Middleware:
        """Append a middleware. The first one registered runs outermost."""
        self._middlewares.append(middleware)
        return middleware

    def add_request_handler(self, method: str, handler: Handler) -> None:
        if method in self._request_handlers:
            logger.warning("Replacing request handler for %s", method)
        self._request_handlers[method] = handler

    def add_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        self._notification_handlers[method] = handler

    def request_handler(self, method: str) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self.add_request_handler(method, fn)
            return fn

        return decorator

    def notification_handler(self, method: str) -> Callable[[NotificationHandler], NotificationHandler]:
        def decorator(fn: NotificationHandler) -> NotificationHandler:
            self.add_notification_handler(method, fn)
            return fn

        return decorator

    def has_request_handler(self, method: str) -> bool:
        return method in self._request_handlers

    def _wrap(self, handler: Handler) -> Handler:
        for middleware in reversed(self._middlewares):
            handler = middleware(handler)
        return handler

    async def on_message(self, raw: str | bytes | Message, context: ChannelContext) -> Message | None:
        """Handle one inbound message.

        Returns:
            The response to send back for a request, an error response for an
            undecodable message, or ``None`` when nothing must be sent.
        """
        if isinstance(raw, str | bytes | bytearray):
            try:
                message = decode_message(raw)
            except MalformedFrameError as err:
                logger.warning("Dropping malformed message: %s", err)
                return _error_response("server-error", err.code, str(err))
        else:
            message = raw

        if isinstance(message, JSONRPCRequest):
            return await self._handle_request(message, context)
        if isinstance(message, JSONRPCNotification):
            await self._handle_notification(message, context)
            return None

        if not context.registry.resolve(message):
            logger.warning("Received response for unknown request %r", message.id)
        return None

    async def _handle_request(self, request: JSONRPCRequest, context: ChannelContext) -> Message | None:
        handler = self._request_handlers.get(request.method)
        if handler is None:
            logger.debug("No handler for method %s", request.method)
            return _error_response(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")

        scope = anyio.CancelScope()
        try:
            context.registry.register(request.id, scope)
        except ValueError as err:
            return _error_response(request.id, INVALID_REQUEST, str(err))

        ctx = RequestContext(context, request, scope)
        response: Message | None = None
        try:
            with scope:
                response = await self._invoke(handler, ctx, request)
        finally:
            still_pending = context.registry.complete(request.id)

        if not still_pending:
            logger.debug("Request %r was cancelled, dropping its response", request.id)
            return None
        return response

    async def _invoke(self, handler: Handler, ctx: RequestContext, request: JSONRPCRequest) -> Message:
        try:
            result = await self._wrap(handler)(ctx, request)
            return _to_response(request.id, result)
        except McpError as err:
            return JSONRPCError(jsonrpc="2.0", id=request.id, error=err.error)
        except Exception as err:
            logger.exception("Error handling request %s", request.method)
            return _error_response(request.id, INTERNAL_ERROR, f"Internal error: {err}")

    async def _handle_notification(self, notification: JSONRPCNotification, context: ChannelContext) -> None:
        if notification.method == "notifications/cancelled":
            try:
                params = CancelledNotificationParams.model_validate(notification.params or {})
            except ValidationError as err:
                logger.warning("Invalid cancellation notification: %s", err)
                return
            if params.requestId is not None:
                context.registry.cancel(params.requestId, params.reason)

        elif notification.method == "notifications/progress":
            try:
                params = ProgressNotificationParams.model_validate(notification.params or {})
                context.registry.update_progress(params.progressToken, params.progress)
            except ValidationError as err:
                logger.warning("Invalid progress notification: %s", err)
                return
            except ProgressOrderError as err:
                logger.warning("Dropping progress update: %s", err)
                return

        handler = self._notification_handlers.get(notification.method)
        if handler is None:
            logger.debug("No handler for notification %s", notification.method)
            return
        try:
            await handler(RequestContext(context, notification), notification)
        except Exception:
            logger.exception("Error handling notification %s", notification.method)


def logging_middleware(handler: Handler) -> Handler:
    async def wrapper(ctx: RequestContext, request: JSONRPCRequest) -> Any:
        start = anyio.current_time()
        logger.info("-> %s (id=%r)", request.method, request.id)
        try:
            return await handler(ctx, request)
        finally:
            logger.info("<- %s (id=%r) in %.3fs", request.method, request.id, anyio.current_time() - start)

    return wrapper


def recovery_middleware(handler: Handler) -> Handler:
    """Turn unexpected handler failures into a JSON-RPC internal error."""

    async def wrapper(ctx: RequestContext, request: JSONRPCRequest) -> Any:
        try:
            return await handler(ctx, request)
        except McpError:
            raise
        except Exception as err:
            logger.exception("Recovered from failure in %s", request.method)
            raise McpError(ErrorData(code=INTERNAL_ERROR, message=f"Internal error: {err}")) from err

    return wrapper


def require_claims(*scopes: str) -> Middleware:
    """Reject requests without authenticated claims holding every scope in ``scopes``."""

    def middleware(handler: Handler) -> Handler:
        async def wrapper(ctx: RequestContext, request: JSONRPCRequest) -> Any:
            claims = ctx.claims
            if claims is None:
                raise McpError(ErrorData(code=INVALID_REQUEST, message="Authentication required"))
            missing = [scope for scope in scopes if scope not in claims.scopes]
            if missing:
                raise McpError(
                    ErrorData(code=INVALID_PARAMS, message=f"Missing required scope(s): {', '.join(missing)}")
                )
            return await handler(ctx, request)

        return wrapper

    return middleware
