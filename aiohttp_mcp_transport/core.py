import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from aiohttp import web
from mcp.shared.exceptions import McpError
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INVALID_PARAMS,
    LATEST_PROTOCOL_VERSION,
    ErrorData,
    Implementation,
    InitializeRequestParams,
    InitializeResult,
    LoggingCapability,
    ServerCapabilities,
    SetLevelRequestParams,
)
from pydantic import ValidationError

from .auth import Claims
from .config import ServerConfig
from .dispatcher import ChannelContext, Dispatcher, Handler, Middleware, NotificationHandler, RequestContext
from .session import Session, SessionManager
from .types import JSONRPCNotification, JSONRPCRequest, Message

__all__ = ["MCPServer"]

logger = logging.getLogger(__name__)


def _parse_params(model: Any, request: JSONRPCRequest) -> Any:
    try:
        return model.model_validate(request.params or {})
    except ValidationError as err:
        raise McpError(ErrorData(code=INVALID_PARAMS, message=f"Invalid params for {request.method}: {err}")) from err


class MCPServer:
    """Server side of the transport: sessions plus a dispatcher with the lifecycle methods."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        dispatcher: Dispatcher | None = None,
        capabilities: ServerCapabilities | None = None,
    ) -> None:
        self.config = config or ServerConfig()
        self.dispatcher = dispatcher or Dispatcher()
        self.sessions = SessionManager(self.config.session)
        self.capabilities = capabilities or ServerCapabilities(logging=LoggingCapability())

        self.dispatcher.add_request_handler("initialize", self._handle_initialize)
        self.dispatcher.add_request_handler("ping", self._handle_ping)
        self.dispatcher.add_request_handler("logging/setLevel", self._handle_set_level)
        self.dispatcher.add_notification_handler("notifications/initialized", self._handle_initialized)

    @property
    def server_info(self) -> Implementation:
        return Implementation(name=self.config.name, version=self.config.version)

    def request_handler(self, method: str) -> Callable[[Handler], Handler]:
        return self.dispatcher.request_handler(method)

    def notification_handler(self, method: str) -> Callable[[NotificationHandler], NotificationHandler]:
        return self.dispatcher.notification_handler(method)

    def use(self, middleware: Middleware) -> Middleware:
        return self.dispatcher.use(middleware)

    def run(self) -> AbstractAsyncContextManager[SessionManager]:
        """Run the session sweeper for the lifetime of the server."""
        return self.sessions.run()

    async def handle_message(
        self,
        raw: str | bytes | Message,
        session: Session,
        http_request: web.Request | None = None,
        claims: Claims | None = None,
    ) -> Message | None:
        context = ChannelContext(
            registry=session.registry,
            send=session.push,
            session=session,
            http_request=http_request,
            claims=claims,
        )
        return await self.dispatcher.on_message(raw, context)

    async def _handle_initialize(self, ctx: RequestContext, request: JSONRPCRequest) -> InitializeResult:
        params = _parse_params(InitializeRequestParams, request)
        if params.protocolVersion in SUPPORTED_PROTOCOL_VERSIONS:
            version = params.protocolVersion
        else:
            logger.info("Client asked for protocol %s, offering %s", params.protocolVersion, LATEST_PROTOCOL_VERSION)
            version = LATEST_PROTOCOL_VERSION

        if ctx.session is not None:
            ctx.session.protocol_version = version
            ctx.session.client_info = params.clientInfo.model_dump(exclude_none=True)
            logger.info("Session %s initialized by %s", ctx.session.session_id, params.clientInfo.name)

        return InitializeResult(
            protocolVersion=version,
            capabilities=self.capabilities,
            serverInfo=self.server_info,
            instructions=self.config.instructions,
        )

    async def _handle_initialized(self, ctx: RequestContext, notification: JSONRPCNotification) -> None:
        if ctx.session is not None:
            self.sessions.activate(ctx.session)

    async def _handle_ping(self, ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        return {}

    async def _handle_set_level(self, ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        params = _parse_params(SetLevelRequestParams, request)
        if ctx.session is not None:
            ctx.session.log_level = params.level
            logger.debug("Session %s log level set to %s", ctx.session.session_id, params.level)
        return {}
