import logging
from collections.abc import AsyncIterator, Sequence

from aiohttp import web
from aiohttp.typedefs import Middleware

from .core import MCPServer
from .streamable_http import StreamableHTTPHandler
from .types import TransportMode
from .websocket import WebSocketHandler

__all__ = ["AppBuilder", "build_mcp_app", "setup_mcp_subapp"]

logger = logging.getLogger(__name__)


class AppBuilder:
    """Aiohttp application builder for MCP server."""

    __slots__ = ("_http", "_middlewares", "_path", "_server", "_transport_mode", "_ws")

    def __init__(
        self,
        server: MCPServer,
        path: str = "/mcp",
        transport_mode: TransportMode = TransportMode.STREAMABLE,
        middlewares: Sequence[Middleware] = (),
    ) -> None:
        self._server = server
        self._path = path
        self._transport_mode = transport_mode
        self._middlewares = tuple(middlewares)

        if transport_mode == TransportMode.STREAMABLE:
            self._http: StreamableHTTPHandler | None = StreamableHTTPHandler(server)
            self._ws: WebSocketHandler | None = None
        elif transport_mode == TransportMode.WEBSOCKET:
            self._http = None
            self._ws = WebSocketHandler(server)
        else:
            raise ValueError(f"Unsupported transport mode: {transport_mode}")

    @property
    def path(self) -> str:
        """Return the path for the MCP server."""
        return self._path

    @property
    def server(self) -> MCPServer:
        return self._server

    def build(self, is_subapp: bool = False) -> web.Application:
        """Build the MCP server application."""
        app = web.Application(middlewares=self._middlewares)

        if is_subapp:
            # Use empty path due to building the app to use as a subapp with a prefix
            self.setup_routes(app, path="")
        else:
            # Use the provided path for the main app
            self.setup_routes(app, path=self._path)
        app.cleanup_ctx.append(self._server_lifespan)
        return app

    def setup_routes(self, app: web.Application, path: str) -> None:
        """Setup routes for the MCP server based on transport mode."""
        if self._http is not None:
            # POST for messages, GET for the push stream, DELETE and OPTIONS for session and CORS
            app.router.add_route("*", path, self._http.handle_request)
        elif self._ws is not None:
            app.router.add_get(path, self._ws.handle_request)
        else:
            raise ValueError(f"Unsupported transport mode: {self._transport_mode}")

    async def _server_lifespan(self, app: web.Application) -> AsyncIterator[None]:
        logger.info("Starting MCP %s transport on %s", self._transport_mode, self._path)
        async with self._server.run():
            yield
        logger.info("Stopped MCP %s transport", self._transport_mode)


def build_mcp_app(
    server: MCPServer,
    path: str = "/mcp",
    is_subapp: bool = False,
    transport_mode: TransportMode = TransportMode.STREAMABLE,
    middlewares: Sequence[Middleware] = (),
) -> web.Application:
    """Build the MCP server application."""
    return AppBuilder(server, path, transport_mode, middlewares).build(is_subapp=is_subapp)


def setup_mcp_subapp(
    app: web.Application,
    server: MCPServer,
    prefix: str = "/mcp",
    transport_mode: TransportMode = TransportMode.STREAMABLE,
    middlewares: Sequence[Middleware] = (),
) -> None:
    """Set up the MCP server sub-application with the given prefix."""
    mcp_app = build_mcp_app(server, prefix, is_subapp=True, transport_mode=transport_mode, middlewares=middlewares)
    app.add_subapp(prefix, mcp_app)
