from .app import AppBuilder, build_mcp_app, setup_mcp_subapp
from .auth import APIKeyProvider, Claims, Provider
from .channel import DuplexChannel, StreamableHTTPChannel
from .client import MCPClient
from .config import ClientConfig, ServerConfig, SessionConfig
from .core import MCPServer
from .dispatcher import (
    Dispatcher,
    RequestContext,
    logging_middleware,
    recovery_middleware,
    require_claims,
)
from .errors import (
    AuthenticationError,
    ChannelClosedError,
    ChannelError,
    ChannelReadError,
    ChannelWriteError,
    MalformedFrameError,
    ProgressOrderError,
    ReplayGapError,
    RequestCancelledError,
    SessionExpiredError,
    SessionNotFoundError,
    TransportError,
)
from .types import JSONRPCError, JSONRPCNotification, JSONRPCRequest, JSONRPCResponse, Message, TransportMode
from .websocket import WebSocketChannel

__all__ = [
    "APIKeyProvider",
    "AppBuilder",
    "AuthenticationError",
    "ChannelClosedError",
    "ChannelError",
    "ChannelReadError",
    "ChannelWriteError",
    "Claims",
    "ClientConfig",
    "Dispatcher",
    "DuplexChannel",
    "JSONRPCError",
    "JSONRPCNotification",
    "JSONRPCRequest",
    "JSONRPCResponse",
    "MCPClient",
    "MCPServer",
    "MalformedFrameError",
    "Message",
    "ProgressOrderError",
    "Provider",
    "ReplayGapError",
    "RequestCancelledError",
    "RequestContext",
    "ServerConfig",
    "SessionConfig",
    "SessionExpiredError",
    "SessionNotFoundError",
    "StreamableHTTPChannel",
    "TransportError",
    "TransportMode",
    "WebSocketChannel",
    "build_mcp_app",
    "logging_middleware",
    "recovery_middleware",
    "require_claims",
    "setup_mcp_subapp",
]
