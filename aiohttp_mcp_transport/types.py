import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeAlias

from mcp.types import (
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ProgressToken,
    RequestId,
)

__all__ = [
    "CONTENT_TYPE_JSON",
    "CONTENT_TYPE_SSE",
    "DEFAULT_NEGOTIATED_VERSION",
    "LAST_EVENT_ID_HEADER",
    "MAXIMUM_MESSAGE_SIZE",
    "MCP_PROTOCOL_VERSION_HEADER",
    "MCP_SESSION_ID_HEADER",
    "SESSION_ID_PATTERN",
    "EventRecord",
    "Frame",
    "JSONRPCMessage",
    "Message",
    "ProgressToken",
    "RequestId",
    "SessionState",
    "TransportMode",
]

DEFAULT_NEGOTIATED_VERSION = "2025-03-26"

# Maximum size for incoming messages
MAXIMUM_MESSAGE_SIZE = 4 * 1024 * 1024  # 4MB

# Header names
MCP_SESSION_ID_HEADER = "mcp-session-id"
MCP_PROTOCOL_VERSION_HEADER = "mcp-protocol-version"
LAST_EVENT_ID_HEADER = "last-event-id"

# Content types
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_SSE = "text/event-stream"

# Session ID validation pattern (visible ASCII characters ranging from 0x21 to 0x7E)
SESSION_ID_PATTERN = re.compile(r"^[\x21-\x7E]+$")

Message: TypeAlias = JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError


class TransportMode(str, Enum):
    """Transport modes for MCP server deployment."""

    STREAMABLE = "streamable"
    WEBSOCKET = "websocket"

    def __str__(self) -> str:
        return self.value


class SessionState(str, Enum):
    """Lifecycle states of a server-side session."""

    CREATED = "created"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"
    EXPIRED = "expired"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class EventRecord:
    """A pushed event retained for replay."""

    event_id: int
    payload: str
    emitted_at: float


@dataclass(frozen=True, slots=True)
class Frame:
    """A decoded push-stream event."""

    message: Message
    data: str = field(repr=False)
    event_id: int | None = None
