from dataclasses import dataclass, field

from mcp.types import LATEST_PROTOCOL_VERSION, Implementation

from .types import MAXIMUM_MESSAGE_SIZE

__all__ = ["ClientConfig", "ServerConfig", "SessionConfig"]


@dataclass(frozen=True, slots=True, kw_only=True)
class SessionConfig:
    """Limits and timers applied to every server-side session.

    Attributes:
        event_log_capacity: Events retained per session for replay.
        event_log_max_age: Seconds an event stays replayable, ``None`` for no age bound.
        idle_timeout: Seconds without activity before a session expires.
        sweep_interval: Seconds between idle-expiry sweeps.
        keepalive_interval: Seconds between comment frames on an idle push stream.
        request_timeout: Default seconds to wait for a client's answer to a server request.
    """

    event_log_capacity: int = 1024
    event_log_max_age: float | None = None
    idle_timeout: float = 30 * 60
    sweep_interval: float = 5.0
    keepalive_interval: float = 30.0
    request_timeout: float | None = 60.0


@dataclass(frozen=True, slots=True, kw_only=True)
class ServerConfig:
    name: str = "aiohttp-mcp-transport"
    version: str = "0.1.0"
    instructions: str | None = None
    allowed_origins: tuple[str, ...] = ()
    max_message_size: int = MAXIMUM_MESSAGE_SIZE
    session: SessionConfig = field(default_factory=SessionConfig)


@dataclass(frozen=True, slots=True, kw_only=True)
class ClientConfig:
    client_info: Implementation = field(
        default_factory=lambda: Implementation(name="aiohttp-mcp-transport-client", version="0.1.0")
    )
    protocol_version: str = LATEST_PROTOCOL_VERSION
    request_timeout: float | None = 60.0
    reconnect_attempts: int = 3
    reconnect_delay: float = 0.5
    read_timeout: float | None = None
    headers: dict[str, str] = field(default_factory=dict)
