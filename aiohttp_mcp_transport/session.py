"""
Session Manager Module

Owns every server-side session: its id, Event Log, Request Registry and the
push stream currently attached to it.

Every server-to-client message goes through :meth:`Session.push`, which
appends to the Event Log and only then forwards to the attached push stream.
A client that reconnects with ``Last-Event-ID`` therefore replays exactly what
was sent. Sessions expire after ``idle_timeout`` seconds without activity.
"""

import itertools
import logging
import math
import secrets
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import asynccontextmanager
from typing import Any

import anyio
from mcp.shared.exceptions import McpError
from mcp.types import LoggingLevel

from .codec import encode_message
from .config import SessionConfig
from .errors import ChannelClosedError, ReplayGapError, SessionExpiredError, SessionNotFoundError
from .event_log import EventLog
from .registry import RequestRegistry
from .types import (
    DEFAULT_NEGOTIATED_VERSION,
    SESSION_ID_PATTERN,
    EventRecord,
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    Message,
    SessionState,
)

__all__ = ["PushStream", "Session", "SessionManager", "generate_session_id"]

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Return a new session id with 256 bits of entropy.

    The URL-safe base64 alphabet lies within the visible ASCII range 0x21-0x7E.
    """
    return secrets.token_urlsafe(32)


class PushStream:
    """Queue of events bound for one attached push connection.

    The session is the producer, a single pump task is the consumer. Closing
    the stream lets the pump flush what is already queued and then stop.
    ``on_written`` is called with each event id once ``send`` returned.
    """

    __slots__ = ("_drained", "_on_written", "_reader", "_writer")

    def __init__(self, on_written: Callable[[int], None] | None = None) -> None:
        self._writer, self._reader = anyio.create_memory_object_stream[EventRecord](math.inf)
        self._drained = anyio.Event()
        self._on_written = on_written

    def send_nowait(self, record: EventRecord) -> bool:
        try:
            self._writer.send_nowait(record)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            return False
        return True

    def close(self) -> None:
        self._writer.close()

    async def pump(self, send: Callable[[EventRecord], Awaitable[None]]) -> None:
        """Forward queued events to ``send`` until the stream is closed."""
        try:
            async with self._reader:
                async for record in self._reader:
                    await send(record)
                    if self._on_written is not None:
                        self._on_written(record.event_id)
        finally:
            self._drained.set()

    async def wait_drained(self) -> None:
        await self._drained.wait()


class Session:
    """A resumable conversation with one client."""

    def __init__(
        self,
        session_id: str,
        config: SessionConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not SESSION_ID_PATTERN.fullmatch(session_id):
            raise ValueError("Session ID must only contain visible ASCII characters (0x21-0x7E)")

        self.session_id = session_id
        self.state = SessionState.CREATED
        self.protocol_version = DEFAULT_NEGOTIATED_VERSION
        self.log_level: LoggingLevel | None = None
        self.client_info: dict[str, Any] | None = None
        self.event_log = EventLog(config.event_log_capacity, config.event_log_max_age, clock)
        self.registry = RequestRegistry()

        self._config = config
        self._clock = clock
        self._lock = anyio.Lock()
        self._stream: PushStream | None = None
        # Highest event id a push stream actually wrote out
        self._written_through = 0
        self._request_ids = itertools.count(1)

        self.created_at = clock()
        self.last_activity = self.created_at

    def __repr__(self) -> str:
        return f"Session({self.session_id[:8]}..., state={self.state})"

    @property
    def is_open(self) -> bool:
        return self.state in (SessionState.CREATED, SessionState.ACTIVE)

    @property
    def attached(self) -> bool:
        return self._stream is not None

    def touch(self) -> None:
        self.last_activity = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self.last_activity

    def _ensure_open(self) -> None:
        if self.state == SessionState.EXPIRED:
            raise SessionExpiredError(self.session_id)
        if not self.is_open:
            raise ChannelClosedError(f"Session {self.session_id} is {self.state}")

    async def push(self, message: Message) -> EventRecord:
        """Record ``message`` in the Event Log, then deliver it if a stream is attached."""
        self._ensure_open()
        async with self._lock:
            record = self.event_log.record(encode_message(message))
            self.touch()

            stream = self._stream
            if stream is None:
                logger.debug("No push stream attached, event %d kept for replay", record.event_id)
            elif not stream.send_nowait(record):
                logger.debug("Push stream went away, event %d kept for replay", record.event_id)
                self._stream = None
        return record

    def _mark_written(self, event_id: int) -> None:
        if event_id > self._written_through:
            self._written_through = event_id

    async def attach(self, last_event_id: int | None = None) -> PushStream:
        """Attach a new push stream, queueing the events the client has not seen.

        With ``last_event_id`` the replay is strict and a gap fails the resume.
        Without it, every event no stream has written out yet is replayed,
        including events queued on a stream that died before writing them.

        Raises:
            ReplayGapError: If ``last_event_id`` is older than the retained events.
        """
        self._ensure_open()
        async with self._lock:
            if last_event_id is not None:
                backlog = self.event_log.replay_from(last_event_id)
                self._mark_written(last_event_id)
            else:
                try:
                    backlog = self.event_log.replay_from(self._written_through)
                except ReplayGapError:
                    logger.warning("Session %s lost unwritten events to eviction", self.session_id)
                    backlog = self.event_log.replay_from(self.event_log.floor - 1)

            stream = PushStream(on_written=self._mark_written)
            for record in backlog:
                stream.send_nowait(record)

            previous, self._stream = self._stream, stream
            if previous is not None:
                logger.info("Replacing push stream of session %s", self.session_id)
                previous.close()
            self.touch()

        logger.debug("Attached push stream to session %s with %d replayed event(s)", self.session_id, len(backlog))
        return stream

    def detach(self, stream: PushStream) -> None:
        """Detach ``stream`` if it is still the current one."""
        stream.close()
        if self._stream is stream:
            self._stream = None
            logger.debug("Detached push stream from session %s", self.session_id)

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> EventRecord:
        return await self.push(JSONRPCNotification(jsonrpc="2.0", method=method, params=params))

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> JSONRPCResponse:
        """Send a server-to-client request and wait for the client's answer.

        Raises:
            McpError: If the client answered with an error.
            TimeoutError: If no answer arrived in time. The client is told to
                cancel the request.
        """
        request_id = f"server-{next(self._request_ids)}"
        meta = (params or {}).get("_meta")
        progress_token = meta.get("progressToken") if isinstance(meta, dict) else None
        waiter = self.registry.expect(request_id)
        if timeout is None:
            timeout = self._config.request_timeout
        try:
            await self.push(JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params))
            with anyio.fail_after(timeout):
                response = await waiter.wait()
        except TimeoutError:
            await self.send_notification("notifications/cancelled", {"requestId": request_id, "reason": "timeout"})
            raise
        finally:
            self.registry.discard(request_id)
            if progress_token is not None:
                self.registry.release_progress(progress_token)

        if isinstance(response, JSONRPCError):
            raise McpError(response.error)
        return response

    def _release(self, state: SessionState, error: Exception) -> PushStream | None:
        self.state = state
        self.registry.close(error)
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()
        return stream

    async def close(self, drain_timeout: float = 1.0) -> None:
        """Drain queued events best-effort, then release the session."""
        if not self.is_open:
            return
        stream = self._release(SessionState.DRAINING, ChannelClosedError("Session closed"))
        if stream is not None:
            with anyio.move_on_after(drain_timeout):
                await stream.wait_drained()
        self.event_log.clear()
        self.state = SessionState.CLOSED
        logger.info("Closed session %s", self.session_id)

    def expire(self) -> None:
        """Tear the session down regardless of in-flight work."""
        if not self.is_open:
            return
        self._release(SessionState.EXPIRED, SessionExpiredError(self.session_id))
        self.event_log.clear()
        logger.info("Session %s expired after %.1fs idle", self.session_id, self.idle_for())


class SessionManager:
    """Keyed table of live sessions plus the idle-expiry sweeper.

    Use :meth:`run` as an async context manager around the server lifetime;
    leaving it closes every session.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_expired_ids: int = 4096,
    ) -> None:
        self.config = config or SessionConfig()
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._expired: OrderedDict[str, None] = OrderedDict()
        self._max_expired_ids = max_expired_ids

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def create(self) -> Session:
        session = Session(generate_session_id(), self.config, self._clock)
        self._sessions[session.session_id] = session
        logger.info("Created session %s", session.session_id)
        return session

    def activate(self, session: Session) -> None:
        if session.state == SessionState.CREATED:
            session.state = SessionState.ACTIVE
            logger.debug("Session %s is active", session.session_id)

    def get(self, session_id: str) -> Session:
        """Look up a live session and record activity on it.

        Raises:
            SessionExpiredError: If the session expired.
            SessionNotFoundError: If the id is unknown or the session was closed.
        """
        session = self._sessions.get(session_id)
        if session is None or not session.is_open:
            if session_id in self._expired:
                raise SessionExpiredError(session_id)
            raise SessionNotFoundError(session_id)
        # Idle past the timeout but not swept yet
        if self._is_idle(session):
            self._expire(session_id, session)
            raise SessionExpiredError(session_id)
        session.touch()
        return session

    def discard(self, session_id: str) -> None:
        """Forget a session that never completed its handshake."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.expire()

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        await session.close()

    def expire_idle(self) -> list[str]:
        """Expire every session idle longer than the configured timeout."""
        expired = []
        for session_id, session in list(self._sessions.items()):
            if session.attached:
                # An open push stream is a live client.
                session.touch()
                continue
            if self._is_idle(session):
                self._expire(session_id, session)
                expired.append(session_id)
        return expired

    def _is_idle(self, session: Session) -> bool:
        return not session.attached and session.idle_for() > self.config.idle_timeout

    def _expire(self, session_id: str, session: Session) -> None:
        del self._sessions[session_id]
        session.expire()
        self._remember_expired(session_id)

    def _remember_expired(self, session_id: str) -> None:
        self._expired[session_id] = None
        while len(self._expired) > self._max_expired_ids:
            self._expired.popitem(last=False)

    async def _sweep(self) -> None:
        while True:
            await anyio.sleep(self.config.sweep_interval)
            self.expire_idle()

    async def shutdown(self) -> None:
        sessions, self._sessions = self._sessions, {}
        for session in sessions.values():
            await session.close()
        if sessions:
            logger.info("Closed %d session(s) on shutdown", len(sessions))

    @asynccontextmanager
    async def run(self) -> AsyncIterator["SessionManager"]:
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._sweep)
                try:
                    yield self
                finally:
                    tg.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await self.shutdown()
