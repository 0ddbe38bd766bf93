import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

import anyio

from .errors import ChannelClosedError, ProgressOrderError, RequestCancelledError
from .types import JSONRPCError, JSONRPCResponse, ProgressToken, RequestId

__all__ = ["CancelHandle", "PendingRequest", "ProgressState", "RequestRegistry", "ResponseWaiter"]

logger = logging.getLogger(__name__)


class CancelHandle(Protocol):
    """Anything that can stop in-flight work, e.g. :class:`anyio.CancelScope`."""

    def cancel(self) -> None: ...


@dataclass(slots=True)
class PendingRequest:
    request_id: RequestId
    cancel_handle: CancelHandle
    created_at: float = field(default_factory=time.monotonic)
    completed: bool = False


@dataclass(slots=True)
class ProgressState:
    token: ProgressToken
    last_value: float


class ResponseWaiter:
    """Caller-side slot for the response to one outgoing request."""

    __slots__ = ("_error", "_event", "_response", "request_id")

    def __init__(self, request_id: RequestId) -> None:
        self.request_id = request_id
        self._event = anyio.Event()
        self._response: JSONRPCResponse | JSONRPCError | None = None
        self._error: Exception | None = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def set_response(self, response: JSONRPCResponse | JSONRPCError) -> None:
        if not self.done:
            self._response = response
            self._event.set()

    def set_error(self, error: Exception) -> None:
        if not self.done:
            self._error = error
            self._event.set()

    def cancel(self) -> None:
        self.set_error(RequestCancelledError(f"Request {self.request_id!r} was cancelled"))

    async def wait(self) -> JSONRPCResponse | JSONRPCError:
        await self._event.wait()
        if self._error is not None:
            raise self._error
        assert self._response is not None
        return self._response


class RequestRegistry:
    """Tracks the request lifecycle of one session or connection.

    Three tables live here: in-flight requests with their cancel handles,
    waiters for responses to requests we sent, and the last progress value per
    progress token. A request can be finished exactly once, either by
    :meth:`complete` or by :meth:`cancel`; whichever comes second is a no-op.
    """

    def __init__(self) -> None:
        self._pending: dict[RequestId, PendingRequest] = {}
        self._waiters: dict[RequestId, ResponseWaiter] = {}
        self._progress: dict[ProgressToken, ProgressState] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __contains__(self, request_id: RequestId) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def register(self, request_id: RequestId, cancel_handle: CancelHandle) -> PendingRequest:
        if self._closed:
            raise ChannelClosedError("Registry is closed")
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id!r} is already in flight")
        entry = PendingRequest(request_id=request_id, cancel_handle=cancel_handle)
        self._pending[request_id] = entry
        return entry

    def complete(self, request_id: RequestId) -> bool:
        """Mark a request finished.

        Returns:
            ``True`` if it was still pending. ``False`` means it was already
            cancelled or completed and its response must not be sent.
        """
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.completed:
            return False
        entry.completed = True
        return True

    def cancel(self, request_id: RequestId, reason: str | None = None) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.completed:
            logger.debug("Ignoring cancellation of finished request %r", request_id)
            return
        entry.completed = True
        logger.info("Cancelling request %r: %s", request_id, reason or "no reason given")
        entry.cancel_handle.cancel()

    def expect(self, request_id: RequestId) -> ResponseWaiter:
        if self._closed:
            raise ChannelClosedError("Registry is closed")
        if request_id in self._waiters:
            raise ValueError(f"Already waiting for a response to {request_id!r}")
        waiter = ResponseWaiter(request_id)
        self._waiters[request_id] = waiter
        return waiter

    def resolve(self, response: JSONRPCResponse | JSONRPCError) -> bool:
        waiter = self._waiters.pop(response.id, None)
        if waiter is None:
            logger.debug("No caller is waiting for response %r", response.id)
            return False
        waiter.set_response(response)
        return True

    def discard(self, request_id: RequestId) -> None:
        self._waiters.pop(request_id, None)

    def abandon(self, request_id: RequestId) -> bool:
        """Stop waiting for a response. The waiting caller gets :class:`RequestCancelledError`."""
        waiter = self._waiters.pop(request_id, None)
        if waiter is None:
            return False
        waiter.cancel()
        return True

    def update_progress(self, token: ProgressToken, value: float) -> None:
        state = self._progress.get(token)
        if state is not None and value <= state.last_value:
            raise ProgressOrderError(token, value, state.last_value)
        if state is None:
            self._progress[token] = ProgressState(token=token, last_value=value)
        else:
            state.last_value = value

    def release_progress(self, token: ProgressToken) -> None:
        self._progress.pop(token, None)

    def close(self, error: Exception | None = None) -> None:
        """Release everything: cancel in-flight work and fail every waiter."""
        if self._closed:
            return
        self._closed = True

        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.completed:
                entry.completed = True
                entry.cancel_handle.cancel()

        waiters, self._waiters = self._waiters, {}
        for waiter in waiters.values():
            waiter.set_error(error or ChannelClosedError("Channel closed before a response arrived"))

        self._progress.clear()
        if pending or waiters:
            logger.debug("Released %d pending request(s) and %d waiter(s)", len(pending), len(waiters))
