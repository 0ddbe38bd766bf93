import itertools
import logging
from collections.abc import Awaitable, Callable, Sequence
from types import TracebackType
from typing import Any

import anyio
from anyio.abc import TaskGroup
from mcp.shared.exceptions import McpError
from mcp.types import (
    ClientCapabilities,
    InitializeRequestParams,
    InitializeResult,
    ListRootsResult,
    LoggingLevel,
    ProgressNotificationParams,
    Root,
    RootsCapability,
)

from .channel import DuplexChannel
from .config import ClientConfig
from .dispatcher import ChannelContext, Dispatcher, RequestContext
from .errors import (
    ChannelClosedError,
    ChannelError,
    ChannelReadError,
    MalformedFrameError,
    ReplayGapError,
    SessionNotFoundError,
)
from .registry import RequestRegistry, ResponseWaiter
from .types import JSONRPCError, JSONRPCNotification, JSONRPCRequest, Message, ProgressToken, RequestId

__all__ = ["LogCallback", "MCPClient", "ProgressCallback"]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, float | None, str | None], Awaitable[None]]
LogCallback = Callable[[dict[str, Any]], Awaitable[None]]

# notifications/message levels mapped onto stdlib logging
_LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


class MCPClient:
    """Caller side of a channel: request/response correlation, progress and cancellation.

    Example:
        async with StreamableHTTPChannel(url) as channel, MCPClient(channel) as client:
            await client.initialize()
            result = await client.request("tools/list")
    """

    def __init__(
        self,
        channel: DuplexChannel,
        *,
        config: ClientConfig | None = None,
        dispatcher: Dispatcher | None = None,
        roots: Sequence[Root] | None = None,
        log_callback: LogCallback | None = None,
    ) -> None:
        self.channel = channel
        self.config = config or ClientConfig()
        self.dispatcher = dispatcher or Dispatcher()
        self.registry = RequestRegistry()
        self.server_info: InitializeResult | None = None
        self._roots = list(roots) if roots is not None else None
        self._log_callback = log_callback
        self._ids = itertools.count(1)
        self._progress_callbacks: dict[ProgressToken, ProgressCallback] = {}
        self._task_group: TaskGroup | None = None

        self.dispatcher.add_request_handler("ping", self._handle_ping)
        self.dispatcher.add_request_handler("roots/list", self._handle_list_roots)
        self.dispatcher.add_notification_handler("notifications/progress", self._handle_progress)
        self.dispatcher.add_notification_handler("notifications/message", self._handle_log_message)

    async def __aenter__(self) -> "MCPClient":
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._read_loop)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        assert self._task_group is not None
        self._task_group.cancel_scope.cancel()
        self.registry.close(ChannelClosedError("Client closed"))
        return await self._task_group.__aexit__(exc_type, exc_val, exc_tb)

    def _channel_context(self) -> ChannelContext:
        return ChannelContext(registry=self.registry, send=self.channel.send)

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    message = await self.channel.receive()
                except ChannelClosedError:
                    logger.debug("Channel closed, stopping reader")
                    return
                except MalformedFrameError as err:
                    logger.warning("Skipping malformed message: %s", err)
                    continue
                except (SessionNotFoundError, ReplayGapError) as err:
                    logger.error("Session cannot be resumed: %s", err)
                    return
                except ChannelReadError as err:
                    if not await self._reconnect(err):
                        return
                    continue

                if isinstance(message, JSONRPCRequest):
                    assert self._task_group is not None
                    self._task_group.start_soon(self._dispatch, message)
                else:
                    await self._dispatch(message)
        finally:
            self.registry.close(ChannelClosedError("Channel closed before a response arrived"))

    async def _reconnect(self, error: ChannelReadError) -> bool:
        reconnect = getattr(self.channel, "reconnect", None)
        if reconnect is None:
            logger.warning("Connection lost: %s", error)
            return False

        for attempt in range(1, self.config.reconnect_attempts + 1):
            await anyio.sleep(self.config.reconnect_delay * attempt)
            try:
                await reconnect()
            except (SessionNotFoundError, ReplayGapError) as err:
                logger.error("Session cannot be resumed: %s", err)
                return False
            except ChannelReadError as err:
                logger.warning("Reconnect attempt %d/%d failed: %s", attempt, self.config.reconnect_attempts, err)
                continue
            return True
        return False

    async def _dispatch(self, message: Message) -> None:
        response = await self.dispatcher.on_message(message, self._channel_context())
        if response is None:
            return
        try:
            await self.channel.send(response)
        except ChannelError as err:
            logger.warning("Failed to answer server request: %s", err)

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Send a request and wait for its result.

        ``timeout`` defaults to the configured request timeout. On timeout the
        server is told to cancel the request.

        Raises:
            McpError: If the server answered with an error.
            TimeoutError: If no response arrived in time.
            RequestCancelledError: If :meth:`cancel` abandoned the request.
            ChannelClosedError: If the channel closed first.
        """
        request_id = next(self._ids)
        if progress_callback is not None:
            params = dict(params or {})
            params["_meta"] = {**(params.get("_meta") or {}), "progressToken": request_id}
            self._progress_callbacks[request_id] = progress_callback

        if self._task_group is None:
            raise RuntimeError("Client is not running, use it as an async context manager")
        waiter = self.registry.expect(request_id)
        if timeout is None:
            timeout = self.config.request_timeout
        try:
            # Over POST the response body is the answer, so sending must not block waiting
            self._task_group.start_soon(
                self._send_request,
                JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params),
                waiter,
            )
            with anyio.fail_after(timeout):
                response = await waiter.wait()
        except TimeoutError:
            logger.warning("Request %s (id=%r) timed out", method, request_id)
            await self._send_cancelled(request_id, "timeout")
            raise
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                await self._send_cancelled(request_id, "caller cancelled")
            raise
        finally:
            self.registry.discard(request_id)
            self.registry.release_progress(request_id)
            self._progress_callbacks.pop(request_id, None)

        if isinstance(response, JSONRPCError):
            raise McpError(response.error)
        return response.result

    async def _send_request(self, request: JSONRPCRequest, waiter: ResponseWaiter) -> None:
        try:
            await self.channel.send(request)
        except ChannelError as err:
            waiter.set_error(err)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self.channel.send(JSONRPCNotification(jsonrpc="2.0", method=method, params=params))

    async def cancel(self, request_id: RequestId, reason: str | None = None) -> None:
        """Abandon an outstanding request and ask the server to stop it."""
        if self.registry.abandon(request_id):
            await self._send_cancelled(request_id, reason)

    async def _send_cancelled(self, request_id: RequestId, reason: str | None) -> None:
        params: dict[str, Any] = {"requestId": request_id}
        if reason:
            params["reason"] = reason
        try:
            await self.notify("notifications/cancelled", params)
        except ChannelError as err:
            logger.debug("Could not send cancellation for %r: %s", request_id, err)

    async def initialize(self) -> InitializeResult:
        capabilities = ClientCapabilities(roots=RootsCapability(listChanged=True) if self._roots is not None else None)
        params = InitializeRequestParams(
            protocolVersion=self.config.protocol_version,
            capabilities=capabilities,
            clientInfo=self.config.client_info,
        )
        result = InitializeResult.model_validate(
            await self.request("initialize", params.model_dump(by_alias=True, exclude_none=True, mode="json"))
        )
        self.channel.protocol_version = str(result.protocolVersion)
        await self.notify("notifications/initialized")
        self.server_info = result
        logger.info("Connected to %s %s", result.serverInfo.name, result.serverInfo.version)
        return result

    async def ping(self) -> None:
        await self.request("ping")

    async def set_logging_level(self, level: LoggingLevel) -> None:
        await self.request("logging/setLevel", {"level": level})

    async def set_roots(self, roots: Sequence[Root]) -> None:
        self._roots = list(roots)
        await self.notify("notifications/roots/list_changed")

    async def _handle_ping(self, ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        return {}

    async def _handle_list_roots(self, ctx: RequestContext, request: JSONRPCRequest) -> ListRootsResult:
        return ListRootsResult(roots=self._roots or [])

    async def _handle_progress(self, ctx: RequestContext, notification: JSONRPCNotification) -> None:
        params = ProgressNotificationParams.model_validate(notification.params or {})
        callback = self._progress_callbacks.get(params.progressToken)
        if callback is not None:
            await callback(params.progress, params.total, params.message)

    async def _handle_log_message(self, ctx: RequestContext, notification: JSONRPCNotification) -> None:
        params = notification.params or {}
        if self._log_callback is not None:
            await self._log_callback(params)
            return
        level = _LOG_LEVELS.get(str(params.get("level")), logging.INFO)
        logger.log(level, "[server %s] %s", params.get("logger", "-"), params.get("data"))
