import json
from collections.abc import AsyncIterator
from typing import Any

import anyio
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient
from mcp.types import Root

from aiohttp_mcp_transport import (
    MCPClient,
    MCPServer,
    ServerConfig,
    SessionConfig,
    TransportMode,
    WebSocketChannel,
    build_mcp_app,
)
from aiohttp_mcp_transport.errors import ChannelClosedError, ChannelReadError
from aiohttp_mcp_transport.types import JSONRPCResponse

from .utils import INITIALIZE_REQUEST, TEST_PATH

pytestmark = pytest.mark.anyio


@pytest.fixture
def app(mcp_server: MCPServer) -> web.Application:
    return build_mcp_app(mcp_server, path=TEST_PATH, transport_mode=TransportMode.WEBSOCKET)


@pytest.fixture
def ws_url(client: TestClient[web.Request, web.Application]) -> str:
    return str(client.make_url(TEST_PATH)).replace("http://", "ws://")


class TestWebSocketChannel:
    async def test_raw_round_trip(self, ws_url: str) -> None:
        async with WebSocketChannel(ws_url) as channel:
            await channel.write(json.dumps(INITIALIZE_REQUEST).encode())
            with anyio.fail_after(5):
                response = await channel.receive()
        assert isinstance(response, JSONRPCResponse)
        assert response.result["serverInfo"]["name"] == "test-server"

    async def test_local_close_is_eof(self, ws_url: str) -> None:
        async with WebSocketChannel(ws_url) as channel:
            await channel.close()
            assert await channel.read() == b""
            with pytest.raises(ChannelClosedError):
                await channel.write(b"{}")

    async def test_server_close_is_read_error(self, ws_url: str, mcp_server: MCPServer) -> None:
        async with WebSocketChannel(ws_url) as channel:
            with anyio.fail_after(5):
                while not len(mcp_server.sessions):
                    await anyio.sleep(0.01)
            (session_id,) = list(mcp_server.sessions)
            await mcp_server.sessions.close(session_id)
            with anyio.fail_after(5), pytest.raises(ChannelReadError):
                await channel.receive()

    async def test_connection_refused(self) -> None:
        with pytest.raises(ChannelReadError):
            async with WebSocketChannel("ws://127.0.0.1:9/mcp"):
                pass


class TestWebSocketClient:
    """The same client drives the WebSocket transport."""

    @pytest.fixture
    async def mcp_client(self, ws_url: str) -> AsyncIterator[MCPClient]:
        roots = [Root(uri="file:///srv", name="srv")]  # type: ignore[arg-type]
        async with WebSocketChannel(ws_url) as channel, MCPClient(channel, roots=roots) as client:
            with anyio.fail_after(5):
                await client.initialize()
            yield client

    async def test_requests_and_progress(self, mcp_client: MCPClient) -> None:
        assert await mcp_client.request("echo", {"over": "ws"}) == {"over": "ws"}

        updates: list[float] = []

        async def on_progress(progress: float, total: float | None, message: str | None) -> None:
            updates.append(progress)

        assert await mcp_client.request("progress", progress_callback=on_progress) == {"done": True}
        assert updates == [10, 20, 30]

    async def test_server_request(self, mcp_client: MCPClient) -> None:
        with anyio.fail_after(5):
            result: dict[str, Any] = await mcp_client.request("roots")
        assert result == {"roots": [{"uri": "file:///srv", "name": "srv"}]}

    async def test_timeout_cancels_on_server(self, mcp_client: MCPClient, mcp_server: MCPServer) -> None:
        (session_id,) = list(mcp_server.sessions)
        session = mcp_server.sessions.get(session_id)
        with pytest.raises(TimeoutError):
            await mcp_client.request("sleep", {"seconds": 30}, timeout=0.1)
        with anyio.fail_after(5):
            while len(session.registry):
                await anyio.sleep(0.01)

    async def test_session_closes_with_socket(self, ws_url: str, mcp_server: MCPServer) -> None:
        async with WebSocketChannel(ws_url) as channel, MCPClient(channel) as client:
            await client.initialize()
            assert len(mcp_server.sessions) == 1
        with anyio.fail_after(5):
            while len(mcp_server.sessions):
                await anyio.sleep(0.01)


class TestWebSocketOrigins:
    @pytest.fixture
    def server_config(self) -> ServerConfig:
        return ServerConfig(allowed_origins=("https://app.example.com",), session=SessionConfig(keepalive_interval=0.1))

    async def test_foreign_origin_is_rejected(self, ws_url: str) -> None:
        with pytest.raises(ChannelReadError):
            async with WebSocketChannel(ws_url, headers={"Origin": "https://evil.example"}):
                pass

    async def test_allowed_origin(self, ws_url: str) -> None:
        async with WebSocketChannel(ws_url, headers={"Origin": "https://app.example.com"}) as channel:
            assert not channel.closed

    async def test_foreign_origin_gets_forbidden_status(self, client: TestClient[web.Request, web.Application]) -> None:
        resp = await client.get(TEST_PATH, headers={"Origin": "https://evil.example"})
        assert resp.status == 403
