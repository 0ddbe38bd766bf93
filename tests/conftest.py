from collections.abc import AsyncIterator

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from aiohttp_mcp_transport import MCPServer, ServerConfig, SessionConfig, build_mcp_app

from .utils import TEST_PATH, create_test_server


@pytest.fixture
def anyio_backend() -> str:
    """Return the backend name for anyio. Test only against asyncio. Trio is not supported."""
    return "asyncio"


@pytest.fixture
def server_config() -> ServerConfig:
    # Short keepalive so abandoned push streams notice the disconnect quickly
    return ServerConfig(
        name="test-server",
        version="1.0.0",
        session=SessionConfig(keepalive_interval=0.1, sweep_interval=0.05),
    )


@pytest.fixture
def mcp_server(server_config: ServerConfig) -> MCPServer:
    return create_test_server(server_config)


@pytest.fixture
def app(mcp_server: MCPServer) -> web.Application:
    return build_mcp_app(mcp_server, path=TEST_PATH)


@pytest.fixture
async def client(app: web.Application) -> AsyncIterator[TestClient[web.Request, web.Application]]:
    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()


@pytest.fixture
def server_url(client: TestClient[web.Request, web.Application]) -> str:
    return str(client.make_url(TEST_PATH))
