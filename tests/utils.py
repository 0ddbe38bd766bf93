from typing import Any

import anyio
from aiohttp import ClientResponse, web
from aiohttp.test_utils import TestClient
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, LATEST_PROTOCOL_VERSION, ErrorData

from aiohttp_mcp_transport import MCPServer, RequestContext, ServerConfig
from aiohttp_mcp_transport.dispatcher import ChannelContext
from aiohttp_mcp_transport.registry import RequestRegistry
from aiohttp_mcp_transport.types import MCP_PROTOCOL_VERSION_HEADER, MCP_SESSION_ID_HEADER, JSONRPCRequest, Message

TEST_PATH = "/test-mcp"

JSON_HEADERS = {
    "Accept": "application/json, text/event-stream",
    "Content-Type": "application/json",
}

SSE_HEADERS = {"Accept": "text/event-stream"}

INITIALIZE_REQUEST = {
    "jsonrpc": "2.0",
    "id": "init-1",
    "method": "initialize",
    "params": {
        "protocolVersion": LATEST_PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "1.0.0"},
    },
}


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Recorder:
    """Stand-in for a channel's outbound side."""

    def __init__(self) -> None:
        self.sent: list[Message] = []

    async def __call__(self, message: Message) -> None:
        self.sent.append(message)


def make_channel_context(registry: RequestRegistry | None = None, **kwargs: Any) -> tuple[ChannelContext, Recorder]:
    recorder = Recorder()
    context = ChannelContext(registry=registry if registry is not None else RequestRegistry(), send=recorder, **kwargs)
    return context, recorder


def register_test_handlers(server: MCPServer) -> None:
    """Register the handlers the end-to-end tests call."""

    @server.request_handler("echo")
    async def echo(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        return {key: value for key, value in ctx.params.items() if key != "_meta"}

    @server.request_handler("fail")
    async def fail(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        raise ValueError("boom")

    @server.request_handler("reject")
    async def reject(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        raise McpError(ErrorData(code=INVALID_PARAMS, message="rejected"))

    @server.request_handler("sleep")
    async def sleep(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        await anyio.sleep(ctx.params.get("seconds", 10))
        return {"slept": True}

    @server.request_handler("progress")
    async def progress(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        for step in (10, 20, 30):
            await ctx.report_progress(step, 30, f"step {step}")
        # Let the push stream deliver before the response ends the request
        await anyio.sleep(0.1)
        return {"done": True}

    @server.request_handler("notify")
    async def notify(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        await ctx.send_notification("notifications/test", {"value": ctx.params.get("value")})
        return {}

    @server.request_handler("roots")
    async def roots(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        response = await ctx.send_request("roots/list", timeout=5)
        return response.result

    @server.request_handler("log")
    async def log(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        sent = await ctx.log(ctx.params.get("level", "info"), ctx.params.get("data"), "test")
        return {"sent": sent}

    @server.request_handler("whoami")
    async def whoami(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        return {"subject": ctx.claims.subject if ctx.claims else None}


def create_test_server(config: ServerConfig | None = None) -> MCPServer:
    server = MCPServer(config or ServerConfig())
    register_test_handlers(server)
    return server


def session_headers(session_id: str) -> dict[str, str]:
    return {**JSON_HEADERS, MCP_SESSION_ID_HEADER: session_id, MCP_PROTOCOL_VERSION_HEADER: LATEST_PROTOCOL_VERSION}


async def initialize_session(client: TestClient[web.Request, web.Application], path: str = TEST_PATH) -> str:
    """Run the handshake over POST and return the new session id."""
    resp = await client.post(path, json=INITIALIZE_REQUEST, headers=JSON_HEADERS)
    assert resp.status == 200
    session_id = resp.headers[MCP_SESSION_ID_HEADER]
    await resp.release()

    resp = await client.post(
        path,
        json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        headers=session_headers(session_id),
    )
    assert resp.status == 202
    await resp.release()
    return session_id


async def read_sse_event(resp: ClientResponse) -> tuple[int | None, str]:
    """Read the next event from a push stream, skipping comment-only blocks."""
    event_id: int | None = None
    data_lines: list[str] = []
    while True:
        raw = await resp.content.readline()
        assert raw, "push stream ended"
        line = raw.decode().rstrip("\r\n")
        if not line:
            if data_lines:
                return event_id, "\n".join(data_lines)
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(": ")
        if name == "id":
            event_id = int(value)
        elif name == "data":
            data_lines.append(value)
