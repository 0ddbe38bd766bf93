"""Example MCP server on the WebSocket transport.

Each socket is one session. Connect with ``WebSocketChannel("ws://localhost:8080/ws")``.
"""

import logging
from typing import Any

import anyio
from aiohttp import web

from aiohttp_mcp_transport import JSONRPCRequest, MCPServer, RequestContext, TransportMode, build_mcp_app

logging.basicConfig(level=logging.INFO)

server = MCPServer()


@server.request_handler("countdown")
async def countdown(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
    """Count down, reporting progress. Stops early when the client cancels."""
    start = int(ctx.params.get("from", 5))
    for remaining in range(start, 0, -1):
        await ctx.report_progress(start - remaining + 1, start, f"{remaining}...")
        await anyio.sleep(1)
    return {"message": "liftoff"}


app = build_mcp_app(server, path="/ws", transport_mode=TransportMode.WEBSOCKET)
web.run_app(app)
