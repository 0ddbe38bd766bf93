import datetime
import logging
from typing import Any
from zoneinfo import ZoneInfo

from aiohttp import web
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, ErrorData

from aiohttp_mcp_transport import (
    JSONRPCRequest,
    MCPServer,
    RequestContext,
    ServerConfig,
    build_mcp_app,
    logging_middleware,
    recovery_middleware,
)

logging.basicConfig(level=logging.INFO)

server = MCPServer(ServerConfig(name="time-server", version="1.0.0"))
server.use(logging_middleware)
server.use(recovery_middleware)


@server.request_handler("time/get")
async def get_time(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
    """Get the current time in the requested timezone."""
    timezone = ctx.params.get("timezone", "UTC")
    try:
        tz = ZoneInfo(timezone)
    except (ValueError, LookupError) as err:
        raise McpError(ErrorData(code=INVALID_PARAMS, message=f"Unknown timezone: {timezone}")) from err

    await ctx.report_progress(1, 2, "resolving timezone")
    await ctx.log("info", f"time requested for {timezone}", "time-server")
    await ctx.report_progress(2, 2, "done")
    return {"timezone": timezone, "time": datetime.datetime.now(tz).isoformat()}


app = build_mcp_app(server, path="/mcp")
web.run_app(app)
