"""Example MCP server protected by API keys.

The ``X-API-Key`` header (or ``Authorization: Bearer <key>``) is checked by
the provider middleware before a message reaches the transport. Handlers read
the caller's identity from ``ctx.claims``; ``require_claims`` rejects callers
without the needed scopes.

Try it with::

    curl -X POST http://localhost:8080/mcp \\
        -H "Content-Type: application/json" -H "Accept: application/json" \\
        -H "X-API-Key: sk-alice" \\
        -d '{"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {...}}'
"""

import logging
from typing import Any

from aiohttp import web

from aiohttp_mcp_transport import (
    APIKeyProvider,
    Claims,
    JSONRPCRequest,
    MCPServer,
    RequestContext,
    ServerConfig,
    setup_mcp_subapp,
)

logging.basicConfig(level=logging.INFO)

provider = APIKeyProvider()
provider.add_key("sk-alice", Claims(subject="alice", email="alice@example.com", scopes=frozenset({"whoami"})))
provider.add_key("sk-bob", Claims(subject="bob"))

server = MCPServer(ServerConfig(name="auth-server", allowed_origins=("http://localhost:*",)))


@server.request_handler("whoami")
async def whoami(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
    """Tell the caller who they authenticated as."""
    if ctx.claims is None:
        return {"subject": None}
    client_ip = ctx.http_request.remote if ctx.http_request is not None else None
    return {"subject": ctx.claims.subject, "email": ctx.claims.email, "client_ip": client_ip}


app = web.Application()
setup_mcp_subapp(app, server, prefix="/mcp", middlewares=[provider.middleware()])
web.run_app(app)
