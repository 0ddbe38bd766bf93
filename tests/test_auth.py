import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient

from aiohttp_mcp_transport import APIKeyProvider, Claims, MCPServer, build_mcp_app, require_claims
from aiohttp_mcp_transport.errors import AuthenticationError
from aiohttp_mcp_transport.types import MCP_SESSION_ID_HEADER

from .utils import INITIALIZE_REQUEST, JSON_HEADERS, TEST_PATH, session_headers

pytestmark = pytest.mark.anyio

ALICE = Claims(subject="alice", email="alice@example.com", scopes=frozenset({"tools:read"}))
API_KEY = "sk-test-alice"


@pytest.fixture
def provider() -> APIKeyProvider:
    return APIKeyProvider({API_KEY: ALICE})


@pytest.fixture
def app(mcp_server: MCPServer, provider: APIKeyProvider) -> web.Application:
    return build_mcp_app(mcp_server, path=TEST_PATH, middlewares=[provider.middleware()])


class TestAPIKeyProvider:
    async def test_authenticate_and_validate(self, provider: APIKeyProvider) -> None:
        token = await provider.authenticate(API_KEY)
        assert await provider.validate_token(token) == ALICE

    @pytest.mark.parametrize("credentials", ["wrong", 42, None])
    async def test_bad_credentials(self, provider: APIKeyProvider, credentials: object) -> None:
        with pytest.raises(AuthenticationError):
            await provider.authenticate(credentials)

    async def test_unknown_token(self, provider: APIKeyProvider) -> None:
        with pytest.raises(AuthenticationError):
            await provider.validate_token("nope")

    async def test_key_management(self, provider: APIKeyProvider) -> None:
        provider.add_key("sk-bob", Claims(subject="bob"))
        assert len(provider) == 2
        provider.remove_key(API_KEY)
        provider.remove_key(API_KEY)
        assert len(provider) == 1
        with pytest.raises(ValueError):
            provider.add_key("", ALICE)

    def test_claims_scopes(self) -> None:
        assert ALICE.has_scope("tools:read")
        assert not ALICE.has_scope("tools:write")


class TestAPIKeyMiddleware:
    async def test_missing_key(self, client: TestClient[web.Request, web.Application]) -> None:
        resp = await client.post(TEST_PATH, json=INITIALIZE_REQUEST, headers=JSON_HEADERS)
        assert resp.status == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        body = await resp.json()
        assert body["error"]["message"] == "Unauthorized: missing API key"

    async def test_invalid_key(self, client: TestClient[web.Request, web.Application]) -> None:
        headers = {**JSON_HEADERS, "Authorization": "Bearer sk-wrong"}
        resp = await client.post(TEST_PATH, json=INITIALIZE_REQUEST, headers=headers)
        assert resp.status == 401

    @pytest.mark.parametrize(
        "auth_header",
        [{"Authorization": f"Bearer {API_KEY}"}, {"X-API-Key": API_KEY}],
    )
    async def test_claims_reach_handlers(
        self, client: TestClient[web.Request, web.Application], auth_header: dict[str, str]
    ) -> None:
        resp = await client.post(TEST_PATH, json=INITIALIZE_REQUEST, headers={**JSON_HEADERS, **auth_header})
        assert resp.status == 200
        session_id = resp.headers[MCP_SESSION_ID_HEADER]

        resp = await client.post(
            TEST_PATH,
            json={"jsonrpc": "2.0", "id": 2, "method": "whoami"},
            headers={**session_headers(session_id), **auth_header},
        )
        body = await resp.json()
        assert body["result"] == {"subject": "alice"}

    async def test_preflight_needs_no_key(self, client: TestClient[web.Request, web.Application]) -> None:
        resp = await client.options(TEST_PATH, headers={"Origin": "https://app.example.com"})
        assert resp.status == 204


class TestScopedHandlers:
    @pytest.fixture
    def mcp_server(self, mcp_server: MCPServer) -> MCPServer:
        mcp_server.use(require_claims("tools:write"))
        return mcp_server

    async def test_missing_scope_is_rejected(self, client: TestClient[web.Request, web.Application]) -> None:
        headers = {**JSON_HEADERS, "X-API-Key": API_KEY}
        resp = await client.post(TEST_PATH, json=INITIALIZE_REQUEST, headers=headers)
        body = await resp.json()
        assert "Missing required scope" in body["error"]["message"]
