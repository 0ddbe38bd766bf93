"""
Authentication boundary.

The transport treats authentication as an opaque capability: a provider turns
credentials into a token, a token into :class:`Claims`, and supplies an aiohttp
middleware that stores the claims on the request. Request handlers see them as
``RequestContext.claims``.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Final, Protocol

from aiohttp import web
from aiohttp.typedefs import Middleware

from .errors import AuthenticationError, error_body
from .types import CONTENT_TYPE_JSON

__all__ = ["CLAIMS_KEY", "APIKeyProvider", "Claims", "Provider", "extract_api_key", "get_claims"]

logger = logging.getLogger(__name__)

CLAIMS_KEY: Final = "aiohttp_mcp_transport.claims"

API_KEY_HEADER = "X-API-Key"


@dataclass(frozen=True, slots=True, kw_only=True)
class Claims:
    """Identity established by an auth provider."""

    subject: str
    email: str | None = None
    scopes: frozenset[str] = frozenset()
    extra: Mapping[str, Any] = field(default_factory=dict)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


class Provider(Protocol):
    async def authenticate(self, credentials: Any) -> str:
        """Validate credentials and return a token."""
        ...

    async def validate_token(self, token: str) -> Claims:
        """Return the claims of a valid token or raise :class:`AuthenticationError`."""
        ...

    def middleware(self) -> Middleware: ...


def get_claims(request: web.Request) -> Claims | None:
    return request.get(CLAIMS_KEY)


def extract_api_key(request: web.Request) -> str | None:
    """Read the key from ``Authorization: Bearer <key>`` or ``X-API-Key``."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return request.headers.get(API_KEY_HEADER) or None


def _unauthorized(message: str) -> web.Response:
    return web.Response(
        body=error_body(message),
        status=HTTPStatus.UNAUTHORIZED,
        headers={"Content-Type": CONTENT_TYPE_JSON, "WWW-Authenticate": "Bearer"},
    )


class APIKeyProvider:
    """Static API keys mapped to their claims."""

    def __init__(self, keys: Mapping[str, Claims] | None = None) -> None:
        self._keys: dict[str, Claims] = dict(keys or {})

    def __len__(self) -> int:
        return len(self._keys)

    def add_key(self, api_key: str, claims: Claims) -> None:
        if not api_key:
            raise ValueError("API key must not be empty")
        self._keys[api_key] = claims

    def remove_key(self, api_key: str) -> None:
        self._keys.pop(api_key, None)

    async def authenticate(self, credentials: Any) -> str:
        if not isinstance(credentials, str):
            raise AuthenticationError("Invalid credentials type")
        if credentials not in self._keys:
            raise AuthenticationError("Invalid API key")
        return credentials

    async def validate_token(self, token: str) -> Claims:
        claims = self._keys.get(token)
        if claims is None:
            raise AuthenticationError("Invalid API key")
        return claims

    def middleware(self) -> Middleware:
        @web.middleware
        async def api_key_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
            # CORS preflight carries no credentials
            if request.method == "OPTIONS":
                return await handler(request)

            token = extract_api_key(request)
            if token is None:
                return _unauthorized("Unauthorized: missing API key")
            try:
                claims = await self.validate_token(token)
            except AuthenticationError:
                logger.warning("Rejected invalid API key from %s", request.remote)
                return _unauthorized("Unauthorized: invalid API key")

            request[CLAIMS_KEY] = claims
            return await handler(request)

        return api_key_middleware
