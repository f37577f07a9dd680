"""
Bearer-token authentication for the HTTP API.

Token validation is delegated to the auth backend; the API only needs a yes/no
answer and the caller's user id.
"""

from dataclasses import dataclass
from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


class AuthenticationError(Exception):
    """The token is missing, malformed, expired or rejected."""


class AuthServiceError(Exception):
    """The auth backend could not be reached or answered unexpectedly."""


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str = ""


class Authenticator(Protocol):
    async def authenticate(self, token: str) -> AuthenticatedUser: ...


class SupabaseAuthenticator:
    """Validates access tokens against the ``/auth/v1/user`` endpoint."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0,
                 transport: httpx.AsyncBaseTransport | None = None):
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/auth/v1",
            headers={"apikey": api_key},
            timeout=timeout,
            transport=transport,
        )

    async def authenticate(self, token: str) -> AuthenticatedUser:
        try:
            response = await self._client.get("/user", headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as e:
            logger.error("Auth service unreachable", error=type(e).__name__)
            raise AuthServiceError("Authentication service error") from e

        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token")
        if response.status_code >= 400:
            logger.error("Auth service error", status=response.status_code)
            raise AuthServiceError("Authentication service error")

        data = response.json()
        if not data.get("id"):
            raise AuthenticationError("Invalid or expired token")
        return AuthenticatedUser(id=data["id"], email=data.get("email") or "")

    async def aclose(self) -> None:
        await self._client.aclose()


class StaticTokenAuthenticator:
    """Maps fixed tokens to users. Used for local development and tests."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    async def authenticate(self, token: str) -> AuthenticatedUser:
        user_id = self._tokens.get(token)
        if user_id is None:
            raise AuthenticationError("Invalid or expired token")
        return AuthenticatedUser(id=user_id)
