"""
Identity Provider Client & Bearer Authentication
================================================

Talks to Firebase Auth through the Identity Toolkit REST API with httpx:

    verify_id_token(token)  POST /accounts:lookup       {"idToken": token}
    email_exists(email)     POST /accounts:createAuthUri {"identifier": email}

get_current_user() is the FastAPI dependency for protected routes:
    missing / malformed "Authorization: Bearer <token>"  -> 401
    token rejected by the identity provider              -> 403
    identity provider unreachable                        -> 503

Verified tokens are cached for LUNACHAT_AUTH_CACHE_TTL seconds (default five
minutes, inside the provider's one-hour token lifetime).
"""

import logging
from typing import Optional

import httpx
from cachetools import TTLCache
from fastapi import Request
from pydantic import BaseModel

from lunachat.config import settings
from lunachat.core.errors import AuthenticationError
from lunachat.core.structured_logging import bind_account

logger = logging.getLogger(__name__)


class AuthenticatedUser(BaseModel):
    """Identity resolved from a verified bearer token."""

    user_id: str
    email: Optional[str] = None
    email_verified: bool = False


class IdentityClient:
    """Async client for the identity provider's REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        cache_ttl: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise ValueError("LUNACHAT_IDENTITY_API_KEY is not set")
        self._api_key = api_key
        self._base_url = (base_url or settings.identity_base_url).rstrip("/")
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s or settings.identity_timeout_s, connect=5.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        self._cache: TTLCache = TTLCache(maxsize=1000, ttl=cache_ttl or settings.auth_cache_ttl)

    @classmethod
    def from_settings(cls) -> "IdentityClient":
        return cls(api_key=settings.identity_api_key)

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self._base_url}/{path}"
        try:
            return await self._http.post(url, params={"key": self._api_key}, json=payload)
        except httpx.RequestError as exc:
            logger.error("Identity provider request to %s failed: %s", path, exc)
            raise AuthenticationError(
                f"identity provider unreachable: {exc}", code="LUNA-AUTH-003"
            ) from exc

    async def verify_id_token(self, id_token: str) -> AuthenticatedUser:
        """Resolve a bearer token to a user. Raises AuthenticationError (403) if rejected."""
        cached = self._cache.get(id_token)
        if cached is not None:
            return cached

        response = await self._post("accounts:lookup", {"idToken": id_token})
        if response.status_code == 400:
            message = response.json().get("error", {}).get("message", "")
            logger.warning("Identity token rejected: %s", message)
            raise AuthenticationError(f"token rejected: {message}")
        if response.status_code != 200:
            logger.error(
                "Identity provider returned status %s: %s",
                response.status_code,
                response.text[:500],
            )
            raise AuthenticationError(
                f"identity provider status {response.status_code}", code="LUNA-AUTH-003"
            )

        users = response.json().get("users") or []
        if not users:
            raise AuthenticationError("token does not belong to any user")
        record = users[0]
        if record.get("disabled"):
            raise AuthenticationError("user is disabled")

        user = AuthenticatedUser(
            user_id=record["localId"],
            email=record.get("email"),
            email_verified=bool(record.get("emailVerified")),
        )
        self._cache[id_token] = user
        return user

    async def email_exists(self, email: str) -> bool:
        response = await self._post(
            "accounts:createAuthUri",
            {"identifier": email, "continueUri": settings.public_url},
        )
        if response.status_code != 200:
            logger.error(
                "Identity provider email lookup failed with status %s: %s",
                response.status_code,
                response.text[:500],
            )
            raise AuthenticationError(
                f"email lookup status {response.status_code}", code="LUNA-AUTH-003"
            )
        return bool(response.json().get("registered"))

    async def aclose(self) -> None:
        if not self._http.is_closed:
            await self._http.aclose()


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

def bearer_token(request: Request) -> str:
    authorization = request.headers.get("Authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("missing or malformed Authorization header", missing=True)
    return token.strip()


async def get_current_user(request: Request) -> AuthenticatedUser:
    """Authenticate the request's bearer token against the identity provider."""
    from lunachat.clients import get_identity

    token = bearer_token(request)
    user = await get_identity(request).verify_id_token(token)
    request.state.user = user
    bind_account(user.user_id)
    return user
