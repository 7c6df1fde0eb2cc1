import asyncio
import hmac
from dataclasses import dataclass
from typing import Mapping, Protocol

import httpx
import structlog
from supabase import AsyncClient, AuthError, acreate_client

from keymeter.errors import AuthenticationError, KeymeterError
from keymeter.store.base import Store

logger = structlog.get_logger()

PROFILES_TABLE = "profiles"
# header set by the hosting platform's scheduler
PLATFORM_CRON_HEADER = "x-vercel-cron"
PLATFORM_CRON_SECRET_HEADER = "x-vercel-cron-secret"
# set by in-process schedulers running next to the service
INTERNAL_CRON_HEADER = "x-cron-internal"


@dataclass(frozen=True, slots=True)
class UserInfo:
    user_id: "str"
    tenant_id: "str | None" = None
    email: "str | None" = None


class Authenticator(Protocol):
    """
    resolves a bearer token to the calling user, or None when the token
    is not valid.
    """

    async def authenticate(self, token: "str") -> "UserInfo | None": ...

    async def close(self) -> "None": ...


def bearer_token(authorization: "str | None") -> "str | None":
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


async def require_user(
    authenticator: "Authenticator",
    authorization: "str | None",
) -> "UserInfo":
    """
    resolves the Authorization header, raising AuthenticationError when
    the token is missing or not accepted.
    """
    token = bearer_token(authorization)
    if token is None:
        raise AuthenticationError("unauthorized: a valid bearer token is required")

    user = await authenticator.authenticate(token)
    if user is None:
        raise AuthenticationError("unauthorized: a valid bearer token is required")
    return user


class SupabaseAuthenticator:
    """
    SupabaseAuthenticator validates the token with Supabase Auth through
    supabase-py and looks up the user's tenant in the profiles table. A
    user without a profile row is still authenticated, with no tenant.
    """

    def __init__(
        self,
        url: "str",
        anon_key: "str",
        store: "Store",
        client: "AsyncClient | None" = None,
    ) -> "None":
        self._url = url.rstrip("/")
        self._anon_key = anon_key
        self._store = store
        self._client = client
        self._lock = asyncio.Lock()

    async def _auth_client(self) -> "AsyncClient":
        async with self._lock:
            if self._client is None:
                self._client = await acreate_client(self._url, self._anon_key)
        return self._client

    async def close(self) -> "None":
        self._client = None

    async def authenticate(self, token: "str") -> "UserInfo | None":
        client = await self._auth_client()
        try:
            resp = await client.auth.get_user(token)
        except AuthError as exc:
            logger.info("auth_token_rejected", error=str(exc))
            return None
        except httpx.HTTPError as exc:
            logger.warning("auth_request_failed", error=str(exc))
            return None

        user = resp.user if resp else None
        if user is None or not user.id:
            return None

        tenant_id = None
        email = user.email
        try:
            profiles = await self._store.select(PROFILES_TABLE, {"id": user.id})
        except KeymeterError as exc:
            logger.warning("profile_lookup_failed", user_id=user.id, error=exc.message)
            profiles = []
        if profiles:
            tenant_id = profiles[0].get("tenant_id")
            email = profiles[0].get("email") or email

        return UserInfo(user_id=user.id, tenant_id=tenant_id, email=email)


async def verify_tenant_access(
    store: "Store",
    user_id: "str",
    tenant_id: "str | None",
) -> "bool":
    """
    checks that the user's profile belongs to the given tenant.
    """
    if not tenant_id:
        return False
    profiles = await store.select(PROFILES_TABLE, {"id": user_id})
    return bool(profiles) and profiles[0].get("tenant_id") == tenant_id


def is_cron_authorized(
    headers: "Mapping[str, str]",
    cron_secret: "str",
    trust_platform_header: "bool" = True,
) -> "bool":
    """
    accepts `Authorization: Bearer <CRON_SECRET>`, the platform cron
    secret header, or (when trusted) the platform or internal cron
    marker header.
    With no secret configured every caller is accepted.
    """
    if not cron_secret:
        return True

    token = bearer_token(headers.get("authorization"))
    if token is not None and hmac.compare_digest(token, cron_secret):
        return True

    platform_secret = headers.get(PLATFORM_CRON_SECRET_HEADER)
    if platform_secret and hmac.compare_digest(platform_secret, cron_secret):
        return True

    if not trust_platform_header:
        return False
    return (
        headers.get(PLATFORM_CRON_HEADER) == "1"
        or headers.get(INTERNAL_CRON_HEADER) == "true"
    )
