from dataclasses import dataclass

import httpx
import pytest
from supabase import AuthError

from keymeter.auth import (
    PROFILES_TABLE,
    SupabaseAuthenticator,
    UserInfo,
    bearer_token,
    is_cron_authorized,
    require_user,
    verify_tenant_access,
)
from keymeter.errors import AuthenticationError
from keymeter.store.memory import InMemoryStore

SUPABASE_URL = "https://project.supabase.co"


class TestBearerToken:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Bearer abc", "abc"),
            ("Bearer  abc ", "abc"),
            ("Bearer ", None),
            ("Basic abc", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extracts_token(self, header: "str | None", expected: "str | None") -> "None":
        assert bearer_token(header) == expected


class FixedAuthenticator:
    async def authenticate(self, token: "str") -> "UserInfo | None":
        return UserInfo(user_id="u1") if token == "good" else None

    async def close(self) -> "None":
        pass


class TestRequireUser:
    @pytest.mark.asyncio
    async def test_returns_user(self) -> "None":
        user = await require_user(FixedAuthenticator(), "Bearer good")
        assert user.user_id == "u1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "Bearer bad", "good"])
    async def test_rejects(self, header: "str | None") -> "None":
        with pytest.raises(AuthenticationError) as exc_info:
            await require_user(FixedAuthenticator(), header)
        assert exc_info.value.status_code == 401


class InvalidJWT(AuthError):
    def __init__(self) -> "None":
        Exception.__init__(self, "invalid JWT")


@dataclass
class FakeUser:
    id: "str"
    email: "str | None" = None


@dataclass
class FakeUserResponse:
    user: "FakeUser | None"


class FakeAuth:
    def __init__(self, result: "FakeUserResponse | Exception | None") -> "None":
        self._result = result
        self.tokens: "list[str]" = []

    async def get_user(self, jwt: "str") -> "FakeUserResponse | None":
        self.tokens.append(jwt)
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


class FakeClient:
    def __init__(self, result: "FakeUserResponse | Exception | None") -> "None":
        self.auth = FakeAuth(result)


def _authenticator(
    store: "InMemoryStore",
    result: "FakeUserResponse | Exception | None",
) -> "tuple[SupabaseAuthenticator, FakeClient]":
    client = FakeClient(result)
    return SupabaseAuthenticator(SUPABASE_URL, "anon", store, client=client), client


class TestSupabaseAuthenticator:
    @pytest.mark.asyncio
    async def test_resolves_tenant_from_profile(self, store: "InMemoryStore") -> "None":
        store.tables[PROFILES_TABLE] = [{"id": "u1", "tenant_id": "t1"}]
        auth, client = _authenticator(
            store, FakeUserResponse(FakeUser(id="u1", email="a@example.com"))
        )

        user = await auth.authenticate("jwt")
        await auth.close()

        assert user == UserInfo(user_id="u1", tenant_id="t1", email="a@example.com")
        assert client.auth.tokens == ["jwt"]

    @pytest.mark.asyncio
    async def test_user_without_profile_has_no_tenant(
        self,
        store: "InMemoryStore",
    ) -> "None":
        auth, _ = _authenticator(store, FakeUserResponse(FakeUser(id="u2")))

        user = await auth.authenticate("jwt")

        assert user is not None
        assert user.tenant_id is None

    @pytest.mark.asyncio
    async def test_rejected_token(self, store: "InMemoryStore") -> "None":
        auth, _ = _authenticator(store, InvalidJWT())

        assert await auth.authenticate("expired") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [None, FakeUserResponse(None)])
    async def test_empty_user_is_not_authenticated(
        self,
        store: "InMemoryStore",
        result: "FakeUserResponse | None",
    ) -> "None":
        auth, _ = _authenticator(store, result)

        assert await auth.authenticate("jwt") is None

    @pytest.mark.asyncio
    async def test_network_failure_is_not_authenticated(
        self,
        store: "InMemoryStore",
    ) -> "None":
        auth, _ = _authenticator(store, httpx.ConnectError("refused"))

        assert await auth.authenticate("jwt") is None


class TestVerifyTenantAccess:
    @pytest.mark.asyncio
    async def test_checks_profile_tenant(self, store: "InMemoryStore") -> "None":
        store.tables[PROFILES_TABLE] = [{"id": "u1", "tenant_id": "t1"}]

        assert await verify_tenant_access(store, "u1", "t1") is True
        assert await verify_tenant_access(store, "u1", "t2") is False
        assert await verify_tenant_access(store, "u1", None) is False
        assert await verify_tenant_access(store, "nobody", "t1") is False


class TestCronAuthorization:
    def test_open_without_secret(self) -> "None":
        assert is_cron_authorized({}, "") is True

    @pytest.mark.parametrize(
        "headers",
        [
            {"authorization": "Bearer s3cret"},
            {"x-vercel-cron-secret": "s3cret"},
            {"x-vercel-cron": "1"},
            {"x-cron-internal": "true"},
        ],
    )
    def test_accepted_headers(self, headers: "dict[str, str]") -> "None":
        assert is_cron_authorized(headers, "s3cret") is True

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"authorization": "Bearer wrong"},
            {"x-vercel-cron-secret": "wrong"},
            {"x-vercel-cron": "0"},
            {"x-cron-internal": "yes"},
        ],
    )
    def test_rejected_headers(self, headers: "dict[str, str]") -> "None":
        assert is_cron_authorized(headers, "s3cret") is False

    def test_markers_ignored_when_untrusted(self) -> "None":
        assert is_cron_authorized({"x-vercel-cron": "1"}, "s3cret", False) is False
        assert is_cron_authorized({"x-cron-internal": "true"}, "s3cret", False) is False
        assert is_cron_authorized({"authorization": "Bearer s3cret"}, "s3cret", False) is True
