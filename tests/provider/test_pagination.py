from typing import Any

import httpx
import pytest
import respx

from keymeter.errors import VendorAPIError
from keymeter.models import TimeWindow
from keymeter.provider.base import MAX_PAGES, check_response, is_rate_limited, paginate
from keymeter.provider.openai import OPENAI_BASE_URL, OpenAIAdapter


class TestPaginate:
    @pytest.mark.asyncio
    async def test_follows_cursor_until_has_more_is_false(self) -> "None":
        cursors: "list[str | None]" = []

        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            cursors.append(cursor)
            if cursor is None:
                return {"data": [1, 2], "has_more": True, "next_page": "p2"}
            return {"data": [3], "has_more": False}

        pages = await paginate(fetch_page, "test")

        assert cursors == [None, "p2"]
        assert pages.items == [1, 2, 3]
        assert pages.pages_fetched == 2
        assert pages.truncated is False

    @pytest.mark.asyncio
    async def test_stops_at_page_cap(self) -> "None":
        calls = 0

        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            nonlocal calls
            calls += 1
            return {"data": [calls], "has_more": True, "next_page": f"p{calls + 1}"}

        pages = await paginate(fetch_page, "test")

        assert calls == MAX_PAGES == 20
        assert pages.pages_fetched == 20
        assert len(pages.items) == 20

    @pytest.mark.asyncio
    async def test_first_page_failure_is_fatal(self) -> "None":
        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            raise VendorAPIError("invalid admin key", status_code=401)

        with pytest.raises(VendorAPIError) as exc_info:
            await paginate(fetch_page, "test")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_first_page_transport_error_becomes_vendor_error(self) -> "None":
        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            raise httpx.ConnectError("connection refused")

        with pytest.raises(VendorAPIError, match="test request failed"):
            await paginate(fetch_page, "test")

    @pytest.mark.asyncio
    async def test_later_page_failure_keeps_earlier_pages(self) -> "None":
        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            if cursor is None:
                return {"data": ["a"], "has_more": True, "next_page": "p2"}
            raise VendorAPIError("server error", status_code=500)

        pages = await paginate(fetch_page, "test")

        assert pages.items == ["a"]
        assert pages.pages_fetched == 1
        assert pages.truncated is True

    @pytest.mark.asyncio
    async def test_missing_cursor_stops(self) -> "None":
        calls = 0

        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            nonlocal calls
            calls += 1
            return {"data": ["a"], "has_more": True}

        pages = await paginate(fetch_page, "test")

        assert calls == 1
        assert pages.items == ["a"]


class TestAdapterPageCap:
    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_usage_stops_after_twenty_pages(
        self,
        window: "TimeWindow",
    ) -> "None":
        # the vendor claims there is always another page
        route = respx.get(f"{OPENAI_BASE_URL}/usage/completions").mock(
            return_value=httpx.Response(
                200,
                json={"data": [], "has_more": True, "next_page": "next"},
            )
        )

        adapter = OpenAIAdapter()
        report = await adapter.fetch_usage("sk-admin", window)
        await adapter.close()

        assert route.call_count == 20
        assert report.pages_fetched == 20


class TestResponseHelpers:
    def test_check_response_raises_with_vendor_message(self) -> "None":
        resp = httpx.Response(
            401,
            json={"error": {"message": "Incorrect API key", "type": "invalid_request_error"}},
        )

        with pytest.raises(VendorAPIError) as exc_info:
            check_response(resp, "failed")
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Incorrect API key"
        assert exc_info.value.code == "invalid_request_error"

    def test_check_response_rejects_error_body_on_success(self) -> "None":
        resp = httpx.Response(200, json={"error": {"message": "quota exceeded"}})

        with pytest.raises(VendorAPIError, match="quota exceeded"):
            check_response(resp, "failed")

    @pytest.mark.parametrize(
        ("status_code", "body", "expected"),
        [
            (429, {}, True),
            (529, {}, True),
            (400, {"error": {"type": "rate_limit_error"}}, True),
            (400, {"error": {"type": "overloaded_error"}}, True),
            (401, {"error": {"type": "authentication_error"}}, False),
        ],
    )
    def test_is_rate_limited(
        self,
        status_code: "int",
        body: "dict[str, Any]",
        expected: "bool",
    ) -> "None":
        assert is_rate_limited(httpx.Response(status_code, json=body)) is expected
