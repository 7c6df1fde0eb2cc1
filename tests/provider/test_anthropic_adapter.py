import json

import httpx
import pytest
import respx

from keymeter.errors import VendorAPIError
from keymeter.models import TimeWindow
from keymeter.provider.anthropic import (
    ANTHROPIC_BASE_URL,
    ANTHROPIC_VERSION,
    DEFAULT_WORKSPACE,
    AnthropicAdapter,
)

COST_REPORT_URL = f"{ANTHROPIC_BASE_URL}/organizations/cost_report"


class TestAnthropicAdapterFetchCosts:
    @pytest.mark.asyncio
    @respx.mock
    async def test_converts_cents_and_groups_by_workspace(
        self,
        window: "TimeWindow",
    ) -> "None":
        route = respx.get(COST_REPORT_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "start_time": "2024-06-14T00:00:00Z",
                            "end_time": "2024-06-15T00:00:00Z",
                            "results": [
                                {"workspace_id": "wrkspc_1", "amount": "600", "currency": "USD"},
                                {"workspace_id": None, "amount": "250", "currency": "USD"},
                            ],
                        },
                        {
                            "start_time": "2024-06-15T00:00:00Z",
                            "end_time": "2024-06-16T00:00:00Z",
                            "results": [
                                {"workspace_id": "wrkspc_1", "amount": "400", "currency": "USD"},
                            ],
                        },
                    ],
                    "has_more": False,
                },
            )
        )

        adapter = AnthropicAdapter()
        report = await adapter.fetch_costs("sk-ant-admin01-test", window)
        await adapter.close()

        workspace = report.items["wrkspc_1"]
        assert workspace.month_amount == pytest.approx(10.0)
        assert workspace.today_amount == pytest.approx(4.0)
        # cost without a workspace lands on the default workspace
        assert report.items[DEFAULT_WORKSPACE].month_amount == pytest.approx(2.5)
        assert report.items[DEFAULT_WORKSPACE].today_amount == 0

        request = route.calls.last.request
        assert request.headers["x-api-key"] == "sk-ant-admin01-test"
        assert request.headers["anthropic-version"] == ANTHROPIC_VERSION
        assert request.url.params["starting_at"] == "2024-06-01T00:00:00Z"
        assert request.url.params["ending_at"] == "2024-06-15T12:00:00Z"
        assert request.url.params["group_by[]"] == "workspace_id"

    @pytest.mark.asyncio
    @respx.mock
    async def test_follows_next_page(self, window: "TimeWindow") -> "None":
        route = respx.get(COST_REPORT_URL).mock(
            side_effect=[
                httpx.Response(
                    200,
                    json={
                        "data": [
                            {
                                "start_time": "2024-06-14T00:00:00Z",
                                "results": [{"workspace_id": "wrkspc_1", "amount": "100"}],
                            }
                        ],
                        "has_more": True,
                        "next_page": "page_2",
                    },
                ),
                httpx.Response(
                    200,
                    json={
                        "data": [
                            {
                                "start_time": "2024-06-15T00:00:00Z",
                                "results": [{"workspace_id": "wrkspc_1", "amount": "100"}],
                            }
                        ],
                        "has_more": False,
                    },
                ),
            ]
        )

        adapter = AnthropicAdapter()
        report = await adapter.fetch_costs("sk-ant-admin01-test", window)
        await adapter.close()

        assert route.call_count == 2
        assert route.calls.last.request.url.params["page"] == "page_2"
        assert report.items["wrkspc_1"].month_amount == pytest.approx(2.0)
        assert report.pages_fetched == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_bucket_without_start_time_counts_for_month_only(
        self,
        window: "TimeWindow",
    ) -> "None":
        respx.get(COST_REPORT_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "data": [
                        {"results": [{"workspace_id": "wrkspc_1", "amount": "300"}]},
                        {
                            "start_time": "2024-06-15T00:00:00Z",
                            "results": [{"workspace_id": "wrkspc_1", "amount": "100"}],
                        },
                    ],
                    "has_more": False,
                },
            )
        )

        adapter = AnthropicAdapter()
        report = await adapter.fetch_costs("sk-ant-admin01-test", window)
        await adapter.close()

        assert report.items["wrkspc_1"].month_amount == pytest.approx(4.0)
        assert report.items["wrkspc_1"].today_amount == pytest.approx(1.0)

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_admin_key_raises(self, window: "TimeWindow") -> "None":
        respx.get(COST_REPORT_URL).mock(
            return_value=httpx.Response(
                401,
                json={
                    "type": "error",
                    "error": {"type": "authentication_error", "message": "invalid x-api-key"},
                },
            )
        )

        adapter = AnthropicAdapter()
        with pytest.raises(VendorAPIError) as exc_info:
            await adapter.fetch_costs("sk-ant-admin01-bad", window)
        await adapter.close()

        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "authentication_error"


class TestAnthropicAdapterFetchKeys:
    @pytest.mark.asyncio
    @respx.mock
    async def test_lists_keys_with_workspace(self) -> "None":
        respx.get(f"{ANTHROPIC_BASE_URL}/organizations/api_keys").mock(
            return_value=httpx.Response(
                200,
                json={
                    "data": [
                        {"id": "apikey_1", "name": "prod", "workspace_id": "wrkspc_1", "status": "active"},
                        {"id": "apikey_2", "name": "old", "workspace_id": None, "status": "archived"},
                    ],
                    "has_more": False,
                },
            )
        )

        adapter = AnthropicAdapter()
        keys = await adapter.fetch_keys("sk-ant-admin01-test")
        await adapter.close()

        assert [(k.id, k.workspace_id, k.status) for k in keys] == [
            ("apikey_1", "wrkspc_1", "active"),
            ("apikey_2", None, "archived"),
        ]


class TestAnthropicAdapterVerifyKey:
    @pytest.mark.asyncio
    @respx.mock
    async def test_overloaded_counts_as_valid(self) -> "None":
        respx.post(f"{ANTHROPIC_BASE_URL}/messages").mock(
            return_value=httpx.Response(
                529,
                json={"type": "error", "error": {"type": "overloaded_error"}},
            )
        )

        adapter = AnthropicAdapter()
        assert await adapter.verify_key("sk-ant-api03-test") is True
        await adapter.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_unauthorized_is_invalid(self) -> "None":
        respx.post(f"{ANTHROPIC_BASE_URL}/messages").mock(
            return_value=httpx.Response(
                401,
                json={"type": "error", "error": {"type": "authentication_error"}},
            )
        )

        adapter = AnthropicAdapter()
        assert await adapter.verify_key("sk-ant-api03-bad") is False
        await adapter.close()


class TestAnthropicAdapterDeactivateKey:
    @pytest.mark.asyncio
    @respx.mock
    async def test_marks_key_inactive(self) -> "None":
        route = respx.post(f"{ANTHROPIC_BASE_URL}/organizations/api_keys/apikey_1").mock(
            return_value=httpx.Response(200, json={"id": "apikey_1", "status": "inactive"})
        )

        adapter = AnthropicAdapter()
        assert await adapter.deactivate_key("sk-ant-admin01-test", "apikey_1") is True
        await adapter.close()

        assert json.loads(route.calls.last.request.content) == {"status": "inactive"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_unknown_key_reports_already_deleted(self) -> "None":
        respx.post(f"{ANTHROPIC_BASE_URL}/organizations/api_keys/apikey_gone").mock(
            return_value=httpx.Response(
                404, json={"type": "error", "error": {"type": "not_found_error"}}
            )
        )

        adapter = AnthropicAdapter()
        assert await adapter.deactivate_key("sk-ant-admin01-test", "apikey_gone") is False
        await adapter.close()
