from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from keymeter.models import TimeWindow, UsageReport, VendorKey
from keymeter.provider.base import (
    check_response,
    is_rate_limited,
    last_id_cursor,
    paginate,
    vendor_error,
)

logger = structlog.get_logger()

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
# cheapest model for a one token check
VERIFY_MODEL = "claude-3-haiku-20240307"
# cost rows without a workspace belong to the organization's default workspace
DEFAULT_WORKSPACE = "default"


def _parse_time(value: "Any") -> "datetime":
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _iso(moment: "datetime") -> "str":
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


class AnthropicAdapter:
    """
    AnthropicAdapter implements the UsageAdapter protocol for the
    Anthropic Admin API. Cost is reported per workspace, never per key.
    """

    def __init__(self, timeout: "float" = 10.0) -> "None":
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(timeout=timeout)

    @property
    def platform(self) -> "str":
        return "anthropic"

    async def close(self) -> "None":
        await self._client.aclose()

    @staticmethod
    def _headers(key: "str") -> "dict[str, str]":
        return {
            "x-api-key": key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    async def fetch_usage(
        self,
        admin_key: "str",
        window: "TimeWindow",
    ) -> "UsageReport":
        """
        fetches this month's cost report grouped by workspace_id.
        Amounts come back in cents and are converted to USD.
        """

        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            params: "dict[str, Any]" = {
                "starting_at": _iso(window.month_start),
                "ending_at": _iso(window.now),
                "bucket_width": "1d",
                "group_by[]": "workspace_id",
            }
            if cursor:
                params["page"] = cursor
            logger.debug("anthropic_fetch_costs", params=params)
            resp = await self._client.get(
                f"{ANTHROPIC_BASE_URL}/organizations/cost_report",
                params=params,
                headers=self._headers(admin_key),
            )
            return check_response(resp, "failed to fetch Anthropic cost report")

        pages = await paginate(fetch_page, "anthropic_costs")
        report = UsageReport(
            total_buckets=len(pages.items),
            pages_fetched=pages.pages_fetched,
            truncated=pages.truncated,
        )

        for bucket in pages.items:
            is_today = window.is_today(_parse_time(bucket.get("start_time") or 0))
            for result in bucket.get("results", []):
                try:
                    cents = float(result.get("amount") or 0)
                except (TypeError, ValueError):
                    cents = 0.0
                workspace_id = result.get("workspace_id") or DEFAULT_WORKSPACE
                report.usage_for(workspace_id).add(cents / 100, is_today)

        logger.debug("anthropic_costs_done", workspace_count=len(report.items))
        return report

    # the cost report is the only usage source used for Anthropic
    fetch_costs = fetch_usage

    async def fetch_keys(self, admin_key: "str") -> "list[VendorKey]":
        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            params: "dict[str, Any]" = {"limit": 100}
            if cursor:
                params["after_id"] = cursor
            resp = await self._client.get(
                f"{ANTHROPIC_BASE_URL}/organizations/api_keys",
                params=params,
                headers=self._headers(admin_key),
            )
            return check_response(resp, "failed to list Anthropic keys")

        pages = await paginate(fetch_page, "anthropic_keys", last_id_cursor)
        return [
            VendorKey(
                id=key["id"],
                name=key.get("name") or "",
                workspace_id=key.get("workspace_id"),
                status=key.get("status"),
                raw=key,
            )
            for key in pages.items
        ]

    async def deactivate_key(self, admin_key: "str", api_key_id: "str") -> "bool":
        """
        the Admin API cannot delete keys, only mark them inactive.
        Returns False when the key no longer exists.
        """
        resp = await self._client.post(
            f"{ANTHROPIC_BASE_URL}/organizations/api_keys/{api_key_id}",
            json={"status": "inactive"},
            headers=self._headers(admin_key),
        )
        if resp.is_success:
            return True
        error = vendor_error(resp, "failed to deactivate Anthropic key")
        if error.code == "not_found_error":
            logger.info("anthropic_key_already_deleted", api_key_id=api_key_id)
            return False
        raise error

    async def verify_key(self, api_key: "str") -> "bool":
        """
        sends a one token message. A rate limit or overload answer
        still proves the key authenticated.
        """
        resp = await self._client.post(
            f"{ANTHROPIC_BASE_URL}/messages",
            headers=self._headers(api_key),
            json={
                "model": VERIFY_MODEL,
                "max_tokens": 1,
                "messages": [{"role": "user", "content": "Hi"}],
            },
        )
        if resp.is_success or is_rate_limited(resp):
            return True
        logger.info("anthropic_key_rejected", status_code=resp.status_code)
        return False
