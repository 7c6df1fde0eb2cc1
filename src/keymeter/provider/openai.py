from typing import Any

import httpx
import structlog

from keymeter.errors import VendorAPIError
from keymeter.models import TimeWindow, UsageReport, VendorKey
from keymeter.provider.base import (
    check_response,
    is_rate_limited,
    last_id_cursor,
    paginate,
    vendor_error,
)

logger = structlog.get_logger()

OPENAI_BASE_URL = "https://api.openai.com/v1/organization"
OPENAI_MODELS_URL = "https://api.openai.com/v1/models"

# error codes OpenAI answers a delete with once the key is gone
ALREADY_DELETED_CODES = frozenset({"not_found", "invalid_request_error"})


class OpenAIAdapter:
    """
    OpenAIAdapter implements the UsageAdapter protocol for OpenAI's
    organization admin API. Token usage is reported per api_key_id, but
    cost is only reported per project, so the adapter also lists every
    project's keys for the reconciler to split project cost across.
    """

    def __init__(self, timeout: "float" = 10.0) -> "None":
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(timeout=timeout)

    @property
    def platform(self) -> "str":
        return "openai"

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    @staticmethod
    def _headers(admin_key: "str") -> "dict[str, str]":
        return {
            "Authorization": f"Bearer {admin_key}",
            "Content-Type": "application/json",
        }

    async def _get(
        self,
        admin_key: "str",
        url: "str",
        params: "dict[str, Any]",
        what: "str",
    ) -> "dict[str, Any]":
        logger.debug("openai_request", url=url, params=params)
        resp = await self._client.get(url, params=params, headers=self._headers(admin_key))
        return check_response(resp, f"failed to fetch OpenAI {what}")

    async def list_projects(self, admin_key: "str") -> "list[dict[str, Any]]":
        """
        lists the organization's active projects.
        """

        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            params: "dict[str, Any]" = {"limit": 100, "include_archived": "false"}
            if cursor:
                params["after"] = cursor
            return await self._get(
                admin_key, f"{OPENAI_BASE_URL}/projects", params, "projects"
            )

        pages = await paginate(fetch_page, "openai_projects", last_id_cursor)
        return pages.items

    async def list_project_keys(
        self,
        admin_key: "str",
        project: "dict[str, Any]",
    ) -> "list[VendorKey]":
        project_id = project["id"]

        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            params: "dict[str, Any]" = {"limit": 100}
            if cursor:
                params["after"] = cursor
            return await self._get(
                admin_key,
                f"{OPENAI_BASE_URL}/projects/{project_id}/api_keys",
                params,
                "project keys",
            )

        pages = await paginate(fetch_page, "openai_project_keys", last_id_cursor)
        return [
            VendorKey(
                id=key["id"],
                name=key.get("name") or "",
                project_id=project_id,
                project_name=project.get("name"),
                raw=key,
            )
            for key in pages.items
        ]

    async def create_service_account(
        self,
        admin_key: "str",
        project_id: "str",
        name: "str",
    ) -> "dict[str, Any]":
        """
        creates a project service account, which is how the admin API
        issues a new secret key. The key value is only ever returned by
        this call.
        """
        resp = await self._client.post(
            f"{OPENAI_BASE_URL}/projects/{project_id}/service_accounts",
            json={"name": name},
            headers=self._headers(admin_key),
        )
        data = check_response(resp, "failed to create OpenAI service account")
        if not (data.get("api_key") or {}).get("value"):
            raise VendorAPIError("OpenAI did not return the new API key", status_code=502)
        logger.info("openai_service_account_created", project_id=project_id)
        return data

    async def delete_project_key(
        self,
        admin_key: "str",
        project_id: "str",
        key_id: "str",
    ) -> "bool":
        """
        deletes a project API key. Returns False when OpenAI no longer
        knows the key.
        """
        resp = await self._client.delete(
            f"{OPENAI_BASE_URL}/projects/{project_id}/api_keys/{key_id}",
            headers=self._headers(admin_key),
        )
        if resp.is_success:
            return True
        error = vendor_error(resp, "failed to delete OpenAI key")
        if resp.status_code == 404 or error.code in ALREADY_DELETED_CODES:
            logger.info("openai_key_already_deleted", project_id=project_id, key_id=key_id)
            return False
        raise error

    async def fetch_keys(self, admin_key: "str") -> "list[VendorKey]":
        """
        fans out over every project and collects its keys. A project
        whose key list cannot be read is skipped, the project list
        itself must succeed.
        """
        keys: "list[VendorKey]" = []
        for project in await self.list_projects(admin_key):
            try:
                keys.extend(await self.list_project_keys(admin_key, project))
            except Exception as exc:
                logger.warning(
                    "openai_project_keys_failed",
                    project_id=project.get("id"),
                    error=str(exc),
                )
        return keys

    async def fetch_usage(
        self,
        admin_key: "str",
        window: "TimeWindow",
    ) -> "UsageReport":
        """
        fetches this month's completion token usage grouped by api_key_id.
        """

        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            params: "dict[str, Any]" = {
                "start_time": window.month_start_ts,
                "end_time": window.now_ts,
                "bucket_width": "1d",
                "group_by[]": "api_key_id",
                "limit": 31,
            }
            if cursor:
                params["page"] = cursor
            return await self._get(
                admin_key, f"{OPENAI_BASE_URL}/usage/completions", params, "usage"
            )

        pages = await paginate(fetch_page, "openai_usage")
        report = UsageReport(
            total_buckets=len(pages.items),
            pages_fetched=pages.pages_fetched,
            truncated=pages.truncated,
        )

        for bucket in pages.items:
            is_today = window.is_today(bucket.get("start_time", 0))
            for result in bucket.get("results", []):
                input_tokens = result.get("input_tokens") or 0
                output_tokens = result.get("output_tokens") or 0
                usage = report.usage_for(result.get("api_key_id") or "unknown")
                usage.add(input_tokens + output_tokens, is_today)
                usage.add_detail("input_tokens", input_tokens)
                usage.add_detail("output_tokens", output_tokens)

        logger.debug(
            "openai_usage_done",
            bucket_count=report.total_buckets,
            key_count=len(report.items),
        )
        return report

    async def fetch_costs(
        self,
        admin_key: "str",
        window: "TimeWindow",
    ) -> "UsageReport":
        """
        fetches this month's cost in USD grouped by project_id, with a
        per line item breakdown in each project's details.
        """

        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            params: "dict[str, Any]" = {
                "start_time": window.month_start_ts,
                "end_time": window.now_ts,
                "bucket_width": "1d",
                "limit": 180,
                "group_by": "project_id",
            }
            if cursor:
                params["page"] = cursor
            return await self._get(admin_key, f"{OPENAI_BASE_URL}/costs", params, "costs")

        pages = await paginate(fetch_page, "openai_costs")
        report = UsageReport(
            total_buckets=len(pages.items),
            pages_fetched=pages.pages_fetched,
            truncated=pages.truncated,
        )

        for bucket in pages.items:
            is_today = window.is_today(bucket.get("start_time", 0))
            for result in bucket.get("results", []):
                amount = _amount_value(result.get("amount"))
                usage = report.usage_for(result.get("project_id") or "unknown")
                usage.add(amount, is_today)
                usage.add_detail(result.get("line_item") or "unknown", amount)

        logger.debug("openai_costs_done", project_count=len(report.items))
        return report

    async def verify_key(self, api_key: "str") -> "bool":
        resp = await self._client.get(OPENAI_MODELS_URL, headers=self._headers(api_key))
        if resp.is_success or is_rate_limited(resp):
            return True
        logger.info("openai_key_rejected", status_code=resp.status_code)
        return False


def _amount_value(amount: "Any") -> "float":
    # the costs API nests the value as {"value": ..., "currency": ...}
    if isinstance(amount, dict):
        amount = amount.get("value")
    try:
        return float(amount or 0)
    except (TypeError, ValueError):
        return 0.0
