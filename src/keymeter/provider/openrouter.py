from typing import Any

import httpx
import structlog

from keymeter.errors import VendorAPIError
from keymeter.models import NormalizedUsage, TimeWindow, UsageReport, VendorKey
from keymeter.provider.base import check_response, is_rate_limited, paginate, vendor_error

logger = structlog.get_logger()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def _number(value: "Any") -> "float | None":
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class OpenRouterAdapter:
    """
    OpenRouterAdapter implements the UsageAdapter protocol for
    OpenRouter's provisioning API. Every key reports its own usage and
    limit, so no grouping or splitting is needed.
    """

    def __init__(self, timeout: "float" = 10.0) -> "None":
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(timeout=timeout)

    @property
    def platform(self) -> "str":
        return "openrouter"

    async def close(self) -> "None":
        await self._client.aclose()

    @staticmethod
    def _headers(key: "str") -> "dict[str, str]":
        return {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}

    async def fetch_keys(self, admin_key: "str") -> "list[VendorKey]":
        async def fetch_page(cursor: "str | None") -> "dict[str, Any]":
            resp = await self._client.get(
                f"{OPENROUTER_BASE_URL}/keys", headers=self._headers(admin_key)
            )
            return check_response(resp, "failed to list OpenRouter keys")

        pages = await paginate(fetch_page, "openrouter_keys")
        return [
            VendorKey(
                id=key.get("hash") or key.get("id"),
                name=key.get("name") or key.get("label") or "",
                status="inactive" if key.get("disabled") else "active",
                usage=_number(key.get("usage")),
                usage_daily=_number(key.get("usage_daily")),
                usage_monthly=_number(key.get("usage_monthly")),
                limit=_number(key.get("limit")),
                raw=key,
            )
            for key in pages.items
            if key.get("hash") or key.get("id")
        ]

    async def create_key(
        self,
        admin_key: "str",
        name: "str",
        limit: "float | None" = None,
        limit_reset: "str | None" = None,
        expires_at: "str | None" = None,
    ) -> "dict[str, Any]":
        """
        creates a key through the provisioning API and returns its
        metadata with the full secret under `key`.
        """
        body: "dict[str, Any]" = {"name": name}
        if limit is not None:
            body["limit"] = limit
        if limit_reset is not None:
            body["limit_reset"] = limit_reset
        if expires_at is not None:
            body["expires_at"] = expires_at

        resp = await self._client.post(
            f"{OPENROUTER_BASE_URL}/keys", json=body, headers=self._headers(admin_key)
        )
        payload = check_response(resp, "failed to create OpenRouter key")
        data = dict(payload.get("data") or {})
        full_key = data.get("key") or payload.get("key")
        if not full_key or not data.get("hash"):
            raise VendorAPIError(
                "OpenRouter created the key but did not return it", status_code=502
            )
        data["key"] = full_key
        logger.info("openrouter_key_created", key_hash=data["hash"])
        return data

    async def update_key(
        self,
        admin_key: "str",
        key_hash: "str",
        changes: "dict[str, Any]",
    ) -> "dict[str, Any]":
        resp = await self._client.patch(
            f"{OPENROUTER_BASE_URL}/keys/{key_hash}",
            json=changes,
            headers=self._headers(admin_key),
        )
        return check_response(resp, "failed to update OpenRouter key").get("data") or {}

    async def delete_key(self, admin_key: "str", key_hash: "str") -> "bool":
        """
        deletes a key, returning False when OpenRouter no longer has it.
        """
        resp = await self._client.delete(
            f"{OPENROUTER_BASE_URL}/keys/{key_hash}", headers=self._headers(admin_key)
        )
        if resp.is_success:
            return True
        error = vendor_error(resp, "failed to delete OpenRouter key")
        if resp.status_code == 404 or "not found" in error.message.lower():
            logger.info("openrouter_key_already_deleted", key_hash=key_hash)
            return False
        raise error

    async def fetch_usage(
        self,
        admin_key: "str",
        window: "TimeWindow",
    ) -> "UsageReport":
        """
        reads per key usage straight off the key listing. The window is
        not sent anywhere, OpenRouter already buckets usage by UTC day
        and month.
        """
        return self.usage_from_keys(await self.fetch_keys(admin_key))

    @staticmethod
    def usage_from_keys(keys: "list[VendorKey]") -> "UsageReport":
        report = UsageReport(pages_fetched=1, total_buckets=len(keys))
        for key in keys:
            report.items[key.id] = NormalizedUsage(
                identifier=key.id,
                today_amount=key.usage_daily or 0.0,
                month_amount=key.usage_monthly or 0.0,
                total_amount=key.usage or 0.0,
            ).clamped()
        return report

    async def fetch_credits(self, admin_key: "str") -> "dict[str, float]":
        """
        fetches the account level credit balance.
        """
        resp = await self._client.get(
            f"{OPENROUTER_BASE_URL}/credits", headers=self._headers(admin_key)
        )
        data = check_response(resp, "failed to fetch OpenRouter credits").get("data") or {}
        total_credits = _number(data.get("total_credits")) or 0.0
        total_usage = _number(data.get("total_usage")) or 0.0
        return {
            "total_credits": total_credits,
            "total_usage": total_usage,
            "balance": round(total_credits - total_usage, 4),
        }

    async def verify_key(self, api_key: "str") -> "bool":
        resp = await self._client.get(
            f"{OPENROUTER_BASE_URL}/key", headers=self._headers(api_key)
        )
        if resp.is_success or is_rate_limited(resp):
            return True
        logger.info("openrouter_key_rejected", status_code=resp.status_code)
        return False
