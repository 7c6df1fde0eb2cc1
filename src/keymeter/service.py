import time
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
import structlog

from keymeter.auth import UserInfo
from keymeter.errors import ConfigurationError, KeymeterError, PermissionDeniedError
from keymeter.metrics import SyncMetrics
from keymeter.models import ApiKeyRecord, Platform, PlatformAccount, TimeWindow, VendorKey
from keymeter.provider.base import UsageAdapter
from keymeter.provider.volcengine import VolcengineCredential
from keymeter.reconciler import (
    Reconciliation,
    reconcile_anthropic_costs,
    reconcile_openai_costs,
    reconcile_openai_usage,
    reconcile_openrouter,
    reconcile_volcengine,
)
from keymeter.store.base import API_KEYS_TABLE, PLATFORM_ACCOUNTS_TABLE, Store
from keymeter.writer import SaveSummary, UsageWriter

logger = structlog.get_logger()

# admin keys that can be told apart from regular keys by prefix
ADMIN_KEY_PREFIXES = {
    Platform.ANTHROPIC.value: "sk-ant-admin",
    Platform.OPENROUTER.value: "sk-or-",
}

AccountSync = Callable[[PlatformAccount], Awaitable["dict[str, Any]"]]


def _result(
    message: "str",
    summary: "dict[str, Any]",
    reconciliation: "Reconciliation",
    saved: "SaveSummary",
    synced_at: "str",
    **extra: "Any",
) -> "dict[str, Any]":
    body: "dict[str, Any]" = {
        "success": True,
        "message": message,
        "summary": summary,
        "matched_keys": reconciliation.matched_keys,
        "saved_count": saved.saved_count,
        "synced_at": synced_at,
        **extra,
    }
    if saved.errors:
        body["errors"] = saved.errors
    if reconciliation.unmatched.items:
        body["unmatched_keys"] = reconciliation.unmatched.to_dict()
    return body


class SyncService:
    """
    SyncService runs the per-vendor sync operations: resolve the admin
    credential, call the vendor adapter, reconcile against the local key
    rows and persist the usage records. The HTTP handlers and the cron
    orchestrator both call it in-process.
    """

    def __init__(
        self,
        store: "Store",
        adapters: "dict[str, UsageAdapter]",
        metrics: "SyncMetrics | None" = None,
        clock: "Callable[[], datetime] | None" = None,
    ) -> "None":
        self._store = store
        self._adapters = adapters
        self._writer = UsageWriter(store)
        self._metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # platform -> scheduled sync for one stored account
        self.account_operations: "dict[str, AccountSync]" = {
            Platform.OPENAI.value: self._sync_openai_account,
            Platform.ANTHROPIC.value: self._sync_anthropic_account,
            Platform.OPENROUTER.value: self._sync_openrouter_account,
            Platform.VOLCENGINE.value: self._sync_volcengine_account,
        }

    async def close(self) -> "None":
        for adapter in self._adapters.values():
            await adapter.close()

    def _adapter(self, platform: "Platform") -> "Any":
        adapter = self._adapters.get(platform.value)
        if adapter is None:
            raise ConfigurationError(f"unsupported platform: {platform.value}")
        return adapter

    def _window(self) -> "TimeWindow":
        return TimeWindow.now_utc(self._clock())

    @asynccontextmanager
    async def _track(self, platform: "Platform", operation: "str") -> "AsyncIterator[None]":
        start = time.monotonic()
        try:
            yield
        except Exception:
            if self._metrics:
                self._metrics.inc_sync_error(platform.value, operation)
            raise
        else:
            if self._metrics:
                self._metrics.set_last_sync_success(platform.value, time.time())
        finally:
            if self._metrics:
                self._metrics.observe_sync_duration(
                    platform.value, operation, time.monotonic() - start
                )

    async def _save(self, platform: "Platform", records: "list[Any]") -> "SaveSummary":
        saved = await self._writer.save(records)
        if self._metrics:
            self._metrics.add_saved_rows(
                platform.value, saved.saved_count, len(saved.errors)
            )
        return saved

    async def _local_keys(self, platform: "Platform") -> "list[ApiKeyRecord]":
        rows = await self._store.select(API_KEYS_TABLE, {"platform": platform.value})
        return [ApiKeyRecord.from_row(row) for row in rows]

    async def _touch_keys(self, key_ids: "list[str]", synced_at: "str") -> "None":
        for key_id in key_ids:
            try:
                await self._store.update(
                    API_KEYS_TABLE, {"last_synced_at": synced_at}, {"id": key_id}
                )
            except KeymeterError as exc:
                logger.warning("key_touch_failed", api_key_id=key_id, error=exc.message)

    async def _create_keys(
        self,
        platform: "Platform",
        vendor_keys: "list[VendorKey]",
        synced_at: "str",
        account_id: "str | None" = None,
        tenant_id: "str | None" = None,
        created_by: "str | None" = None,
    ) -> "tuple[int, list[dict[str, str]]]":
        """
        inserts local rows for vendor keys discovered during a sync.
        """
        created = 0
        errors: "list[dict[str, str]]" = []
        for key in vendor_keys:
            row = {
                "name": key.name or f"{platform.value}-{key.id[-8:]}",
                "platform": platform.value,
                "platform_key_id": key.id,
                "project_id": key.project_id,
                "workspace_id": key.workspace_id,
                "status": key.status or "active",
                "platform_account_id": account_id,
                "tenant_id": tenant_id,
                "created_by": created_by,
                "creation_method": "sync",
                "created_at": synced_at,
                "updated_at": synced_at,
            }
            try:
                await self._store.insert(API_KEYS_TABLE, row)
            except KeymeterError as exc:
                logger.warning(
                    "key_discovery_failed",
                    platform=platform.value,
                    platform_key_id=key.id,
                    error=exc.message,
                )
                errors.append({"platform_key_id": key.id, "error": exc.message})
                continue
            created += 1

        if created:
            logger.info("keys_discovered", platform=platform.value, count=created)
        return created, errors

    async def get_account(self, account_id: "str") -> "PlatformAccount":
        rows = await self._store.select(PLATFORM_ACCOUNTS_TABLE, {"id": account_id})
        if not rows:
            raise ConfigurationError(
                "platform account not found", code="ACCOUNT_NOT_FOUND"
            )
        return PlatformAccount.from_row(rows[0])

    async def resolve_account(
        self,
        platform: "Platform",
        account_id: "str",
        user: "UserInfo | None" = None,
    ) -> "PlatformAccount":
        """
        loads a stored platform account and checks it can be synced for
        the given platform. When a user is given, an account owned by
        another tenant is refused before anything else about it is
        reported.
        """
        account = await self.get_account(account_id)
        if (
            user is not None
            and account.tenant_id
            and account.tenant_id != user.tenant_id
        ):
            raise PermissionDeniedError(
                "platform account belongs to another tenant", code="FORBIDDEN"
            )
        if account.status != "active":
            raise ConfigurationError(
                f"platform account is {account.status}, only active accounts can be synced",
                code="ACCOUNT_INACTIVE",
            )
        if account.platform != platform.value:
            raise ConfigurationError(
                f"platform mismatch: account is {account.platform}, expected {platform.value}",
                code="PLATFORM_MISMATCH",
            )
        if not account.admin_key_encrypted:
            raise ConfigurationError(
                "platform account has no admin key", code="MISSING_ADMIN_KEY"
            )
        return account

    async def resolve_admin_key(
        self,
        platform: "Platform",
        admin_key: "str | None" = None,
        platform_account_id: "str | None" = None,
        user: "UserInfo | None" = None,
    ) -> "tuple[str, PlatformAccount | None]":
        """
        returns the admin key to sync with, taken from the request or from
        the stored platform account, plus the account when one was used.
        """
        account = None
        if not admin_key and platform_account_id:
            account = await self.resolve_account(platform, platform_account_id, user)
            admin_key = account.admin_key_encrypted

        if not admin_key:
            raise ConfigurationError(
                "missing admin key, provide admin_key or platform_account_id",
                code="MISSING_ADMIN_KEY",
            )

        prefix = ADMIN_KEY_PREFIXES.get(platform.value)
        if prefix and not admin_key.startswith(prefix):
            raise ConfigurationError(
                f"malformed {platform.value} admin key, expected prefix {prefix}",
                code="INVALID_ADMIN_KEY",
            )
        return admin_key, account

    async def resolve_volcengine_credential(
        self,
        access_key_id: "str | None" = None,
        secret_access_key: "str | None" = None,
        admin_key: "str | None" = None,
        platform_account_id: "str | None" = None,
        user: "UserInfo | None" = None,
    ) -> "tuple[VolcengineCredential, PlatformAccount | None]":
        if access_key_id and secret_access_key:
            return VolcengineCredential(access_key_id, secret_access_key), None
        key, account = await self.resolve_admin_key(
            Platform.VOLCENGINE, admin_key, platform_account_id, user
        )
        return VolcengineCredential.from_admin_key(key), account

    async def sync_openai_usage(self, admin_key: "str") -> "dict[str, Any]":
        """
        syncs this month's token usage per OpenAI key.
        """
        window = self._window()
        synced_at = window.now.isoformat()
        adapter = self._adapter(Platform.OPENAI)

        async with self._track(Platform.OPENAI, "usage"):
            vendor_keys = await adapter.fetch_keys(admin_key)
            local_keys = await self._local_keys(Platform.OPENAI)
            report = await adapter.fetch_usage(admin_key, window)
            reconciliation = reconcile_openai_usage(
                report, vendor_keys, local_keys, window, synced_at
            )
            saved = await self._save(Platform.OPENAI, reconciliation.records)
            await self._touch_keys([r.api_key_id for r in reconciliation.records], synced_at)

        logger.info(
            "openai_usage_synced",
            matched=len(reconciliation.matched_keys),
            saved=saved.saved_count,
            pages=report.pages_fetched,
        )
        return _result(
            f"synced token usage for {len(reconciliation.records)} keys",
            {
                "month_tokens": int(report.month_amount),
                "today_tokens": int(report.today_amount),
                "total_buckets": report.total_buckets,
                "pages_fetched": report.pages_fetched,
                "truncated": report.truncated,
                "usage_keys_count": len(report.items),
                "openai_keys_count": len(vendor_keys),
                "db_keys_count": len(local_keys),
            },
            reconciliation,
            saved,
            synced_at,
        )

    async def sync_openai_costs(self, admin_key: "str") -> "dict[str, Any]":
        """
        syncs this month's cost per OpenAI project, split evenly across
        each project's keys.
        """
        window = self._window()
        synced_at = window.now.isoformat()
        adapter = self._adapter(Platform.OPENAI)

        async with self._track(Platform.OPENAI, "costs"):
            vendor_keys = await adapter.fetch_keys(admin_key)
            local_keys = await self._local_keys(Platform.OPENAI)
            report = await adapter.fetch_costs(admin_key, window)
            reconciliation = reconcile_openai_costs(
                report, vendor_keys, local_keys, window, synced_at
            )
            saved = await self._save(Platform.OPENAI, reconciliation.records)
            await self._touch_keys([r.api_key_id for r in reconciliation.records], synced_at)

        logger.info(
            "openai_costs_synced",
            projects=len(report.items),
            matched=len(reconciliation.matched_keys),
            saved=saved.saved_count,
        )
        return _result(
            f"synced costs for {len(reconciliation.records)} keys",
            {
                "total_cost_usd": f"{report.total_amount:.4f}",
                "month_cost_usd": f"{report.month_amount:.4f}",
                "today_cost_usd": f"{report.today_amount:.4f}",
                "total_buckets": report.total_buckets,
                "pages_fetched": report.pages_fetched,
                "truncated": report.truncated,
                "projects_with_costs": len(report.items),
            },
            reconciliation,
            saved,
            synced_at,
        )

    async def sync_anthropic_costs(self, admin_key: "str") -> "dict[str, Any]":
        """
        syncs this month's cost per Anthropic workspace, split evenly
        across the workspace's keys.
        """
        window = self._window()
        synced_at = window.now.isoformat()
        adapter = self._adapter(Platform.ANTHROPIC)

        async with self._track(Platform.ANTHROPIC, "costs"):
            local_keys = await self._local_keys(Platform.ANTHROPIC)
            report = await adapter.fetch_costs(admin_key, window)
            reconciliation = reconcile_anthropic_costs(
                report, local_keys, window, synced_at
            )
            saved = await self._save(Platform.ANTHROPIC, reconciliation.records)
            await self._touch_keys([r.api_key_id for r in reconciliation.records], synced_at)

        zero_fee = sum(
            1 for r in reconciliation.records if r.raw_response and "note" in r.raw_response
        )
        logger.info(
            "anthropic_costs_synced",
            workspaces=len(report.items),
            matched=len(reconciliation.matched_keys),
            saved=saved.saved_count,
        )
        return _result(
            f"synced costs for {len(reconciliation.records)} keys",
            {
                "total_cost_usd": f"{report.total_amount:.4f}",
                "month_cost_usd": f"{report.month_amount:.4f}",
                "today_cost_usd": f"{report.today_amount:.4f}",
                "total_buckets": report.total_buckets,
                "pages_fetched": report.pages_fetched,
                "truncated": report.truncated,
                "workspaces_count": len(report.items),
                "zero_fee_keys_count": zero_fee,
            },
            reconciliation,
            saved,
            synced_at,
        )

    async def sync_openrouter(
        self,
        admin_key: "str",
        account: "PlatformAccount | None" = None,
        created_by: "str | None" = None,
        tenant_id: "str | None" = None,
    ) -> "dict[str, Any]":
        """
        syncs usage for every OpenRouter key, creating local rows for keys
        seen for the first time, and records the account credit balance.
        Discovered rows take the account's tenant, else `tenant_id`.
        """
        window = self._window()
        synced_at = window.now.isoformat()
        adapter = self._adapter(Platform.OPENROUTER)
        account_id = account.id if account else None
        if account and account.tenant_id:
            tenant_id = account.tenant_id

        async with self._track(Platform.OPENROUTER, "usage"):
            vendor_keys = await adapter.fetch_keys(admin_key)
            report = adapter.usage_from_keys(vendor_keys)
            local_keys = await self._local_keys(Platform.OPENROUTER)
            reconciliation = reconcile_openrouter(
                report, vendor_keys, local_keys, window, synced_at
            )

            discovered, discovery_errors = 0, []
            if reconciliation.new_keys:
                discovered, discovery_errors = await self._create_keys(
                    Platform.OPENROUTER,
                    reconciliation.new_keys,
                    synced_at,
                    account_id=account_id,
                    tenant_id=tenant_id,
                    created_by=created_by,
                )
                local_keys = await self._local_keys(Platform.OPENROUTER)
                reconciliation = reconcile_openrouter(
                    report, vendor_keys, local_keys, window, synced_at
                )

            saved = await self._save(Platform.OPENROUTER, reconciliation.records)
            await self._touch_keys([r.api_key_id for r in reconciliation.records], synced_at)

        credits = None
        credits_error = None
        try:
            credits = await adapter.fetch_credits(admin_key)
        except (KeymeterError, httpx.HTTPError) as exc:
            credits_error = str(exc)
            logger.warning("openrouter_credits_failed", error=credits_error)

        if credits is not None and account_id:
            try:
                await self._store.update(
                    PLATFORM_ACCOUNTS_TABLE,
                    {"total_balance": credits["balance"], "updated_at": synced_at},
                    {"id": account_id},
                )
            except KeymeterError as exc:
                logger.warning(
                    "account_balance_update_failed", account_id=account_id, error=exc.message
                )

        logger.info(
            "openrouter_synced",
            keys=len(vendor_keys),
            discovered=discovered,
            saved=saved.saved_count,
        )
        extra: "dict[str, Any]" = {"credits": credits}
        if credits_error:
            extra["credits_error"] = credits_error
        if discovery_errors:
            extra["discovery_errors"] = discovery_errors
        return _result(
            f"synced usage for {len(reconciliation.records)} keys",
            {
                "month_usage_usd": f"{report.month_amount:.4f}",
                "today_usage_usd": f"{report.today_amount:.4f}",
                "total_usage_usd": f"{report.total_amount:.4f}",
                "openrouter_keys_count": len(vendor_keys),
                "discovered_keys_count": discovered,
            },
            reconciliation,
            saved,
            synced_at,
            **extra,
        )

    async def sync_volcengine(
        self,
        credential: "VolcengineCredential",
        tenant_id: "str | None" = None,
        account: "PlatformAccount | None" = None,
        created_by: "str | None" = None,
        sync_balance: "bool" = True,
        sync_usage: "bool" = True,
    ) -> "dict[str, Any]":
        """
        syncs Volcengine access keys, the account balance and the Ark
        token usage. Listing keys must succeed; a failing balance or usage
        call is reported in the response and the other half is still
        written.
        """
        window = self._window()
        synced_at = window.now.isoformat()
        adapter = self._adapter(Platform.VOLCENGINE)
        account_id = account.id if account else None

        async with self._track(Platform.VOLCENGINE, "usage"):
            vendor_keys = await adapter.fetch_keys(credential)
            local_keys = await self._local_keys(Platform.VOLCENGINE)

            discovered, discovery_errors = 0, []
            pending = reconcile_volcengine(
                None, None, vendor_keys, local_keys, tenant_id, window, synced_at
            )
            if pending.new_keys:
                discovered, discovery_errors = await self._create_keys(
                    Platform.VOLCENGINE,
                    pending.new_keys,
                    synced_at,
                    account_id=account_id,
                    tenant_id=tenant_id,
                    created_by=created_by,
                )
                local_keys = await self._local_keys(Platform.VOLCENGINE)

            balance = balance_error = None
            if sync_balance:
                try:
                    balance = await adapter.fetch_balance(credential)
                except (KeymeterError, httpx.HTTPError) as exc:
                    balance_error = str(exc)
                    logger.warning("volcengine_balance_failed", error=balance_error)

            report = usage_error = None
            if sync_usage:
                try:
                    report = await adapter.fetch_usage(credential, window)
                except (KeymeterError, httpx.HTTPError) as exc:
                    usage_error = str(exc)
                    logger.warning("volcengine_usage_failed", error=usage_error)

            reconciliation = reconcile_volcengine(
                report, balance, vendor_keys, local_keys, tenant_id, window, synced_at
            )
            if balance is None and report is None and (sync_balance or sync_usage):
                reconciliation.records = [
                    replace(r, sync_status="error") for r in reconciliation.records
                ]
            saved = await self._save(Platform.VOLCENGINE, reconciliation.records)
            await self._touch_keys([r.api_key_id for r in reconciliation.records], synced_at)

        logger.info(
            "volcengine_synced",
            keys=len(vendor_keys),
            discovered=discovered,
            saved=saved.saved_count,
        )
        extra: "dict[str, Any]" = {"balance": balance}
        if balance_error:
            extra["balance_error"] = balance_error
        if usage_error:
            extra["usage_error"] = usage_error
        if discovery_errors:
            extra["discovery_errors"] = discovery_errors
        usage_summary = None
        if report is not None:
            usage_summary = {
                "total_buckets": report.total_buckets,
                "metrics": {
                    name: {
                        "month": item.month_amount,
                        "today": item.today_amount,
                    }
                    for name, item in report.items.items()
                },
            }
        return _result(
            f"synced {len(reconciliation.records)} keys",
            {
                "access_keys_count": len(vendor_keys),
                "discovered_keys_count": discovered,
                "usage": usage_summary,
            },
            reconciliation,
            saved,
            synced_at,
            **extra,
        )

    async def verify_key(self, platform: "str", api_key: "str") -> "bool":
        try:
            adapter = self._adapter(Platform(platform))
        except ValueError as exc:
            raise ConfigurationError(f"unsupported platform: {platform}") from exc
        if not api_key:
            raise ConfigurationError("api_key is required", code="MISSING_API_KEY")
        return await adapter.verify_key(api_key)

    async def _sync_openai_account(self, account: "PlatformAccount") -> "dict[str, Any]":
        admin_key, _ = await self.resolve_admin_key(
            Platform.OPENAI, account.admin_key_encrypted
        )
        result = await self.sync_openai_usage(admin_key)
        # cost sync is secondary, a failure only shows up in the result
        try:
            costs = await self.sync_openai_costs(admin_key)
            result["costs"] = {
                "saved_count": costs["saved_count"],
                "summary": costs["summary"],
            }
        except KeymeterError as exc:
            logger.warning("openai_costs_failed", account_id=account.id, error=exc.message)
            result["costs_error"] = exc.message
        return result

    async def _sync_anthropic_account(self, account: "PlatformAccount") -> "dict[str, Any]":
        admin_key, _ = await self.resolve_admin_key(
            Platform.ANTHROPIC, account.admin_key_encrypted
        )
        return await self.sync_anthropic_costs(admin_key)

    async def _sync_openrouter_account(self, account: "PlatformAccount") -> "dict[str, Any]":
        admin_key, _ = await self.resolve_admin_key(
            Platform.OPENROUTER, account.admin_key_encrypted
        )
        return await self.sync_openrouter(admin_key, account=account)

    async def _sync_volcengine_account(self, account: "PlatformAccount") -> "dict[str, Any]":
        credential, _ = await self.resolve_volcengine_credential(
            admin_key=account.admin_key_encrypted
        )
        return await self.sync_volcengine(
            credential, tenant_id=account.tenant_id, account=account
        )
