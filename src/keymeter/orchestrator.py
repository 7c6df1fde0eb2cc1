import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import structlog

from keymeter.errors import KeymeterError
from keymeter.metrics import SyncMetrics
from keymeter.models import PlatformAccount
from keymeter.service import SyncService
from keymeter.store.base import PLATFORM_ACCOUNTS_TABLE, Store

logger = structlog.get_logger()

ALERT_CHECK_FUNCTION = "check_and_create_alerts"

SleepFunc = Callable[[float], Awaitable[Any]]


def _parse_timestamp(value: "str | None") -> "datetime | None":
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AlertChecker:
    """
    AlertChecker asks the store to evaluate usage alerts once a cron run
    has written fresh usage. Failures are logged and never fail the run.
    """

    def __init__(self, store: "Store") -> "None":
        self._store = store

    async def check(self) -> "bool":
        try:
            result = await self._store.rpc(ALERT_CHECK_FUNCTION)
        except Exception as exc:
            logger.warning("alert_check_failed", error=str(exc))
            return False
        logger.info("alert_check_done", result=result)
        return True


class Orchestrator:
    """
    Orchestrator is the cron entry point. Each run picks the active
    platform accounts that are due for a sync, oldest first, and syncs
    them one at a time with a pause in between so vendor rate limits
    are not hit. Every selected account has its verification timestamp
    and error message updated whatever the outcome.
    """

    def __init__(
        self,
        store: "Store",
        service: "SyncService",
        alert_checker: "AlertChecker | None" = None,
        sync_interval_seconds: "int" = 3600,
        max_accounts_per_run: "int" = 3,
        delay_between_accounts_seconds: "float" = 10.0,
        metrics: "SyncMetrics | None" = None,
        sleep: "SleepFunc" = asyncio.sleep,
        clock: "Callable[[], datetime] | None" = None,
    ) -> "None":
        self._store = store
        self._service = service
        self._alert_checker = alert_checker
        self._interval = timedelta(seconds=sync_interval_seconds)
        self._max_accounts = max_accounts_per_run
        self._delay = delay_between_accounts_seconds
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def select_accounts(self, now: "datetime") -> "list[PlatformAccount]":
        """
        returns the active accounts never verified or last verified
        before the sync interval, nulls first then oldest first.
        """
        rows = await self._store.select(PLATFORM_ACCOUNTS_TABLE, {"status": "active"})
        cutoff = now - self._interval

        due: "list[tuple[datetime | None, PlatformAccount]]" = []
        for row in rows:
            account = PlatformAccount.from_row(row)
            verified_at = _parse_timestamp(account.last_verified_at)
            if verified_at is None or verified_at < cutoff:
                due.append((verified_at, account))

        due.sort(key=lambda item: (item[0] is not None, item[0] or now))
        return [account for _, account in due[: self._max_accounts]]

    async def run(self) -> "dict[str, Any]":
        """
        runs one cron pass and returns its report.
        """
        start = time.monotonic()
        now = self._clock()
        synced_at = now.isoformat()

        accounts = await self.select_accounts(now)
        if not accounts:
            logger.info("cron_no_accounts_due")
            return {
                "success": True,
                "message": "no accounts need syncing",
                "total_accounts": 0,
                "success_count": 0,
                "fail_count": 0,
                "duration_ms": int((time.monotonic() - start) * 1000),
                "results": [],
                "synced_at": synced_at,
            }

        logger.info("cron_run_start", accounts=len(accounts))
        results: "list[dict[str, Any]]" = []
        for i, account in enumerate(accounts):
            results.append(await self._sync_account(account))
            # pause between accounts to stay under vendor rate limits
            if i < len(accounts) - 1:
                await self._sleep(self._delay)

        if self._alert_checker is not None:
            await self._alert_checker.check()

        success_count = sum(1 for r in results if r["success"])
        fail_count = len(results) - success_count
        duration = time.monotonic() - start
        if self._metrics:
            self._metrics.observe_sync_duration("all", "cron", duration)

        logger.info(
            "cron_run_end",
            success_count=success_count,
            fail_count=fail_count,
            duration_ms=int(duration * 1000),
        )
        return {
            "success": True,
            "message": f"synced {len(results)} accounts",
            "total_accounts": len(results),
            "success_count": success_count,
            "fail_count": fail_count,
            "duration_ms": int(duration * 1000),
            "results": results,
            "synced_at": synced_at,
        }

    async def _sync_account(self, account: "PlatformAccount") -> "dict[str, Any]":
        logger.info(
            "account_sync_start",
            account_id=account.id,
            platform=account.platform,
            name=account.name,
        )
        result: "dict[str, Any]" = {
            "account_id": account.id,
            "platform": account.platform,
            "name": account.name,
        }

        error = None
        operation = self._service.account_operations.get(account.platform)
        if operation is None:
            error = f"unsupported platform: {account.platform}"
        else:
            try:
                outcome = await operation(account)
                result["saved_count"] = outcome.get("saved_count", 0)
                result["message"] = outcome.get("message")
            except KeymeterError as exc:
                error = exc.message
            except Exception as exc:
                logger.exception("account_sync_error", account_id=account.id)
                error = str(exc) or type(exc).__name__

        result["success"] = error is None
        if error is not None:
            result["error"] = error
            if self._metrics:
                self._metrics.inc_sync_error(account.platform, "cron")

        verified_at = self._clock().isoformat()
        try:
            await self._store.update(
                PLATFORM_ACCOUNTS_TABLE,
                {
                    "last_verified_at": verified_at,
                    "error_message": error,
                    "updated_at": verified_at,
                },
                {"id": account.id},
            )
        except KeymeterError as exc:
            logger.warning(
                "account_status_update_failed", account_id=account.id, error=exc.message
            )

        logger.info(
            "account_sync_end",
            account_id=account.id,
            platform=account.platform,
            success=result["success"],
            error=error,
        )
        return result
