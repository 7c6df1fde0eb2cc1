from datetime import datetime, timedelta
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from keymeter.errors import VendorAPIError
from keymeter.metrics import SyncMetrics
from keymeter.models import PlatformAccount
from keymeter.orchestrator import ALERT_CHECK_FUNCTION, AlertChecker, Orchestrator
from keymeter.store.base import PLATFORM_ACCOUNTS_TABLE
from keymeter.store.memory import InMemoryStore


class StubService:
    """
    records the order accounts are synced in. Accounts named in
    `failing` raise a vendor error.
    """

    def __init__(self, events: "list[str]", failing: "set[str] | None" = None) -> "None":
        self._events = events
        self._failing = failing or set()
        self.account_operations = {
            "openai": self._sync,
            "anthropic": self._sync,
            "openrouter": self._sync,
            "volcengine": self._sync,
        }

    async def _sync(self, account: "PlatformAccount") -> "dict[str, Any]":
        self._events.append(f"sync:{account.id}")
        if account.id in self._failing:
            raise VendorAPIError("invalid admin key", status_code=401)
        return {"success": True, "message": "ok", "saved_count": 2}


def _account(id: "str", verified_at: "datetime | None", **fields: "Any") -> "dict[str, Any]":
    row = {
        "id": id,
        "platform": "openai",
        "name": f"account {id}",
        "status": "active",
        "admin_api_key_encrypted": "sk-admin",
        "last_verified_at": verified_at.isoformat() if verified_at else None,
    }
    row.update(fields)
    return row


def _orchestrator(
    store: "InMemoryStore",
    service: "StubService",
    events: "list[str]",
    now: "datetime",
    **kwargs: "Any",
) -> "Orchestrator":
    async def sleep(seconds: "float") -> "None":
        events.append(f"sleep:{seconds:g}")

    return Orchestrator(
        store,
        service,
        sleep=sleep,
        clock=lambda: now,
        **kwargs,
    )


class TestAccountSelection:
    @pytest.mark.asyncio
    async def test_picks_stale_active_accounts_oldest_first(
        self,
        store: "InMemoryStore",
        now: "datetime",
    ) -> "None":
        store.tables[PLATFORM_ACCOUNTS_TABLE] = [
            _account("fresh", now - timedelta(minutes=10)),
            _account("two_hours", now - timedelta(hours=2)),
            _account("never_1", None),
            _account("inactive", None, status="inactive"),
            _account("five_hours", now - timedelta(hours=5)),
            _account("never_2", None),
        ]
        orchestrator = _orchestrator(store, StubService([]), [], now)

        accounts = await orchestrator.select_accounts(now)

        assert [a.id for a in accounts] == ["never_1", "never_2", "five_hours"]

    @pytest.mark.asyncio
    async def test_interval_and_cap_are_configurable(
        self,
        store: "InMemoryStore",
        now: "datetime",
    ) -> "None":
        store.tables[PLATFORM_ACCOUNTS_TABLE] = [
            _account("a", now - timedelta(minutes=10)),
            _account("b", now - timedelta(minutes=20)),
            _account("c", now - timedelta(minutes=30)),
        ]
        orchestrator = _orchestrator(
            store,
            StubService([]),
            [],
            now,
            sync_interval_seconds=300,
            max_accounts_per_run=5,
        )

        accounts = await orchestrator.select_accounts(now)

        assert [a.id for a in accounts] == ["c", "b", "a"]


class TestOrchestratorRun:
    @pytest.mark.asyncio
    async def test_syncs_sequentially_with_delay_between_accounts(
        self,
        store: "InMemoryStore",
        now: "datetime",
    ) -> "None":
        store.tables[PLATFORM_ACCOUNTS_TABLE] = [
            _account("a", None),
            _account("b", now - timedelta(hours=3)),
            _account("c", now - timedelta(hours=2)),
        ]
        events: "list[str]" = []
        orchestrator = _orchestrator(store, StubService(events), events, now)

        report = await orchestrator.run()

        assert events == ["sync:a", "sleep:10", "sync:b", "sleep:10", "sync:c"]
        assert report["success"] is True
        assert report["total_accounts"] == 3
        assert report["success_count"] == 3
        assert report["fail_count"] == 0
        assert report["synced_at"] == now.isoformat()
        assert [r["account_id"] for r in report["results"]] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_failing_account_does_not_stop_the_run(
        self,
        store: "InMemoryStore",
        now: "datetime",
        registry: "CollectorRegistry",
    ) -> "None":
        store.tables[PLATFORM_ACCOUNTS_TABLE] = [
            _account("a", None),
            _account("b", None),
            _account("c", None, platform="gemini"),
        ]
        events: "list[str]" = []
        orchestrator = _orchestrator(
            store,
            StubService(events, failing={"a"}),
            events,
            now,
            metrics=SyncMetrics(registry=registry),
        )

        report = await orchestrator.run()

        assert report["success_count"] == 1
        assert report["fail_count"] == 2
        results = {r["account_id"]: r for r in report["results"]}
        assert results["a"]["error"] == "invalid admin key"
        assert results["b"]["success"] is True
        assert results["c"]["error"] == "unsupported platform: gemini"
        assert registry.get_sample_value(
            "keymeter_sync_errors_total", {"platform": "openai", "operation": "cron"}
        ) == 1.0

        # every selected account records the outcome
        rows = {r["id"]: r for r in store.tables[PLATFORM_ACCOUNTS_TABLE]}
        assert all(row["last_verified_at"] == now.isoformat() for row in rows.values())
        assert rows["a"]["error_message"] == "invalid admin key"
        assert rows["b"]["error_message"] is None
        assert rows["c"]["error_message"] == "unsupported platform: gemini"

    @pytest.mark.asyncio
    async def test_clears_previous_error_on_success(
        self,
        store: "InMemoryStore",
        now: "datetime",
    ) -> "None":
        store.tables[PLATFORM_ACCOUNTS_TABLE] = [
            _account("a", None, error_message="old failure"),
        ]
        orchestrator = _orchestrator(store, StubService([]), [], now)

        await orchestrator.run()

        assert store.tables[PLATFORM_ACCOUNTS_TABLE][0]["error_message"] is None

    @pytest.mark.asyncio
    async def test_no_due_accounts(self, store: "InMemoryStore", now: "datetime") -> "None":
        store.tables[PLATFORM_ACCOUNTS_TABLE] = [_account("a", now)]
        events: "list[str]" = []
        orchestrator = _orchestrator(store, StubService(events), events, now)

        report = await orchestrator.run()

        assert events == []
        assert report["total_accounts"] == 0
        assert report["results"] == []

    @pytest.mark.asyncio
    async def test_runs_alert_check_after_syncing(
        self,
        store: "InMemoryStore",
        now: "datetime",
    ) -> "None":
        store.tables[PLATFORM_ACCOUNTS_TABLE] = [_account("a", None)]
        events: "list[str]" = []

        def check_alerts(params: "dict[str, Any]") -> "int":
            events.append("alerts")
            return 0

        store.register_function(ALERT_CHECK_FUNCTION, check_alerts)
        orchestrator = _orchestrator(
            store, StubService(events), events, now, alert_checker=AlertChecker(store)
        )

        await orchestrator.run()

        assert events == ["sync:a", "alerts"]

    @pytest.mark.asyncio
    async def test_alert_check_failure_is_tolerated(
        self,
        store: "InMemoryStore",
        now: "datetime",
    ) -> "None":
        store.tables[PLATFORM_ACCOUNTS_TABLE] = [_account("a", None)]
        # no alert function registered, so the rpc fails
        orchestrator = _orchestrator(
            store, StubService([]), [], now, alert_checker=AlertChecker(store)
        )

        report = await orchestrator.run()

        assert report["success"] is True
        assert report["success_count"] == 1


class TestAlertChecker:
    @pytest.mark.asyncio
    async def test_reports_outcome(self, store: "InMemoryStore") -> "None":
        checker = AlertChecker(store)
        assert await checker.check() is False

        store.register_function(ALERT_CHECK_FUNCTION, lambda params: {"created": 1})
        assert await checker.check() is True
