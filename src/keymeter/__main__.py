import asyncio
import json

import structlog
import uvicorn

from keymeter.api import create_app
from keymeter.auth import Authenticator, SupabaseAuthenticator, UserInfo
from keymeter.cli import parse_args
from keymeter.config import Config
from keymeter.keys import KeyManager
from keymeter.logging import setup_logging
from keymeter.metrics import SyncMetrics
from keymeter.orchestrator import AlertChecker, Orchestrator
from keymeter.provider.anthropic import AnthropicAdapter
from keymeter.provider.base import UsageAdapter
from keymeter.provider.openai import OpenAIAdapter
from keymeter.provider.openrouter import OpenRouterAdapter
from keymeter.provider.volcengine import VolcengineAdapter
from keymeter.service import SyncService
from keymeter.store.base import Store
from keymeter.store.memory import InMemoryStore
from keymeter.store.supabase import SupabaseStore

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':8000' or '0.0.0.0:8000'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


class _RejectAll:
    """
    used when no auth backend is configured, every user call gets a 401.
    """

    async def authenticate(self, token: "str") -> "UserInfo | None":
        return None

    async def close(self) -> "None":
        pass


def build_adapters(config: "Config") -> "dict[str, UsageAdapter]":
    timeout = config.http_timeout_seconds
    adapters: "list[UsageAdapter]" = [
        OpenAIAdapter(timeout=timeout),
        AnthropicAdapter(timeout=timeout),
        OpenRouterAdapter(timeout=timeout),
        VolcengineAdapter(timeout=timeout),
    ]
    return {adapter.platform: adapter for adapter in adapters}


def build_store(config: "Config") -> "Store":
    if config.supabase_enabled:
        logger.info("store_enabled", backend="supabase")
        return SupabaseStore(
            config.supabase_url,
            config.supabase_service_role_key,
            timeout=config.http_timeout_seconds,
        )
    logger.warning("store_enabled", backend="memory", reason="SUPABASE_URL not set")
    return InMemoryStore()


def build_authenticator(config: "Config", store: "Store") -> "Authenticator":
    if config.supabase_url and config.supabase_anon_key:
        return SupabaseAuthenticator(
            config.supabase_url,
            config.supabase_anon_key,
            store,
        )
    logger.warning("auth_disabled", reason="SUPABASE_ANON_KEY not set")
    return _RejectAll()


def main() -> "None":
    config, cron_once = parse_args()
    setup_logging(config.log_level, config.log_format)

    metrics = SyncMetrics()
    store = build_store(config)
    adapters = build_adapters(config)
    service = SyncService(store, adapters, metrics=metrics)
    orchestrator = Orchestrator(
        store,
        service,
        alert_checker=AlertChecker(store),
        sync_interval_seconds=config.sync_interval_seconds,
        max_accounts_per_run=config.max_accounts_per_run,
        delay_between_accounts_seconds=config.delay_between_accounts_seconds,
        metrics=metrics,
    )

    if cron_once:

        async def _run() -> "None":
            try:
                report = await orchestrator.run()
                print(json.dumps(report, indent=2, default=str))
            finally:
                logger.info("shutting_down")
                await service.close()
                await store.close()
                logger.info("shutdown_complete")

        asyncio.run(_run())
        return

    authenticator = build_authenticator(config, store)
    keys = KeyManager(store, adapters)
    app = create_app(
        config, store, authenticator, service, orchestrator, keys, metrics=metrics
    )

    host, port = _parse_listen_address(config.listen_address)
    logger.info("http_server_starting", host=host, port=port)
    # uvicorn installs its own SIGINT and SIGTERM handlers and runs the
    # app lifespan, which closes every client on shutdown
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
