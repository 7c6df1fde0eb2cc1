import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from keymeter.auth import Authenticator, UserInfo, is_cron_authorized, require_user
from keymeter.config import Config
from keymeter.errors import AuthenticationError, ConfigurationError, KeymeterError
from keymeter.keys import (
    ANTHROPIC_ACTIONS,
    OPENROUTER_ACTIONS,
    VOLCENGINE_ACTIONS,
    KeyDetails,
    KeyManager,
    require_action,
)
from keymeter.metrics import SyncMetrics
from keymeter.models import Platform
from keymeter.orchestrator import Orchestrator
from keymeter.service import SyncService
from keymeter.store.base import Store

logger = structlog.get_logger()


class SyncRequest(BaseModel):
    admin_key: str | None = None
    platform_account_id: str | None = None


class VolcengineSyncRequest(SyncRequest):
    access_key_id: str | None = None
    secret_access_key: str | None = None
    sync_balance: bool = True
    sync_usage: bool = True


class VerifyKeyRequest(BaseModel):
    platform: str | None = None
    api_key: str | None = None


class KeyRequest(SyncRequest):
    """
    body shared by the key management endpoints. Each action reads the
    fields it needs and ignores the rest.
    """

    action: str | None = None
    name: str | None = None
    key_name: str | None = None
    project_id: str | None = None
    organization_id: str | None = None
    key_id: str | None = None
    key_hash: str | None = None
    api_key: str | None = None
    api_key_id: str | None = None
    db_key_id: str | None = None
    disabled: bool | None = None
    limit: float | None = None
    limit_reset: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    user_name: str | None = None
    target_access_key_id: str | None = None
    business: str | None = None
    description: str | None = None
    owner_name: str | None = None
    owner_email: str | None = None
    owner_phone: str | None = None
    expires_at: str | None = None

    def details(self) -> KeyDetails:
        return KeyDetails(
            business=self.business,
            description=self.description,
            owner_name=self.owner_name,
            owner_email=self.owner_email,
            owner_phone=self.owner_phone,
            expires_at=self.expires_at,
        )


def _error_body(message: str, code: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": message}
    if code:
        body["code"] = code
    return body


def create_app(
    config: Config,
    store: Store,
    authenticator: Authenticator,
    service: SyncService,
    orchestrator: Orchestrator,
    keys: KeyManager,
    metrics: SyncMetrics | None = None,
) -> FastAPI:
    """
    builds the HTTP surface: one POST endpoint per vendor sync, the key
    management endpoints, key verification, the cron trigger, health
    and Prometheus metrics.
    Errors raised anywhere below are turned into the
    {success: false, error, code?} shape here and nowhere else.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        yield
        logger.info("shutting_down")
        await service.close()
        await authenticator.close()
        await store.close()
        logger.info("shutdown_complete")

    app = FastAPI(
        title="keymeter",
        description="LLM API key usage and cost sync",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        structlog.contextvars.bind_contextvars(
            method=request.method, path=request.url.path
        )
        start = time.monotonic()
        try:
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            if response.status_code >= 500:
                logger.error(
                    "http_request_failed",
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )
            else:
                logger.info(
                    "http_request",
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(KeymeterError)
    async def keymeter_error_handler(request: Request, exc: KeymeterError) -> JSONResponse:
        status_code = exc.status_code if exc.status_code >= 400 else 502
        if status_code >= 500:
            logger.warning(
                "request_failed", status_code=status_code, error=exc.message, code=exc.code
            )
        return JSONResponse(_error_body(exc.message, exc.code), status_code=status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            _error_body(str(exc.detail).lower()),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "invalid request") if errors else "invalid request"
        return JSONResponse(
            _error_body(f"invalid request body: {message}", "INVALID_REQUEST"),
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", path=request.url.path)
        return JSONResponse(_error_body(str(exc) or "internal server error"), status_code=500)

    async def current_user(authorization: str | None = Header(default=None)) -> UserInfo:
        return await require_user(authenticator, authorization)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics_endpoint() -> Response:
        registry = metrics.registry if metrics else None
        output = generate_latest(registry) if registry else generate_latest()
        return Response(output, media_type=CONTENT_TYPE_LATEST)

    @app.post("/api/openai/sync-usage")
    async def openai_sync_usage(
        body: SyncRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or SyncRequest()
        admin_key, _ = await service.resolve_admin_key(
            Platform.OPENAI, body.admin_key, body.platform_account_id, user=user
        )
        return await service.sync_openai_usage(admin_key)

    @app.post("/api/openai/sync-costs")
    async def openai_sync_costs(
        body: SyncRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or SyncRequest()
        admin_key, _ = await service.resolve_admin_key(
            Platform.OPENAI, body.admin_key, body.platform_account_id, user=user
        )
        return await service.sync_openai_costs(admin_key)

    @app.post("/api/claude/sync-costs")
    async def claude_sync_costs(
        body: SyncRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or SyncRequest()
        admin_key, _ = await service.resolve_admin_key(
            Platform.ANTHROPIC, body.admin_key, body.platform_account_id, user=user
        )
        return await service.sync_anthropic_costs(admin_key)

    @app.post("/api/openrouter/sync")
    async def openrouter_sync(
        body: SyncRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or SyncRequest()
        admin_key, account = await service.resolve_admin_key(
            Platform.OPENROUTER, body.admin_key, body.platform_account_id, user=user
        )
        return await service.sync_openrouter(
            admin_key,
            account=account,
            created_by=user.user_id,
            tenant_id=user.tenant_id,
        )

    @app.post("/api/volcengine/sync-data")
    async def volcengine_sync_data(
        body: VolcengineSyncRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or VolcengineSyncRequest()
        credential, account = await service.resolve_volcengine_credential(
            access_key_id=body.access_key_id,
            secret_access_key=body.secret_access_key,
            admin_key=body.admin_key,
            platform_account_id=body.platform_account_id,
            user=user,
        )
        tenant_id = account.tenant_id if account and account.tenant_id else user.tenant_id
        return await service.sync_volcengine(
            credential,
            tenant_id=tenant_id,
            account=account,
            created_by=user.user_id,
            sync_balance=body.sync_balance,
            sync_usage=body.sync_usage,
        )

    @app.post("/api/openai/list-projects")
    async def openai_list_projects(
        body: KeyRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or KeyRequest()
        admin_key, _ = await service.resolve_admin_key(
            Platform.OPENAI, body.admin_key, body.platform_account_id, user=user
        )
        return await keys.list_openai_projects(admin_key)

    @app.post("/api/openai/list-keys")
    async def openai_list_keys(
        body: KeyRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or KeyRequest()
        admin_key, account = await service.resolve_admin_key(
            Platform.OPENAI, body.admin_key, body.platform_account_id, user=user
        )
        project_id = body.project_id or (account.project_id if account else None)
        return await keys.list_openai_keys(admin_key, project_id)

    @app.post("/api/openai/create-key")
    async def openai_create_key(
        body: KeyRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or KeyRequest()
        admin_key, account = await service.resolve_admin_key(
            Platform.OPENAI, body.admin_key, body.platform_account_id, user=user
        )
        return await keys.create_openai_key(
            admin_key,
            body.name,
            user,
            project_id=body.project_id,
            account=account,
            organization_id=body.organization_id,
            details=body.details(),
        )

    @app.post("/api/openai/delete-key")
    async def openai_delete_key(
        body: KeyRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or KeyRequest()
        admin_key, _ = await service.resolve_admin_key(
            Platform.OPENAI, body.admin_key, body.platform_account_id, user=user
        )
        return await keys.delete_openai_key(
            admin_key, body.project_id, body.key_id, user, db_key_id=body.db_key_id
        )

    @app.post("/api/openrouter/manage-keys")
    async def openrouter_manage_keys(
        body: KeyRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or KeyRequest()
        action = require_action(body.action, OPENROUTER_ACTIONS)
        admin_key, account = await service.resolve_admin_key(
            Platform.OPENROUTER, body.admin_key, body.platform_account_id, user=user
        )
        if action == "list":
            return await keys.list_openrouter_keys(admin_key)
        if action == "create":
            return await keys.create_openrouter_key(
                admin_key,
                body.name,
                user,
                account=account,
                limit=body.limit,
                limit_reset=body.limit_reset,
                details=body.details(),
            )
        if action == "update":
            return await keys.update_openrouter_key(
                admin_key,
                body.key_hash,
                user,
                {
                    "name": body.name,
                    "disabled": body.disabled,
                    "limit": body.limit,
                    "limit_reset": body.limit_reset,
                    "expires_at": body.expires_at,
                },
                db_key_id=body.db_key_id,
                details=body.details(),
            )
        if action == "delete":
            return await keys.delete_openrouter_key(
                admin_key, body.key_hash, user, db_key_id=body.db_key_id
            )
        if action == "credits":
            return await keys.openrouter_credits(admin_key)
        return await service.sync_openrouter(
            admin_key,
            account=account,
            created_by=user.user_id,
            tenant_id=user.tenant_id,
        )

    @app.post("/api/claude/manage-keys")
    async def claude_manage_keys(
        body: KeyRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or KeyRequest()
        if body.action == "create":
            raise ConfigurationError(
                "the Anthropic Admin API cannot create keys, create the key in the "
                "Anthropic console and import it",
                code="UNSUPPORTED_ACTION",
            )
        action = require_action(body.action, ANTHROPIC_ACTIONS)
        if action == "verify":
            return await keys.verify_anthropic_key(body.api_key)
        if action == "update":
            return await keys.update_anthropic_key(
                body.db_key_id, user, name=body.name, details=body.details()
            )
        if action == "import":
            account = None
            if body.platform_account_id:
                account = await service.resolve_account(
                    Platform.ANTHROPIC, body.platform_account_id, user
                )
            return await keys.import_anthropic_key(
                body.api_key,
                user,
                name=body.name,
                account=account,
                details=body.details(),
            )
        admin_key, _ = await service.resolve_admin_key(
            Platform.ANTHROPIC, body.admin_key, body.platform_account_id, user=user
        )
        return await keys.delete_anthropic_key(
            admin_key, body.api_key_id, user, db_key_id=body.db_key_id
        )

    @app.post("/api/volcengine/manage-keys")
    async def volcengine_manage_keys(
        body: KeyRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or KeyRequest()
        action = require_action(body.action, VOLCENGINE_ACTIONS)
        credential, account = await service.resolve_volcengine_credential(
            access_key_id=body.access_key_id,
            secret_access_key=body.secret_access_key,
            admin_key=body.admin_key,
            platform_account_id=body.platform_account_id,
            user=user,
        )
        if action == "list":
            return await keys.list_volcengine_keys(credential, body.user_name)
        if action == "create":
            return await keys.create_volcengine_key(
                credential,
                body.user_name,
                user,
                key_name=body.key_name,
                account=account,
                details=body.details(),
            )
        return await keys.delete_volcengine_key(
            credential,
            body.target_access_key_id,
            user,
            user_name=body.user_name,
            db_key_id=body.db_key_id,
        )

    @app.post("/api/keys/verify")
    async def verify_key(
        body: VerifyKeyRequest | None = None,
        user: UserInfo = Depends(current_user),
    ) -> dict:
        body = body or VerifyKeyRequest()
        valid = await service.verify_key(body.platform or "", body.api_key or "")
        return {"success": True, "platform": body.platform, "valid": valid}

    @app.api_route("/api/cron/sync-accounts", methods=["GET", "POST"])
    async def cron_sync_accounts(request: Request) -> dict:
        if not is_cron_authorized(
            request.headers, config.cron_secret, config.trust_platform_cron_header
        ):
            raise AuthenticationError("unauthorized")
        return await orchestrator.run()

    return app
