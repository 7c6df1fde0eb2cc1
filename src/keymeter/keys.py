"""
Key lifecycle operations: list, create, import, update and delete vendor
keys together with their local llm_api_keys rows.

A full secret is only ever returned by the call that created it. Local
rows keep a short prefix and the last four characters for display.
Deleting a local key removes its owner bindings and usage rows first.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from keymeter.auth import UserInfo, verify_tenant_access
from keymeter.errors import ConfigurationError, NotFoundError, PermissionDeniedError
from keymeter.models import ApiKeyRecord, Platform, PlatformAccount
from keymeter.provider.volcengine import VolcengineCredential
from keymeter.store.base import API_KEY_OWNERS_TABLE, API_KEYS_TABLE, USAGE_TABLE, Store

logger = structlog.get_logger()

KEY_PREFIX_LENGTH = 12
ACCESS_KEY_PREFIX_LENGTH = 8
ANTHROPIC_API_KEY_PREFIX = "sk-ant-api"

OPENROUTER_ACTIONS = ("list", "create", "delete", "update", "sync", "credits")
ANTHROPIC_ACTIONS = ("import", "delete", "update", "verify")
VOLCENGINE_ACTIONS = ("create", "delete", "list")

ONE_TIME_SECRET_WARNING = "store this secret now, it is only shown once"


def require_action(action: "str | None", valid: "tuple[str, ...]") -> "str":
    if action not in valid:
        raise ConfigurationError(
            f"invalid action, expected one of: {', '.join(valid)}", code="INVALID_ACTION"
        )
    return action


def masked(prefix: "str", suffix: "str") -> "str":
    return f"{prefix}****{suffix}"


def _iso_timestamp(value: "Any") -> "str | None":
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class KeyDetails:
    """
    KeyDetails holds the bookkeeping columns a caller may attach to a
    key row. None of them are sent to the vendor.
    """

    business: "str | None" = None
    description: "str | None" = None
    owner_name: "str | None" = None
    owner_email: "str | None" = None
    owner_phone: "str | None" = None
    expires_at: "str | None" = None

    def to_row(self) -> "dict[str, Any]":
        return asdict(self)

    def changes(self) -> "dict[str, Any]":
        return {k: v for k, v in asdict(self).items() if v is not None}


class KeyManager:
    """
    KeyManager runs the key management operations for every vendor.
    Callers resolve the admin credential first; KeyManager checks who
    may change a local row, calls the vendor and keeps the local rows in
    step.
    """

    def __init__(
        self,
        store: "Store",
        adapters: "dict[str, Any]",
        clock: "Callable[[], datetime] | None" = None,
    ) -> "None":
        self._store = store
        self._adapters = adapters
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _adapter(self, platform: "Platform") -> "Any":
        adapter = self._adapters.get(platform.value)
        if adapter is None:
            raise ConfigurationError(f"unsupported platform: {platform.value}")
        return adapter

    def _now(self) -> "str":
        return self._clock().isoformat()

    async def _insert_key(
        self,
        platform: "Platform",
        name: "str",
        secret: "str",
        user: "UserInfo",
        visible: "str | None" = None,
        prefix_length: "int" = KEY_PREFIX_LENGTH,
        creation_method: "str" = "api",
        account: "PlatformAccount | None" = None,
        details: "KeyDetails | None" = None,
        **columns: "Any",
    ) -> "dict[str, Any]":
        """
        stores a new key row. The prefix and suffix are taken from
        `visible`, or from the secret itself when not given.
        """
        shown = visible or secret
        now = self._now()
        row = {
            "name": name,
            "platform": platform.value,
            "api_key_encrypted": secret,
            "api_key_prefix": shown[:prefix_length],
            "api_key_suffix": shown[-4:],
            "status": "active",
            "platform_account_id": account.id if account else None,
            **(details or KeyDetails()).to_row(),
            **columns,
            "creation_method": creation_method,
            "created_by": user.user_id,
            "tenant_id": user.tenant_id,
            "created_at": now,
            "updated_at": now,
        }
        stored = await self._store.insert(API_KEYS_TABLE, row)
        logger.info(
            "api_key_stored",
            platform=platform.value,
            api_key_id=stored.get("id"),
            creation_method=creation_method,
        )
        return stored

    async def authorize(self, user: "UserInfo", db_key_id: "str") -> "ApiKeyRecord":
        """
        loads a local key row and checks the user created it or belongs
        to its tenant.
        """
        rows = await self._store.select(API_KEYS_TABLE, {"id": db_key_id})
        if not rows:
            raise NotFoundError("api key not found", code="KEY_NOT_FOUND")
        key = ApiKeyRecord.from_row(rows[0])
        if key.created_by and key.created_by == user.user_id:
            return key
        if await verify_tenant_access(self._store, user.user_id, key.tenant_id):
            return key
        logger.warning("api_key_access_denied", api_key_id=db_key_id, user_id=user.user_id)
        raise PermissionDeniedError("not allowed to change this api key", code="FORBIDDEN")

    async def delete_local_key(self, db_key_id: "str") -> "None":
        """
        deletes a key row after its owner bindings and usage rows.
        """
        owners = await self._store.delete(API_KEY_OWNERS_TABLE, {"api_key_id": db_key_id})
        usage = await self._store.delete(USAGE_TABLE, {"api_key_id": db_key_id})
        await self._store.delete(API_KEYS_TABLE, {"id": db_key_id})
        logger.info(
            "api_key_deleted", api_key_id=db_key_id, owner_rows=owners, usage_rows=usage
        )

    async def update_local_key(
        self,
        db_key_id: "str",
        name: "str | None" = None,
        details: "KeyDetails | None" = None,
    ) -> "None":
        values: "dict[str, Any]" = {"updated_at": self._now()}
        if name:
            values["name"] = name
        if details is not None:
            values.update(details.changes())
        await self._store.update(API_KEYS_TABLE, values, {"id": db_key_id})

    # OpenAI

    async def list_openai_projects(self, admin_key: "str") -> "dict[str, Any]":
        projects = await self._adapter(Platform.OPENAI).list_projects(admin_key)
        formatted = [
            {
                "id": p.get("id"),
                "name": p.get("name"),
                "status": p.get("status"),
                "created_at": _iso_timestamp(p.get("created_at")),
            }
            for p in projects
        ]
        return {"success": True, "projects": formatted, "total": len(formatted)}

    async def list_openai_keys(
        self,
        admin_key: "str",
        project_id: "str | None",
    ) -> "dict[str, Any]":
        if not project_id:
            raise ConfigurationError("project_id is required", code="MISSING_PROJECT_ID")
        keys = await self._adapter(Platform.OPENAI).list_project_keys(
            admin_key, {"id": project_id}
        )
        formatted = [
            {
                "id": key.id,
                "name": key.name,
                "redacted_value": key.raw.get("redacted_value"),
                "created_at": _iso_timestamp(key.raw.get("created_at")),
                "owner": key.raw.get("owner"),
                "platform": Platform.OPENAI.value,
                "project_id": project_id,
            }
            for key in keys
        ]
        return {"success": True, "keys": formatted, "total": len(formatted)}

    async def create_openai_key(
        self,
        admin_key: "str",
        name: "str | None",
        user: "UserInfo",
        project_id: "str | None" = None,
        account: "PlatformAccount | None" = None,
        organization_id: "str | None" = None,
        details: "KeyDetails | None" = None,
    ) -> "dict[str, Any]":
        """
        creates a service account key in the project, falling back to
        the platform account's default project.
        """
        project_id = project_id or (account.project_id if account else None)
        if not project_id:
            raise ConfigurationError("project_id is required", code="MISSING_PROJECT_ID")
        if not name:
            raise ConfigurationError("name is required", code="MISSING_NAME")

        created = await self._adapter(Platform.OPENAI).create_service_account(
            admin_key, project_id, name
        )
        api_key = created["api_key"]
        secret = api_key["value"]
        stored = await self._insert_key(
            Platform.OPENAI,
            name,
            secret,
            user,
            account=account,
            details=details,
            platform_key_id=api_key.get("id") or created.get("id"),
            project_id=project_id,
            organization_id=organization_id or (account.organization_id if account else None),
        )
        return {
            "success": True,
            "message": f'API key "{name}" created',
            "id": stored["id"],
            "name": name,
            "api_key": secret,
            "masked_key": masked(stored["api_key_prefix"], stored["api_key_suffix"]),
            "platform": Platform.OPENAI.value,
            "project_id": project_id,
            "created_at": _iso_timestamp(created.get("created_at")) or stored["created_at"],
            "warning": ONE_TIME_SECRET_WARNING,
        }

    async def delete_openai_key(
        self,
        admin_key: "str",
        project_id: "str | None",
        key_id: "str | None",
        user: "UserInfo",
        db_key_id: "str | None" = None,
    ) -> "dict[str, Any]":
        if not project_id:
            raise ConfigurationError("project_id is required", code="MISSING_PROJECT_ID")
        if not key_id:
            raise ConfigurationError("key_id is required", code="MISSING_KEY_ID")
        if db_key_id:
            await self.authorize(user, db_key_id)

        deleted = await self._adapter(Platform.OPENAI).delete_project_key(
            admin_key, project_id, key_id
        )
        if db_key_id:
            await self.delete_local_key(db_key_id)
        return {
            "success": True,
            "message": f"API key {key_id} deleted",
            "key_id": key_id,
            "db_deleted": bool(db_key_id),
            "openai_deleted": deleted,
            "already_deleted": not deleted,
        }

    # OpenRouter

    async def list_openrouter_keys(self, admin_key: "str") -> "dict[str, Any]":
        keys = await self._adapter(Platform.OPENROUTER).fetch_keys(admin_key)
        fields = (
            "hash", "name", "label", "disabled", "limit", "limit_remaining",
            "limit_reset", "usage", "usage_daily", "usage_weekly", "usage_monthly",
            "created_at", "updated_at", "expires_at",
        )
        return {
            "success": True,
            "action": "list",
            "count": len(keys),
            "keys": [{name: key.raw.get(name) for name in fields} for key in keys],
        }

    async def create_openrouter_key(
        self,
        admin_key: "str",
        name: "str | None",
        user: "UserInfo",
        account: "PlatformAccount | None" = None,
        limit: "float | None" = None,
        limit_reset: "str | None" = None,
        details: "KeyDetails | None" = None,
    ) -> "dict[str, Any]":
        if not name:
            raise ConfigurationError("name is required", code="MISSING_NAME")
        expires_at = details.expires_at if details else None
        created = await self._adapter(Platform.OPENROUTER).create_key(
            admin_key, name, limit=limit, limit_reset=limit_reset, expires_at=expires_at
        )
        stored = await self._insert_key(
            Platform.OPENROUTER,
            name,
            created["key"],
            user,
            account=account,
            details=details,
            platform_key_id=created["hash"],
        )
        return {
            "success": True,
            "action": "create",
            "message": "API key created",
            "id": stored["id"],
            "key": {
                "hash": created["hash"],
                "name": name,
                "label": created.get("label"),
                "full_key": created["key"],
                "api_key_prefix": stored["api_key_prefix"],
                "api_key_suffix": stored["api_key_suffix"],
            },
            "warning": ONE_TIME_SECRET_WARNING,
        }

    async def update_openrouter_key(
        self,
        admin_key: "str",
        key_hash: "str | None",
        user: "UserInfo",
        changes: "dict[str, Any]",
        db_key_id: "str | None" = None,
        details: "KeyDetails | None" = None,
    ) -> "dict[str, Any]":
        """
        sends `changes` (name, disabled, limit, limit_reset, expires_at)
        to OpenRouter and mirrors the name and bookkeeping columns onto
        the local row.
        """
        if not key_hash:
            raise ConfigurationError("key_hash is required", code="MISSING_KEY_HASH")
        if db_key_id:
            await self.authorize(user, db_key_id)

        vendor_changes = {k: v for k, v in changes.items() if v is not None}
        await self._adapter(Platform.OPENROUTER).update_key(admin_key, key_hash, vendor_changes)
        if db_key_id:
            await self.update_local_key(db_key_id, name=changes.get("name"), details=details)
        return {
            "success": True,
            "action": "update",
            "message": "API key updated",
            "key_hash": key_hash,
        }

    async def delete_openrouter_key(
        self,
        admin_key: "str",
        key_hash: "str | None",
        user: "UserInfo",
        db_key_id: "str | None" = None,
    ) -> "dict[str, Any]":
        if not key_hash:
            raise ConfigurationError("key_hash is required", code="MISSING_KEY_HASH")
        if db_key_id:
            await self.authorize(user, db_key_id)

        deleted = await self._adapter(Platform.OPENROUTER).delete_key(admin_key, key_hash)
        if db_key_id:
            await self.delete_local_key(db_key_id)
        return {
            "success": True,
            "action": "delete",
            "message": "API key deleted",
            "key_hash": key_hash,
            "already_deleted": not deleted,
        }

    async def openrouter_credits(self, admin_key: "str") -> "dict[str, Any]":
        credits = await self._adapter(Platform.OPENROUTER).fetch_credits(admin_key)
        return {"success": True, "action": "credits", "credits": credits}

    # Anthropic

    async def import_anthropic_key(
        self,
        api_key: "str | None",
        user: "UserInfo",
        name: "str | None" = None,
        account: "PlatformAccount | None" = None,
        details: "KeyDetails | None" = None,
    ) -> "dict[str, Any]":
        """
        the Admin API cannot create keys, so keys made in the console are
        imported once they pass verification.
        """
        if not api_key or not api_key.startswith(ANTHROPIC_API_KEY_PREFIX):
            raise ConfigurationError(
                f"api_key must start with {ANTHROPIC_API_KEY_PREFIX}", code="INVALID_API_KEY"
            )
        if not await self._adapter(Platform.ANTHROPIC).verify_key(api_key):
            raise ConfigurationError("api key was rejected by Anthropic", code="INVALID_API_KEY")

        key_name = name or f"imported-{api_key[-4:]}"
        stored = await self._insert_key(
            Platform.ANTHROPIC,
            key_name,
            api_key,
            user,
            creation_method="import",
            account=account,
            details=details,
        )
        return {
            "success": True,
            "action": "import",
            "message": "API key imported",
            "id": stored["id"],
            "key": {
                "name": key_name,
                "api_key_prefix": stored["api_key_prefix"],
                "api_key_suffix": stored["api_key_suffix"],
            },
        }

    async def delete_anthropic_key(
        self,
        admin_key: "str",
        api_key_id: "str | None",
        user: "UserInfo",
        db_key_id: "str | None" = None,
    ) -> "dict[str, Any]":
        if not api_key_id:
            raise ConfigurationError("api_key_id is required", code="MISSING_KEY_ID")
        if db_key_id:
            await self.authorize(user, db_key_id)

        deactivated = await self._adapter(Platform.ANTHROPIC).deactivate_key(
            admin_key, api_key_id
        )
        if db_key_id:
            await self.delete_local_key(db_key_id)
        return {
            "success": True,
            "action": "delete",
            "message": "API key deactivated",
            "api_key_id": api_key_id,
            "already_deleted": not deactivated,
        }

    async def update_anthropic_key(
        self,
        db_key_id: "str | None",
        user: "UserInfo",
        name: "str | None" = None,
        details: "KeyDetails | None" = None,
    ) -> "dict[str, Any]":
        # only the local row can change, the Admin API has nothing to update
        if not db_key_id:
            raise ConfigurationError("db_key_id is required", code="MISSING_KEY_ID")
        await self.authorize(user, db_key_id)
        await self.update_local_key(db_key_id, name=name, details=details)
        return {
            "success": True,
            "action": "update",
            "message": "API key updated",
            "db_key_id": db_key_id,
        }

    async def verify_anthropic_key(self, api_key: "str | None") -> "dict[str, Any]":
        if not api_key:
            raise ConfigurationError("api_key is required", code="MISSING_API_KEY")
        if not await self._adapter(Platform.ANTHROPIC).verify_key(api_key):
            raise ConfigurationError("api key was rejected by Anthropic", code="INVALID_API_KEY")
        return {"success": True, "action": "verify", "message": "API key is valid"}

    # Volcengine

    async def list_volcengine_keys(
        self,
        credential: "VolcengineCredential",
        user_name: "str | None" = None,
    ) -> "dict[str, Any]":
        keys = await self._adapter(Platform.VOLCENGINE).fetch_keys(credential, user_name)
        formatted = [
            {
                "access_key_id": key.id,
                "status": key.raw.get("Status"),
                "user_name": key.raw.get("UserName"),
                "create_date": key.raw.get("CreateDate"),
                "update_date": key.raw.get("UpdateDate"),
            }
            for key in keys
        ]
        return {"success": True, "action": "list", "keys": formatted, "total": len(formatted)}

    async def create_volcengine_key(
        self,
        credential: "VolcengineCredential",
        user_name: "str | None",
        user: "UserInfo",
        key_name: "str | None" = None,
        account: "PlatformAccount | None" = None,
        details: "KeyDetails | None" = None,
    ) -> "dict[str, Any]":
        """
        creates an IAM access key, stores it in the same AK:base64(SK)
        form used for admin keys and binds the caller as its owner.
        """
        if not user_name:
            raise ConfigurationError("user_name is required", code="MISSING_USER_NAME")

        access_key = await self._adapter(Platform.VOLCENGINE).create_access_key(
            credential, user_name
        )
        access_key_id = access_key["AccessKeyId"]
        secret = access_key.get("SecretAccessKey") or ""
        name = key_name or user_name
        stored = await self._insert_key(
            Platform.VOLCENGINE,
            name,
            VolcengineCredential(access_key_id, secret).to_admin_key(),
            user,
            visible=access_key_id,
            prefix_length=ACCESS_KEY_PREFIX_LENGTH,
            account=account,
            details=details,
            platform_key_id=access_key_id,
            status="active" if access_key.get("Status") == "Active" else "inactive",
        )
        await self._store.insert(
            API_KEY_OWNERS_TABLE,
            {
                "api_key_id": stored["id"],
                "user_id": user.user_id,
                "is_primary": True,
                "role": "owner",
            },
        )
        return {
            "success": True,
            "action": "create",
            "message": f'AccessKey "{name}" created',
            "id": stored["id"],
            "name": name,
            "access_key_id": access_key_id,
            "secret_access_key": secret,
            "masked_key": masked(stored["api_key_prefix"], stored["api_key_suffix"]),
            "platform": Platform.VOLCENGINE.value,
            "user_name": user_name,
            "created_at": access_key.get("CreateDate") or stored["created_at"],
            "warning": ONE_TIME_SECRET_WARNING,
        }

    async def delete_volcengine_key(
        self,
        credential: "VolcengineCredential",
        access_key_id: "str | None",
        user: "UserInfo",
        user_name: "str | None" = None,
        db_key_id: "str | None" = None,
    ) -> "dict[str, Any]":
        if not access_key_id:
            raise ConfigurationError(
                "target_access_key_id is required", code="MISSING_KEY_ID"
            )
        if db_key_id:
            await self.authorize(user, db_key_id)

        await self._adapter(Platform.VOLCENGINE).delete_access_key(
            credential, access_key_id, user_name
        )
        if db_key_id:
            await self.delete_local_key(db_key_id)
        return {
            "success": True,
            "action": "delete",
            "message": f"AccessKey {access_key_id} deleted",
            "target_access_key_id": access_key_id,
            "db_deleted": bool(db_key_id),
            "volcengine_deleted": True,
        }
