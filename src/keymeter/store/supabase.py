import asyncio
from typing import Any

import httpx
import structlog
from supabase import AsyncClient, AsyncClientOptions, PostgrestAPIError, acreate_client

from keymeter.errors import StoreConflictError, StoreError

logger = structlog.get_logger()

# postgres unique_violation
UNIQUE_VIOLATION = "23505"


def apply_filters(query: "Any", filters: "dict[str, Any] | None") -> "Any":
    for column, value in (filters or {}).items():
        if value is None:
            query = query.is_(column, "null")
        else:
            query = query.eq(column, value)
    return query


class SupabaseStore:
    """
    SupabaseStore reads and writes the project's tables through
    supabase-py with the service role key, which bypasses row level
    security. The client is created on first use unless one is passed in.
    """

    def __init__(
        self,
        url: "str",
        service_role_key: "str",
        timeout: "float" = 10.0,
        client: "AsyncClient | None" = None,
    ) -> "None":
        self._url = url.rstrip("/")
        self._key = service_role_key
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._lock = asyncio.Lock()

    async def _db(self) -> "AsyncClient":
        async with self._lock:
            if self._client is None:
                self._client = await acreate_client(
                    self._url,
                    self._key,
                    options=AsyncClientOptions(postgrest_client_timeout=self._timeout),
                )
                logger.debug("supabase_client_created", url=self._url)
        return self._client

    async def close(self) -> "None":
        if self._client is not None and self._owns_client:
            await self._client.postgrest.aclose()
        self._client = None

    @staticmethod
    async def _execute(query: "Any", what: "str") -> "Any":
        try:
            resp = await query.execute()
        except PostgrestAPIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise StoreConflictError(f"{what}: {exc.message}") from exc
            raise StoreError(f"{what}: {exc.message}", code=exc.code) from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"{what} failed: {exc}") from exc
        return resp.data

    async def select(
        self,
        table: "str",
        filters: "dict[str, Any] | None" = None,
    ) -> "list[dict[str, Any]]":
        db = await self._db()
        query = apply_filters(db.table(table).select("*"), filters)
        return await self._execute(query, f"select {table}") or []

    async def insert(self, table: "str", row: "dict[str, Any]") -> "dict[str, Any]":
        db = await self._db()
        rows = await self._execute(db.table(table).insert(row), f"insert {table}") or []
        return rows[0] if rows else dict(row)

    async def update(
        self,
        table: "str",
        values: "dict[str, Any]",
        filters: "dict[str, Any]",
    ) -> "list[dict[str, Any]]":
        if not filters:
            raise StoreError("refusing to update without filters")
        db = await self._db()
        query = apply_filters(db.table(table).update(values), filters)
        return await self._execute(query, f"update {table}") or []

    async def delete(self, table: "str", filters: "dict[str, Any]") -> "int":
        if not filters:
            raise StoreError("refusing to delete without filters")
        db = await self._db()
        query = apply_filters(db.table(table).delete(), filters)
        return len(await self._execute(query, f"delete {table}") or [])

    async def rpc(self, name: "str", params: "dict[str, Any] | None" = None) -> "Any":
        logger.debug("supabase_rpc", function=name)
        db = await self._db()
        return await self._execute(db.rpc(name, params or {}), f"rpc {name}")
