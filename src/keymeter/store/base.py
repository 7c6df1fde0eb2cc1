from typing import Any, Protocol

API_KEYS_TABLE = "llm_api_keys"
PLATFORM_ACCOUNTS_TABLE = "llm_platform_accounts"
USAGE_TABLE = "llm_api_key_usage"
API_KEY_OWNERS_TABLE = "llm_api_key_owners"

# columns that identify a single usage row
USAGE_KEY_COLUMNS = ("api_key_id", "period_start")


class Store(Protocol):
    """
    Store is the relational store the sync pipeline reads and writes.

    Filters are column equality; a None value matches NULL. Backends
    raise StoreError on failure and StoreConflictError when an insert
    violates a uniqueness rule.
    """

    async def select(
        self,
        table: "str",
        filters: "dict[str, Any] | None" = None,
    ) -> "list[dict[str, Any]]": ...

    async def insert(self, table: "str", row: "dict[str, Any]") -> "dict[str, Any]": ...

    async def update(
        self,
        table: "str",
        values: "dict[str, Any]",
        filters: "dict[str, Any]",
    ) -> "list[dict[str, Any]]": ...

    async def delete(self, table: "str", filters: "dict[str, Any]") -> "int": ...

    async def rpc(self, name: "str", params: "dict[str, Any] | None" = None) -> "Any": ...

    async def close(self) -> "None": ...
