import copy
import uuid
from typing import Any, Callable

from keymeter.errors import StoreConflictError, StoreError
from keymeter.store.base import USAGE_KEY_COLUMNS, USAGE_TABLE


class InMemoryStore:
    """
    InMemoryStore keeps tables as lists of dict rows. It enforces the
    (api_key_id, period_start) uniqueness rule on the usage table, which
    the real database may or may not have.

    Used for local runs without a database and throughout the tests.
    """

    def __init__(
        self,
        tables: "dict[str, list[dict[str, Any]]] | None" = None,
        unique_keys: "dict[str, tuple[str, ...]] | None" = None,
    ) -> "None":
        self.tables: "dict[str, list[dict[str, Any]]]" = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self._unique_keys = (
            unique_keys if unique_keys is not None else {USAGE_TABLE: USAGE_KEY_COLUMNS}
        )
        self._functions: "dict[str, Callable[[dict[str, Any]], Any]]" = {}

    def register_function(
        self,
        name: "str",
        func: "Callable[[dict[str, Any]], Any]",
    ) -> "None":
        """
        registers a callable to answer rpc(name).
        """
        self._functions[name] = func

    @staticmethod
    def _matches(row: "dict[str, Any]", filters: "dict[str, Any]") -> "bool":
        return all(row.get(column) == value for column, value in filters.items())

    def _rows(self, table: "str") -> "list[dict[str, Any]]":
        return self.tables.setdefault(table, [])

    async def select(
        self,
        table: "str",
        filters: "dict[str, Any] | None" = None,
    ) -> "list[dict[str, Any]]":
        return [
            copy.deepcopy(row)
            for row in self._rows(table)
            if self._matches(row, filters or {})
        ]

    async def insert(self, table: "str", row: "dict[str, Any]") -> "dict[str, Any]":
        rows = self._rows(table)
        unique = self._unique_keys.get(table)
        if unique:
            key = {column: row.get(column) for column in unique}
            if any(self._matches(existing, key) for existing in rows):
                raise StoreConflictError(f"duplicate key in {table}: {key}")

        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        rows.append(stored)
        return copy.deepcopy(stored)

    async def update(
        self,
        table: "str",
        values: "dict[str, Any]",
        filters: "dict[str, Any]",
    ) -> "list[dict[str, Any]]":
        if not filters:
            raise StoreError("refusing to update without filters")
        updated = []
        for row in self._rows(table):
            if self._matches(row, filters):
                row.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: "str", filters: "dict[str, Any]") -> "int":
        if not filters:
            raise StoreError("refusing to delete without filters")
        rows = self._rows(table)
        kept = [row for row in rows if not self._matches(row, filters)]
        self.tables[table] = kept
        return len(rows) - len(kept)

    async def rpc(self, name: "str", params: "dict[str, Any] | None" = None) -> "Any":
        if name not in self._functions:
            raise StoreError(f"unknown function: {name}")
        return self._functions[name](params or {})

    async def close(self) -> "None":
        pass
