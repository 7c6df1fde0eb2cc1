import pytest

from keymeter.errors import StoreConflictError, StoreError
from keymeter.store.base import API_KEYS_TABLE, USAGE_TABLE
from keymeter.store.memory import InMemoryStore


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_insert_assigns_id_and_select_filters(
        self,
        store: "InMemoryStore",
    ) -> "None":
        row = await store.insert(API_KEYS_TABLE, {"name": "a", "platform": "openai"})
        await store.insert(API_KEYS_TABLE, {"name": "b", "platform": "anthropic"})

        assert row["id"]
        selected = await store.select(API_KEYS_TABLE, {"platform": "openai"})
        assert [r["name"] for r in selected] == ["a"]
        assert len(await store.select(API_KEYS_TABLE)) == 2

    @pytest.mark.asyncio
    async def test_none_filter_matches_missing_column(
        self,
        store: "InMemoryStore",
    ) -> "None":
        await store.insert(API_KEYS_TABLE, {"name": "a", "tenant_id": "t1"})
        await store.insert(API_KEYS_TABLE, {"name": "b"})

        selected = await store.select(API_KEYS_TABLE, {"tenant_id": None})
        assert [r["name"] for r in selected] == ["b"]

    @pytest.mark.asyncio
    async def test_usage_table_enforces_unique_key(
        self,
        store: "InMemoryStore",
    ) -> "None":
        row = {"api_key_id": "k1", "period_start": "2024-06-01", "total_usage": 1.0}
        await store.insert(USAGE_TABLE, row)

        with pytest.raises(StoreConflictError):
            await store.insert(USAGE_TABLE, dict(row))
        # a different period is a different row
        await store.insert(USAGE_TABLE, {**row, "period_start": "2024-07-01"})
        assert len(store.tables[USAGE_TABLE]) == 2

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self, store: "InMemoryStore") -> "None":
        await store.insert(API_KEYS_TABLE, {"name": "a"})

        selected = await store.select(API_KEYS_TABLE)
        selected[0]["name"] = "changed"

        assert store.tables[API_KEYS_TABLE][0]["name"] == "a"

    @pytest.mark.asyncio
    async def test_update_and_delete(self, store: "InMemoryStore") -> "None":
        row = await store.insert(API_KEYS_TABLE, {"name": "a", "status": "active"})

        updated = await store.update(API_KEYS_TABLE, {"status": "inactive"}, {"id": row["id"]})
        assert updated[0]["status"] == "inactive"

        assert await store.delete(API_KEYS_TABLE, {"id": row["id"]}) == 1
        assert await store.select(API_KEYS_TABLE) == []

    @pytest.mark.asyncio
    async def test_refuses_unfiltered_writes(self, store: "InMemoryStore") -> "None":
        with pytest.raises(StoreError):
            await store.update(API_KEYS_TABLE, {"status": "inactive"}, {})
        with pytest.raises(StoreError):
            await store.delete(API_KEYS_TABLE, {})

    @pytest.mark.asyncio
    async def test_rpc(self, store: "InMemoryStore") -> "None":
        store.register_function("double", lambda params: params["n"] * 2)

        assert await store.rpc("double", {"n": 21}) == 42
        with pytest.raises(StoreError, match="unknown function"):
            await store.rpc("missing")
