"""
Key-Value Store Unit Tests
==========================

[PERSISTENCE] MemoryStore and SQLiteStore honour the same contract.
"""

import pytest
import pytest_asyncio

from pdn.persistence import MemoryStore, SQLiteStore


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request):
    instance = MemoryStore() if request.param == "memory" else SQLiteStore(":memory:")
    await instance.initialize()
    yield instance
    await instance.close()


class TestKeyValueStore:
    """Contract shared by every backend."""

    async def test_put_get(self, store):
        await store.put("a", b"1")
        assert await store.get("a") == b"1"

    async def test_missing_key(self, store):
        assert await store.get("missing") is None

    async def test_overwrite(self, store):
        await store.put("a", b"1")
        await store.put("a", b"2")
        assert await store.get("a") == b"2"

    async def test_delete(self, store):
        await store.put("a", b"1")
        assert await store.delete("a") is True
        assert await store.delete("a") is False
        assert await store.get("a") is None

    async def test_keys_by_prefix_sorted(self, store):
        for key in ("log:2", "log:1", "paxos:1", "dht:ff"):
            await store.put(key, b"x")

        assert await store.keys("log:") == ["log:1", "log:2"]
        assert await store.keys() == ["dht:ff", "log:1", "log:2", "paxos:1"]


class TestSQLiteStore:
    """SQLite specifics."""

    async def test_use_before_initialize(self):
        store = SQLiteStore(":memory:")
        with pytest.raises(RuntimeError):
            await store.get("a")

    async def test_persists_across_connections(self, tmp_path):
        path = str(tmp_path / "state.db")

        store = SQLiteStore(path)
        await store.initialize()
        await store.put("log:0", b"entry")
        await store.close()

        reopened = SQLiteStore(path)
        await reopened.initialize()
        assert await reopened.get("log:0") == b"entry"
        await reopened.close()
