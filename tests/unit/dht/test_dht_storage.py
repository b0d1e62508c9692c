"""
DHT Storage Unit Tests
======================

[STORAGE] TTL, republish bookkeeping and validation of MessageStore.
"""

import time

from pdn.dht.storage import MAX_VALUE_SIZE, MessageStore, StoredValue, string_to_key

PUBLISHER = b"\x01" * 20


class TestStoredValue:
    """Test StoredValue."""

    def test_expiry(self):
        record = StoredValue(key=b"\x00" * 20, value=b"v", publisher_id=PUBLISHER, timestamp=0.0, ttl=10)
        assert record.is_expired
        assert record.expires_at == 10.0

    def test_dict_roundtrip(self):
        record = StoredValue(key=b"\x02" * 20, value=b"\x00\xff", publisher_id=PUBLISHER)
        assert StoredValue.from_dict(record.to_dict()) == record


class TestMessageStore:
    """Test MessageStore over a KeyValueStore."""

    async def test_store_and_get(self, memory_store):
        storage = MessageStore(memory_store)
        key = string_to_key("bob:0")

        assert await storage.store(key, b"hello", PUBLISHER)

        record = await storage.get(key)
        assert record.value == b"hello"
        assert record.publisher_id == PUBLISHER
        assert await storage.has_key(key)

    async def test_rejects_invalid(self, memory_store):
        storage = MessageStore(memory_store)

        assert not await storage.store(b"short", b"v", PUBLISHER)
        assert not await storage.store(b"\x00" * 20, b"x" * (MAX_VALUE_SIZE + 1), PUBLISHER)

    async def test_overwrite_keeps_publisher(self, memory_store):
        storage = MessageStore(memory_store)
        key = string_to_key("k")

        await storage.store(key, b"v1", PUBLISHER)
        await storage.store(key, b"v2", b"\x02" * 20)

        record = await storage.get(key)
        assert record.value == b"v2"
        assert record.publisher_id == PUBLISHER

    async def test_expired_value_dropped_on_read(self, memory_store):
        storage = MessageStore(memory_store)
        key = string_to_key("old")
        await storage.store(key, b"v", PUBLISHER, ttl=60)

        # Age the record
        record = await storage.get(key)
        record.timestamp = time.time() - 120
        await storage._write(record)

        assert await storage.get(key) is None
        assert await memory_store.keys("dht:") == []

    async def test_cleanup(self, memory_store):
        storage = MessageStore(memory_store)
        live, dead = string_to_key("live"), string_to_key("dead")
        await storage.store(live, b"v", PUBLISHER)
        await storage.store(dead, b"v", PUBLISHER, ttl=60)

        record = await storage.get(dead)
        record.timestamp = time.time() - 120
        await storage._write(record)

        assert await storage.cleanup() == 1
        assert await storage.get_all_keys() == [live]

    async def test_republish_candidates(self, memory_store):
        storage = MessageStore(memory_store)
        key = string_to_key("k")
        await storage.store(key, b"v", PUBLISHER)

        assert await storage.get_republish_values(interval=3600) == []

        record = await storage.get(key)
        record.last_republish = time.time() - 7200
        await storage._write(record)

        due = await storage.get_republish_values(interval=3600)
        assert [r.key for r in due] == [key]

        await storage.mark_republished(key)
        assert await storage.get_republish_values(interval=3600) == []

    async def test_stats(self, memory_store):
        storage = MessageStore(memory_store)
        await storage.store(string_to_key("a"), b"123", PUBLISHER)

        stats = await storage.get_stats()
        assert stats["active_entries"] == 1
        assert stats["total_size_bytes"] == 3
