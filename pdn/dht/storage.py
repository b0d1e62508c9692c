"""
DHT Storage - local replica of key-value pairs
==============================================

[KADEMLIA] Values this node holds as a replica:
- key = 160-bit id (SHA-1)
- value = opaque bytes (serialized log entry or user message)
- TTL for expiry, republish to keep data alive in the network

[STORAGE] Rules:
- records live in the node's KeyValueStore under "dht:<key hex>"
- expired records are dropped on read and by cleanup()
- republish candidates are records not re-published for an interval
"""

import json
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pdn.dht.routing import ID_BYTES, key_to_id
from pdn.persistence.store import KeyValueStore

logger = logging.getLogger(__name__)


# Constants
DEFAULT_TTL = 86400  # 24 hours
REPUBLISH_INTERVAL = 3600  # 60 minutes
MAX_VALUE_SIZE = 65536  # 64 KB

DHT_PREFIX = "dht:"


def string_to_key(text: str) -> bytes:
    """Human-readable key -> DHT key."""
    return key_to_id(text)


@dataclass
class StoredValue:
    """
    A value held in the DHT.

    [KADEMLIA] publisher_id is the node that first published the value;
    republishing keeps it.
    """

    key: bytes  # 20 bytes
    value: bytes
    publisher_id: bytes
    timestamp: float = field(default_factory=time.time)
    ttl: int = DEFAULT_TTL
    last_republish: float = field(default_factory=time.time)

    @property
    def key_hex(self) -> str:
        return self.key.hex()

    @property
    def expires_at(self) -> float:
        return self.timestamp + self.ttl

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expires_at

    def needs_republish(self, interval: float = REPUBLISH_INTERVAL) -> bool:
        return time.time() - self.last_republish > interval

    def to_dict(self) -> Dict:
        return {
            "key": self.key.hex(),
            "value": self.value.hex(),
            "publisher_id": self.publisher_id.hex(),
            "timestamp": self.timestamp,
            "ttl": self.ttl,
            "last_republish": self.last_republish,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "StoredValue":
        timestamp = data.get("timestamp", time.time())
        return cls(
            key=bytes.fromhex(data["key"]),
            value=bytes.fromhex(data["value"]),
            publisher_id=bytes.fromhex(data["publisher_id"]),
            timestamp=timestamp,
            ttl=data.get("ttl", DEFAULT_TTL),
            last_republish=data.get("last_republish", timestamp),
        )


class MessageStore:
    """
    Replica storage of one node on top of its KeyValueStore.

    [KADEMLIA] Operations:
    - store(key, value): keep a key-value pair, overwriting
    - get(key): read, None if missing or expired
    - delete(key), has_key(key), get_all_keys()
    - cleanup(): drop expired records
    - get_republish_values(): records due for republish

    [USAGE]
    ```python
    storage = MessageStore(MemoryStore())
    await storage.store(key, b"payload", publisher_id=local_id)
    record = await storage.get(key)
    ```
    """

    def __init__(self, store: KeyValueStore, default_ttl: int = DEFAULT_TTL):
        self._store = store
        self.default_ttl = default_ttl

    @staticmethod
    def _record_key(key: bytes) -> str:
        return f"{DHT_PREFIX}{key.hex()}"

    async def _read(self, key: bytes) -> Optional[StoredValue]:
        raw = await self._store.get(self._record_key(key))
        if raw is None:
            return None
        return StoredValue.from_dict(json.loads(raw.decode("utf-8")))

    async def _write(self, record: StoredValue) -> None:
        await self._store.put(self._record_key(record.key), json.dumps(record.to_dict()).encode("utf-8"))

    async def store(
        self,
        key: bytes,
        value: bytes,
        publisher_id: bytes,
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Keep a value.

        Returns:
            False if key or value are rejected
        """
        if len(key) != ID_BYTES:
            logger.warning(f"[DHT] Invalid key length: {len(key)}")
            return False

        if len(value) > MAX_VALUE_SIZE:
            logger.warning(f"[DHT] Value too large: {len(value)} > {MAX_VALUE_SIZE}")
            return False

        existing = await self._read(key)
        now = time.time()
        record = StoredValue(
            key=key,
            value=value,
            publisher_id=existing.publisher_id if existing else publisher_id,
            timestamp=now,
            ttl=ttl or self.default_ttl,
            last_republish=now,
        )
        await self._write(record)

        logger.debug(f"[DHT] Stored: {key.hex()[:16]}... ({len(value)} bytes)")
        return True

    async def get(self, key: bytes) -> Optional[StoredValue]:
        if len(key) != ID_BYTES:
            return None

        record = await self._read(key)
        if record is None:
            return None

        if record.is_expired:
            await self._store.delete(self._record_key(key))
            return None

        return record

    async def delete(self, key: bytes) -> bool:
        return await self._store.delete(self._record_key(key))

    async def has_key(self, key: bytes) -> bool:
        return await self.get(key) is not None

    async def _all_records(self) -> List[StoredValue]:
        records = []
        for record_key in await self._store.keys(DHT_PREFIX):
            raw = await self._store.get(record_key)
            if raw is not None:
                records.append(StoredValue.from_dict(json.loads(raw.decode("utf-8"))))
        return records

    async def get_all_keys(self) -> List[bytes]:
        """Keys of every non-expired record."""
        return [r.key for r in await self._all_records() if not r.is_expired]

    async def get_republish_values(self, interval: float = REPUBLISH_INTERVAL) -> List[StoredValue]:
        return [
            r for r in await self._all_records()
            if not r.is_expired and r.needs_republish(interval)
        ]

    async def mark_republished(self, key: bytes) -> None:
        record = await self._read(key)
        if record is None:
            return
        record.last_republish = time.time()
        await self._write(record)

    async def cleanup(self) -> int:
        """
        Drop expired records.

        Returns:
            Number of removed records
        """
        deleted = 0
        for record in await self._all_records():
            if record.is_expired and await self.delete(record.key):
                deleted += 1

        if deleted > 0:
            logger.info(f"[DHT] Cleanup: removed {deleted} expired entries")
        return deleted

    async def get_stats(self) -> Dict:
        records = await self._all_records()
        active = [r for r in records if not r.is_expired]
        return {
            "total_entries": len(records),
            "active_entries": len(active),
            "expired_entries": len(records) - len(active),
            "total_size_bytes": sum(len(r.value) for r in records),
        }
