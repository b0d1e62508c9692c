"""
Key-Value Store - durable byte storage
======================================

[PERSISTENCE] A minimal get/put interface consumed by the transaction log,
the acceptor state and the DHT message store:
- KeyValueStore: abstract contract
- MemoryStore: in-process dict, for tests and ephemeral nodes
- SQLiteStore: aiosqlite-backed table, for durable nodes

[STORAGE] SQLite table kv:
- key: TEXT PRIMARY KEY (namespaced, e.g. "log:00000000000000000042")
- value: BLOB
- updated: REAL
"""

import asyncio
import time
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Durable byte-oriented store."""

    async def initialize(self) -> None:
        """Prepare the backend."""

    async def close(self) -> None:
        """Release the backend."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    async def put(self, key: str, value: bytes) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        """Keys starting with prefix, sorted."""


class MemoryStore(KeyValueStore):
    """Dictionary-backed store."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def put(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def __len__(self) -> int:
        return len(self._data)


class SQLiteStore(KeyValueStore):
    """
    SQLite-backed store.

    [USAGE]
    ```python
    store = SQLiteStore("node_state.db")
    await store.initialize()
    await store.put("log:0", b"...")
    value = await store.get("log:0")
    await store.close()
    ```
    """

    def __init__(self, db_path: str = "pdn_state.db"):
        """
        Args:
            db_path: Path to the database file (":memory:" allowed)
        """
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL,
                updated REAL NOT NULL
            )
        """)
        await self._db.commit()
        self._initialized = True

        logger.info(f"[STORE] Initialized: {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteStore used before initialize()")
        return self._db

    async def get(self, key: str) -> Optional[bytes]:
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return bytes(row[0]) if row else None

    async def put(self, key: str, value: bytes) -> None:
        db = self._require_db()
        async with self._lock:
            await db.execute(
                "INSERT OR REPLACE INTO kv (key, value, updated) VALUES (?, ?, ?)",
                (key, bytes(value), time.time()),
            )
            await db.commit()

    async def delete(self, key: str) -> bool:
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await db.commit()
            return cursor.rowcount > 0

    async def keys(self, prefix: str = "") -> List[str]:
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            rows = await cursor.fetchall()
            return [row[0] for row in rows]
