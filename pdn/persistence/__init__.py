"""
Persistence Module
==================

[PERSISTENCE] Durable byte storage shared by the transaction log, the Paxos
acceptor state and the DHT message store.
"""

from .store import (
    KeyValueStore,
    MemoryStore,
    SQLiteStore,
)

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "SQLiteStore",
]
