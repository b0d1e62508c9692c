"""
Kademlia DHT
============

[KADEMLIA] Key space, replica storage, RPC handlers and the router.
"""

from .routing import (
    ALPHA,
    ID_BYTES,
    K,
    Node,
    entry_key,
    hash_to_node_id,
    key_to_id,
    message_key,
    xor_distance,
)
from .storage import MessageStore, StoredValue, string_to_key
from .protocol import (
    DHTHandlers,
    FindNodeRequest,
    FindNodeResponse,
    FindValueRequest,
    FindValueResponse,
    StoreRequest,
    StoreResponse,
)
from .router import DHTRouter, Router

__all__ = [
    "ALPHA",
    "ID_BYTES",
    "K",
    "Node",
    "entry_key",
    "hash_to_node_id",
    "key_to_id",
    "message_key",
    "xor_distance",
    "MessageStore",
    "StoredValue",
    "string_to_key",
    "DHTHandlers",
    "FindNodeRequest",
    "FindNodeResponse",
    "FindValueRequest",
    "FindValueResponse",
    "StoreRequest",
    "StoreResponse",
    "DHTRouter",
    "Router",
]
