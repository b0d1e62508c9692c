"""
Kademlia Protocol - DHT RPC handlers
====================================

[KADEMLIA] Requests served by every node:
- FIND_NODE: k closest known nodes to target_id
- FIND_VALUE: the value if held locally, otherwise k closest nodes
- STORE: keep a key-value pair in the local MessageStore

Senders are learned from the envelope by the node before dispatch,
so request payloads carry only the operation's arguments.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from pdn.dht.routing import K, Node
from pdn.dht.storage import MessageStore
from pdn.protocol import CallbackHandler, MessageHandler, Reply
from pdn.transport import Envelope, MessageType, decode_bytes, encode_bytes

if TYPE_CHECKING:
    from pdn.membership import MembershipTable

logger = logging.getLogger(__name__)


@dataclass
class FindNodeRequest:
    """[KADEMLIA] Find the k closest nodes to target_id."""

    target_id: bytes

    def to_dict(self) -> Dict:
        return {"target_id": self.target_id.hex()}

    @classmethod
    def from_dict(cls, data: Dict) -> "FindNodeRequest":
        return cls(target_id=bytes.fromhex(data["target_id"]))


@dataclass
class FindNodeResponse:
    nodes: List[Node]

    def to_dict(self) -> Dict:
        return {"nodes": [n.to_dict() for n in self.nodes]}

    @classmethod
    def from_dict(cls, data: Dict) -> "FindNodeResponse":
        return cls(nodes=[Node.from_dict(n) for n in data.get("nodes", [])])


@dataclass
class FindValueRequest:
    """[KADEMLIA] Find the value of key, or the k closest nodes to it."""

    key: bytes

    def to_dict(self) -> Dict:
        return {"key": self.key.hex()}

    @classmethod
    def from_dict(cls, data: Dict) -> "FindValueRequest":
        return cls(key=bytes.fromhex(data["key"]))


@dataclass
class FindValueResponse:
    """Either a value or closer nodes."""

    value: Optional[bytes] = None
    nodes: List[Node] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.value is not None

    def to_dict(self) -> Dict:
        if self.value is not None:
            return {"value": encode_bytes(self.value)}
        return {"nodes": [n.to_dict() for n in self.nodes]}

    @classmethod
    def from_dict(cls, data: Dict) -> "FindValueResponse":
        value = None
        if "value" in data:
            value = decode_bytes(data["value"])
        nodes = [Node.from_dict(n) for n in data.get("nodes", [])]
        return cls(value=value, nodes=nodes)


@dataclass
class StoreRequest:
    """[KADEMLIA] Keep a key-value pair on the receiving node."""

    key: bytes
    value: bytes
    # None leaves the lifetime to the receiver's default
    ttl: Optional[int] = None

    def to_dict(self) -> Dict:
        data = {"key": self.key.hex(), "value": encode_bytes(self.value)}
        if self.ttl is not None:
            data["ttl"] = self.ttl
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "StoreRequest":
        return cls(
            key=bytes.fromhex(data["key"]),
            value=decode_bytes(data["value"]),
            ttl=data.get("ttl"),
        )


@dataclass
class StoreResponse:
    key: bytes
    success: bool
    error: str = ""

    def to_dict(self) -> Dict:
        return {"key": self.key.hex(), "success": self.success, "error": self.error}

    @classmethod
    def from_dict(cls, data: Dict) -> "StoreResponse":
        return cls(
            key=bytes.fromhex(data["key"]),
            success=data.get("success", False),
            error=data.get("error", ""),
        )


class DHTHandlers:
    """
    Server side of the Kademlia RPCs.

    [USAGE]
    ```python
    dht_handlers = DHTHandlers(local_id, membership, storage)
    for handler in dht_handlers.handlers():
        protocol_router.register(handler)
    ```
    """

    def __init__(
        self,
        local_id: bytes,
        membership: "MembershipTable",
        storage: MessageStore,
        k: int = K,
    ):
        self.local_id = local_id
        self.membership = membership
        self.storage = storage
        self.k = k

    def _closest(self, key: bytes, exclude: bytes) -> List[Node]:
        nodes = self.membership.closest_to(key, self.k + 1)
        return [n for n in nodes if n.node_id != exclude][:self.k]

    async def handle_find_node(self, envelope: Envelope) -> Reply:
        request = FindNodeRequest.from_dict(envelope.payload)
        closest = self._closest(request.target_id, exclude=envelope.sender_id)

        logger.debug(
            f"[DHT] FIND_NODE: target={request.target_id.hex()[:16]}..., "
            f"returning {len(closest)} nodes"
        )
        return MessageType.FIND_NODE_REPLY, FindNodeResponse(nodes=closest).to_dict()

    async def handle_find_value(self, envelope: Envelope) -> Reply:
        request = FindValueRequest.from_dict(envelope.payload)

        stored = await self.storage.get(request.key)
        if stored:
            logger.debug(f"[DHT] FIND_VALUE: key={request.key.hex()[:16]}... FOUND")
            return MessageType.FIND_VALUE_REPLY, FindValueResponse(value=stored.value).to_dict()

        closest = self._closest(request.key, exclude=envelope.sender_id)
        logger.debug(
            f"[DHT] FIND_VALUE: key={request.key.hex()[:16]}... "
            f"NOT FOUND, returning {len(closest)} nodes"
        )
        return MessageType.FIND_VALUE_REPLY, FindValueResponse(nodes=closest).to_dict()

    async def handle_store(self, envelope: Envelope) -> Reply:
        request = StoreRequest.from_dict(envelope.payload)

        success = await self.storage.store(
            key=request.key,
            value=request.value,
            publisher_id=envelope.sender_id or self.local_id,
            ttl=request.ttl,
        )

        if success:
            logger.debug(f"[DHT] STORE: key={request.key.hex()[:16]}... value={len(request.value)} bytes OK")
            response = StoreResponse(key=request.key, success=True)
        else:
            response = StoreResponse(key=request.key, success=False, error="Storage failed")
        return MessageType.STORE_ACK, response.to_dict()

    def handlers(self) -> List[MessageHandler]:
        return [
            CallbackHandler(MessageType.FIND_NODE, self.handle_find_node),
            CallbackHandler(MessageType.FIND_VALUE, self.handle_find_value),
            CallbackHandler(MessageType.STORE, self.handle_store),
        ]
