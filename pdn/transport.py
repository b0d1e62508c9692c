"""
Transport Layer - envelopes and the abstract send/receive contract
==================================================================

[TRANSPORT] The coordination core never touches sockets. It consumes:
- Transport.send(target_id, envelope): raises Unreachable on failure
- a handler callback invoked for every inbound envelope

[SIMULATION] LocalNetwork / LocalTransport deliver envelopes between
nodes of one process through the JSON codec, with controllable
partitions and latency. Used by tests and local clusters.
"""

import asyncio
import base64
import json
import random
import time
import uuid
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from pdn.errors import Unreachable

logger = logging.getLogger(__name__)


class MessageType(Enum):
    """Logical message types of the network protocol."""

    # Liveness
    PING = auto()
    PONG = auto()

    # Paxos
    PREPARE = auto()
    PROMISE = auto()
    NACK = auto()
    ACCEPT = auto()
    ACCEPTED = auto()
    COMMIT = auto()

    # Log catch-up
    LOG_SYNC = auto()
    LOG_SYNC_REPLY = auto()

    # Kademlia
    FIND_NODE = auto()
    FIND_NODE_REPLY = auto()
    FIND_VALUE = auto()
    FIND_VALUE_REPLY = auto()
    STORE = auto()
    STORE_ACK = auto()


def encode_bytes(data: bytes) -> str:
    """Bytes -> base64 text for JSON payloads."""
    return base64.b64encode(data).decode("ascii")


def decode_bytes(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"))


@dataclass
class Envelope:
    """
    Wrapper around one protocol message.

    [TRANSPORT] request_id correlates requests with replies:
    a reply carries the request's id in reply_to.
    """

    type: MessageType
    payload: Dict[str, Any]
    sender_id: bytes
    sender_host: str = ""
    sender_port: int = 0
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    reply_to: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_reply(self) -> bool:
        return self.reply_to is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.name,
            "payload": self.payload,
            "sender_id": self.sender_id.hex(),
            "sender_host": self.sender_host,
            "sender_port": self.sender_port,
            "request_id": self.request_id,
            "reply_to": self.reply_to,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        return cls(
            type=MessageType[data["type"]],
            payload=data.get("payload", {}),
            sender_id=bytes.fromhex(data["sender_id"]),
            sender_host=data.get("sender_host", ""),
            sender_port=data.get("sender_port", 0),
            request_id=data["request_id"],
            reply_to=data.get("reply_to"),
            timestamp=data.get("timestamp", time.time()),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, json_str: str) -> "Envelope":
        return cls.from_dict(json.loads(json_str))


InboundHandler = Callable[[bytes, Envelope], Awaitable[None]]


class Transport(ABC):
    """Abstract point-to-point transport."""

    def __init__(self):
        self._handler: Optional[InboundHandler] = None

    def set_handler(self, handler: InboundHandler) -> None:
        """Register the callback receiving (sender_id, envelope)."""
        self._handler = handler

    @abstractmethod
    async def send(self, target_id: bytes, envelope: Envelope) -> None:
        """
        Deliver an envelope to a node.

        Raises:
            Unreachable: the target cannot be reached
        """

    async def close(self) -> None:
        """Release transport resources."""


class LocalNetwork:
    """
    In-process network connecting LocalTransport instances.

    [USAGE]
    ```python
    network = LocalNetwork()
    t1 = network.attach(node_id_1)
    t2 = network.attach(node_id_2)
    network.partition({node_id_1}, {node_id_2})
    network.heal()
    ```
    """

    def __init__(self, latency: Tuple[float, float] = (0.0, 0.0)):
        """
        Args:
            latency: (min, max) delivery delay in seconds
        """
        self.latency = latency
        self._endpoints: Dict[bytes, "LocalTransport"] = {}
        self._down: Set[bytes] = set()
        self._blocked: Set[Tuple[bytes, bytes]] = set()
        self.delivered = 0
        self._in_flight: Set[asyncio.Task] = set()

    def attach(self, node_id: bytes) -> "LocalTransport":
        transport = LocalTransport(self, node_id)
        self._endpoints[node_id] = transport
        self._down.discard(node_id)
        return transport

    def detach(self, node_id: bytes) -> None:
        self._endpoints.pop(node_id, None)

    def crash(self, node_id: bytes) -> None:
        """Stop delivering to and from node_id."""
        self._down.add(node_id)

    def restore(self, node_id: bytes) -> None:
        self._down.discard(node_id)

    def block(self, a: bytes, b: bytes) -> None:
        """Cut the link between a and b in both directions."""
        self._blocked.add((a, b))
        self._blocked.add((b, a))

    def partition(self, group_a: Set[bytes], group_b: Set[bytes]) -> None:
        for a in group_a:
            for b in group_b:
                self.block(a, b)

    def heal(self) -> None:
        self._blocked.clear()
        self._down.clear()

    def can_reach(self, source: bytes, target: bytes) -> bool:
        if source in self._down or target in self._down:
            return False
        if (source, target) in self._blocked:
            return False
        return target in self._endpoints

    async def deliver(self, source: bytes, target: bytes, wire: str) -> None:
        if not self.can_reach(source, target):
            raise Unreachable(target, "no route")

        endpoint = self._endpoints[target]
        low, high = self.latency
        delay = random.uniform(low, high) if high > 0 else 0.0
        task = asyncio.get_running_loop().create_task(endpoint._receive(source, wire, delay))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)


class LocalTransport(Transport):
    """Endpoint of a LocalNetwork."""

    def __init__(self, network: LocalNetwork, node_id: bytes):
        super().__init__()
        self.network = network
        self.node_id = node_id

    async def send(self, target_id: bytes, envelope: Envelope) -> None:
        await self.network.deliver(self.node_id, target_id, envelope.to_json())

    async def _receive(self, source: bytes, wire: str, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)

        # Links can be cut while a message is in flight
        if not self.network.can_reach(source, self.node_id):
            return
        if self._handler is None:
            return

        self.network.delivered += 1
        try:
            await self._handler(source, Envelope.from_json(wire))
        except Exception as e:
            logger.error(f"[TRANSPORT] Handler error on {self.node_id.hex()[:16]}...: {e}")

    async def close(self) -> None:
        self.network.detach(self.node_id)
