"""
Kademlia Key Space
==================

[KADEMLIA] Identifiers and the XOR metric:
- node ids and keys share one 160-bit space (SHA-1)
- distance(a, b) = a XOR b as an unsigned integer
- closest nodes to a key are ordered by distance, then by id

[XOR] Why XOR:
- XOR(a, a) = 0 (a node is closest to itself)
- XOR(a, b) = XOR(b, a) (symmetry)
- XOR(a, b) + XOR(b, c) >= XOR(a, c) (triangle inequality)
- for any a and distance d there is exactly one b with XOR(a, b) = d
"""

import time
import hashlib
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Tuple, TypeVar


# Kademlia constants
K = 3  # Default replica set size
ALPHA = 3  # Lookup parallelism
ID_BYTES = 20
ID_BITS = ID_BYTES * 8

T = TypeVar("T")


def xor_distance(id1: bytes, id2: bytes) -> int:
    """
    XOR distance between two identifiers.

    Args:
        id1: First identifier (20 bytes)
        id2: Second identifier (20 bytes)

    Returns:
        Distance as a non-negative integer
    """
    if len(id1) != len(id2):
        raise ValueError(f"ID length mismatch: {len(id1)} vs {len(id2)}")

    return int.from_bytes(id1, byteorder="big") ^ int.from_bytes(id2, byteorder="big")


def distance_key(target: bytes, node_id: bytes) -> Tuple[int, bytes]:
    """Sort key: XOR distance first, smaller id breaks ties."""
    return (xor_distance(target, node_id), node_id)


def sort_by_distance(target: bytes, items: Iterable[T], get_id: Callable[[T], bytes]) -> List[T]:
    """Order items by distance of their id to target."""
    return sorted(items, key=lambda item: distance_key(target, get_id(item)))


def hash_to_node_id(data: bytes) -> bytes:
    """Hash arbitrary bytes into a 160-bit id."""
    return hashlib.sha1(data).digest()


def key_to_id(key: str) -> bytes:
    """Map a string key onto the DHT key space."""
    return hashlib.sha1(key.encode("utf-8")).digest()


def message_key(recipient: str, sequence_number: int) -> bytes:
    """DHT key of a user message: hash of recipient and sequence number."""
    return key_to_id(f"{recipient}:{sequence_number}")


def entry_key(index: int) -> bytes:
    """DHT key of a committed log entry."""
    return key_to_id(f"log:{index}")


@dataclass
class Node:
    """
    A peer of the network.

    [KADEMLIA] node_id doubles as the node's coordinate in the key space.
    """

    node_id: bytes  # 20 bytes
    host: str
    port: int
    last_heartbeat: float = field(default_factory=time.time)
    alive: bool = True

    @property
    def node_id_hex(self) -> str:
        return self.node_id.hex()

    @property
    def address(self) -> Tuple[str, int]:
        return (self.host, self.port)

    def touch(self) -> None:
        """Record a sign of life."""
        self.last_heartbeat = time.time()
        self.alive = True

    def is_stale(self, timeout: float) -> bool:
        return time.time() - self.last_heartbeat > timeout

    def to_dict(self) -> Dict:
        return {
            "node_id": self.node_id.hex(),
            "host": self.host,
            "port": self.port,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Node":
        return cls(
            node_id=bytes.fromhex(data["node_id"]),
            host=data.get("host", ""),
            port=data.get("port", 0),
        )

    def __hash__(self) -> int:
        return hash(self.node_id)

    def __eq__(self, other) -> bool:
        if isinstance(other, Node):
            return self.node_id == other.node_id
        return False

