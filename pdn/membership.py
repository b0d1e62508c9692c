"""
Membership Table - known peers and their liveness
=================================================

[MEMBERSHIP] Every node keeps its own table of peers:
- nodes are created on first contact and never deleted
- a node silent for longer than the heartbeat timeout is marked not-alive
- liveness is a soft hint: routing prefers alive nodes, quorum sizes
  are computed over the whole snapshot

[KADEMLIA] The table is also the routing table: closest_to() orders
known nodes by XOR distance to a key.
"""

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Callable, Dict, FrozenSet, List, Optional, Set

from pdn.dht.routing import ID_BYTES, Node, distance_key
from pdn.errors import Unreachable
from pdn.transport import MessageType

if TYPE_CHECKING:
    from pdn.rpc import RpcClient

logger = logging.getLogger(__name__)


class MembershipTable:
    """
    Thread-safe table of known nodes.

    [USAGE]
    ```python
    table = MembershipTable(local_node)
    table.upsert(Node(node_id=peer_id, host="10.0.0.2", port=8468))
    replicas = table.closest_to(key, 3)
    voters = table.snapshot()
    ```
    """

    def __init__(self, local: Optional[Node] = None):
        """
        Args:
            local: This node; it is a member of its own table
        """
        self._nodes: Dict[bytes, Node] = {}
        self._lock = threading.Lock()
        self._on_dead: List[Callable[[Node], None]] = []
        self.local_id: Optional[bytes] = None

        if local is not None:
            self.local_id = local.node_id
            self.upsert(local)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, node_id: bytes) -> bool:
        with self._lock:
            return node_id in self._nodes

    def upsert(self, node: Node) -> Node:
        """
        Add a node or refresh an existing one.

        Returns:
            The stored Node instance
        """
        if len(node.node_id) != ID_BYTES:
            raise ValueError(f"node_id must be {ID_BYTES} bytes, got {len(node.node_id)}")

        with self._lock:
            existing = self._nodes.get(node.node_id)
            if existing is None:
                self._nodes[node.node_id] = node
                logger.debug(f"[MEMBERSHIP] New node {node.node_id_hex[:16]}... at {node.host}:{node.port}")
                return node

            if node.host:
                existing.host = node.host
                existing.port = node.port
            existing.touch()
            return existing

    def get(self, node_id: bytes) -> Optional[Node]:
        with self._lock:
            return self._nodes.get(node_id)

    def mark_alive(self, node_id: bytes) -> bool:
        """Returns False for unknown nodes."""
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                return False
            was_dead = not node.alive
            node.touch()

        if was_dead:
            logger.info(f"[MEMBERSHIP] Node {node_id.hex()[:16]}... is back")
        return True

    def mark_dead(self, node_id: bytes) -> bool:
        """Returns False for unknown nodes and for the local node."""
        if node_id == self.local_id:
            return False

        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                return False
            was_alive = node.alive
            node.alive = False

        if was_alive:
            logger.info(f"[MEMBERSHIP] Node {node_id.hex()[:16]}... suspected dead")
            for callback in self._on_dead:
                callback(node)
        return True

    def alive_set(self) -> Set[Node]:
        with self._lock:
            return {n for n in self._nodes.values() if n.alive}

    def all_nodes(self) -> List[Node]:
        with self._lock:
            return list(self._nodes.values())

    def snapshot(self) -> FrozenSet[bytes]:
        """Ids of every known node; the voting set of a consensus round."""
        with self._lock:
            return frozenset(self._nodes)

    def closest_to(self, key: bytes, k: int, prefer_alive: bool = True) -> List[Node]:
        """
        The k nodes closest to key by XOR distance.

        [KADEMLIA] Ties are broken by the lexicographically smaller id.
        With prefer_alive, alive nodes come first and suspected nodes only
        fill the remaining slots.
        """
        with self._lock:
            nodes = list(self._nodes.values())

        if prefer_alive:
            ordered = sorted(nodes, key=lambda n: (not n.alive,) + distance_key(key, n.node_id))
        else:
            ordered = sorted(nodes, key=lambda n: distance_key(key, n.node_id))
        return ordered[:k]

    def expire_stale(self, timeout: float) -> List[Node]:
        """
        Mark nodes silent for longer than timeout as dead.

        Returns:
            Nodes newly marked dead
        """
        with self._lock:
            candidates = [
                n.node_id for n in self._nodes.values()
                if n.alive and n.node_id != self.local_id and n.is_stale(timeout)
            ]

        expired = []
        for node_id in candidates:
            if self.mark_dead(node_id):
                expired.append(self.get(node_id))
        return expired

    def on_node_dead(self, callback: Callable[[Node], None]) -> None:
        """Register a callback fired when a node is first suspected dead."""
        self._on_dead.append(callback)

    def get_stats(self) -> Dict:
        with self._lock:
            alive = sum(1 for n in self._nodes.values() if n.alive)
            total = len(self._nodes)
        return {
            "local_id": self.local_id.hex() if self.local_id else None,
            "total_nodes": total,
            "alive_nodes": alive,
        }


class HeartbeatMonitor:
    """
    Periodic liveness probe, independent of proposal traffic.

    [MEMBERSHIP] Every interval: PING each known node, mark responders
    alive, then mark nodes silent for longer than timeout as dead.
    """

    def __init__(
        self,
        membership: MembershipTable,
        rpc: "RpcClient",
        interval: float = 5.0,
        timeout: float = 15.0,
    ):
        self.membership = membership
        self.rpc = rpc
        self.interval = interval
        self.timeout = timeout

        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def ping(self, node_id: bytes) -> bool:
        try:
            await self.rpc.request(node_id, MessageType.PING, {}, timeout=min(self.rpc.timeout, self.interval))
        except Unreachable:
            return False
        self.membership.mark_alive(node_id)
        return True

    async def probe(self) -> List[Node]:
        """
        One heartbeat round.

        Returns:
            Nodes newly marked dead
        """
        peers = [n.node_id for n in self.membership.all_nodes() if n.node_id != self.membership.local_id]
        await asyncio.gather(*(self.ping(p) for p in peers))
        return self.membership.expire_stale(self.timeout)

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)

                if not self._running:
                    break

                expired = await self.probe()
                if expired:
                    logger.debug(f"[MEMBERSHIP] {len(expired)} nodes expired this round")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[MEMBERSHIP] Heartbeat error: {e}")
