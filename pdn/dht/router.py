"""
DHT Router - locating and storing values
========================================

[KADEMLIA] Replica placement and lookup over the membership table:
- route(key): the k closest known nodes, alive ones first
- lookup(key): iterative FIND_VALUE, alpha requests per round
- find_nodes(key): the same walk with FIND_NODE, used for bootstrap
- store(key, value): STORE on every node of route(key)

[LOOKUP] A walk stops once a round brings no node closer than the
best one seen; the unqueried nodes among the k closest get one last
round before giving up.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional, Set, Tuple

from pdn.dht.protocol import (
    FindNodeRequest,
    FindNodeResponse,
    FindValueRequest,
    FindValueResponse,
    StoreRequest,
    StoreResponse,
)
from pdn.dht.routing import ALPHA, K, Node, sort_by_distance, xor_distance
from pdn.dht.storage import MessageStore
from pdn.errors import NotFound, Unreachable
from pdn.rpc import RpcClient
from pdn.transport import MessageType

if TYPE_CHECKING:
    from pdn.membership import MembershipTable

logger = logging.getLogger(__name__)


class Router(ABC):
    """Replica placement contract consumed by replication and the node."""

    @abstractmethod
    def route(self, key: bytes) -> List[Node]:
        """Nodes responsible for key."""

    @abstractmethod
    async def lookup(self, key: bytes) -> bytes:
        """
        Value stored under key.

        Raises:
            NotFound: no reachable replica holds the key
        """

    @abstractmethod
    async def store(self, key: bytes, value: bytes, ttl: Optional[int] = None) -> int:
        """
        Store on every replica of key.

        Returns:
            Number of acknowledging replicas

        Raises:
            Unreachable: no replica acknowledged
        """

    @abstractmethod
    async def store_on(self, node: Node, key: bytes, value: bytes, ttl: Optional[int] = None) -> bool:
        """Store on a single replica; False if it did not acknowledge."""


class DHTRouter(Router):
    """
    Kademlia router of one node.

    [USAGE]
    ```python
    router = DHTRouter(local_id, membership, storage, rpc)
    await router.store(key, b"value")
    value = await router.lookup(key)
    ```
    """

    def __init__(
        self,
        local_id: bytes,
        membership: "MembershipTable",
        storage: MessageStore,
        rpc: RpcClient,
        k: int = K,
        alpha: int = ALPHA,
    ):
        self.local_id = local_id
        self.membership = membership
        self.storage = storage
        self.rpc = rpc
        self.k = k
        self.alpha = alpha

    # =========================================================================
    # Router contract
    # =========================================================================

    def route(self, key: bytes) -> List[Node]:
        return self.membership.closest_to(key, self.k)

    async def lookup(self, key: bytes) -> bytes:
        local = await self.storage.get(key)
        if local:
            return local.value

        value, _ = await self._walk(key, MessageType.FIND_VALUE)
        if value is None:
            logger.debug(f"[DHT] lookup: key={key.hex()[:16]}... NOT FOUND")
            raise NotFound(key)

        logger.debug(f"[DHT] lookup: key={key.hex()[:16]}... FOUND")
        return value

    async def find_nodes(self, key: bytes) -> List[Node]:
        """The k closest nodes to key reachable through the network."""
        _, shortlist = await self._walk(key, MessageType.FIND_NODE)
        return shortlist

    async def store(self, key: bytes, value: bytes, ttl: Optional[int] = None) -> int:
        targets = self.route(key)
        results = await asyncio.gather(*(self.store_on(n, key, value, ttl) for n in targets))
        acked = sum(1 for ok in results if ok)

        if acked == 0:
            raise Unreachable(None, f"no replica acknowledged key {key.hex()[:16]}")

        logger.debug(f"[DHT] store: key={key.hex()[:16]}... acked by {acked}/{len(targets)}")
        return acked

    async def store_on(self, node: Node, key: bytes, value: bytes, ttl: Optional[int] = None) -> bool:
        if node.node_id == self.local_id:
            return await self.storage.store(key, value, publisher_id=self.local_id, ttl=ttl)

        request = StoreRequest(key=key, value=value, ttl=ttl)

        try:
            envelope = await self.rpc.request(node.node_id, MessageType.STORE, request.to_dict())
        except Unreachable as e:
            logger.debug(f"[DHT] STORE to {node.node_id_hex[:16]}... failed: {e}")
            return False

        if envelope.type != MessageType.STORE_ACK:
            return False
        return StoreResponse.from_dict(envelope.payload).success

    # =========================================================================
    # Iterative walk
    # =========================================================================

    async def _walk(self, key: bytes, msg_type: MessageType) -> Tuple[Optional[bytes], List[Node]]:
        """
        Iterative FIND_NODE / FIND_VALUE.

        Returns:
            (value or None, k closest nodes seen)
        """
        shortlist = [n for n in self.membership.closest_to(key, self.k + 1) if n.node_id != self.local_id]
        shortlist = shortlist[:self.k]
        if not shortlist:
            logger.debug("[DHT] walk: no known peers")
            return None, []

        queried: Set[bytes] = set()
        best = xor_distance(key, shortlist[0].node_id)

        while True:
            to_query = [n for n in shortlist if n.node_id not in queried][:self.alpha]
            if not to_query:
                break

            value = await self._query_round(key, msg_type, to_query, queried, shortlist)
            if value is not None:
                return value, shortlist

            shortlist[:] = sort_by_distance(key, shortlist, lambda n: n.node_id)[:self.k]
            closest = xor_distance(key, shortlist[0].node_id)
            if closest < best:
                best = closest
                continue

            # No progress: ask the rest of the k closest, then stop
            remaining = [n for n in shortlist if n.node_id not in queried]
            if remaining:
                value = await self._query_round(key, msg_type, remaining, queried, shortlist)
                if value is not None:
                    return value, shortlist
                shortlist[:] = sort_by_distance(key, shortlist, lambda n: n.node_id)[:self.k]
            break

        return None, shortlist

    async def _query_round(
        self,
        key: bytes,
        msg_type: MessageType,
        nodes: List[Node],
        queried: Set[bytes],
        shortlist: List[Node],
    ) -> Optional[bytes]:
        for node in nodes:
            queried.add(node.node_id)

        responses = await asyncio.gather(*(self._query(n, key, msg_type) for n in nodes))

        known = {n.node_id for n in shortlist}
        for response in responses:
            if response is None:
                continue

            if isinstance(response, FindValueResponse) and response.found:
                return response.value

            for new_node in response.nodes:
                if new_node.node_id == self.local_id or new_node.node_id in known:
                    continue
                # Hearsay adds unknown nodes, it never revives suspected ones
                if new_node.node_id not in self.membership:
                    self.membership.upsert(new_node)
                shortlist.append(new_node)
                known.add(new_node.node_id)

        return None

    async def _query(self, node: Node, key: bytes, msg_type: MessageType):
        if msg_type == MessageType.FIND_VALUE:
            payload = FindValueRequest(key=key).to_dict()
        else:
            payload = FindNodeRequest(target_id=key).to_dict()

        try:
            envelope = await self.rpc.request(node.node_id, msg_type, payload)
        except Unreachable as e:
            logger.debug(f"[DHT] {msg_type.name} to {node.node_id_hex[:16]}... failed: {e}")
            return None

        if envelope.type == MessageType.FIND_VALUE_REPLY:
            return FindValueResponse.from_dict(envelope.payload)
        if envelope.type == MessageType.FIND_NODE_REPLY:
            return FindNodeResponse.from_dict(envelope.payload)
        return None
