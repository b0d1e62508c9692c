"""
Replication Manager - fan-out of committed data to DHT replicas
===============================================================

[REPLICATION] For every committed entry and user message:
- targets = router.route(derived key), the K closest nodes
- STORE to each target, retrying the unacknowledged ones with
  exponential backoff and jitter
- fewer acks than a majority of targets is degraded durability:
  logged, published as a "partial_replication" event and carried in
  the report, never raised

[KADEMLIA] republish() re-sends locally held values that were not
republished for an interval, keeping data alive while nodes churn.
"""

import asyncio
import random
import time
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Set

from pdn.consensus.log import LogEntry
from pdn.consensus.messages import majority
from pdn.dht.router import Router
from pdn.dht.routing import entry_key, message_key
from pdn.dht.storage import REPUBLISH_INTERVAL, MessageStore
from pdn.errors import PartialReplication
from pdn.events import EventBus

if TYPE_CHECKING:
    from pdn.node import UserMessage

logger = logging.getLogger(__name__)


@dataclass
class ReplicationReport:
    """Outcome of replicating one key."""

    key: bytes
    targets: List[bytes]
    acked: Set[bytes] = field(default_factory=set)
    attempts: int = 0
    error: Optional[PartialReplication] = None

    @property
    def required(self) -> int:
        return majority(len(self.targets))

    @property
    def complete(self) -> bool:
        return len(self.acked) == len(self.targets)

    @property
    def degraded(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict:
        return {
            "key": self.key.hex(),
            "targets": [t.hex() for t in self.targets],
            "acked": sorted(a.hex() for a in self.acked),
            "attempts": self.attempts,
            "degraded": self.degraded,
        }


class ReplicationManager:
    """
    Pushes committed data to its replica set.

    [USAGE]
    ```python
    replication = ReplicationManager(router, storage, events=bus)
    report = await replication.replicate_entry(entry)
    if report.degraded:
        ...
    ```
    """

    def __init__(
        self,
        router: Router,
        storage: Optional[MessageStore] = None,
        events: Optional[EventBus] = None,
        max_attempts: int = 4,
        backoff_base: float = 0.05,
        backoff_max: float = 2.0,
    ):
        self.router = router
        self.storage = storage
        self.events = events
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.stats = {"replicated": 0, "degraded": 0, "republished": 0}

    async def _backoff(self, attempt: int) -> None:
        ceiling = min(self.backoff_max, self.backoff_base * (2 ** attempt))
        # Equal jitter
        await asyncio.sleep(ceiling / 2 + random.uniform(0, ceiling / 2))

    async def replicate(self, key: bytes, value: bytes, ttl: Optional[int] = None) -> ReplicationReport:
        """STORE value on every replica of key, retrying until all ack or the budget runs out."""
        nodes = self.router.route(key)
        report = ReplicationReport(key=key, targets=[n.node_id for n in nodes])

        pending = list(nodes)
        while pending and report.attempts < self.max_attempts:
            if report.attempts:
                await self._backoff(report.attempts)
            report.attempts += 1

            results = await asyncio.gather(*(self.router.store_on(n, key, value, ttl) for n in pending))
            for node, ok in zip(pending, results):
                if ok:
                    report.acked.add(node.node_id)
            pending = [n for n in pending if n.node_id not in report.acked]

        if len(report.acked) < report.required:
            report.error = PartialReplication(key, len(report.acked), report.required, len(report.targets))
            self.stats["degraded"] += 1
            logger.warning(f"[REPLICATION] {report.error}")
            if self.events:
                await self.events.broadcast("partial_replication", report.to_dict())
        else:
            self.stats["replicated"] += 1
            logger.debug(
                f"[REPLICATION] key={key.hex()[:16]}... acked by "
                f"{len(report.acked)}/{len(report.targets)} in {report.attempts} attempts"
            )

        return report

    async def replicate_entry(self, entry: LogEntry) -> ReplicationReport:
        return await self.replicate(entry_key(entry.index), entry.to_bytes())

    async def replicate_message(self, message: "UserMessage") -> ReplicationReport:
        return await self.replicate(
            message_key(message.recipient, message.sequence_number),
            message.to_bytes(),
        )

    async def republish(self, interval: float = REPUBLISH_INTERVAL) -> int:
        """
        Re-replicate values this node holds.

        Returns:
            Number of values republished
        """
        if self.storage is None:
            return 0

        values = await self.storage.get_republish_values(interval)
        for stored in values:
            remaining = max(1, int(stored.expires_at - time.time()))
            await self.replicate(stored.key, stored.value, ttl=remaining)
            await self.storage.mark_republished(stored.key)

        if values:
            self.stats["republished"] += len(values)
            logger.debug(f"[REPLICATION] Republished {len(values)} values")
        return len(values)
