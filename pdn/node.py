"""
PDN Node - wiring of one network participant
============================================

[NODE] One instance of every component, injected through constructors:
- MembershipTable + HeartbeatMonitor: who is out there, who is alive
- ConsensusCoordinator + Acceptor + TransactionLog: the ordered log
- DHTRouter + DHTHandlers + MessageStore: where data lives
- ReplicationManager: pushes committed data to its replicas

[FLOW] submit/send_message -> propose -> quorum decision -> log append
-> apply (in log order) -> replicate to route(derived key).
Reads go through DHT lookup and fall back to local state.

[MESSAGES] A user message is a log transaction. Its sequence number is
assigned when the entry is applied: the number of earlier messages to
the same recipient in the log. Every node derives the same numbers.
"""

import asyncio
import json
import time
import uuid
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from config import config
from pdn.consensus.acceptor import Acceptor
from pdn.consensus.coordinator import ConsensusCoordinator
from pdn.consensus.log import LogEntry, TransactionLog
from pdn.dht.protocol import DHTHandlers
from pdn.dht.router import DHTRouter
from pdn.dht.routing import ID_BYTES, Node, entry_key, message_key
from pdn.dht.storage import MessageStore
from pdn.errors import NotFound, PDNError
from pdn.events import EventBus
from pdn.identity import NodeIdentity
from pdn.membership import HeartbeatMonitor, MembershipTable
from pdn.persistence.store import KeyValueStore, SQLiteStore
from pdn.protocol import ProtocolRouter
from pdn.replication import ReplicationManager, ReplicationReport
from pdn.rpc import RpcClient
from pdn.transport import Envelope, Transport, decode_bytes, encode_bytes

logger = logging.getLogger(__name__)


TX_DATA = "data"
TX_MESSAGE = "message"


@dataclass
class Transaction:
    """
    Body of a log entry.

    tx_id makes every proposal unique, so two clients submitting the
    same bytes get two entries.
    """

    kind: str
    body: Dict[str, Any]
    tx_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_bytes(self) -> bytes:
        return json.dumps(
            {"tx": self.tx_id, "kind": self.kind, "body": self.body},
            separators=(",", ":"),
            sort_keys=True,
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Transaction":
        raw = json.loads(data.decode("utf-8"))
        return cls(kind=raw["kind"], body=raw.get("body", {}), tx_id=raw["tx"])


@dataclass
class UserMessage:
    """A message addressed to a recipient, stored in the DHT."""

    sender: str
    recipient: str
    payload: bytes
    sequence_number: int = -1
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> bytes:
        return message_key(self.recipient, self.sequence_number)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "recipient": self.recipient,
            "payload": encode_bytes(self.payload),
            "sequence_number": self.sequence_number,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserMessage":
        return cls(
            sender=data["sender"],
            recipient=data["recipient"],
            payload=decode_bytes(data["payload"]),
            sequence_number=data.get("sequence_number", -1),
            timestamp=data.get("timestamp", time.time()),
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "UserMessage":
        return cls.from_dict(json.loads(data.decode("utf-8")))


class PDNNode:
    """
    A node of the persistent data network.

    [USAGE]
    ```python
    network = LocalNetwork()
    identity = NodeIdentity()
    node = PDNNode(network.attach(identity.node_id), identity=identity)
    await node.start()
    await node.bootstrap([seed_node])
    msg = await node.send_message("alice", "bob", b"hello")
    inbox = await node.inbox("bob")
    await node.stop()
    ```
    """

    def __init__(
        self,
        transport: Transport,
        identity: Optional[NodeIdentity] = None,
        node_id: Optional[bytes] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        store: Optional[KeyValueStore] = None,
        events: Optional[EventBus] = None,
        k: Optional[int] = None,
        alpha: Optional[int] = None,
        rpc_timeout: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        heartbeat_timeout: Optional[float] = None,
        republish_interval: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        bootstrap_nodes: Optional[Iterable[Node]] = None,
    ):
        """
        Args:
            transport: Outbound/inbound channel; the node installs its handler
            identity: Key pair; node_id defaults to its SHA-1 id
            node_id: Explicit 20-byte id, overrides the identity's
            store: Durable state; SQLite at config.persistence.state_db_path if omitted
            bootstrap_nodes: Seeds used by bootstrap() without arguments;
                config.network.bootstrap_nodes if omitted
        """
        if node_id is None:
            identity = identity or NodeIdentity()
            node_id = identity.node_id

        self.identity = identity
        self.node_id = node_id
        self.host = host if host is not None else config.network.default_host
        self.port = port if port is not None else config.network.default_port
        self.transport = transport
        self.store = store if store is not None else SQLiteStore(config.persistence.state_db_path)
        self.events = events or EventBus()

        self.republish_interval = republish_interval or config.dht.republish_interval
        self.cleanup_interval = cleanup_interval or config.dht.cleanup_interval

        if bootstrap_nodes is None:
            bootstrap_nodes = [
                Node(node_id=bytes.fromhex(seed_id), host=seed_host, port=seed_port)
                for seed_id, seed_host, seed_port in config.network.bootstrap_nodes
                if len(seed_id) == ID_BYTES * 2
            ]
        self.bootstrap_nodes: List[Node] = list(bootstrap_nodes)

        # Membership
        self.membership = MembershipTable(Node(node_id=node_id, host=self.host, port=self.port))
        self.membership.on_node_dead(self._on_node_dead)

        # Messaging
        self.rpc = RpcClient(
            transport,
            node_id,
            local_host=self.host,
            local_port=self.port,
            timeout=rpc_timeout or config.network.rpc_timeout,
        )
        self.router = ProtocolRouter(self.rpc)
        self.heartbeat = HeartbeatMonitor(
            self.membership,
            self.rpc,
            interval=heartbeat_interval or config.membership.heartbeat_interval,
            timeout=heartbeat_timeout or config.membership.heartbeat_timeout,
        )

        # Consensus
        self.log = TransactionLog(self.store)
        self.acceptor = Acceptor(self.store)
        self.coordinator = ConsensusCoordinator(
            node_id,
            self.membership,
            self.log,
            self.acceptor,
            self.rpc,
            events=self.events,
            max_attempts=config.consensus.max_attempts,
            backoff_base=config.consensus.backoff_base,
            backoff_max=config.consensus.backoff_max,
        )
        self.coordinator.on_commit(self._apply)

        # DHT
        self.storage = MessageStore(self.store, default_ttl=config.dht.ttl)
        self.dht = DHTRouter(
            node_id,
            self.membership,
            self.storage,
            self.rpc,
            k=k or config.dht.k,
            alpha=alpha or config.dht.alpha,
        )
        self.dht_handlers = DHTHandlers(node_id, self.membership, self.storage, k=k or config.dht.k)
        self.replication = ReplicationManager(
            self.dht,
            self.storage,
            events=self.events,
            max_attempts=config.replication.max_attempts,
            backoff_base=config.replication.backoff_base,
            backoff_max=config.replication.backoff_max,
        )

        for handler in self.coordinator.handlers() + self.dht_handlers.handlers():
            self.router.register(handler)
        transport.set_handler(self._on_message)

        # Applied state, rebuilt from the log on start
        self._message_counts: Dict[str, int] = defaultdict(int)
        self._messages: Dict[bytes, UserMessage] = {}
        self._tx_waiters: Dict[str, asyncio.Future] = {}

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._event_tasks: Set[asyncio.Task] = set()

    @property
    def node_id_hex(self) -> str:
        return self.node_id.hex()

    @property
    def info(self) -> Node:
        return Node(node_id=self.node_id, host=self.host, port=self.port)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._running:
            return

        await self.store.initialize()
        loaded = await self.log.load()
        for entry in self.log.read_range(0, loaded):
            await self._apply(entry)
        await self.coordinator.load()

        self._running = True
        await self.heartbeat.start()
        self._tasks.append(asyncio.create_task(self._republish_loop()))
        self._tasks.append(asyncio.create_task(self._cleanup_loop()))

        logger.info(f"[NODE] Started {self.node_id_hex[:16]}... with {loaded} log entries")

    async def stop(self) -> None:
        self._running = False

        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        await self.heartbeat.stop()
        await self.router.drain()
        self.rpc.cancel_all()
        await self.log.close()
        await self.transport.close()
        await self.store.close()

        for future in self._tx_waiters.values():
            if not future.done():
                future.cancel()
        self._tx_waiters.clear()

        logger.info(f"[NODE] Stopped {self.node_id_hex[:16]}...")

    async def bootstrap(self, nodes: Optional[Iterable[Node]] = None) -> int:
        """
        Join the overlay through known nodes, the configured seeds by default.

        Returns:
            Number of known nodes afterwards
        """
        if nodes is None:
            nodes = self.bootstrap_nodes
        seeds = [n for n in nodes if n.node_id != self.node_id]
        for seed in seeds:
            self.membership.upsert(Node(node_id=seed.node_id, host=seed.host, port=seed.port))

        if seeds:
            await self.dht.find_nodes(self.node_id)
            for seed in seeds:
                if await self.coordinator.catch_up(seed.node_id):
                    break

        logger.info(f"[NODE] Bootstrapped with {len(seeds)} seeds, {len(self.membership)} nodes known")
        return len(self.membership)

    # =========================================================================
    # Public API
    # =========================================================================

    async def submit(self, payload: bytes) -> LogEntry:
        """Commit an opaque payload to the log and replicate the entry."""
        tx = Transaction(kind=TX_DATA, body={"data": encode_bytes(payload)})
        entry, _ = await self._commit(tx)
        await self.replication.replicate_entry(entry)
        return entry

    async def send_message(self, sender: str, recipient: str, payload: bytes) -> UserMessage:
        """
        Commit a message and store it under its DHT key.

        Returns:
            The message with its assigned sequence number
        """
        tx = Transaction(
            kind=TX_MESSAGE,
            body={
                "sender": sender,
                "recipient": recipient,
                "payload": encode_bytes(payload),
                "timestamp": time.time(),
            },
        )
        entry, message = await self._commit(tx)

        report = await self.replication.replicate_message(message)
        if report.degraded:
            logger.warning(f"[NODE] Message {recipient}#{message.sequence_number} under-replicated")
        await self.replication.replicate_entry(entry)
        return message

    async def read_message(self, recipient: str, sequence_number: int) -> UserMessage:
        """
        Raises:
            NotFound: no such message
        """
        key = message_key(recipient, sequence_number)
        try:
            return UserMessage.from_bytes(await self.dht.lookup(key))
        except NotFound:
            local = self._messages.get(key)
            if local is None:
                raise
            return local

    async def inbox(self, recipient: str) -> List[UserMessage]:
        """All messages to recipient, in sequence order."""
        messages = []
        while True:
            try:
                messages.append(await self.read_message(recipient, len(messages)))
            except NotFound:
                return messages

    async def read_entry(self, index: int) -> LogEntry:
        """
        Committed entry at index, from the local log or its replicas.

        Raises:
            NotFound: not committed locally and not found in the DHT
        """
        if index < self.log.length():
            return self.log.get(index)
        return LogEntry.from_bytes(await self.dht.lookup(entry_key(index)))

    async def replicate(self, key: bytes, value: bytes) -> ReplicationReport:
        return await self.replication.replicate(key, value)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id_hex,
            "running": self._running,
            "membership": self.membership.get_stats(),
            "consensus": self.coordinator.get_stats(),
            "replication": dict(self.replication.stats),
            "messages": len(self._messages),
        }

    # =========================================================================
    # Internals
    # =========================================================================

    async def _commit(self, tx: Transaction) -> Tuple[LogEntry, Any]:
        """
        Returns:
            (entry, what applying it produced: the entry or a UserMessage)
        """
        waiter = asyncio.get_running_loop().create_future()
        self._tx_waiters[tx.tx_id] = waiter
        try:
            entry = await self.coordinator.propose(tx.to_bytes())
            # Applied by the commit callback, possibly after propose returned
            result = await waiter
        finally:
            self._tx_waiters.pop(tx.tx_id, None)
        return entry, result

    async def _apply(self, entry: LogEntry) -> None:
        """Commit callback; runs once per entry, in log order."""
        if not entry.payload:
            return

        try:
            tx = Transaction.from_bytes(entry.payload)
        except (ValueError, KeyError) as e:
            logger.warning(f"[NODE] Undecodable entry at index {entry.index}: {e}")
            return

        result: Any = entry
        if tx.kind == TX_MESSAGE:
            recipient = tx.body["recipient"]
            message = UserMessage(
                sender=tx.body["sender"],
                recipient=recipient,
                payload=decode_bytes(tx.body["payload"]),
                sequence_number=self._message_counts[recipient],
                timestamp=tx.body.get("timestamp", time.time()),
            )
            self._message_counts[recipient] += 1
            self._messages[message.key] = message
            result = message

        waiter = self._tx_waiters.get(tx.tx_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(result)

    async def _on_message(self, sender_id: bytes, envelope: Envelope) -> None:
        if sender_id in self.membership:
            self.membership.mark_alive(sender_id)
        else:
            self.membership.upsert(Node(node_id=sender_id, host=envelope.sender_host, port=envelope.sender_port))
        self.router.dispatch(envelope)

    def _on_node_dead(self, node: Node) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.events.broadcast("node_dead", node.to_dict()))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _republish_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.republish_interval)

                if not self._running:
                    break

                await self.replication.republish(self.republish_interval)

            except asyncio.CancelledError:
                break
            except PDNError as e:
                logger.warning(f"[NODE] Republish incomplete: {e}")
            except Exception as e:
                logger.error(f"[NODE] Republish error: {e}")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.cleanup_interval)

                if not self._running:
                    break

                await self.storage.cleanup()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[NODE] Cleanup error: {e}")
