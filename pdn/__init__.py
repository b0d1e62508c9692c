"""
PDN - Persistent Data Network
=============================
Peer nodes jointly maintain an ordered, replicated transaction log and a
distributed key-value store for user messages:
- Consensus: Paxos agreement on log entries
- DHT: Kademlia routing, lookup and replica storage
- Replication: fan-out of committed data to replica sets
- Membership: known nodes, heartbeats and liveness
- Persistence: durable key-value state (memory or SQLite)
"""

from .errors import (
    PDNError,
    Unreachable,
    NackedProposal,
    OutOfOrderAppend,
    NotFound,
    PartialReplication,
    ConsensusTimeout,
)
from .transport import Envelope, MessageType, Transport, LocalNetwork, LocalTransport
from .membership import MembershipTable, HeartbeatMonitor
from .dht import Node, DHTRouter, Router, MessageStore
from .consensus import ConsensusCoordinator, TransactionLog, LogEntry, ProposalNumber
from .replication import ReplicationManager, ReplicationReport
from .identity import NodeIdentity
from .events import EventBus
from .node import PDNNode, UserMessage, Transaction

__version__ = "0.1.0"

__all__ = [
    "PDNError",
    "Unreachable",
    "NackedProposal",
    "OutOfOrderAppend",
    "NotFound",
    "PartialReplication",
    "ConsensusTimeout",
    "Envelope",
    "MessageType",
    "Transport",
    "LocalNetwork",
    "LocalTransport",
    "MembershipTable",
    "HeartbeatMonitor",
    "Node",
    "DHTRouter",
    "Router",
    "MessageStore",
    "ConsensusCoordinator",
    "TransactionLog",
    "LogEntry",
    "ProposalNumber",
    "ReplicationManager",
    "ReplicationReport",
    "NodeIdentity",
    "EventBus",
    "PDNNode",
    "UserMessage",
    "Transaction",
]
