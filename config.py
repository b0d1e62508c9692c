"""
PDN Node Configuration
======================
Centralized settings for every subsystem of a persistent data network node.

[CONFIG] Values come from dataclass defaults, overridden by environment
variables (optionally loaded from a .env file).
"""

from dataclasses import dataclass, field
from typing import List, Tuple

import os

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_bootstrap(raw: str) -> List[Tuple[str, str, int]]:
    """Parse "node_id_hex@host:port,..." into (node_id_hex, host, port) tuples."""
    nodes = []
    for item in raw.split(","):
        item = item.strip()
        if "@" not in item or ":" not in item:
            continue
        node_id, _, address = item.partition("@")
        host, _, port = address.rpartition(":")
        try:
            bytes.fromhex(node_id)
            nodes.append((node_id, host, int(port)))
        except ValueError:
            continue
    return nodes


@dataclass
class NetworkConfig:
    """Transport-facing settings."""

    # Default address advertised by the node
    default_host: str = os.getenv("PDN_HOST", "127.0.0.1")
    default_port: int = _env_int("PDN_PORT", 8468)

    # Nodes contacted on startup to join the overlay
    bootstrap_nodes: List[Tuple[str, str, int]] = field(
        default_factory=lambda: _parse_bootstrap(os.getenv("PDN_BOOTSTRAP", ""))
    )

    # RPC request timeout (seconds)
    rpc_timeout: float = _env_float("PDN_RPC_TIMEOUT", 2.0)


@dataclass
class MembershipConfig:
    """Liveness tracking."""

    # Interval between PING rounds (seconds)
    heartbeat_interval: float = _env_float("PDN_HEARTBEAT_INTERVAL", 5.0)

    # Node is suspected dead if silent for this long (seconds)
    heartbeat_timeout: float = _env_float("PDN_HEARTBEAT_TIMEOUT", 15.0)


@dataclass
class DHTConfig:
    """Kademlia overlay parameters."""

    # Replication factor / size of a replica set
    k: int = _env_int("PDN_DHT_K", 3)

    # Lookup parallelism
    alpha: int = _env_int("PDN_DHT_ALPHA", 3)

    # Lifetime of stored messages (seconds)
    ttl: int = _env_int("PDN_DHT_TTL", 86400)

    # Background maintenance (seconds)
    republish_interval: float = _env_float("PDN_DHT_REPUBLISH_INTERVAL", 3600.0)
    cleanup_interval: float = _env_float("PDN_DHT_CLEANUP_INTERVAL", 300.0)


@dataclass
class ConsensusConfig:
    """Paxos proposer behaviour."""

    # Prepare/accept attempts per index before giving up
    max_attempts: int = _env_int("PDN_PAXOS_MAX_ATTEMPTS", 20)

    # Randomized backoff between retries (seconds)
    backoff_base: float = _env_float("PDN_PAXOS_BACKOFF_BASE", 0.01)
    backoff_max: float = _env_float("PDN_PAXOS_BACKOFF_MAX", 0.5)


@dataclass
class ReplicationConfig:
    """Fan-out of committed entries to DHT replicas."""

    max_attempts: int = _env_int("PDN_REPLICATION_MAX_ATTEMPTS", 4)
    backoff_base: float = _env_float("PDN_REPLICATION_BACKOFF_BASE", 0.05)
    backoff_max: float = _env_float("PDN_REPLICATION_BACKOFF_MAX", 2.0)


@dataclass
class PersistenceConfig:
    """Durable state location."""

    # SQLite file holding the log, acceptor state and stored messages
    state_db_path: str = os.getenv("PDN_STATE_DB", "pdn_state.db")


@dataclass
class Config:
    """Top-level configuration."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    membership: MembershipConfig = field(default_factory=MembershipConfig)
    dht: DHTConfig = field(default_factory=DHTConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    replication: ReplicationConfig = field(default_factory=ReplicationConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)


# Global configuration instance (defaults only; components receive values
# explicitly through their constructors)
config = Config()
