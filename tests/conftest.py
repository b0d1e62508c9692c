"""
PDN Test Configuration
======================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: isolated components, in-memory stores
- Integration tests: several full nodes on one in-process network

[FIXTURES]
- cluster_factory: spawn N PDNNodes on a LocalNetwork
- memory_store / sqlite_store: fresh KeyValueStore per test
- make_id: deterministic 20-byte ids

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Multi-node tests
"""

import sys
import asyncio
import logging
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from pdn.identity import NodeIdentity
from pdn.node import PDNNode
from pdn.persistence import MemoryStore, SQLiteStore
from pdn.transport import LocalNetwork


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (multi-node, slower)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        if "/unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # Silence noisy loggers during tests
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ============================================================================
# Id and Store Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def make_id() -> Callable[[int], bytes]:
    """Factory of 20-byte ids whose integer value is n."""
    def _make(n: int) -> bytes:
        return n.to_bytes(20, byteorder="big")
    return _make


@pytest_asyncio.fixture(scope="function")
async def memory_store() -> AsyncGenerator[MemoryStore, None]:
    store = MemoryStore()
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture(scope="function")
async def sqlite_store() -> AsyncGenerator[SQLiteStore, None]:
    """Isolated in-memory SQLite database."""
    store = SQLiteStore(":memory:")
    await store.initialize()
    yield store
    await store.close()


# ============================================================================
# Cluster Factory Fixture
# ============================================================================

# Fast timings for tests; background loops effectively disabled
TEST_NODE_SETTINGS = {
    "rpc_timeout": 0.3,
    "heartbeat_interval": 3600.0,
    "heartbeat_timeout": 7200.0,
    "republish_interval": 3600.0,
    "cleanup_interval": 3600.0,
}


class ClusterFactory:
    """
    Factory for spawning test clusters.

    [USAGE]
        nodes = await cluster_factory.create(5)   # 5 started, fully meshed nodes
        cluster_factory.network.crash(nodes[3].node_id)
        await cluster_factory.cleanup()            # Cleanup after test
    """

    def __init__(self):
        self.network = LocalNetwork()
        self.nodes: List[PDNNode] = []
        self._seed_counter = 0

    def _next_identity(self) -> NodeIdentity:
        self._seed_counter += 1
        return NodeIdentity.from_seed(self._seed_counter.to_bytes(32, byteorder="big"))

    async def create(
        self,
        count: int = 1,
        start: bool = True,
        connect: bool = True,
        node_ids: Optional[List[bytes]] = None,
        **overrides,
    ) -> List[PDNNode]:
        """
        Create N nodes.

        Args:
            count: Number of nodes to create
            start: Whether to start the nodes
            connect: Whether every node should know every other node
            node_ids: Explicit ids instead of identity-derived ones
        """
        settings = dict(TEST_NODE_SETTINGS)
        settings.update(overrides)

        created = []
        for i in range(count):
            identity = self._next_identity()
            node_id = node_ids[i] if node_ids else identity.node_id
            node = PDNNode(
                self.network.attach(node_id),
                identity=identity,
                node_id=node_id,
                host="127.0.0.1",
                port=19000 + len(self.nodes),
                store=MemoryStore(),
                **settings,
            )
            if start:
                await node.start()
            self.nodes.append(node)
            created.append(node)

        if connect:
            self.connect_all()
        return created

    def connect_all(self) -> None:
        """Make every node a member of every other node's table."""
        for node in self.nodes:
            for other in self.nodes:
                if other is not node:
                    node.membership.upsert(other.info)

    def by_id(self) -> Dict[bytes, PDNNode]:
        return {n.node_id: n for n in self.nodes}

    async def cleanup(self) -> None:
        """Stop all nodes."""
        for node in self.nodes:
            await node.stop()
        self.nodes.clear()


@pytest_asyncio.fixture(scope="function")
async def cluster_factory() -> AsyncGenerator[ClusterFactory, None]:
    """
    Fixture providing ClusterFactory for multi-node tests.

    [USAGE]
        async def test_commit(cluster_factory):
            nodes = await cluster_factory.create(3)
            entry = await nodes[0].submit(b"tx1")
    """
    factory = ClusterFactory()
    yield factory
    await factory.cleanup()
