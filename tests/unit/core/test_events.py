"""
Event Bus and Logging Unit Tests
================================
"""

import asyncio
import logging

from pdn.events import EventBus
from pdn.logger import EventStreamHandler, setup_logging, tag_of


class TestEventBus:
    """Test EventBus."""

    async def test_broadcast_to_sync_and_async(self):
        bus = EventBus()
        seen = []

        async def async_listener(payload):
            seen.append(("async", payload["index"]))

        await bus.subscribe("entry_committed", seen.append)
        await bus.subscribe("entry_committed", async_listener)
        await bus.broadcast("entry_committed", {"index": 3})

        assert {"index": 3} in seen
        assert ("async", 3) in seen

    async def test_failing_listener_does_not_block_others(self):
        bus = EventBus()
        seen = []

        def broken(payload):
            raise RuntimeError("boom")

        await bus.subscribe("node_dead", broken)
        await bus.subscribe("node_dead", seen.append)
        await bus.broadcast("node_dead", {"node_id": "ab"})

        assert seen == [{"node_id": "ab"}]

    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        await bus.subscribe("x", seen.append)
        await bus.unsubscribe("x", seen.append)
        await bus.broadcast("x", {})
        assert seen == []


class TestEventStreamHandler:
    """Test EventStreamHandler."""

    def test_tag_of(self):
        assert tag_of("12:00 [INFO] pdn: [PAXOS] Committed") == "PAXOS"
        assert tag_of("plain") is None

    async def test_forwards_records(self):
        bus = EventBus()
        received = []
        await bus.subscribe("log_record", received.append)

        handler = EventStreamHandler(bus, maxlen=2)
        test_logger = logging.getLogger("pdn.test_events")
        test_logger.addHandler(handler)
        test_logger.setLevel(logging.INFO)
        try:
            for i in range(3):
                test_logger.info(f"[DHT] record {i}")
            await asyncio.sleep(0.01)
        finally:
            test_logger.removeHandler(handler)

        assert list(handler.buffer) == ["[DHT] record 1", "[DHT] record 2"]
        assert [r["tag"] for r in received] == ["DHT", "DHT", "DHT"]

    def test_setup_logging_quiets_dependencies(self):
        setup_logging(logging.DEBUG)
        assert logging.getLogger("aiosqlite").level == logging.WARNING
