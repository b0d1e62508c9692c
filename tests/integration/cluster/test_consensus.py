"""
Consensus Integration Tests
===========================

[INTEGRATION] Paxos over several full nodes on a LocalNetwork:
quorum commits, competing proposers, safety under concurrency,
minority partitions, late joiners and proposer restarts.
"""

import asyncio

import pytest

from pdn.consensus.acceptor import ACCEPTOR_PREFIX
from pdn.consensus.log import log_key
from pdn.consensus.messages import Accept, Prepare, ProposalNumber
from pdn.errors import ConsensusTimeout
from pdn.node import PDNNode
from pdn.transport import MessageType


async def _converge(nodes, timeout: float = 3.0) -> int:
    """Wait until every node's log is as long as the longest one."""
    length = max(n.log.length() for n in nodes)
    for node in nodes:
        assert await node.log.wait_for_length(length, timeout=timeout)
    return length


class TestQuorumCommit:
    """A majority commits independently of the minority."""

    async def test_commit_with_exactly_three_of_five(self, cluster_factory):
        a, b, c, d, e = await cluster_factory.create(5)
        cluster_factory.network.crash(d.node_id)
        cluster_factory.network.crash(e.node_id)

        entry = await a.coordinator.propose(b"tx1")

        assert entry.index == 0
        assert entry.payload == b"tx1"
        rnd = a.coordinator.last_decided
        assert rnd.quorum == 3
        assert rnd.accepted_by == {a.node_id, b.node_id, c.node_id}

        for node in (b, c):
            assert await node.log.wait_for_length(1, timeout=1.0)
            assert node.log.get(0).payload == b"tx1"
        assert d.log.length() == 0
        assert e.log.length() == 0

    async def test_no_commit_below_majority(self, cluster_factory):
        a, b, c, d, e = await cluster_factory.create(5)
        for node in (c, d, e):
            cluster_factory.network.crash(node.node_id)
        a.coordinator.max_attempts = 2

        with pytest.raises(ConsensusTimeout):
            await a.coordinator.propose(b"tx1")

        assert a.log.length() == 0
        assert b.log.length() == 0

    async def test_single_node_commits_alone(self, cluster_factory):
        (solo,) = await cluster_factory.create(1)

        entry = await solo.submit(b"alone")

        assert entry.index == 0
        assert solo.log.length() == 1


class TestCompetingProposals:
    """Higher proposal numbers win, lower ones are NACKed."""

    async def test_seven_wins_over_five(self, cluster_factory):
        a, b, c = await cluster_factory.create(3)
        seven = ProposalNumber(7, c.node_id)
        five = ProposalNumber(5, a.node_id)

        # C gets 7 promised and accepted by B and itself
        await c.acceptor.on_prepare(0, seven)
        reply = await c.rpc.request(b.node_id, MessageType.PREPARE, Prepare(0, seven).to_dict())
        assert reply.type == MessageType.PROMISE
        await c.acceptor.on_accept(0, seven, b"seven")
        reply = await c.rpc.request(b.node_id, MessageType.ACCEPT, Accept(0, seven, b"seven").to_dict())
        assert reply.type == MessageType.ACCEPTED

        # B promised 7, so it NACKs 5
        reply = await a.rpc.request(b.node_id, MessageType.PREPARE, Prepare(0, five).to_dict())
        assert reply.type == MessageType.NACK
        assert reply.payload["promised"]["round"] == 7

        # A proposing with round 5 is pushed above 7 and must adopt "seven"
        a.coordinator._highest = ProposalNumber(4, a.node_id)
        entry = await a.coordinator.decide(0, b"five")

        assert entry.payload == b"seven"
        assert a.coordinator.stats["nacks"] >= 1
        assert a.coordinator.last_decided.number > seven

        await _converge([a, b, c])
        assert {n.log.get(0).payload for n in (a, b, c)} == {b"seven"}

    async def test_propose_skips_committed_indices(self, cluster_factory):
        a, b, c = await cluster_factory.create(3)

        await c.coordinator.propose(b"first")
        await _converge([a, b, c])

        entry = await a.coordinator.propose(b"second")

        assert entry.index == 1
        assert entry.payload == b"second"


class TestSafety:
    """No two nodes ever disagree on a committed index."""

    async def test_concurrent_proposers_agree(self, cluster_factory):
        nodes = await cluster_factory.create(3)
        values = [f"{i}:{j}".encode() for i in range(len(nodes)) for j in range(3)]

        async def run(node, mine):
            for value in mine:
                await node.coordinator.propose(value)

        await asyncio.gather(*(
            run(node, values[i * 3:(i + 1) * 3]) for i, node in enumerate(nodes)
        ))
        length = await _converge(nodes)

        logs = [[n.log.get(i).payload for i in range(length)] for n in nodes]
        assert logs[0] == logs[1] == logs[2]

        committed = [p for p in logs[0] if p]
        assert sorted(committed) == sorted(values)

    async def test_entry_committed_events_in_order(self, cluster_factory):
        a, b, c = await cluster_factory.create(3)
        seen = []
        await b.events.subscribe("entry_committed", lambda payload: seen.append(payload["index"]))

        for i in range(4):
            await a.submit(f"tx{i}".encode())
        await _converge([a, b, c])

        assert seen == [0, 1, 2, 3]


class TestPartition:
    """A minority stalls, the majority makes progress, healing reconciles."""

    async def test_minority_stalls_and_recovers(self, cluster_factory):
        nodes = await cluster_factory.create(5)
        minority = {n.node_id for n in nodes[:2]}
        majority_side = {n.node_id for n in nodes[2:]}
        cluster_factory.network.partition(minority, majority_side)
        a, c = nodes[0], nodes[2]
        a.coordinator.max_attempts = 3

        with pytest.raises(ConsensusTimeout):
            await a.coordinator.propose(b"from-minority")

        entry = await c.coordinator.propose(b"from-majority")
        assert entry.index == 0

        cluster_factory.network.heal()
        assert await a.coordinator.catch_up(c.node_id) == 1
        assert a.log.get(0).payload == b"from-majority"

        again = await a.coordinator.propose(b"from-minority")
        assert again.index == 1
        await _converge(nodes)
        assert all(n.log.get(1).payload == b"from-minority" for n in nodes)


class TestCatchUp:
    """Late joiners pull the committed log."""

    async def test_late_joiner_bootstraps_and_catches_up(self, cluster_factory):
        seeds = await cluster_factory.create(3)
        for i in range(3):
            await seeds[0].submit(f"tx{i}".encode())

        (late,) = await cluster_factory.create(1, connect=False)
        known = await late.bootstrap([seeds[0].info])

        assert known == 4
        assert late.log.length() == 3
        assert [late.log.get(i).payload for i in range(3)] == [seeds[0].log.get(i).payload for i in range(3)]


class TestRestart:
    """A restarted proposer stays ahead of the numbers it already sent."""

    async def test_restarted_proposer_never_reuses_a_number(self, cluster_factory):
        a, b, c, d, e = await cluster_factory.create(5)
        network = cluster_factory.network

        # Phase 2 of A's first round only reached B before A went down
        number = await a.coordinator._next_number()
        reply = await a.rpc.request(b.node_id, MessageType.ACCEPT, Accept(0, number, b"X").to_dict())
        assert reply.type == MessageType.ACCEPTED

        store = a.store
        await a.stop()
        cluster_factory.nodes.remove(a)
        network.crash(b.node_id)

        restarted = PDNNode(
            network.attach(a.node_id),
            node_id=a.node_id,
            store=store,
            rpc_timeout=0.3,
            heartbeat_interval=3600.0,
            heartbeat_timeout=7200.0,
            republish_interval=3600.0,
            cleanup_interval=3600.0,
        )
        await restarted.start()
        cluster_factory.nodes.append(restarted)
        cluster_factory.connect_all()

        assert restarted.coordinator.get_stats()["highest_round"] >= number.round

        entry = await restarted.coordinator.decide(0, b"Y")

        assert entry.accepted_proposal > number
        assert restarted.coordinator.last_decided.number > number


class TestLearnerState:
    """Applied indices leave nothing behind, failed appends lose nothing."""

    async def test_applied_indices_leave_no_consensus_state(self, cluster_factory):
        nodes = await cluster_factory.create(3)
        for i in range(3):
            await nodes[0].submit(f"tx{i}".encode())
        await _converge(nodes)
        await asyncio.sleep(0.05)

        for node in nodes:
            assert node.coordinator.rounds == {}
            assert await node.store.keys(ACCEPTOR_PREFIX) == []

    async def test_failed_append_keeps_decision(self, cluster_factory, monkeypatch):
        (solo,) = await cluster_factory.create(1)
        put = solo.store.put
        failed = []

        async def flaky_put(key, value):
            if key == log_key(0) and not failed:
                failed.append(key)
                raise OSError("disk full")
            await put(key, value)

        monkeypatch.setattr(solo.store, "put", flaky_put)

        with pytest.raises(OSError):
            await solo.coordinator.propose(b"first")
        assert solo.log.length() == 0
        assert solo.coordinator.get_stats()["buffered_decisions"] == 1

        entry = await solo.coordinator.propose(b"second")

        assert entry.index == 1
        assert solo.log.get(0).payload == b"first"
