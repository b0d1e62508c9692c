"""
Acceptor Unit Tests
===================

[PAXOS] Promise/accept rules and durable acceptor state.
"""

from pdn.consensus.acceptor import ACCEPTOR_PREFIX, Acceptor
from pdn.consensus.messages import Accepted, Nack, Promise, ProposalNumber


def n(round_: int, node: int = 1) -> ProposalNumber:
    return ProposalNumber(round_, bytes([node]) * 20)


class TestAcceptor:
    """Test Acceptor."""

    async def test_first_prepare_promised(self, memory_store):
        acceptor = Acceptor(memory_store)

        vote = await acceptor.on_prepare(0, n(5))

        assert isinstance(vote, Promise)
        assert vote.accepted_number is None
        assert await acceptor.promised(0) == n(5)

    async def test_lower_prepare_nacked(self, memory_store):
        acceptor = Acceptor(memory_store)
        await acceptor.on_prepare(0, n(7, 2))

        vote = await acceptor.on_prepare(0, n(5, 1))

        assert isinstance(vote, Nack)
        assert vote.number == n(5, 1)
        assert vote.promised == n(7, 2)

    async def test_accept_below_promise_nacked(self, memory_store):
        acceptor = Acceptor(memory_store)
        await acceptor.on_prepare(0, n(5, 1))
        await acceptor.on_prepare(0, n(7, 2))

        vote = await acceptor.on_accept(0, n(5, 1), b"five")

        assert isinstance(vote, Nack)
        assert vote.promised == n(7, 2)

    async def test_promise_reports_prior_accept(self, memory_store):
        acceptor = Acceptor(memory_store)
        await acceptor.on_prepare(0, n(5))
        assert isinstance(await acceptor.on_accept(0, n(5), b"tx1"), Accepted)

        vote = await acceptor.on_prepare(0, n(7, 2))

        assert isinstance(vote, Promise)
        assert vote.accepted_number == n(5)
        assert vote.accepted_value == b"tx1"

    async def test_indices_are_independent(self, memory_store):
        acceptor = Acceptor(memory_store)
        await acceptor.on_prepare(0, n(9))

        assert isinstance(await acceptor.on_prepare(1, n(1)), Promise)

    async def test_state_survives_restart(self, memory_store):
        acceptor = Acceptor(memory_store)
        await acceptor.on_prepare(3, n(7))
        await acceptor.on_accept(3, n(7), b"v")

        restarted = Acceptor(memory_store)
        vote = await restarted.on_prepare(3, n(5))
        assert isinstance(vote, Nack)

        vote = await restarted.on_prepare(3, n(8))
        assert vote.accepted_value == b"v"

    async def test_forget_below_drops_stored_slots(self, memory_store):
        acceptor = Acceptor(memory_store)
        for index in range(3):
            await acceptor.on_accept(index, n(4), b"v")

        assert await acceptor.forget_below(2) == 2

        assert await memory_store.keys(ACCEPTOR_PREFIX) == [f"{ACCEPTOR_PREFIX}{2:020d}"]
        restarted = Acceptor(memory_store)
        assert (await restarted.on_prepare(2, n(5))).accepted_value == b"v"
