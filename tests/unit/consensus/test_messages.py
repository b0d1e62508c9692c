"""
Consensus Message Unit Tests
============================

[PAXOS] Proposal number ordering, quorum arithmetic, payload codecs.
"""

import pytest

from pdn.consensus.messages import (
    ZERO,
    Commit,
    LogSyncReply,
    Nack,
    Promise,
    ProposalNumber,
    majority,
)


class TestProposalNumber:
    """Test ProposalNumber ordering."""

    def test_round_compared_first(self):
        assert ProposalNumber(2, b"\x00" * 20) > ProposalNumber(1, b"\xff" * 20)

    def test_node_id_breaks_ties(self):
        assert ProposalNumber(3, b"\x02" * 20) > ProposalNumber(3, b"\x01" * 20)

    def test_zero_below_everything(self):
        assert ZERO < ProposalNumber(0, b"\x00" * 20)
        assert ZERO < ProposalNumber(1, b"")

    def test_next_after(self):
        mine = ProposalNumber(2, b"\x01" * 20)
        theirs = ProposalNumber(7, b"\x02" * 20)

        bumped = mine.next_after(theirs)

        assert bumped > theirs
        assert bumped.round == 8
        assert bumped.node_id == mine.node_id

    def test_dict_roundtrip(self):
        number = ProposalNumber(5, b"\xab" * 20)
        assert ProposalNumber.from_dict(number.to_dict()) == number


class TestMajority:
    """Quorum = floor(N/2) + 1."""

    @pytest.mark.parametrize("size,quorum", [(1, 1), (2, 2), (3, 2), (4, 3), (5, 3), (6, 4), (7, 4)])
    def test_majority(self, size, quorum):
        assert majority(size) == quorum

    def test_two_majorities_intersect(self):
        for size in range(1, 12):
            assert 2 * majority(size) > size


class TestPayloads:
    """Test wire payloads of the consensus messages."""

    def test_promise_without_prior_accept(self):
        promise = Promise(index=0, number=ProposalNumber(1, b"\x01" * 20))
        restored = Promise.from_dict(promise.to_dict())

        assert restored.accepted_number is None
        assert restored.accepted_value is None
        assert restored.committed is False

    def test_promise_with_noop_value(self):
        promise = Promise(
            index=0,
            number=ProposalNumber(2, b"\x01" * 20),
            accepted_number=ProposalNumber(1, b"\x01" * 20),
            accepted_value=b"",
        )
        assert Promise.from_dict(promise.to_dict()).accepted_value == b""

    def test_nack_carries_promised(self):
        nack = Nack(index=0, number=ProposalNumber(5, b""), promised=ProposalNumber(7, b""))
        assert Nack.from_dict(nack.to_dict()).promised.round == 7

    def test_log_sync_reply(self):
        reply = LogSyncReply(entries=[Commit(index=i, value=bytes([i])) for i in range(3)])
        restored = LogSyncReply.from_dict(reply.to_dict())
        assert [c.value for c in restored.entries] == [b"\x00", b"\x01", b"\x02"]
