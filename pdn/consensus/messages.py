"""
Paxos Messages
==============

[PAXOS] Proposal numbers and the messages exchanged per log index:
- PREPARE(index, number) -> PROMISE(index, number, prior accepted?) | NACK
- ACCEPT(index, number, value) -> ACCEPTED(index, number) | NACK
- COMMIT(index, value): decided value, sent to everyone
- LOG_SYNC(start) -> LOG_SYNC_REPLY(entries): catch-up of committed entries
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pdn.transport import decode_bytes, encode_bytes


@dataclass(frozen=True, order=True)
class ProposalNumber:
    """
    Globally comparable proposal number.

    [PAXOS] Ordered by round first, proposer id second, so two
    proposers never produce equal numbers.
    """

    round: int
    node_id: bytes = b""

    def next_after(self, other: "ProposalNumber") -> "ProposalNumber":
        """Smallest number of this proposer strictly greater than other."""
        return ProposalNumber(max(self.round, other.round) + 1, self.node_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"round": self.round, "node_id": self.node_id.hex()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProposalNumber":
        return cls(round=data["round"], node_id=bytes.fromhex(data.get("node_id", "")))

    def __str__(self) -> str:
        return f"{self.round}.{self.node_id.hex()[:8]}"


# Lower than any real proposal
ZERO = ProposalNumber(0, b"")


@dataclass(frozen=True)
class Proposal:
    """A candidate value under a proposal number."""

    number: ProposalNumber
    value: bytes
    proposer_id: bytes


@dataclass
class Prepare:
    index: int
    number: ProposalNumber

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "number": self.number.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Prepare":
        return cls(index=data["index"], number=ProposalNumber.from_dict(data["number"]))


@dataclass
class Promise:
    """
    Promise not to accept anything below number.

    [PAXOS] Carries the acceptor's highest accepted proposal, if any.
    committed=True means the acceptor's node already holds this index
    in its log and accepted_value is the decided value.
    """

    index: int
    number: ProposalNumber
    accepted_number: Optional[ProposalNumber] = None
    accepted_value: Optional[bytes] = None
    committed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "index": self.index,
            "number": self.number.to_dict(),
            "committed": self.committed,
        }
        if self.accepted_number is not None and self.accepted_value is not None:
            data["accepted_number"] = self.accepted_number.to_dict()
            data["accepted_value"] = encode_bytes(self.accepted_value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Promise":
        accepted_number = None
        accepted_value = None
        if "accepted_number" in data:
            accepted_number = ProposalNumber.from_dict(data["accepted_number"])
            accepted_value = decode_bytes(data["accepted_value"])
        return cls(
            index=data["index"],
            number=ProposalNumber.from_dict(data["number"]),
            accepted_number=accepted_number,
            accepted_value=accepted_value,
            committed=data.get("committed", False),
        )


@dataclass
class Nack:
    """Rejection of number because promised is higher."""

    index: int
    number: ProposalNumber
    promised: ProposalNumber

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "number": self.number.to_dict(),
            "promised": self.promised.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Nack":
        return cls(
            index=data["index"],
            number=ProposalNumber.from_dict(data["number"]),
            promised=ProposalNumber.from_dict(data["promised"]),
        )


@dataclass
class Accept:
    index: int
    number: ProposalNumber
    value: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "number": self.number.to_dict(),
            "value": encode_bytes(self.value),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Accept":
        return cls(
            index=data["index"],
            number=ProposalNumber.from_dict(data["number"]),
            value=decode_bytes(data["value"]),
        )


@dataclass
class Accepted:
    index: int
    number: ProposalNumber

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "number": self.number.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Accepted":
        return cls(index=data["index"], number=ProposalNumber.from_dict(data["number"]))


@dataclass
class Commit:
    index: int
    value: bytes
    number: ProposalNumber = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "value": encode_bytes(self.value),
            "number": self.number.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Commit":
        number = ProposalNumber.from_dict(data["number"]) if "number" in data else ZERO
        return cls(index=data["index"], value=decode_bytes(data["value"]), number=number)


@dataclass
class LogSync:
    start: int
    limit: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "limit": self.limit}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogSync":
        return cls(start=data["start"], limit=data.get("limit", 100))


@dataclass
class LogSyncReply:
    entries: List[Commit] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"entries": [e.to_dict() for e in self.entries]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogSyncReply":
        return cls(entries=[Commit.from_dict(e) for e in data.get("entries", [])])


def majority(size: int) -> int:
    """Strict majority of a membership snapshot of the given size."""
    return size // 2 + 1
