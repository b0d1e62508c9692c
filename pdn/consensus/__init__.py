"""
Consensus Module
================

Paxos agreement over an append-only transaction log:
- ConsensusCoordinator: proposer, acceptor front-end and learner
- Acceptor: durable promise/accept state per log index
- TransactionLog: contiguous committed entries with streaming reads
- messages: proposal numbers and PREPARE/PROMISE/ACCEPT/... payloads
"""

from .messages import (
    ProposalNumber,
    Proposal,
    Prepare,
    Promise,
    Nack,
    Accept,
    Accepted,
    Commit,
    majority,
)
from .log import LogEntry, TransactionLog
from .acceptor import Acceptor
from .coordinator import ConsensusCoordinator, RoundState, NOOP

__all__ = [
    "ProposalNumber",
    "Proposal",
    "Prepare",
    "Promise",
    "Nack",
    "Accept",
    "Accepted",
    "Commit",
    "majority",
    "LogEntry",
    "TransactionLog",
    "Acceptor",
    "ConsensusCoordinator",
    "RoundState",
    "NOOP",
]
