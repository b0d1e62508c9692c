"""
Consensus Coordinator - Paxos agreement on log entries
======================================================

[PAXOS] Per log index a proposer walks through:
    IDLE -> PREPARING -> PROMISED -> ACCEPTING -> COMMITTED

- PREPARING: PREPARE(index, n) to every member of the snapshot
- PROMISED: a strict majority promised; adopt the highest prior accepted
  value, or our own candidate if none
- ACCEPTING: ACCEPT(index, n, value) to every member
- COMMITTED: a strict majority accepted; append and broadcast COMMIT

[SAFETY] Majority is always computed against the snapshot taken when
PREPARE was sent. Acceptors NACK anything below their promise; a NACK
only makes the proposer retry with a higher number after a randomized
backoff. Timeouts count as missing votes, never as aborts. The highest
round is stored before a PREPARE carries it, so a restarted proposer
never sends one number with two values.

[ORDER] Decisions may arrive out of order (COMMIT from other proposers,
pipelined local rounds). They are buffered and appended to the log only
once every lower index is committed. A proposer stuck behind a gap fills
it with a no-op proposal.
"""

import asyncio
import random
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Tuple, Union

from pdn.consensus.acceptor import Acceptor
from pdn.consensus.log import LogEntry, TransactionLog
from pdn.consensus.messages import (
    Accept,
    Accepted,
    Commit,
    LogSync,
    LogSyncReply,
    Nack,
    Prepare,
    Promise,
    Proposal,
    ProposalNumber,
    majority,
)
from pdn.errors import ConsensusTimeout, NackedProposal, Unreachable
from pdn.events import EventBus
from pdn.membership import MembershipTable
from pdn.persistence.store import KeyValueStore
from pdn.protocol import CallbackHandler, MessageHandler, Reply
from pdn.rpc import RpcClient
from pdn.transport import Envelope, MessageType

logger = logging.getLogger(__name__)


# Value decided for indices nobody else claims
NOOP = b""

# Highest round this node ever sent a PREPARE with
PROPOSER_ROUND_KEY = "proposer:round"

Vote = Union[Promise, Accepted, Nack, None]
CommitCallback = Callable[[LogEntry], Awaitable[None]]


class RoundState(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    PROMISED = "promised"
    ACCEPTING = "accepting"
    COMMITTED = "committed"


@dataclass
class Round:
    """One proposal attempt for one index."""

    index: int
    proposal: Proposal
    voters: FrozenSet[bytes]
    state: RoundState = RoundState.IDLE
    promises: Dict[bytes, Promise] = field(default_factory=dict)
    accepted_by: Set[bytes] = field(default_factory=set)
    nacks: Dict[bytes, Nack] = field(default_factory=dict)

    @property
    def number(self) -> ProposalNumber:
        return self.proposal.number

    @property
    def value(self) -> bytes:
        return self.proposal.value

    @property
    def quorum(self) -> int:
        return majority(len(self.voters))

    def adopt(self, value: bytes) -> None:
        """Carry a previously accepted value under this round's number."""
        self.proposal = replace(self.proposal, value=value)


class ConsensusCoordinator:
    """
    Proposer, acceptor front-end and learner of one node.

    [USAGE]
    ```python
    coordinator = ConsensusCoordinator(local_id, membership, log, acceptor, rpc)
    for handler in coordinator.handlers():
        protocol_router.register(handler)
    entry = await coordinator.propose(b"tx1")
    ```
    """

    def __init__(
        self,
        local_id: bytes,
        membership: MembershipTable,
        log: TransactionLog,
        acceptor: Acceptor,
        rpc: RpcClient,
        events: Optional[EventBus] = None,
        max_attempts: int = 20,
        backoff_base: float = 0.01,
        backoff_max: float = 0.5,
        rpc_timeout: Optional[float] = None,
        store: Optional[KeyValueStore] = None,
    ):
        """
        Args:
            store: Where the proposer round is kept; the acceptor's store if omitted
        """
        self.local_id = local_id
        self.membership = membership
        self.log = log
        self.acceptor = acceptor
        self.rpc = rpc
        self.store = store or acceptor.store
        self.events = events
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.rpc_timeout = rpc_timeout or rpc.timeout

        self._highest = ProposalNumber(0, local_id)
        self._next_index = 0
        self._decided: Dict[int, Tuple[ProposalNumber, bytes]] = {}
        self._index_locks: Dict[int, asyncio.Lock] = {}
        self._flush_lock = asyncio.Lock()
        self._on_commit: List[CommitCallback] = []
        self._catching_up = False

        # Rounds of indices not yet in the log
        self.rounds: Dict[int, Round] = {}
        self.last_decided: Optional[Round] = None
        self.stats = {"rounds": 0, "nacks": 0, "commits": 0, "conflicts": 0}

    # =========================================================================
    # Public API
    # =========================================================================

    async def load(self) -> int:
        """
        Restore the proposer round after a restart.

        Call after the log is loaded and before proposing.

        Returns:
            The restored round
        """
        raw = await self.store.get(PROPOSER_ROUND_KEY)
        if raw:
            self._observe(ProposalNumber(int(raw.decode("ascii")), self.local_id))
        await self.acceptor.forget_below(self.log.length())
        return self._highest.round

    def on_commit(self, callback: CommitCallback) -> None:
        """Register a coroutine called for every entry appended, in log order."""
        self._on_commit.append(callback)

    async def propose(self, value: bytes) -> LogEntry:
        """
        Get value committed at some index.

        Indices won by other proposers are skipped; the returned entry
        holds value.

        Raises:
            ConsensusTimeout: no decision within the retry budget
        """
        if not value:
            raise ValueError("empty value is reserved for no-op entries")

        while True:
            index = self._reserve_index()
            entry = await self._run_instance(index, value)
            if entry.payload == value:
                logger.info(f"[PAXOS] Committed own value at index {index}")
                return entry
            logger.debug(f"[PAXOS] Index {index} went to another proposal, moving on")

    async def decide(self, index: int, value: bytes) -> LogEntry:
        """Run consensus for one index; returns whatever value was decided there."""
        return await self._run_instance(index, value)

    async def catch_up(self, peer_id: bytes, batch: int = 100) -> int:
        """
        Pull committed entries this node is missing from a peer.

        Returns:
            Number of entries appended
        """
        learned = 0
        while True:
            start = self.log.length()
            try:
                envelope = await self.rpc.request(
                    peer_id, MessageType.LOG_SYNC, LogSync(start=start, limit=batch).to_dict()
                )
            except Unreachable as e:
                logger.debug(f"[PAXOS] Catch-up from {peer_id.hex()[:16]}... stopped: {e}")
                break

            reply = LogSyncReply.from_dict(envelope.payload)
            if not reply.entries:
                break

            for commit in reply.entries:
                self._observe(commit.number)
                await self._learn(commit.index, commit.number, commit.value)

            gained = self.log.length() - start
            if gained <= 0:
                break
            learned += gained

        if learned:
            logger.info(f"[PAXOS] Caught up {learned} entries from {peer_id.hex()[:16]}...")
        return learned

    def handlers(self) -> List[MessageHandler]:
        """Protocol handlers served by this coordinator."""
        return [
            CallbackHandler(MessageType.PREPARE, self.handle_prepare),
            CallbackHandler(MessageType.ACCEPT, self.handle_accept),
            CallbackHandler(MessageType.COMMIT, self.handle_commit),
            CallbackHandler(MessageType.LOG_SYNC, self.handle_log_sync),
        ]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "log_length": self.log.length(),
            "buffered_decisions": len(self._decided),
            "highest_round": self._highest.round,
        }

    # =========================================================================
    # Proposer
    # =========================================================================

    def _observe(self, number: ProposalNumber) -> None:
        """Remember the highest round seen anywhere."""
        if number.round > self._highest.round:
            self._highest = ProposalNumber(number.round, self.local_id)

    async def _next_number(self) -> ProposalNumber:
        """A fresh number, durable before any PREPARE carries it."""
        number = self._highest = self._highest.next_after(self._highest)
        await self.store.put(PROPOSER_ROUND_KEY, str(self._highest.round).encode("ascii"))
        return number

    def _reserve_index(self) -> int:
        index = max(self._next_index, self.log.length())
        while index in self._decided:
            index += 1
        self._next_index = index + 1
        return index

    def _lock_for(self, index: int) -> asyncio.Lock:
        lock = self._index_locks.get(index)
        if lock is None:
            lock = self._index_locks[index] = asyncio.Lock()
        return lock

    async def _backoff(self, attempt: int) -> None:
        ceiling = min(self.backoff_max, self.backoff_base * (2 ** attempt))
        await asyncio.sleep(random.uniform(0, ceiling))

    async def _run_instance(self, index: int, value: bytes) -> LogEntry:
        async with self._lock_for(index):
            attempt = 0
            while index >= self.log.length() and index not in self._decided:
                if attempt >= self.max_attempts:
                    logger.warning(f"[PAXOS] Giving up on index {index} after {attempt} attempts")
                    raise ConsensusTimeout(index, attempt)
                attempt += 1

                try:
                    outcome = await self._run_round(index, value)
                except NackedProposal as e:
                    self.stats["nacks"] += 1
                    self._observe(e.promised)
                    logger.debug(f"[PAXOS] {e}; retrying")
                    outcome = None

                if outcome is not None:
                    number, chosen = outcome
                    await self._learn(index, number, chosen)
                    await self._broadcast_commit(index, number, chosen)
                    break

                await self._backoff(attempt)

        entry = await self._await_applied(index)
        self.rounds.pop(index, None)

        lock = self._index_locks.get(index)
        if lock is not None and not lock.locked():
            self._index_locks.pop(index, None)
        return entry

    async def _await_applied(self, index: int) -> LogEntry:
        while index >= self.log.length():
            if await self.log.wait_for_length(index + 1, timeout=self.rpc_timeout):
                break
            if self.log.poisoned or self.log.closed:
                raise ConsensusTimeout(index, 0)

            # A lower index nobody is driving blocks us: fill it
            for gap in range(self.log.length(), index):
                if gap in self._decided or self._lock_for(gap).locked():
                    continue
                logger.info(f"[PAXOS] Filling gap at index {gap} with no-op")
                await self._run_instance(gap, NOOP)
                break

        return self.log.get(index)

    async def _run_round(self, index: int, value: bytes) -> Optional[Tuple[ProposalNumber, bytes]]:
        """
        One PREPARE/ACCEPT attempt.

        Returns:
            (number, decided value), or None if no quorum answered

        Raises:
            NackedProposal: a quorum is out of reach because of rejections
        """
        number = await self._next_number()
        voters = self.membership.snapshot()
        rnd = Round(
            index=index,
            proposal=Proposal(number=number, value=value, proposer_id=self.local_id),
            voters=voters,
        )
        self.rounds[index] = rnd
        self.stats["rounds"] += 1

        # Phase 1
        rnd.state = RoundState.PREPARING
        logger.debug(f"[PAXOS] PREPARE index={index} n={number} voters={len(voters)} quorum={rnd.quorum}")
        promises, nacks = await self._collect(
            rnd,
            MessageType.PREPARE,
            Prepare(index=index, number=number).to_dict(),
            lambda: self._local_prepare(index, number),
            Promise,
        )
        rnd.promises = promises
        rnd.nacks.update(nacks)

        if len(promises) < rnd.quorum:
            rnd.state = RoundState.IDLE
            if nacks:
                raise NackedProposal(index, max(n.promised for n in nacks.values()))
            return None

        rnd.state = RoundState.PROMISED

        for promise in promises.values():
            if promise.committed and promise.accepted_value is not None:
                rnd.adopt(promise.accepted_value)
                rnd.state = RoundState.COMMITTED
                self.last_decided = rnd
                return promise.accepted_number or number, promise.accepted_value

        prior = [p for p in promises.values() if p.accepted_number is not None]
        if prior:
            rnd.adopt(max(prior, key=lambda p: p.accepted_number).accepted_value)

        # Phase 2
        rnd.state = RoundState.ACCEPTING
        accepted, nacks = await self._collect(
            rnd,
            MessageType.ACCEPT,
            Accept(index=index, number=number, value=rnd.value).to_dict(),
            lambda: self._local_accept(index, number, rnd.value),
            Accepted,
        )
        rnd.accepted_by = set(accepted)
        rnd.nacks.update(nacks)

        if len(accepted) < rnd.quorum:
            rnd.state = RoundState.IDLE
            if nacks:
                raise NackedProposal(index, max(n.promised for n in nacks.values()))
            return None

        rnd.state = RoundState.COMMITTED
        self.last_decided = rnd
        logger.debug(f"[PAXOS] Decided index={index} n={number} with {len(accepted)}/{len(voters)} accepts")
        return number, rnd.value

    async def _collect(
        self,
        rnd: Round,
        msg_type: MessageType,
        payload: Dict[str, Any],
        local_call: Callable[[], Awaitable[Vote]],
        wanted: type,
    ) -> Tuple[Dict[bytes, Any], Dict[bytes, Nack]]:
        """
        Send one phase to every voter and count replies.

        Stops as soon as a quorum of wanted replies arrived, or once
        enough NACKs make a quorum impossible.
        """
        async def ask(voter: bytes) -> Tuple[bytes, Vote]:
            if voter == self.local_id:
                return voter, await asyncio.shield(local_call())
            return voter, await self._ask(voter, msg_type, payload)

        tasks = {asyncio.ensure_future(ask(voter)) for voter in rnd.voters}
        ok: Dict[bytes, Any] = {}
        nacks: Dict[bytes, Nack] = {}
        tolerance = len(rnd.voters) - rnd.quorum

        try:
            pending = tasks
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    voter, vote = task.result()
                    if isinstance(vote, Nack):
                        nacks[voter] = vote
                        self._observe(vote.promised)
                    elif isinstance(vote, wanted) and vote.number == rnd.number:
                        ok[voter] = vote

                if len(ok) >= rnd.quorum or len(nacks) > tolerance:
                    break
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        return ok, nacks

    async def _ask(self, voter: bytes, msg_type: MessageType, payload: Dict[str, Any]) -> Vote:
        try:
            envelope = await self.rpc.request(voter, msg_type, payload, timeout=self.rpc_timeout)
        except Unreachable as e:
            logger.debug(f"[PAXOS] No {msg_type.name} reply: {e}")
            return None

        if envelope.type == MessageType.PROMISE:
            return Promise.from_dict(envelope.payload)
        if envelope.type == MessageType.ACCEPTED:
            return Accepted.from_dict(envelope.payload)
        if envelope.type == MessageType.NACK:
            return Nack.from_dict(envelope.payload)
        return None

    async def _broadcast_commit(self, index: int, number: ProposalNumber, value: bytes) -> None:
        payload = Commit(index=index, value=value, number=number).to_dict()
        targets = [n.node_id for n in self.membership.all_nodes() if n.node_id != self.local_id]
        await asyncio.gather(*(self.rpc.notify(t, MessageType.COMMIT, payload) for t in targets))

    # =========================================================================
    # Learner
    # =========================================================================

    async def _learn(self, index: int, number: ProposalNumber, value: bytes) -> None:
        """Record a decided value and append everything that became contiguous."""
        if index < self.log.length():
            existing = self.log.get(index)
            if existing.payload != value:
                self.stats["conflicts"] += 1
                logger.error(f"[PAXOS] Conflicting decision for committed index {index}")
            return

        known = self._decided.get(index)
        if known is not None:
            if known[1] != value:
                self.stats["conflicts"] += 1
                logger.error(f"[PAXOS] Conflicting decision for index {index}")
            return

        self._decided[index] = (number, value)
        await self._flush()

    async def _flush(self) -> None:
        async with self._flush_lock:
            while self.log.length() in self._decided:
                index = self.log.length()
                number, value = self._decided[index]
                entry = await self.log.append(index, value, number)
                del self._decided[index]
                self.stats["commits"] += 1
                self.rounds.pop(index, None)
                await self.acceptor.forget_below(index + 1)

                lock = self._index_locks.get(index)
                if lock is not None and not lock.locked():
                    self._index_locks.pop(index, None)

                for callback in self._on_commit:
                    try:
                        await callback(entry)
                    except Exception as e:
                        logger.error(f"[PAXOS] Commit callback failed at index {index}: {e}")

                if self.events:
                    await self.events.broadcast("entry_committed", {"index": index, "size": len(value)})

    # =========================================================================
    # Request Handlers
    # =========================================================================

    async def _local_prepare(self, index: int, number: ProposalNumber) -> Union[Promise, Nack]:
        if index < self.log.length():
            entry = self.log.get(index)
            return Promise(
                index=index,
                number=number,
                accepted_number=entry.accepted_proposal,
                accepted_value=entry.payload,
                committed=True,
            )
        return await self.acceptor.on_prepare(index, number)

    async def _local_accept(self, index: int, number: ProposalNumber, value: bytes) -> Union[Accepted, Nack]:
        # Acceptor state of logged indices is gone; only the decided value is accepted
        if index < self.log.length():
            entry = self.log.get(index)
            if entry.payload == value:
                return Accepted(index=index, number=number)
            return Nack(index=index, number=number, promised=max(number, entry.accepted_proposal))
        return await self.acceptor.on_accept(index, number, value)

    async def handle_prepare(self, envelope: Envelope) -> Reply:
        prepare = Prepare.from_dict(envelope.payload)
        self._observe(prepare.number)
        vote = await self._local_prepare(prepare.index, prepare.number)
        if isinstance(vote, Nack):
            return MessageType.NACK, vote.to_dict()
        return MessageType.PROMISE, vote.to_dict()

    async def handle_accept(self, envelope: Envelope) -> Reply:
        accept = Accept.from_dict(envelope.payload)
        self._observe(accept.number)
        vote = await self._local_accept(accept.index, accept.number, accept.value)
        if isinstance(vote, Nack):
            return MessageType.NACK, vote.to_dict()
        return MessageType.ACCEPTED, vote.to_dict()

    async def handle_commit(self, envelope: Envelope) -> Optional[Reply]:
        commit = Commit.from_dict(envelope.payload)
        self._observe(commit.number)
        await self._learn(commit.index, commit.number, commit.value)

        # A decision beyond a gap: pull the missing entries from the sender
        if commit.index > self.log.length() and not self._catching_up:
            self._catching_up = True
            try:
                await self.catch_up(envelope.sender_id)
            finally:
                self._catching_up = False
        return None

    async def handle_log_sync(self, envelope: Envelope) -> Reply:
        request = LogSync.from_dict(envelope.payload)
        entries = self.log.read_range(request.start, request.limit)
        reply = LogSyncReply(
            entries=[Commit(index=e.index, value=e.payload, number=e.accepted_proposal) for e in entries]
        )
        return MessageType.LOG_SYNC_REPLY, reply.to_dict()
