"""
Transaction Log - ordered, append-only record of committed entries
==================================================================

[LOG] Rules:
- indices are contiguous from 0, append only at the current length
- an entry is committed exactly once and never changes afterwards
- an out-of-order append poisons the instance: every later append fails

[PERSISTENCE] Entries live in a KeyValueStore under "log:<index>",
JSON-encoded, and are reloaded by load().

[STREAMING] entries(start) yields committed entries from any index and
keeps waiting for new ones, so late replicas can follow the log.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from pdn.consensus.messages import ZERO, ProposalNumber
from pdn.errors import NotFound, OutOfOrderAppend
from pdn.persistence.store import KeyValueStore
from pdn.transport import decode_bytes, encode_bytes

logger = logging.getLogger(__name__)


LOG_PREFIX = "log:"


def log_key(index: int) -> str:
    # Zero padding keeps lexicographic order equal to numeric order
    return f"{LOG_PREFIX}{index:020d}"


@dataclass(frozen=True)
class LogEntry:
    """One committed position of the log."""

    index: int
    accepted_proposal: ProposalNumber
    payload: bytes
    committed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "accepted_proposal": self.accepted_proposal.to_dict(),
            "payload": encode_bytes(self.payload),
            "committed": self.committed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            index=data["index"],
            accepted_proposal=ProposalNumber.from_dict(data["accepted_proposal"]),
            payload=decode_bytes(data["payload"]),
            committed=data.get("committed", True),
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "LogEntry":
        return cls.from_dict(json.loads(data.decode("utf-8")))


class TransactionLog:
    """
    Append-only committed log of one node.

    [USAGE]
    ```python
    log = TransactionLog(MemoryStore())
    await log.load()
    await log.append(log.length(), b"tx")
    entry = log.get(0)
    async for entry in log.entries(start=0):
        ...
    ```
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._entries: List[LogEntry] = []
        self._lock = asyncio.Lock()
        self._grown = asyncio.Condition()
        self._poisoned: Optional[OutOfOrderAppend] = None
        self._closed = False

    def __len__(self) -> int:
        return len(self._entries)

    def length(self) -> int:
        return len(self._entries)

    @property
    def poisoned(self) -> bool:
        return self._poisoned is not None

    @property
    def closed(self) -> bool:
        return self._closed

    async def load(self) -> int:
        """
        Restore committed entries from the store.

        Returns:
            Number of entries loaded
        """
        keys = await self.store.keys(LOG_PREFIX)
        entries = []
        for expected, key in enumerate(keys):
            raw = await self.store.get(key)
            if raw is None:
                break
            entry = LogEntry.from_bytes(raw)
            if entry.index != expected:
                self._poisoned = OutOfOrderAppend(entry.index, expected)
                logger.error(f"[LOG] Gap in persisted log at {expected}, found {entry.index}")
                raise self._poisoned
            entries.append(entry)

        async with self._lock:
            self._entries = entries

        if entries:
            logger.info(f"[LOG] Loaded {len(entries)} committed entries")
        return len(entries)

    async def append(self, index: int, payload: bytes, proposal: ProposalNumber = ZERO) -> LogEntry:
        """
        Commit payload at index.

        Raises:
            OutOfOrderAppend: index != current length, or the log is poisoned
        """
        async with self._lock:
            if self._poisoned is not None:
                raise self._poisoned

            expected = len(self._entries)
            if index != expected:
                self._poisoned = OutOfOrderAppend(index, expected)
                logger.error(f"[LOG] Out-of-order append at {index}, expected {expected}")
                raise self._poisoned

            entry = LogEntry(index=index, accepted_proposal=proposal, payload=bytes(payload))
            await self.store.put(log_key(index), entry.to_bytes())
            self._entries.append(entry)

        logger.debug(f"[LOG] Committed index {index} ({len(payload)} bytes)")

        async with self._grown:
            self._grown.notify_all()

        return entry

    def get(self, index: int) -> LogEntry:
        """
        Raises:
            NotFound: index is absent or not committed
        """
        if index < 0 or index >= len(self._entries):
            raise NotFound(index)
        return self._entries[index]

    def read_range(self, start: int, limit: int) -> List[LogEntry]:
        """Up to limit committed entries from start."""
        if start < 0:
            start = 0
        return self._entries[start:start + limit]

    async def wait_for_length(self, length: int, timeout: Optional[float] = None) -> bool:
        """
        Wait until the log holds at least length entries.

        Returns:
            False on timeout
        """
        async def _wait() -> None:
            async with self._grown:
                await self._grown.wait_for(lambda: len(self._entries) >= length or self._closed)

        try:
            await asyncio.wait_for(_wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return len(self._entries) >= length

    async def entries(self, start: int = 0) -> AsyncIterator[LogEntry]:
        """
        Stream committed entries from start, waiting for new ones.

        The stream ends when the log is closed.
        """
        position = max(start, 0)
        while True:
            if position < len(self._entries):
                yield self._entries[position]
                position += 1
                continue

            if self._closed:
                return

            async with self._grown:
                await self._grown.wait_for(lambda: len(self._entries) > position or self._closed)

    async def close(self) -> None:
        """End all streams and waiters."""
        self._closed = True
        async with self._grown:
            self._grown.notify_all()
