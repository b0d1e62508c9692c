"""
Paxos acceptor state, one slot per log index.

[PAXOS] For every index the acceptor remembers the highest number it
promised and the last proposal it accepted. State is written to the
store before any reply leaves the node, so a restarted acceptor never
contradicts a promise it already gave.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

from pdn.consensus.messages import ZERO, Accepted, Nack, Promise, ProposalNumber
from pdn.persistence.store import KeyValueStore
from pdn.transport import decode_bytes, encode_bytes

logger = logging.getLogger(__name__)


ACCEPTOR_PREFIX = "paxos:"


@dataclass
class AcceptorSlot:
    promised: ProposalNumber = ZERO
    accepted_number: Optional[ProposalNumber] = None
    accepted_value: Optional[bytes] = None

    def to_bytes(self) -> bytes:
        data = {"promised": self.promised.to_dict()}
        if self.accepted_number is not None and self.accepted_value is not None:
            data["accepted_number"] = self.accepted_number.to_dict()
            data["accepted_value"] = encode_bytes(self.accepted_value)
        return json.dumps(data, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "AcceptorSlot":
        data = json.loads(raw.decode("utf-8"))
        slot = cls(promised=ProposalNumber.from_dict(data["promised"]))
        if "accepted_number" in data:
            slot.accepted_number = ProposalNumber.from_dict(data["accepted_number"])
            slot.accepted_value = decode_bytes(data["accepted_value"])
        return slot


class Acceptor:
    """Acceptor role of one node."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._slots: Dict[int, AcceptorSlot] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, index: int) -> asyncio.Lock:
        lock = self._locks.get(index)
        if lock is None:
            lock = self._locks[index] = asyncio.Lock()
        return lock

    async def _slot(self, index: int) -> AcceptorSlot:
        slot = self._slots.get(index)
        if slot is None:
            raw = await self.store.get(f"{ACCEPTOR_PREFIX}{index:020d}")
            slot = AcceptorSlot.from_bytes(raw) if raw else AcceptorSlot()
            self._slots[index] = slot
        return slot

    async def _save(self, index: int, slot: AcceptorSlot) -> None:
        await self.store.put(f"{ACCEPTOR_PREFIX}{index:020d}", slot.to_bytes())

    async def promised(self, index: int) -> ProposalNumber:
        async with self._lock_for(index):
            return (await self._slot(index)).promised

    async def on_prepare(self, index: int, number: ProposalNumber) -> Union[Promise, Nack]:
        """Promise number unless a higher one was already promised."""
        async with self._lock_for(index):
            slot = await self._slot(index)
            if number < slot.promised:
                logger.debug(f"[PAXOS] NACK prepare {number} at {index}, promised {slot.promised}")
                return Nack(index=index, number=number, promised=slot.promised)

            if number > slot.promised:
                slot.promised = number
                await self._save(index, slot)

            return Promise(
                index=index,
                number=number,
                accepted_number=slot.accepted_number,
                accepted_value=slot.accepted_value,
            )

    async def on_accept(self, index: int, number: ProposalNumber, value: bytes) -> Union[Accepted, Nack]:
        """Accept unless a higher number was promised since."""
        async with self._lock_for(index):
            slot = await self._slot(index)
            if number < slot.promised:
                logger.debug(f"[PAXOS] NACK accept {number} at {index}, promised {slot.promised}")
                return Nack(index=index, number=number, promised=slot.promised)

            slot.promised = number
            slot.accepted_number = number
            slot.accepted_value = bytes(value)
            await self._save(index, slot)
            return Accepted(index=index, number=number)

    async def forget_below(self, index: int) -> int:
        """
        Drop the slots of indices already in the log, cached and stored.

        Returns:
            Number of stored slots deleted
        """
        stored = []
        for key in await self.store.keys(ACCEPTOR_PREFIX):
            slot_index = int(key[len(ACCEPTOR_PREFIX):])
            if slot_index >= index:
                break
            stored.append(slot_index)

        for stale in sorted(set(stored) | {i for i in self._slots if i < index}):
            async with self._lock_for(stale):
                self._slots.pop(stale, None)
                await self.store.delete(f"{ACCEPTOR_PREFIX}{stale:020d}")
            lock = self._locks.get(stale)
            if lock is not None and not lock.locked():
                self._locks.pop(stale, None)

        if stored:
            logger.debug(f"[PAXOS] Dropped {len(stored)} acceptor slots below index {index}")
        return len(stored)
