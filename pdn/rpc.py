"""
Request/response correlation over the one-way transport.

[RPC] Outgoing requests are parked in a pending table keyed by request id.
A reply resolves the matching future; a timeout removes the entry and
surfaces as Unreachable, leaving any protocol state untouched.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from pdn.errors import Unreachable
from pdn.transport import Envelope, MessageType, Transport

logger = logging.getLogger(__name__)


class RpcClient:
    """Sends envelopes and awaits their replies without blocking other callers."""

    def __init__(
        self,
        transport: Transport,
        local_id: bytes,
        local_host: str = "",
        local_port: int = 0,
        timeout: float = 2.0,
    ):
        self.transport = transport
        self.local_id = local_id
        self.local_host = local_host
        self.local_port = local_port
        self.timeout = timeout

        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _envelope(self, msg_type: MessageType, payload: Dict[str, Any], reply_to: Optional[str] = None) -> Envelope:
        return Envelope(
            type=msg_type,
            payload=payload,
            sender_id=self.local_id,
            sender_host=self.local_host,
            sender_port=self.local_port,
            reply_to=reply_to,
        )

    async def request(
        self,
        target_id: bytes,
        msg_type: MessageType,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Envelope:
        """
        Send a request and wait for its reply.

        Raises:
            Unreachable: send failed or no reply within timeout
        """
        envelope = self._envelope(msg_type, payload)
        future = asyncio.get_running_loop().create_future()
        self._pending[envelope.request_id] = future

        try:
            await self.transport.send(target_id, envelope)
            return await asyncio.wait_for(future, timeout or self.timeout)
        except asyncio.TimeoutError:
            raise Unreachable(target_id, f"{msg_type.name} timed out")
        finally:
            self._pending.pop(envelope.request_id, None)

    async def notify(self, target_id: bytes, msg_type: MessageType, payload: Dict[str, Any]) -> bool:
        """Fire-and-forget send. Returns False if the target is unreachable."""
        try:
            await self.transport.send(target_id, self._envelope(msg_type, payload))
            return True
        except Unreachable as e:
            logger.debug(f"[RPC] {msg_type.name} not delivered: {e}")
            return False

    async def reply(self, request: Envelope, msg_type: MessageType, payload: Dict[str, Any]) -> None:
        """Answer a request; a vanished requester is not an error."""
        try:
            await self.transport.send(
                request.sender_id,
                self._envelope(msg_type, payload, reply_to=request.request_id),
            )
        except Unreachable as e:
            logger.debug(f"[RPC] Reply {msg_type.name} dropped: {e}")

    def resolve(self, envelope: Envelope) -> bool:
        """
        Hand a reply to its waiting request.

        Returns:
            False for late or unknown replies
        """
        future = self._pending.get(envelope.reply_to or "")
        if future is None or future.done():
            return False
        future.set_result(envelope)
        return True

    def cancel_all(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
