"""
Protocol Layer - dispatch of inbound envelopes
==============================================

[PROTOCOL] Each message type is served by one MessageHandler.
ProtocolRouter routes requests to handlers; replies go straight to the
RpcClient pending table. Every inbound envelope is handled in its own
task so a slow handler never stalls the transport.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from pdn.rpc import RpcClient
from pdn.transport import Envelope, MessageType

logger = logging.getLogger(__name__)


Reply = Tuple[MessageType, Dict[str, Any]]


class MessageHandler(ABC):
    """Base class for request handlers."""

    @property
    @abstractmethod
    def message_type(self) -> MessageType:
        """Message type served by this handler."""

    @abstractmethod
    async def handle(self, envelope: Envelope) -> Optional[Reply]:
        """
        Process a request.

        Returns:
            (reply type, reply payload) or None for one-way messages
        """


class CallbackHandler(MessageHandler):
    """Adapter turning a coroutine function into a handler."""

    def __init__(self, message_type: MessageType, callback: Callable[[Envelope], Awaitable[Optional[Reply]]]):
        self._message_type = message_type
        self._callback = callback

    @property
    def message_type(self) -> MessageType:
        return self._message_type

    async def handle(self, envelope: Envelope) -> Optional[Reply]:
        return await self._callback(envelope)


class PingHandler(MessageHandler):
    """Answers PING with PONG."""

    @property
    def message_type(self) -> MessageType:
        return MessageType.PING

    async def handle(self, envelope: Envelope) -> Optional[Reply]:
        return MessageType.PONG, {}


class ProtocolRouter:
    """
    Routes inbound envelopes.

    Replies resolve pending RPCs, requests go to the registered handler
    and its answer is sent back to the requester.
    """

    def __init__(self, rpc: RpcClient):
        self.rpc = rpc
        self.handlers: Dict[MessageType, MessageHandler] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.register(PingHandler())

    def register(self, handler: MessageHandler) -> None:
        self.handlers[handler.message_type] = handler

    async def route(self, envelope: Envelope) -> Optional[Reply]:
        """Run the handler for a request envelope."""
        handler = self.handlers.get(envelope.type)
        if not handler:
            logger.debug(f"[PROTOCOL] No handler for {envelope.type.name}")
            return None
        return await handler.handle(envelope)

    def dispatch(self, envelope: Envelope) -> None:
        """Schedule handling of an inbound envelope without awaiting it."""
        if envelope.is_reply:
            self.rpc.resolve(envelope)
            return

        task = asyncio.get_running_loop().create_task(self._serve(envelope))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, envelope: Envelope) -> None:
        try:
            reply = await self.route(envelope)
        except Exception as e:
            logger.error(f"[PROTOCOL] {envelope.type.name} handler failed: {e}")
            return

        if reply is not None:
            msg_type, payload = reply
            await self.rpc.reply(envelope, msg_type, payload)

    async def drain(self) -> None:
        """Cancel in-flight handler tasks."""
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
