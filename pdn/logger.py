import asyncio
import logging
from collections import deque
from typing import Deque, Optional

from pdn.events import EventBus


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Subsystem tags used as message prefixes
TAGS = ("PAXOS", "LOG", "DHT", "MEMBERSHIP", "REPLICATION", "NODE", "RPC", "PROTOCOL", "TRANSPORT", "STORE")


def setup_logging(level: int = logging.INFO, fmt: str = LOG_FORMAT) -> None:
    """Configure root logging for a node process."""
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def tag_of(msg: str) -> Optional[str]:
    for tag in TAGS:
        if f"[{tag}]" in msg:
            return tag
    return None


class EventStreamHandler(logging.Handler):
    """Logging handler that keeps recent records and pushes them to an event bus."""

    def __init__(self, events: Optional[EventBus] = None, maxlen: int = 1000):
        super().__init__()
        self.events = events
        self.buffer: Deque[str] = deque(maxlen=maxlen)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            self.buffer.append(msg)

            if self.events is None:
                return
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No loop: keep the record buffered only
                return

            payload = {"message": msg, "level": record.levelname, "tag": tag_of(msg)}
            loop.create_task(self.events.broadcast("log_record", payload))
        except Exception:
            self.handleError(record)
