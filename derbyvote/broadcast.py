"""Broadcasting state changes to connected clients."""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)

VOTING_STATUS = "voting_status"
RESULTS_UPDATED = "results_updated"


@dataclass
class Message:
    """A message pushed to clients (type plus JSON-friendly payload)."""
    type: str
    payload: Any

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": self.payload}


class Broadcaster(ABC):
    """Fire-and-forget notification sink.

    Implementations must never block the caller and must never raise, even
    when nobody is listening.
    """

    def broadcast_voting_status(self, open: bool, close_time: str = "") -> None:
        """Announce that voting opened or closed (optionally with a countdown end)."""
        self.broadcast_message(VOTING_STATUS, {"open": open, "close_time": close_time})

    @abstractmethod
    def broadcast_message(self, type: str, payload: Any) -> None:
        pass


class NullBroadcaster(Broadcaster):
    """Broadcaster that drops every message."""

    def broadcast_message(self, type: str, payload: Any) -> None:
        pass


class MemoryBroadcaster(Broadcaster):
    """In-process hub fanning messages out to subscriber queues.

    Each subscriber gets an unbounded ``queue.SimpleQueue`` so publishing is
    never blocked by a slow reader. The most recent messages are kept in
    ``history`` for late joiners and for tests.
    """

    def __init__(self, history_size: int = 100):
        self._lock = threading.Lock()
        self._subscribers: list[queue.SimpleQueue] = []
        self.history: deque[Message] = deque(maxlen=history_size)

    def subscribe(self) -> queue.SimpleQueue:
        q: queue.SimpleQueue = queue.SimpleQueue()
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.SimpleQueue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def broadcast_message(self, type: str, payload: Any) -> None:
        message = Message(type=type, payload=payload)
        with self._lock:
            self.history.append(message)
            subscribers = list(self._subscribers)
        for q in subscribers:
            q.put_nowait(message)
        log.debug("Broadcast %s to %d subscribers", type, len(subscribers))
