"""Typed publish/subscribe channel with a bounded replay buffer."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    type: str
    spec_id: str | None = None
    chunk_id: str | None = None
    worker_id: str | None = None
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)


class EventChannel:
    """Fan-out of events to subscribers.

    Each subscriber gets its own memory stream, pre-filled with the buffered
    history (at most ``history`` events, oldest dropped first). Publishing
    never blocks: a subscriber whose stream is full misses the event.
    """

    def __init__(self, history: int = 100, subscriber_buffer: int = 1000):
        self._history: deque[Event] = deque(maxlen=history)
        self._subscriber_buffer = max(subscriber_buffer, history)
        self._subscribers: list[MemoryObjectSendStream[Event]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def recent(self) -> list[Event]:
        return list(self._history)

    def publish(self, event: Event) -> None:
        if self._closed:
            return
        self._history.append(event)
        for send in list(self._subscribers):
            try:
                send.send_nowait(event)
            except anyio.WouldBlock:
                logger.warning("Subscriber is full, dropping %s event", event.type)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                self._subscribers.remove(send)

    def emit(self, type: str, **kwargs) -> Event:
        event = Event(type=type, **kwargs)
        self.publish(event)
        return event

    def subscribe(self, replay: bool = True) -> MemoryObjectReceiveStream[Event]:
        """Open a receive stream; it ends when the channel closes."""
        send, receive = anyio.create_memory_object_stream[Event](self._subscriber_buffer)
        if replay:
            for event in self._history:
                send.send_nowait(event)
        if self._closed:
            send.close()
        else:
            self._subscribers.append(send)
        return receive

    def close(self) -> None:
        self._closed = True
        for send in self._subscribers:
            send.close()
        self._subscribers.clear()
