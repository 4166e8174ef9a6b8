"""
Event fan-out from the engine to presentation layers.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Generator, Optional

from .constants import EVENT_PING, EVENT_QUEUE_SIZE
from .models import ScanEvent
from .timers import Clock, SystemClock

logger = logging.getLogger('blesense.scanning.events')

EventListener = Callable[[ScanEvent], None]


class EventBus:
    """
    Publishes typed scan events.

    Consumers either register a callback or stream from their own bounded
    queue. A full consumer queue drops its oldest event rather than blocking
    the ingestion path.
    """

    def __init__(self, clock: Optional[Clock] = None, queue_size: int = EVENT_QUEUE_SIZE):
        self._clock = clock or SystemClock()
        self._queue_size = queue_size
        self._listeners: list[EventListener] = []
        self._queues: list[queue.Queue] = []
        self._lock = threading.Lock()
        self.dropped = 0

    def add_listener(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event_type: str, data: Any = None) -> ScanEvent:
        event = ScanEvent(type=event_type, data=data, timestamp=self._clock.now())
        with self._lock:
            listeners = list(self._listeners)
            queues = list(self._queues)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"Event listener failed on {event_type}: {e}")

        for q in queues:
            self._offer(q, event)
        return event

    def _offer(self, q: queue.Queue, event: ScanEvent) -> None:
        try:
            q.put_nowait(event)
        except queue.Full:
            try:
                q.get_nowait()
            except queue.Empty:
                pass
            self.dropped += 1
            try:
                q.put_nowait(event)
            except queue.Full:
                pass

    def open_stream(self) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self._queue_size)
        with self._lock:
            self._queues.append(q)
        return q

    def close_stream(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._queues:
                self._queues.remove(q)

    def listen(self, timeout: float = 1.0) -> Generator[dict, None, None]:
        """
        Yield events as dicts, with a ping whenever ``timeout`` passes idle.

        The consumer queue is released when the generator is closed.
        """
        q = self.open_stream()
        try:
            while True:
                try:
                    event = q.get(timeout=timeout)
                except queue.Empty:
                    yield {'type': EVENT_PING}
                    continue
                yield event.to_dict()
        finally:
            self.close_stream(q)

    @property
    def stream_count(self) -> int:
        with self._lock:
            return len(self._queues)
