from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterator, Literal

logger = logging.getLogger(__name__)

EventType = Literal["status", "delta", "quick_context", "done", "error"]
TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({"done", "error"})
EVENT_TYPES: frozenset[str] = frozenset(
    {"status", "delta", "quick_context", "done", "error"}
)


@dataclass(frozen=True, slots=True)
class StreamEvent:
    event_type: EventType
    payload: dict[str, Any]

    def to_sse(self) -> str:
        data = json.dumps(self.payload, ensure_ascii=False, default=str)
        return f"event: {self.event_type}\ndata: {data}\n\n"


class EventStreamEmitter:
    """Single-job, one-directional event channel to a client.

    send() never blocks and never raises on a closed or abandoned stream:
    the buffer is bounded and evicts the oldest non-terminal event when a
    slow reader falls behind.
    """

    def __init__(self, *, max_buffered_events: int = 1_000) -> None:
        if max_buffered_events < 1:
            raise ValueError("max_buffered_events must be >= 1")
        self.max_buffered_events = max_buffered_events
        self._buffer: deque[StreamEvent] = deque()
        self._condition = threading.Condition()
        self._closed = False
        self._disconnected = False
        self._terminal_sent = False
        self.sent_count = 0
        self.dropped_count = 0
        self.sends_after_close = 0

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def disconnected(self) -> bool:
        with self._condition:
            return self._disconnected

    @property
    def terminal_sent(self) -> bool:
        with self._condition:
            return self._terminal_sent

    def send(self, event_type: EventType, payload: dict[str, Any] | None = None) -> bool:
        """Queue one event. Returns False when the event was not accepted."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        event = StreamEvent(event_type=event_type, payload=dict(payload or {}))
        with self._condition:
            if self._closed:
                self.sends_after_close += 1
                logger.warning(
                    "Dropped '%s' event sent after stream close", event_type
                )
                return False

            is_terminal = event_type in TERMINAL_EVENT_TYPES
            if is_terminal and self._terminal_sent:
                logger.warning(
                    "Dropped second terminal '%s' event; stream already finished",
                    event_type,
                )
                return False
            if is_terminal:
                self._terminal_sent = True

            if self._disconnected:
                self.dropped_count += 1
                return False

            if len(self._buffer) >= self.max_buffered_events:
                if not self._evict_oldest_non_terminal():
                    self.dropped_count += 1
                    return False

            self._buffer.append(event)
            self.sent_count += 1
            self._condition.notify_all()
            return True

    def close(self) -> None:
        with self._condition:
            if self._closed:
                return
            self._closed = True
            self._condition.notify_all()

    def disconnect(self) -> None:
        """Mark the reader as gone; later events are discarded silently."""
        with self._condition:
            if self._disconnected:
                return
            self._disconnected = True
            self.dropped_count += len(self._buffer)
            self._buffer.clear()
            self._condition.notify_all()
        logger.info("Event stream client disconnected")

    def iter_events(self, *, poll_timeout_seconds: float = 1.0) -> Iterator[StreamEvent]:
        """Yield buffered events until the stream is closed and drained."""
        while True:
            with self._condition:
                while not self._buffer and not self._closed and not self._disconnected:
                    self._condition.wait(timeout=poll_timeout_seconds)
                if not self._buffer:
                    return
                event = self._buffer.popleft()
            yield event

    def iter_sse(self) -> Iterator[str]:
        try:
            for event in self.iter_events():
                yield event.to_sse()
        finally:
            if not self.closed:
                self.disconnect()

    def _evict_oldest_non_terminal(self) -> bool:
        for index, buffered in enumerate(self._buffer):
            if buffered.event_type not in TERMINAL_EVENT_TYPES:
                del self._buffer[index]
                self.dropped_count += 1
                return True
        return False
