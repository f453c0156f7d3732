"""Non-blocking broadcast of reader events to subscribers."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

LOGGER = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Topic(str, Enum):
    CARD_SWIPE = "card_swipe"
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    ERROR = "error"


Handler = Callable[..., None]


class EventBus:
    """Broadcast events from a dedicated dispatcher thread.

    ``publish`` never blocks: events are queued in a bounded buffer and the
    oldest pending event is dropped when the buffer is full, so a slow
    subscriber cannot stall the publisher.
    """

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._subscribers: dict[int, tuple[Topic, Handler]] = {}
        self._tokens = itertools.count(1)
        self._pending: deque[tuple[Topic, tuple[Any, ...]]] = deque()
        self._queue_size = queue_size
        self._in_flight = 0
        self._current: tuple[Topic, tuple[Any, ...]] | None = None
        self._current_revoked = False
        self._dropped = 0
        self._cond = threading.Condition()
        self._running = False
        self._thread: threading.Thread | None = None

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._pending)

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(
                target=self._dispatch_loop, name="magtekctl-events", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float | None = 1.0) -> None:
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._cond.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def subscribe(self, topic: Topic, handler: Handler) -> int:
        with self._cond:
            token = next(self._tokens)
            self._subscribers[token] = (Topic(topic), handler)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._cond:
            return self._subscribers.pop(token, None) is not None

    def publish(self, topic: Topic, *payload: Any) -> None:
        with self._cond:
            if len(self._pending) >= self._queue_size:
                dropped_topic, _ = self._pending.popleft()
                self._dropped += 1
                LOGGER.warning("Event queue full; dropped pending %s event", dropped_topic.value)
            self._pending.append((Topic(topic), payload))
            self._cond.notify_all()

    def discard(self, topic: Topic, predicate: Callable[..., bool]) -> int:
        """Drop undelivered events of ``topic`` matching ``predicate``.

        Queued events are removed. An event being dispatched right now is not
        handed to the subscribers that have not seen it yet.
        """
        topic = Topic(topic)
        with self._cond:
            kept = deque(
                (t, payload)
                for t, payload in self._pending
                if t is not topic or not predicate(*payload)
            )
            removed = len(self._pending) - len(kept)
            self._pending = kept
            current = self._current
            if current is not None and current[0] is topic and predicate(*current[1]):
                self._current_revoked = True
                removed += 1
            if removed:
                self._cond.notify_all()
        return removed

    def wait_idle(self, timeout: float = 1.0) -> bool:
        """Block until every queued event has been delivered."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._pending or self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                while self._running and not self._pending:
                    self._cond.wait()
                if not self._pending:
                    return
                topic, payload = self._pending.popleft()
                handlers = [h for t, h in self._subscribers.values() if t is topic]
                self._current = (topic, payload)
                self._current_revoked = False
                self._in_flight += 1
            try:
                for handler in handlers:
                    with self._cond:
                        if self._current_revoked:
                            break
                    try:
                        handler(*payload)
                    except Exception:
                        LOGGER.exception("Subscriber for %s event failed", topic.value)
            finally:
                with self._cond:
                    self._current = None
                    self._in_flight -= 1
                    self._cond.notify_all()
