"""Step lifecycle events.

The orchestrator publishes one ``StepEvent`` per state change. The progress
writer persists them; other subscribers (live status feeds, tests) can listen
without touching the store.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from extraction_worker.models import StepState, StepStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepEvent:
    entity_id: str
    step: str
    status: StepStatus
    state: StepState
    emitted_at: datetime = field(default_factory=utcnow)


Subscriber = Callable[[StepEvent], None]


class EventBus:
    """Synchronous fan-out; delivery order equals subscription order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._required: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber, *, required: bool = False) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it.

        Errors raised by a ``required`` subscriber propagate to the publisher;
        errors from optional subscribers are logged and dropped.
        """
        with self._lock:
            self._subscribers.append(subscriber)
            if required:
                self._required.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)
                if subscriber in self._required:
                    self._required.remove(subscriber)

        return unsubscribe

    def publish(self, event: StepEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            required = list(self._required)
        for subscriber in subscribers:
            if subscriber in required:
                subscriber(event)
                continue
            try:
                subscriber(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Event subscriber %r failed for %s/%s: %s", subscriber, event.entity_id, event.step, exc)


class ProgressWriter:
    """Persists step events; the only code path that writes ``progress``."""

    def __init__(self, store) -> None:
        self.store = store

    def __call__(self, event: StepEvent) -> None:
        self.store.merge_progress(event.entity_id, event.step, event.state)


class QueueSubscriber:
    """Buffers events for a poller, optionally filtered to one entity."""

    def __init__(self, entity_id: Optional[str] = None, maxsize: int = 1000) -> None:
        self.entity_id = entity_id
        self.queue: "queue.Queue[StepEvent]" = queue.Queue(maxsize=maxsize)

    def __call__(self, event: StepEvent) -> None:
        if self.entity_id and event.entity_id != self.entity_id:
            return
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            logger.debug("Dropping event for %s/%s; subscriber queue full", event.entity_id, event.step)

    def drain(self) -> List[StepEvent]:
        events: List[StepEvent] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events
