"""Notifier boundary.

The reconciliation engine publishes a ``DomainEvent`` after every committed
transition. Delivery is at-least-once: the event is written to an outbox in
the same transaction as the state change and removed only once ``publish``
returns. A notifier that cannot take an event raises ``DeliveryError`` and the
engine redelivers it later. Consumers that need exactly-once must dedupe on
``transaction_hash``.
"""

import logging
import queue
from typing import Callable, List, Optional, Protocol

from wagob.errors import DeliveryError
from wagob.types import DomainEvent

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Anything that accepts domain events.

    ``publish`` returns only once the event is accepted and raises otherwise.
    """

    def publish(self, event: DomainEvent) -> None: ...


class NotificationBus:
    """Fan-out to registered subscriber callables.

    Every subscriber is called even when an earlier one fails; the failures
    are then raised together so the event is redelivered. Subscribers that
    already succeeded see the redelivery too.
    """

    def __init__(self):
        self._subscribers: List[Callable[[DomainEvent], None]] = []

    def subscribe(self, callback: Callable[[DomainEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[DomainEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: DomainEvent) -> None:
        failures = []
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    f"Notification subscriber failed for {event.kind} "
                    f"{event.entity_type}:{event.entity_id}: {e}",
                    exc_info=True,
                )
                failures.append(e)
        if failures:
            raise DeliveryError(
                f"{len(failures)} of {len(self._subscribers)} subscribers failed for "
                f"{event.kind} {event.entity_type}:{event.entity_id}: {failures[0]}"
            ) from failures[0]


class QueueNotifier:
    """Buffers events for an external delivery worker (push, webhook, bot)."""

    def __init__(self, maxsize: int = 10000):
        self._queue: "queue.Queue[DomainEvent]" = queue.Queue(maxsize=maxsize)

    def publish(self, event: DomainEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full as e:
            raise DeliveryError(
                f"Notification queue full ({self._queue.maxsize}), "
                f"{event.kind} for {event.entity_type}:{event.entity_id} not accepted"
            ) from e

    def get(self, timeout: Optional[float] = None) -> Optional[DomainEvent]:
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> List[DomainEvent]:
        events = []
        while True:
            event = self.get()
            if event is None:
                return events
            events.append(event)

    def __len__(self) -> int:
        return self._queue.qsize()
