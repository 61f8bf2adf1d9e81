"""Tests for notification delivery."""

import logging

import pytest

from wagob.errors import DeliveryError
from wagob.notify import NotificationBus, QueueNotifier
from wagob.types import DomainEvent


def _event(entity_id=1, kind="job_created"):
    return DomainEvent(kind=kind, entity_type="job", entity_id=entity_id)


class TestNotificationBus:
    def test_fan_out(self):
        bus = NotificationBus()
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        bus.publish(_event())

        assert len(first) == 1
        assert len(second) == 1

    def test_failing_subscriber_is_logged_and_raised(self, caplog):
        bus = NotificationBus()
        received = []

        def broken(event):
            raise RuntimeError("push gateway down")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="wagob.notify"):
            with pytest.raises(DeliveryError, match="1 of 2 subscribers"):
                bus.publish(_event(entity_id=7))

        assert len(received) == 1
        assert "push gateway down" in caplog.text
        assert "job:7" in caplog.text

    def test_unsubscribe(self):
        bus = NotificationBus()
        received = []
        bus.subscribe(received.append)
        bus.unsubscribe(received.append)
        bus.unsubscribe(received.append)

        bus.publish(_event())
        assert received == []


class TestQueueNotifier:
    def test_drain_in_order(self):
        notifier = QueueNotifier()
        for i in range(3):
            notifier.publish(_event(entity_id=i))

        assert len(notifier) == 3
        assert [e.entity_id for e in notifier.drain()] == [0, 1, 2]
        assert len(notifier) == 0

    def test_get_empty(self):
        assert QueueNotifier().get() is None
        assert QueueNotifier().get(timeout=0.01) is None

    def test_full_queue_refuses(self):
        notifier = QueueNotifier(maxsize=1)
        notifier.publish(_event(entity_id=1))

        with pytest.raises(DeliveryError, match="queue full"):
            notifier.publish(_event(entity_id=2))

        assert [e.entity_id for e in notifier.drain()] == [1]
        notifier.publish(_event(entity_id=2))
        assert [e.entity_id for e in notifier.drain()] == [2]
