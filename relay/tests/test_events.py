"""Tests for the event bus and notification forwarding."""

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

from django.test import TestCase

from relay.events import Event, EventBus, EventType, LoggingNotifier, NotificationForwarder


class EventTests(TestCase):
    def test_dict_round_trip_keeps_timestamp(self):
        event = Event(
            type=EventType.JOB_PROGRESS,
            owner_id="user-1",
            job_id="job-1",
            payload={"files_completed": 2},
            timestamp=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        )

        data = event.to_dict()
        self.assertEqual(data["timestamp"], "2024-01-15T10:30:00+00:00")
        self.assertEqual(Event.from_dict(data), event)

    def test_from_dict_defaults(self):
        event = Event.from_dict({"type": EventType.JOB_DELETED})
        self.assertEqual(event.owner_id, "")
        self.assertEqual(event.payload, {})
        self.assertIsNotNone(event.timestamp)


class EventBusTests(TestCase):
    def test_synchronous_delivery_in_order(self):
        bus = EventBus(asynchronous=False)
        received = []
        bus.subscribe(lambda event: received.append(("first", event.type)))
        bus.subscribe(lambda event: received.append(("second", event.type)))

        bus.publish(Event(type=EventType.JOB_CREATED))

        self.assertEqual(received, [("first", "job.created"), ("second", "job.created")])

    def test_failing_subscriber_does_not_stop_others(self):
        bus = EventBus(asynchronous=False)
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        with self.assertLogs("relay.events", level="ERROR"):
            bus.publish(Event(type=EventType.JOB_UPDATED))
        self.assertEqual(len(received), 1)

    def test_unsubscribe(self):
        bus = EventBus(asynchronous=False)
        received = []
        bus.subscribe(received.append)
        bus.unsubscribe(received.append)
        bus.unsubscribe(received.append)

        bus.publish(Event(type=EventType.JOB_UPDATED))

        self.assertEqual(received, [])

    def test_asynchronous_delivery(self):
        bus = EventBus(asynchronous=True, max_workers=1)
        delivered = threading.Event()
        bus.subscribe(lambda event: delivered.set())

        bus.publish(Event(type=EventType.JOB_CREATED))

        self.assertTrue(delivered.wait(timeout=5))
        bus.shutdown()


class NotificationForwarderTests(TestCase):
    def setUp(self):
        self.queue = MagicMock()
        self.forwarder = NotificationForwarder(self.queue, "notification", "notify")

    def test_job_events_are_enqueued(self):
        event = Event(type=EventType.JOB_UPDATED, owner_id="user-1", job_id="job-1", payload={"status": "running"})

        self.forwarder(event)

        self.queue.enqueue.assert_called_once_with(
            "notification", "notify", {"event": event.to_dict()}, owner_id="user-1"
        )

    def test_queue_events_are_ignored(self):
        self.forwarder(Event(type=EventType.QUEUE_COMPLETED, owner_id="user-1"))
        self.queue.enqueue.assert_not_called()

    def test_progress_events_stay_on_the_bus(self):
        self.forwarder(Event(type=EventType.JOB_PROGRESS, owner_id="user-1", job_id="job-1", payload={"files_completed": 1}))
        self.queue.enqueue.assert_not_called()

    def test_deleted_events_are_enqueued(self):
        self.forwarder(Event(type=EventType.JOB_DELETED, owner_id="user-1", job_id="job-1"))
        self.queue.enqueue.assert_called_once()


class LoggingNotifierTests(TestCase):
    def test_logs_event(self):
        with self.assertLogs("relay.events", level="INFO") as logs:
            LoggingNotifier().publish("user-1", Event(type=EventType.JOB_CREATED, job_id="job-1"))
        self.assertIn("owner=user-1 job.created job=job-1", logs.output[0])
